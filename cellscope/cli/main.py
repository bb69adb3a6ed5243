"""Command-line interface for cellscope.

Provides commands for the standard clustering workflow, marker detection,
spatially variable features, label transfer and YAML-defined pipelines.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__
from ..errors import CellscopeError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("cellscope")


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _with_override(value, default):
    return default if value is None else value


@click.group()
@click.version_option(version=__version__, prog_name="cellscope")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.option("--presentation", type=click.Path(exists=True),
              help="Presentation settings (YAML) applied to scanpy and matplotlib")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool, presentation: Optional[str]) -> None:
    """cellscope: single-cell and spatial transcriptomics analysis.

    Walks the standard workflow: quality control, normalization, feature
    selection, scaling, PCA, shared-neighbor graph, Leiden clustering,
    marker detection, spatially variable features and label transfer.

    Examples:

        # Cluster a 10x matrix directory
        cellscope cluster --input filtered_feature_bc_matrix/ --out results/

        # One-vs-rest markers for every cluster
        cellscope markers --input results/clustered.h5ad --out results/

        # Spatially variable features
        cellscope spatial --input results/clustered.h5ad --coordinates spots.csv --out results/

        # Transfer cell types from an annotated reference
        cellscope transfer --reference ref.h5ad --query query/ --out results/

        # Run a full pipeline from config
        cellscope run --config pipeline.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)

    if presentation:
        from ..viz import PresentationConfig

        try:
            PresentationConfig.from_yaml(Path(presentation)).apply()
        except CellscopeError as e:
            _fail(e)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="10x matrix directory or .h5ad file with raw counts")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with preprocessing and analysis sections")
@click.option("--dataset-id", help="Dataset identifier (default: input name)")
@click.option("--coordinates", type=click.Path(exists=True),
              help="Spatial coordinate table (cell_id,x,y)")
@click.option("--resolution", type=float, help="Leiden clustering resolution")
@click.option("--n-pcs", type=int, help="Number of principal components")
@click.option("--seed", type=int, help="Random seed for PCA, UMAP and Leiden")
@click.option("--umap/--no-umap", "compute_umap", default=True, help="Compute a UMAP layout")
@click.pass_context
def cluster(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    dataset_id: Optional[str],
    coordinates: Optional[str],
    resolution: Optional[float],
    n_pcs: Optional[int],
    seed: Optional[int],
    compute_umap: bool,
) -> None:
    """Run the standard clustering workflow.

    Quality control, normalization, feature selection, scaling, PCA,
    optional UMAP, shared-neighbor graph and Leiden clustering. Writes
    ``clustered.h5ad``, ``elbow.csv`` and ``summary.yaml``.
    """
    logger = ctx.obj["logger"]
    logger.info("Running clustering workflow on: %s", input_path)

    # Import here to avoid slow startup
    from ..core.clustering import (
        AnalysisConfig,
        ClusteringEngine,
        DimensionalityReducer,
        NeighborGraphBuilder,
    )
    from ..core.preprocessing import (
        FeatureSelector,
        Normalizer,
        PreprocessingConfig,
        QualityControl,
        Scaler,
    )
    from ..io import (
        attach_spatial_coordinates,
        ensure_output_dir,
        log_yaml,
        read_dataset,
        read_spatial_coordinates,
        write_dataframe,
    )

    out_dir = ensure_output_dir(output_path)
    try:
        if config:
            prep_cfg = PreprocessingConfig.from_yaml(Path(config))
            analysis_cfg = AnalysisConfig.from_yaml(Path(config))
        else:
            prep_cfg = PreprocessingConfig.default()
            analysis_cfg = AnalysisConfig.default()
        reduction = analysis_cfg.reduction
        reduction.n_pcs = _with_override(n_pcs, reduction.n_pcs)
        if seed is not None:
            reduction.random_seed = seed
            analysis_cfg.clustering.random_seed = seed
        analysis_cfg.clustering.resolution = _with_override(
            resolution, analysis_cfg.clustering.resolution
        )
        analysis_cfg.validate()

        dataset = read_dataset(input_path, dataset_id=dataset_id)
        if coordinates:
            attach_spatial_coordinates(dataset, read_spatial_coordinates(coordinates))

        dataset, qc_result = QualityControl(prep_cfg.qc, logger).filter(dataset)
        norm_result = Normalizer(prep_cfg.normalization, logger).normalize(dataset)
        hvf_result = FeatureSelector(prep_cfg.feature_selection, logger).select(dataset)
        Scaler(prep_cfg.scaling, logger).scale(dataset)

        reducer = DimensionalityReducer(reduction, logger)
        reducer.run_pca(dataset)
        if compute_umap:
            reducer.run_umap(dataset)
        NeighborGraphBuilder(analysis_cfg.neighbors, logger).build(dataset)
        cluster_result = ClusteringEngine(analysis_cfg, logger).cluster(dataset)

        output_file = dataset.save(out_dir / "clustered.h5ad")
        write_dataframe(reducer.elbow_table(dataset), out_dir / "elbow.csv")
        log_yaml(out_dir / "summary.yaml", {
            "dataset_id": dataset.dataset_id,
            "qc": qc_result.to_dict(),
            "normalization": norm_result.to_dict(),
            "feature_selection": hvf_result.to_dict(),
            "clustering": cluster_result.to_dict(),
        })
    except CellscopeError as e:
        _fail(e)

    click.echo(f"Clustering complete: {cluster_result.n_clusters} clusters")
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Clustered cellscope snapshot (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with an analysis.markers section")
@click.option("--cluster-key", default="leiden", help="Cluster column name")
@click.option("--ident-1", help="Cluster to test; omit for one-vs-rest over all clusters")
@click.option("--ident-2", help="Comparison cluster (default: all other cells)")
@click.option("--test", type=click.Choice(["wilcoxon", "t-test"]), help="Statistical test")
@click.option("--only-positive/--both-directions", default=None,
              help="Report only up-regulated features (default from config)")
@click.option("--n-top", type=int, default=10, help="Top markers per cluster in top_markers.csv")
@click.pass_context
def markers(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    cluster_key: str,
    ident_1: Optional[str],
    ident_2: Optional[str],
    test: Optional[str],
    only_positive: Optional[bool],
    n_top: int,
) -> None:
    """Find differential markers between clusters.

    Writes ``markers.csv`` with every tested feature and
    ``top_markers.csv`` with the strongest up-regulated features per group.
    """
    logger = ctx.obj["logger"]
    logger.info("Finding markers in: %s (%s)", input_path, cluster_key)

    from ..core.clustering import AnalysisConfig, MarkerFinder, top_markers
    from ..core.dataset import Dataset
    from ..io import ensure_output_dir, write_dataframe

    out_dir = ensure_output_dir(output_path)
    try:
        marker_cfg = (
            AnalysisConfig.from_yaml(Path(config)) if config else AnalysisConfig.default()
        ).markers
        marker_cfg.test = _with_override(test, marker_cfg.test)
        marker_cfg.only_positive = _with_override(only_positive, marker_cfg.only_positive)
        marker_cfg.validate()

        dataset = Dataset.load(input_path)
        finder = MarkerFinder(marker_cfg, logger)
        if ident_1 is not None:
            table = finder.find_markers(
                dataset, ident_1=ident_1, ident_2=ident_2, cluster_key=cluster_key
            ).table
        else:
            table = finder.find_all_markers(dataset, cluster_key)

        write_dataframe(table, out_dir / "markers.csv")
        write_dataframe(top_markers(table, n=n_top), out_dir / "top_markers.csv")
    except CellscopeError as e:
        _fail(e)

    click.echo(f"Markers complete: {len(table)} rows")
    click.echo(f"Output saved to: {out_dir / 'markers.csv'}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Normalized cellscope snapshot (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--coordinates", type=click.Path(exists=True),
              help="Spatial coordinate table (cell_id,x,y); required if the snapshot has none")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with a spatial section")
@click.option("--method", type=click.Choice(["markvariogram", "morans_i"]),
              help="Spatial statistic")
@click.option("--n-top", type=int, help="Features flagged as spatially variable")
@click.option("--n-permutations", type=int, help="Moran's I permutations for p-values")
@click.option("--n-jobs", type=int, help="Parallel workers")
@click.option("--save/--no-save", "save_snapshot", default=False,
              help="Write the annotated snapshot to spatial.h5ad")
@click.pass_context
def spatial(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    coordinates: Optional[str],
    config: Optional[str],
    method: Optional[str],
    n_top: Optional[int],
    n_permutations: Optional[int],
    n_jobs: Optional[int],
    save_snapshot: bool,
) -> None:
    """Rank features by spatial structure.

    Writes ``spatial_features.csv`` ordered from most to least spatially
    structured.
    """
    logger = ctx.obj["logger"]
    logger.info("Finding spatially variable features in: %s", input_path)

    from ..core.dataset import Dataset
    from ..core.spatial import SpatialConfig, SpatialFeatureFinder
    from ..io import (
        attach_spatial_coordinates,
        ensure_output_dir,
        read_spatial_coordinates,
        write_dataframe,
    )

    out_dir = ensure_output_dir(output_path)
    try:
        cfg = SpatialConfig.from_yaml(Path(config)) if config else SpatialConfig()
        cfg.method = _with_override(method, cfg.method)
        cfg.n_top = _with_override(n_top, cfg.n_top)
        cfg.n_permutations = _with_override(n_permutations, cfg.n_permutations)
        cfg.n_jobs = _with_override(n_jobs, cfg.n_jobs)
        cfg.validate()

        dataset = Dataset.load(input_path)
        if coordinates:
            attach_spatial_coordinates(dataset, read_spatial_coordinates(coordinates))
        result = SpatialFeatureFinder(cfg, logger).find(dataset)

        write_dataframe(result.table, out_dir / "spatial_features.csv")
        if save_snapshot:
            dataset.save(out_dir / "spatial.h5ad")
    except CellscopeError as e:
        _fail(e)

    click.echo(f"Spatial features complete ({result.method}): top {', '.join(result.top(5))}")
    click.echo(f"Output saved to: {out_dir / 'spatial_features.csv'}")


@cli.command()
@click.option("--reference", "-r", required=True, type=click.Path(exists=True),
              help="Annotated reference snapshot (.h5ad) with selected features")
@click.option("--query", "-q", required=True, type=click.Path(exists=True),
              help="Query 10x directory or .h5ad file")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with a transfer section")
@click.option("--label-key", help="Reference label column")
@click.option("--refdata", multiple=True,
              help="Reference numeric column or feature to transfer (repeatable)")
@click.option("--n-components", type=int, help="Reference components for the shared space")
@click.pass_context
def transfer(
    ctx: click.Context,
    reference: str,
    query: str,
    output_path: str,
    config: Optional[str],
    label_key: Optional[str],
    refdata: Tuple[str, ...],
    n_components: Optional[int],
) -> None:
    """Transfer labels from an annotated reference onto a query.

    A query without a normalized layer is normalized the way the
    reference was. Writes ``predictions.csv``, ``anchors.csv`` and the
    annotated ``transferred.h5ad``.
    """
    logger = ctx.obj["logger"]
    logger.info("Transferring labels: %s -> %s", reference, query)

    from ..core.dataset import Dataset, Layer
    from ..core.preprocessing import NormalizationConfig, Normalizer
    from ..core.transfer import AnchorFinder, LabelTransfer, TransferConfig
    from ..io import ensure_output_dir, read_dataset, write_dataframe

    out_dir = ensure_output_dir(output_path)
    try:
        cfg = TransferConfig.from_yaml(Path(config)) if config else TransferConfig()
        cfg.label_key = _with_override(label_key, cfg.label_key)
        cfg.n_components = _with_override(n_components, cfg.n_components)
        cfg.validate()

        ref = Dataset.load(reference)
        qry = read_dataset(query)
        if not qry.has_layer(Layer.NORMALIZED):
            method = ref.normalization.get("method", "log_normalize")
            Normalizer(NormalizationConfig(method=method), logger).normalize(qry)

        anchors = AnchorFinder(cfg, logger).find_anchors(ref, qry)
        result = LabelTransfer(cfg, logger).transfer(
            anchors, ref, qry, refdata=list(refdata) or None
        )

        write_dataframe(result.predictions, out_dir / "predictions.csv", index=True)
        write_dataframe(anchors.anchors, out_dir / "anchors.csv")
        output_file = qry.save(out_dir / "transferred.h5ad")
    except CellscopeError as e:
        _fail(e)

    click.echo(f"Transfer complete: {result.n_anchors} anchors, labels {result.labels}")
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.option("--start-stage", help="Stage to start from")
@click.option("--end-stage", help="Stage to end at")
@click.option("--dry-run", is_flag=True, help="Show execution plan without running")
@click.option("--force", is_flag=True, help="Ignore checkpoint and re-run all stages")
@click.option("--log-dir", type=click.Path(), help="Log directory (default: <output_dir>/logs)")
@click.option("--no-snapshots", is_flag=True, help="Do not write per-stage checkpoint snapshots")
@click.pass_context
def run(
    ctx: click.Context,
    config: str,
    start_stage: Optional[str],
    end_stage: Optional[str],
    dry_run: bool,
    force: bool,
    log_dir: Optional[str],
    no_snapshots: bool,
) -> None:
    """Run a pipeline from configuration.

    Executes stages in dependency order. Completed stages are recorded in
    ``<output_dir>/.pipeline_state.json`` with a dataset snapshot each,
    so a rerun resumes after the last completed stage unless --force is
    given. ``output_dir`` comes from the ``global`` section and defaults
    to the config file's directory.
    """
    verbose = ctx.obj["verbose"] or ctx.obj["debug"]

    from ..pipeline import PipelineConfig, PipelineExecutor, PipelineLogger

    try:
        pipeline_config = PipelineConfig(config)
        pipeline_config.load()
        pipeline_config.parse_stages()
    except CellscopeError as e:
        _fail(e)

    output_dir = Path(
        pipeline_config.global_settings.get("global", {}).get("output_dir")
        or Path(config).parent
    )
    pipeline_logger = PipelineLogger(
        log_dir or str(output_dir / "logs"),
        log_level="DEBUG" if verbose else "INFO",
    )
    pipeline_logger.setup()

    executor = PipelineExecutor(
        pipeline_config,
        pipeline_logger,
        state_file=str(output_dir / ".pipeline_state.json"),
        snapshot_dir=None if no_snapshots else str(output_dir / "checkpoints"),
    )

    try:
        if not dry_run and not force:
            resume_stage = executor.get_resume_stage()
            if resume_stage:
                click.echo(f"Resuming from stage: {resume_stage}")
        executor.run(
            start_stage=start_stage,
            end_stage=end_stage,
            dry_run=dry_run,
            force=force,
        )
    except CellscopeError as e:
        _fail(e)
    finally:
        pipeline_logger.close()

    if dry_run:
        click.echo("Dry run complete - no stages were executed")
    else:
        click.echo("Pipeline completed successfully")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
