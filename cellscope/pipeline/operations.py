"""Operations available to pipeline stages.

Every operation takes the shared :class:`PipelineContext` and its
:class:`Stage`, updates the working Dataset in place (``qc`` and ``load``
replace it) and returns a JSON-serializable summary. Stage ``params``
are split into fields of the matching engine config plus a few
operation-specific keys; anything else is rejected.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type
import logging

from ..core.clustering import (
    ClusteringConfig,
    ClusteringEngine,
    DimensionalityReducer,
    MarkerConfig,
    MarkerFinder,
    NeighborGraphBuilder,
    NeighborsConfig,
    ReductionConfig,
    top_markers,
)
from ..core.dataset import Dataset
from ..core.preprocessing import (
    FeatureSelectionConfig,
    FeatureSelector,
    NormalizationConfig,
    Normalizer,
    QCConfig,
    QualityControl,
    Scaler,
    ScalingConfig,
)
from ..core.spatial import SpatialConfig, SpatialFeatureFinder
from ..core.transfer import AnchorFinder, LabelTransfer, TransferConfig
from ..errors import ConfigurationError
from ..io import (
    attach_spatial_coordinates,
    read_dataset,
    read_spatial_coordinates,
    write_dataframe,
)
from .stage import Stage

OperationFunc = Callable[["PipelineContext", Stage], Dict[str, Any]]

# Global registry of stage operations
OPERATIONS: Dict[str, OperationFunc] = {}

# Config fields given as YAML lists but stored as tuples
_TUPLE_FIELDS = ("dims", "umap_dims")


@dataclass
class PipelineContext:
    """State shared by the stages of one pipeline run.

    Attributes
    ----------
    dataset : Dataset, optional
        Working dataset; set by ``load`` or restored from a checkpoint
    logger : logging.Logger
        Logger handed to every engine
    summaries : Dict[str, Dict[str, Any]]
        Summary returned by each completed stage
    """

    dataset: Optional[Dataset] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def require_dataset(self, operation: str) -> Dataset:
        if self.dataset is None:
            raise ConfigurationError(
                f"Operation '{operation}' needs a dataset; add a 'load' stage before it"
            )
        return self.dataset


def register_operation(name: str) -> Callable[[OperationFunc], OperationFunc]:
    """Register a stage operation under ``name``.

    Use as decorator::

        @register_operation("my_step")
        def run_my_step(context, stage):
            ...
            return {"n_cells": context.dataset.n_cells}
    """

    def decorator(func: OperationFunc) -> OperationFunc:
        OPERATIONS[name] = func
        return func

    return decorator


def get_operation(name: str) -> OperationFunc:
    """Look up a registered operation.

    Raises
    ------
    ConfigurationError
        If no operation is registered under ``name``
    """
    if name not in OPERATIONS:
        raise ConfigurationError(
            f"Unknown operation: '{name}'. Available: {list_operations()}"
        )
    return OPERATIONS[name]


def list_operations() -> List[str]:
    """List registered operation names."""
    return sorted(OPERATIONS.keys())


def split_params(
    stage: Stage,
    config_cls: Optional[Type] = None,
    extras: Sequence[str] = (),
) -> Tuple[Any, Dict[str, Any]]:
    """Split stage params into a validated config and operation keys.

    Returns
    -------
    Tuple[Any, Dict[str, Any]]
        Config instance (None without ``config_cls``) and the extra keys
        that were present
    """
    config_fields = {f.name for f in fields(config_cls)} if config_cls else set()
    unknown = sorted(set(stage.params) - config_fields - set(extras))
    if unknown:
        raise ConfigurationError(
            f"Stage '{stage.stage_id}' ({stage.operation}) got unknown params: {unknown}"
        )

    config = None
    if config_cls is not None:
        values = {k: v for k, v in stage.params.items() if k in config_fields}
        for key in _TUPLE_FIELDS:
            if isinstance(values.get(key), list):
                values[key] = tuple(values[key])
        config = config_cls(**values)
        config.validate()
    extra = {k: v for k, v in stage.params.items() if k in extras}
    return config, extra


def _table_output(stage: Stage, name: str = "table") -> Optional[str]:
    return stage.outputs.get(name)


# =============================================================================
# Input / output
# =============================================================================


@register_operation("load")
def run_load(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """Read a 10x directory or .h5ad file, optionally with a coordinate table."""
    _, params = split_params(
        stage, extras=("dataset_id", "counts_layer", "cell_column", "coordinate_columns")
    )
    if "data" not in stage.inputs:
        raise ConfigurationError(f"Stage '{stage.stage_id}' (load) needs inputs.data")
    dataset = read_dataset(
        stage.inputs["data"],
        dataset_id=params.get("dataset_id"),
        counts_layer=params.get("counts_layer"),
    )
    if "spatial" in stage.inputs:
        coords = read_spatial_coordinates(
            stage.inputs["spatial"],
            cell_column=params.get("cell_column", "cell_id"),
            coordinate_columns=tuple(params.get("coordinate_columns", ("x", "y"))),
        )
        attach_spatial_coordinates(dataset, coords)
    context.dataset = dataset
    return {
        "dataset_id": dataset.dataset_id,
        "n_cells": dataset.n_cells,
        "n_features": dataset.n_features,
        "spatial": dataset.spatial_coordinates is not None,
    }


@register_operation("save")
def run_save(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """Write the working dataset to ``outputs.snapshot``."""
    split_params(stage)
    dataset = context.require_dataset(stage.operation)
    if "snapshot" not in stage.outputs:
        raise ConfigurationError(f"Stage '{stage.stage_id}' (save) needs outputs.snapshot")
    path = dataset.save(stage.outputs["snapshot"])
    return {"snapshot": str(path)}


# =============================================================================
# Preprocessing
# =============================================================================


@register_operation("qc")
def run_qc(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, QCConfig)
    dataset = context.require_dataset(stage.operation)
    filtered, result = QualityControl(config, logger=context.logger).filter(dataset)
    context.dataset = filtered
    return result.to_dict()


@register_operation("normalize")
def run_normalize(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, NormalizationConfig)
    dataset = context.require_dataset(stage.operation)
    return Normalizer(config, logger=context.logger).normalize(dataset).to_dict()


@register_operation("select_features")
def run_select_features(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, FeatureSelectionConfig)
    dataset = context.require_dataset(stage.operation)
    return FeatureSelector(config, logger=context.logger).select(dataset).to_dict()


@register_operation("scale")
def run_scale(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, params = split_params(stage, ScalingConfig, extras=("features",))
    dataset = context.require_dataset(stage.operation)
    result = Scaler(config, logger=context.logger).scale(dataset, features=params.get("features"))
    return result.to_dict()


# =============================================================================
# Reduction, graph, clustering
# =============================================================================


@register_operation("pca")
def run_pca(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """PCA over scaled features; ``outputs.elbow`` receives the variance table."""
    config, params = split_params(stage, ReductionConfig, extras=("name",))
    dataset = context.require_dataset(stage.operation)
    reducer = DimensionalityReducer(config, logger=context.logger)
    name = params.get("name", "pca")
    embedding = reducer.run_pca(dataset, name=name)
    if _table_output(stage, "elbow"):
        write_dataframe(reducer.elbow_table(dataset, name=name), stage.outputs["elbow"])
    return {
        "embedding": name,
        "n_components": embedding.n_components,
        "variance_ratio_total": float(embedding.variance_ratio.sum()),
    }


@register_operation("umap")
def run_umap(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, params = split_params(stage, ReductionConfig, extras=("embedding", "name"))
    dataset = context.require_dataset(stage.operation)
    embedding = DimensionalityReducer(config, logger=context.logger).run_umap(
        dataset,
        embedding=params.get("embedding", "pca"),
        name=params.get("name", "umap"),
    )
    return {"embedding": embedding.name, "n_components": embedding.n_components}


@register_operation("neighbors")
def run_neighbors(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, NeighborsConfig)
    dataset = context.require_dataset(stage.operation)
    graph = NeighborGraphBuilder(config, logger=context.logger).build(dataset)
    return {
        "graph": graph.name,
        "k": graph.k,
        "n_cells": graph.n_cells,
        "n_edges": graph.n_edges,
    }


@register_operation("cluster")
def run_cluster(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, ClusteringConfig)
    dataset = context.require_dataset(stage.operation)
    return ClusteringEngine(config, logger=context.logger).cluster(dataset).to_dict()


@register_operation("annotate")
def run_annotate(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """Rename clusters to cell types from ``params.mapping``."""
    _, params = split_params(stage, extras=("cluster_key", "mapping", "annotation_key"))
    dataset = context.require_dataset(stage.operation)
    mapping = params.get("mapping")
    if not isinstance(mapping, dict) or not mapping:
        raise ConfigurationError(
            f"Stage '{stage.stage_id}' (annotate) needs a non-empty params.mapping"
        )
    names = ClusteringEngine(logger=context.logger).annotate(
        dataset,
        params.get("cluster_key", "leiden"),
        mapping,
        annotation_key=params.get("annotation_key"),
    )
    return {"annotation_key": names.name, "cell_types": sorted(set(names.astype(str)))}


# =============================================================================
# Markers, spatial features, transfer
# =============================================================================


@register_operation("markers")
def run_markers(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """One-vs-rest markers, or a single comparison when ``ident_1`` is given."""
    config, params = split_params(
        stage, MarkerConfig, extras=("cluster_key", "layer", "ident_1", "ident_2", "n_top")
    )
    dataset = context.require_dataset(stage.operation)
    finder = MarkerFinder(config, logger=context.logger)
    cluster_key = params.get("cluster_key", "leiden")
    layer = params.get("layer", "normalized")

    if params.get("ident_1") is not None:
        result = finder.find_markers(
            dataset,
            ident_1=params["ident_1"],
            ident_2=params.get("ident_2"),
            cluster_key=cluster_key,
            layer=layer,
        )
        table = result.table
        summary = result.to_dict()
    else:
        table = finder.find_all_markers(dataset, cluster_key, layer=layer)
        summary = {
            "cluster_key": cluster_key,
            "n_rows": len(table),
            "n_groups": int(table["group"].nunique()) if len(table) else 0,
        }

    if _table_output(stage):
        write_dataframe(table, stage.outputs["table"])
    if _table_output(stage, "top") and len(table):
        top = top_markers(table, n=int(params.get("n_top", 10)), positive_only=True)
        write_dataframe(top, stage.outputs["top"])
    return summary


@register_operation("spatial_features")
def run_spatial_features(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    config, _ = split_params(stage, SpatialConfig)
    dataset = context.require_dataset(stage.operation)
    result = SpatialFeatureFinder(config, logger=context.logger).find(dataset)
    if _table_output(stage):
        write_dataframe(result.table, stage.outputs["table"])
    return result.to_dict()


@register_operation("transfer")
def run_transfer(context: PipelineContext, stage: Stage) -> Dict[str, Any]:
    """Transfer labels from ``inputs.reference`` onto the working dataset."""
    config, params = split_params(stage, TransferConfig, extras=("refdata",))
    query = context.require_dataset(stage.operation)
    if "reference" not in stage.inputs:
        raise ConfigurationError(f"Stage '{stage.stage_id}' (transfer) needs inputs.reference")
    reference = read_dataset(stage.inputs["reference"])

    anchors = AnchorFinder(config, logger=context.logger).find_anchors(reference, query)
    result = LabelTransfer(config, logger=context.logger).transfer(
        anchors, reference, query, refdata=params.get("refdata")
    )
    if _table_output(stage):
        write_dataframe(result.predictions, stage.outputs["table"], index=True)
    if _table_output(stage, "anchors"):
        write_dataframe(anchors.anchors, stage.outputs["anchors"])
    return {"anchors": anchors.to_dict(), **result.to_dict()}
