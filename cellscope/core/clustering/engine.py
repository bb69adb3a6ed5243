"""Clustering engine for cell population identification.

Runs Leiden community detection on a stored neighbor graph and maps
cluster ids to cell-type names.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import logging

import numpy as np
import pandas as pd

from ..dataset import ClusterAssignment, Dataset
from .config import AnalysisConfig, ClusteringConfig


@dataclass
class ClusteringResult:
    """Result from clustering operation.

    Attributes
    ----------
    n_clusters : int
        Number of clusters found
    cluster_key : str
        Cell metadata column containing cluster assignments
    cluster_sizes : Dict[int, int]
        Map of cluster ID to cell count
    resolution : float
        Resolution used
    seed : int
        Seed used
    graph : str
        Graph clustered
    """

    n_clusters: int = 0
    cluster_key: str = "leiden"
    cluster_sizes: Dict[int, int] = field(default_factory=dict)
    resolution: float = 0.0
    seed: int = 0
    graph: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters": self.n_clusters,
            "cluster_key": self.cluster_key,
            "cluster_sizes": {str(k): v for k, v in self.cluster_sizes.items()},
            "resolution": self.resolution,
            "seed": self.seed,
            "graph": self.graph,
        }


def relabel_by_size(labels: np.ndarray) -> np.ndarray:
    """Relabel clusters 0..n-1 by decreasing size, ties by first cell position."""
    labels = np.asarray(labels)
    uniques, first, counts = np.unique(labels, return_index=True, return_counts=True)
    order = np.lexsort((first, -counts))
    mapping = {uniques[old]: new for new, old in enumerate(order)}
    return np.array([mapping[label] for label in labels], dtype=int)


class ClusteringEngine:
    """Leiden clustering over shared nearest neighbor graphs.

    Parameters
    ----------
    config : AnalysisConfig or ClusteringConfig, optional
        Configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.clustering import ClusteringEngine, ClusteringConfig
    >>> engine = ClusteringEngine(ClusteringConfig(resolution=0.5, random_seed=7))
    >>> result = engine.cluster(dataset)
    >>> engine.annotate(dataset, "leiden", {0: "T cell", 1: "B cell"})
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if isinstance(config, AnalysisConfig):
            config = config.clustering
        self.config: ClusteringConfig = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy  # noqa: F401
            import igraph  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Clustering requires scanpy and igraph. Install with: pip install scanpy igraph"
            )

    def cluster(
        self,
        dataset: Dataset,
        graph: Optional[str] = None,
        resolution: Optional[float] = None,
        seed: Optional[int] = None,
        cluster_key: Optional[str] = None,
        n_iterations: Optional[int] = None,
    ) -> ClusteringResult:
        """Partition cells with Leiden modularity optimisation.

        Parameters
        ----------
        dataset : Dataset
            Dataset with a stored graph
        graph : str, optional
            Graph name. Uses config default if None.
        resolution : float, optional
            Leiden resolution. Uses config default if None.
        seed : int, optional
            Random seed. Same graph, resolution and seed give the same
            partition.
        cluster_key : str, optional
            Output column. Uses config default if None.
        n_iterations : int, optional
            Leiden iterations; -1 until convergence. Uses config default if None.

        Returns
        -------
        ClusteringResult
            Clustering result with cluster statistics
        """
        import anndata as ad
        import scanpy as sc

        cfg = self.config
        cfg.validate()
        graph = graph or cfg.graph_name
        resolution = float(resolution if resolution is not None else cfg.resolution)
        seed = int(seed if seed is not None else cfg.random_seed)
        cluster_key = cluster_key or cfg.cluster_key
        n_iterations = int(n_iterations if n_iterations is not None else cfg.n_iterations)

        neighbor_graph = dataset.get_graph(graph)
        self.logger.info(
            "Running Leiden on graph '%s': resolution=%.3f, seed=%d, n_iterations=%d",
            graph, resolution, seed, n_iterations,
        )

        tmp = ad.AnnData(obs=pd.DataFrame(index=dataset.cell_ids))
        sc.tl.leiden(
            tmp,
            resolution=resolution,
            random_state=seed,
            key_added="leiden",
            adjacency=neighbor_graph.adjacency,
            flavor="igraph",
            n_iterations=n_iterations,
            directed=False,
        )
        labels = relabel_by_size(tmp.obs["leiden"].astype(str).to_numpy())

        assignment = ClusterAssignment(
            key=cluster_key,
            labels=pd.Series(labels, index=dataset.cell_ids, name=cluster_key),
            graph=graph,
            resolution=resolution,
            seed=seed,
        )
        dataset.set_clusters(assignment)

        result = ClusteringResult(
            n_clusters=assignment.n_clusters,
            cluster_key=cluster_key,
            cluster_sizes=assignment.cluster_sizes,
            resolution=resolution,
            seed=seed,
            graph=graph,
        )
        self.logger.info("Found %d clusters: %s", result.n_clusters, result.cluster_sizes)
        return result

    def annotate(
        self,
        dataset: Dataset,
        cluster_key: str,
        mapping: Mapping[Any, str],
        annotation_key: Optional[str] = None,
    ) -> pd.Series:
        """Write cell-type names for clusters into a separate column.

        The partition itself is not modified. Clusters absent from the
        mapping keep their id as name.

        Parameters
        ----------
        dataset : Dataset
            Clustered dataset
        cluster_key : str
            Cluster assignment to annotate
        mapping : Mapping
            Cluster id (int or str) to name
        annotation_key : str, optional
            Output column. Defaults to ``<cluster_key>_celltype``.

        Returns
        -------
        pd.Series
            Name per cell id
        """
        assignment = dataset.get_clusters(cluster_key)
        annotation_key = annotation_key or f"{cluster_key}_celltype"
        known = {str(c) for c in assignment.cluster_sizes}
        unknown = sorted(str(k) for k in mapping if str(k) not in known)
        if unknown:
            self.logger.warning(
                "Annotation mapping refers to unknown clusters %s in '%s'", unknown, cluster_key
            )

        names = assignment.annotate(mapping)
        dataset.add_cell_metadata({annotation_key: names.astype("category")})
        self.logger.info(
            "Annotated %d clusters of '%s' into '%s'",
            len(known & {str(k) for k in mapping}), cluster_key, annotation_key,
        )
        return names.rename(annotation_key)
