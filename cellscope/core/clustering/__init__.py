"""Dimensionality reduction, neighbor graphs, clustering and markers.

Example
-------
>>> from cellscope.core.clustering import (
...     AnalysisConfig, DimensionalityReducer, NeighborGraphBuilder,
...     ClusteringEngine, MarkerFinder,
... )
>>> config = AnalysisConfig.default()
>>> DimensionalityReducer(config.reduction).run_pca(dataset)
>>> NeighborGraphBuilder(config.neighbors).build(dataset)
>>> ClusteringEngine(config).cluster(dataset)
>>> markers = MarkerFinder(config).find_all_markers(dataset, "leiden")
"""

from .config import (
    AnalysisConfig,
    ClusteringConfig,
    MarkerConfig,
    NeighborsConfig,
    ReductionConfig,
)
from .de import MARKER_COLUMNS, MarkerFinder, MarkerResult, top_markers
from .engine import ClusteringEngine, ClusteringResult, relabel_by_size
from .graph import NeighborGraphBuilder, knn_indices, shared_neighbor_graph
from .reduction import DimensionalityReducer, resolve_dims

__all__ = [
    "AnalysisConfig",
    "ReductionConfig",
    "NeighborsConfig",
    "ClusteringConfig",
    "MarkerConfig",
    "DimensionalityReducer",
    "resolve_dims",
    "NeighborGraphBuilder",
    "knn_indices",
    "shared_neighbor_graph",
    "ClusteringEngine",
    "ClusteringResult",
    "relabel_by_size",
    "MarkerFinder",
    "MarkerResult",
    "MARKER_COLUMNS",
    "top_markers",
]
