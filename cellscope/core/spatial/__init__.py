"""Spatially variable feature detection.

Example
-------
>>> from cellscope.core.spatial import SpatialFeatureFinder, SpatialConfig
>>> config = SpatialConfig.from_yaml("config.yaml")
>>> result = SpatialFeatureFinder(config).find(dataset)
"""

from .config import SpatialConfig
from .engine import SpatialFeatureFinder, SpatialResult
from .graph import build_spatial_graph, get_graph_stats
from .morans import compute_morans_i, morans_i_matrix, morans_permutation_pvalues
from .parallel import compute_in_chunks, split_chunks
from .variogram import markvariogram_matrix

__all__ = [
    "SpatialConfig",
    "SpatialFeatureFinder",
    "SpatialResult",
    "build_spatial_graph",
    "get_graph_stats",
    "compute_morans_i",
    "morans_i_matrix",
    "morans_permutation_pvalues",
    "markvariogram_matrix",
    "compute_in_chunks",
    "split_chunks",
]
