"""Presentation layer boundary.

The analysis core never renders. This package holds the rendering
configuration and the read-only accessors an external plotting layer
uses to build violin plots, embedding scatters, heatmaps, spatial
overlays and QC distributions.
"""

from .accessors import (
    embedding_frame,
    heatmap_matrix,
    qc_frame,
    spatial_frame,
    violin_frame,
)
from .config import DEFAULT_PALETTE, PresentationConfig

__all__ = [
    # Config
    "PresentationConfig",
    "DEFAULT_PALETTE",
    # Accessors
    "violin_frame",
    "embedding_frame",
    "heatmap_matrix",
    "spatial_frame",
    "qc_frame",
]
