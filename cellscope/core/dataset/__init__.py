"""Dataset container and the derived records attached to it."""

from .container import Dataset, Layer
from .records import ClusterAssignment, NeighborGraph, ReducedEmbedding

__all__ = [
    "Dataset",
    "Layer",
    "ReducedEmbedding",
    "NeighborGraph",
    "ClusterAssignment",
]
