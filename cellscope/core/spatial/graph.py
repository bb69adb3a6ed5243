"""Spatial neighborhood graphs over cell coordinates."""

import numpy as np
from scipy import sparse

from ...errors import ConfigurationError


def build_spatial_graph(
    coords: np.ndarray,
    mode: str = "knn",
    k: int = 6,
    radius: float = 5.0,
) -> sparse.csr_matrix:
    """Build a binary spatial neighborhood graph.

    Parameters
    ----------
    coords : np.ndarray
        Spatial coordinates (n_cells, 2)
    mode : str
        "knn" (k nearest cells) or "radius" (all cells within radius)
    k : int
        Neighbors per cell for knn mode
    radius : float
        Distance cutoff for radius mode

    Returns
    -------
    sparse.csr_matrix
        Adjacency matrix without self-loops. Radius graphs are symmetric;
        knn graphs are directed (row i lists the neighbors of cell i).
    """
    from sklearn.neighbors import NearestNeighbors, radius_neighbors_graph

    n_cells = coords.shape[0]
    if n_cells == 0:
        return sparse.csr_matrix((0, 0))

    if mode == "knn":
        if k >= n_cells:
            raise ConfigurationError(f"Spatial k={k} must be below the number of cells ({n_cells})")
        nn = NearestNeighbors(n_neighbors=k, metric="euclidean")
        nn.fit(coords)
        # Without X, kneighbors_graph leaves each cell out of its own neighbors
        graph = nn.kneighbors_graph(mode="connectivity")
        return sparse.csr_matrix(graph)

    elif mode == "radius":
        graph = radius_neighbors_graph(
            coords, radius=radius, mode="connectivity", include_self=False
        )
        return sparse.csr_matrix(graph)

    raise ConfigurationError(f"Unknown spatial graph mode '{mode}'")


def get_graph_stats(graph: sparse.csr_matrix) -> dict:
    """Summary statistics of a spatial graph."""
    degrees = np.asarray(graph.sum(axis=1)).ravel()
    return {
        "n_cells": int(graph.shape[0]),
        "n_edges": int(graph.nnz),
        "mean_degree": float(degrees.mean()) if degrees.size else 0.0,
        "isolated_cells": int((degrees == 0).sum()),
    }
