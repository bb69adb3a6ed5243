"""Shared nearest neighbor graph construction."""

from typing import Optional, Tuple
import logging

import numpy as np
from scipy import sparse

from ...errors import ConfigurationError
from ..dataset import Dataset, NeighborGraph
from .config import NeighborsConfig
from .reduction import resolve_dims


def knn_indices(coords: np.ndarray, k: int, n_jobs: Optional[int] = None) -> np.ndarray:
    """Indices of the k nearest neighbors of each row, the row itself excluded."""
    from sklearn.neighbors import NearestNeighbors

    nn = NearestNeighbors(n_neighbors=k, metric="euclidean", n_jobs=n_jobs)
    nn.fit(coords)
    # Querying without X skips each point's own entry, also for duplicates
    _, indices = nn.kneighbors(n_neighbors=k)
    return indices


def shared_neighbor_graph(
    coords: np.ndarray,
    k: int,
    prune: float = 1.0 / 15.0,
    n_jobs: Optional[int] = None,
) -> sparse.csr_matrix:
    """Jaccard-weighted shared nearest neighbor graph.

    Each cell's neighborhood is the cell itself plus its k nearest
    neighbors. Two cells are joined with weight |N_i & N_j| / |N_i | N_j|;
    edges below ``prune`` and self loops are removed.

    Parameters
    ----------
    coords : np.ndarray
        Cells x dimensions
    k : int
        Neighbors per cell, self excluded
    prune : float
        Minimum Jaccard weight kept
    n_jobs : int, optional
        Workers for nearest-neighbor search

    Returns
    -------
    sparse.csr_matrix
        Symmetric cells x cells weights
    """
    n_cells = coords.shape[0]
    indices = knn_indices(coords, k, n_jobs=n_jobs)
    neighborhoods = np.hstack([np.arange(n_cells)[:, None], indices])

    membership = sparse.csr_matrix(
        (
            np.ones(neighborhoods.size, dtype=np.float64),
            (np.repeat(np.arange(n_cells), k + 1), neighborhoods.ravel()),
        ),
        shape=(n_cells, n_cells),
    )
    shared = (membership @ membership.T).tocsr()
    shared.data = shared.data / (2.0 * (k + 1) - shared.data)
    shared.data[shared.data < prune] = 0.0
    shared.setdiag(0.0)
    shared.eliminate_zeros()
    return shared


class NeighborGraphBuilder:
    """Build shared nearest neighbor graphs from embeddings.

    Parameters
    ----------
    config : NeighborsConfig, optional
        Graph configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[NeighborsConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NeighborsConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build(
        self,
        dataset: Dataset,
        k: Optional[int] = None,
        dims: Optional[Tuple[int, int]] = None,
        embedding: Optional[str] = None,
        name: Optional[str] = None,
    ) -> NeighborGraph:
        """Build and store a shared nearest neighbor graph.

        Parameters
        ----------
        dataset : Dataset
            Dataset with the source embedding
        k : int, optional
            Neighbors per cell (self excluded). Uses config default if None.
        dims : Tuple[int, int], optional
            Half-open component range. Uses config default if None.
        embedding : str, optional
            Source embedding. Uses config default if None.
        name : str, optional
            Graph name. Uses config default if None.

        Returns
        -------
        NeighborGraph

        Raises
        ------
        ConfigurationError
            If k >= number of cells or the dimension range is invalid
        """
        self.config.validate()
        k = int(k if k is not None else self.config.k)
        embedding = embedding or self.config.embedding
        name = name or self.config.graph_name

        source = dataset.get_embedding(embedding)
        start, stop = resolve_dims(dims if dims is not None else self.config.dims, source.n_components)
        if k < 1 or k >= dataset.n_cells:
            raise ConfigurationError(
                f"k={k} must be between 1 and the number of cells minus one ({dataset.n_cells - 1})"
            )

        adjacency = shared_neighbor_graph(
            source.restrict((start, stop)),
            k=k,
            prune=self.config.prune_snn,
            n_jobs=self.config.n_jobs,
        )
        graph = NeighborGraph(
            name=name,
            adjacency=adjacency,
            embedding=embedding,
            dims=(start, stop),
            k=k,
            prune=float(self.config.prune_snn),
        )
        dataset.set_graph(graph)
        self.logger.info(
            "SNN graph '%s': k=%d over %s[%d:%d], %d edges",
            name, k, embedding, start, stop, graph.n_edges,
        )
        return graph
