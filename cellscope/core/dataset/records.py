"""Derived records attached to a Dataset.

Embeddings, neighbor graphs and cluster assignments are immutable views
over data stored in the Dataset. They are rebuilt from the backing store
on every accessor call, so mutating a record never changes the Dataset.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse


@dataclass(frozen=True, eq=False)
class ReducedEmbedding:
    """A cells x components projection of one layer or embedding.

    Attributes
    ----------
    name : str
        Embedding name (e.g. "pca", "umap")
    coordinates : np.ndarray
        Cells x components matrix
    source_kind : str
        "layer" or "embedding"
    source : str
        Name of the source layer or embedding
    variance : np.ndarray, optional
        Variance explained per component (PCA only)
    variance_ratio : np.ndarray, optional
        Fraction of total variance per component (PCA only)
    loadings : np.ndarray, optional
        Features x components loadings (PCA only)
    feature_ids : Tuple[str, ...]
        Features the loadings refer to
    params : Dict[str, Any]
        Parameters the embedding was computed with

    Notes
    -----
    Principal components are only defined up to sign. Two runs on
    equivalent input may return components multiplied by -1; consumers
    must not rely on orientation.
    """

    name: str
    coordinates: np.ndarray
    source_kind: str
    source: str
    variance: Optional[np.ndarray] = None
    variance_ratio: Optional[np.ndarray] = None
    loadings: Optional[np.ndarray] = None
    feature_ids: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_components(self) -> int:
        return int(self.coordinates.shape[1])

    def restrict(self, dims: Optional[Tuple[int, int]] = None) -> np.ndarray:
        """Return coordinates restricted to a half-open component range."""
        if dims is None:
            return self.coordinates
        start, stop = dims
        return self.coordinates[:, start:stop]


@dataclass(frozen=True, eq=False)
class NeighborGraph:
    """Symmetric weighted shared-neighbor graph over cell indices.

    Attributes
    ----------
    name : str
        Graph name
    adjacency : sparse.csr_matrix
        Cells x cells weights, symmetric, zero diagonal
    embedding : str
        Embedding the graph was built from
    dims : Tuple[int, int]
        Half-open component range used
    k : int
        Number of nearest neighbors per cell (self excluded)
    prune : float
        Edges with weight below this value were removed
    """

    name: str
    adjacency: sparse.csr_matrix
    embedding: str
    dims: Tuple[int, int]
    k: int
    prune: float = 0.0

    @property
    def n_cells(self) -> int:
        return int(self.adjacency.shape[0])

    @property
    def n_edges(self) -> int:
        return int(self.adjacency.nnz // 2)


@dataclass(frozen=True, eq=False)
class ClusterAssignment:
    """Mapping from cell id to integer cluster label.

    Attributes
    ----------
    key : str
        Metadata column holding the labels
    labels : pd.Series
        Integer labels indexed by cell id
    graph : str
        Graph the partition was computed on
    resolution : float
        Resolution parameter used
    seed : int
        Random seed used
    """

    key: str
    labels: pd.Series
    graph: str
    resolution: float
    seed: int

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    @property
    def cluster_sizes(self) -> Dict[int, int]:
        return {int(k): int(v) for k, v in self.labels.value_counts().sort_index().items()}

    def cells_in(self, cluster: int) -> pd.Index:
        return self.labels.index[self.labels.to_numpy() == int(cluster)]

    def partition(self) -> FrozenSet[FrozenSet[str]]:
        """Return the partition as a set of cell-id sets, independent of label values."""
        groups = self.labels.groupby(self.labels, sort=True).groups
        return frozenset(frozenset(map(str, ids)) for ids in groups.values())

    def annotate(self, mapping: Mapping[Any, str]) -> pd.Series:
        """Map cluster labels to names; unmapped clusters keep their id as a string."""
        lookup = {str(k): str(v) for k, v in mapping.items()}
        names = self.labels.astype(str).map(lambda c: lookup.get(c, c))
        names.name = None
        return names
