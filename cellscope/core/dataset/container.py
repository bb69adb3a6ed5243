"""AnnData-backed Dataset with enumerated layer slots and lineage.

The Dataset is the single object every analysis stage reads and enriches.
Layers are restricted to the ``Layer`` enum. Embeddings, graphs and cluster
assignments record what they were derived from, so replacing a layer
removes everything computed from it.

Storage layout inside the backing AnnData:

- ``X``: raw counts (CSR, integer valued)
- ``layers["normalized"]``, ``layers["scaled"]``
- ``obsm["X_<name>"]``: embedding coordinates
- ``obsp["<name>_connectivities"]``: neighbor graphs
- ``obs[<key>]``: cluster labels
- ``uns["cellscope"]``: dataset id, normalization record and lineage
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError
from .records import ClusterAssignment, NeighborGraph, ReducedEmbedding


logger = logging.getLogger(__name__)

META_KEY = "cellscope"
SPATIAL_KEY = "spatial"


class Layer(str, Enum):
    """Enumerated expression layer slots."""

    COUNTS = "counts"
    NORMALIZED = "normalized"
    SCALED = "scaled"

    @classmethod
    def parse(cls, value: Union[str, "Layer"]) -> "Layer":
        """Parse a layer name, rejecting anything outside the enum."""
        if isinstance(value, Layer):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(layer.value for layer in cls)
            raise ConfigurationError(f"Unknown layer '{value}'. Valid layers: {valid}")


# Layers computed from another layer; replacing the parent drops the child.
_LAYER_CHILDREN: Dict[Layer, Tuple[Layer, ...]] = {
    Layer.COUNTS: (Layer.NORMALIZED,),
    Layer.NORMALIZED: (Layer.SCALED,),
    Layer.SCALED: (),
}


def _as_counts_matrix(counts: Any) -> sparse.csr_matrix:
    """Validate and convert counts to a float32 CSR matrix of integers."""
    if sparse.issparse(counts):
        matrix = sparse.csr_matrix(counts, dtype=np.float32)
    else:
        arr = np.asarray(counts)
        if arr.ndim != 2:
            raise ConfigurationError(f"Counts must be 2-dimensional, got shape {arr.shape}")
        matrix = sparse.csr_matrix(arr.astype(np.float32))

    data = matrix.data
    if data.size:
        if not np.all(np.isfinite(data)):
            raise ConfigurationError("Counts contain non-finite values")
        if np.any(data < 0):
            raise ConfigurationError("Counts must be non-negative")
        if not np.all(data == np.floor(data)):
            raise ConfigurationError("Counts must be integer valued")
    matrix.eliminate_zeros()
    matrix.sort_indices()
    return matrix


def _clean_meta(value: Any) -> Any:
    """Drop None entries and convert tuples so h5ad can store the record."""
    if isinstance(value, Mapping):
        return {str(k): _clean_meta(v) for k, v in value.items() if v is not None}
    if isinstance(value, tuple):
        return list(value)
    return value


def _aligned_columns(
    columns: Union[pd.DataFrame, Mapping[str, Any]],
    index: pd.Index,
    kind: str,
) -> List[Tuple[str, np.ndarray]]:
    """Align metadata columns to an axis index."""
    items = columns.items() if isinstance(columns, (pd.DataFrame, Mapping)) else []
    aligned = []
    for name, values in items:
        if isinstance(values, pd.Series):
            values = values.set_axis(values.index.astype(str)).reindex(index)
            if isinstance(values.dtype, pd.CategoricalDtype):
                aligned.append((str(name), pd.Categorical(values)))
                continue
            aligned.append((str(name), values.to_numpy()))
            continue
        if isinstance(values, pd.Categorical):
            if len(values) != len(index):
                raise ConfigurationError(
                    f"{kind.capitalize()} metadata '{name}' has {len(values)} values, expected {len(index)}"
                )
            aligned.append((str(name), values))
            continue
        arr = np.asarray(values)
        if arr.ndim == 0:
            arr = np.repeat(arr, len(index))
        if len(arr) != len(index):
            raise ConfigurationError(
                f"{kind.capitalize()} metadata '{name}' has {len(arr)} values, expected {len(index)}"
            )
        aligned.append((str(name), arr))
    return aligned


class Dataset:
    """Single-cell dataset: counts, derived layers, metadata and lineage.

    Parameters
    ----------
    adata : AnnData
        Backing AnnData. Its ``X`` must hold raw counts.
    dataset_id : str, optional
        Identifier. Defaults to the id stored in ``uns`` or "dataset".

    Notes
    -----
    Use ``from_counts``, ``from_anndata`` or ``load`` to build a Dataset.
    Stages commit their outputs through the ``set_*`` methods only after
    they have computed them completely.
    """

    def __init__(self, adata: Any, dataset_id: Optional[str] = None):
        self._adata = adata
        meta = self._adata.uns.setdefault(META_KEY, {})
        meta.setdefault("embeddings", {})
        meta.setdefault("graphs", {})
        meta.setdefault("clusters", {})
        if dataset_id is not None:
            meta["dataset_id"] = str(dataset_id)
        meta.setdefault("dataset_id", "dataset")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_counts(
        cls,
        counts: Any,
        cell_ids: Sequence[str],
        feature_ids: Sequence[str],
        dataset_id: str = "dataset",
        obs: Optional[pd.DataFrame] = None,
        var: Optional[pd.DataFrame] = None,
        spatial: Optional[np.ndarray] = None,
    ) -> "Dataset":
        """Create a Dataset from a cells x features count matrix.

        Parameters
        ----------
        counts : array-like or sparse matrix
            Non-negative integer counts, cells x features
        cell_ids : Sequence[str]
            Unique cell identifiers
        feature_ids : Sequence[str]
            Unique feature identifiers
        dataset_id : str
            Dataset identifier
        obs : pd.DataFrame, optional
            Initial per-cell metadata, indexed like ``cell_ids``
        var : pd.DataFrame, optional
            Initial per-feature metadata, indexed like ``feature_ids``
        spatial : np.ndarray, optional
            Cells x 2 coordinates

        Returns
        -------
        Dataset

        Raises
        ------
        ConfigurationError
            If counts are negative, fractional or shaped inconsistently
            with the identifiers, or identifiers are not unique
        """
        import anndata as ad

        matrix = _as_counts_matrix(counts)
        cell_index = pd.Index([str(c) for c in cell_ids])
        feature_index = pd.Index([str(f) for f in feature_ids])

        if matrix.shape != (len(cell_index), len(feature_index)):
            raise ConfigurationError(
                f"Counts shape {matrix.shape} does not match "
                f"{len(cell_index)} cell ids x {len(feature_index)} feature ids"
            )
        if not cell_index.is_unique:
            raise ConfigurationError("Cell ids must be unique")
        if not feature_index.is_unique:
            raise ConfigurationError("Feature ids must be unique")

        obs_df = pd.DataFrame(index=cell_index)
        if obs is not None:
            obs_df = obs_df.join(obs.set_axis(obs.index.astype(str), axis=0))
        var_df = pd.DataFrame(index=feature_index)
        if var is not None:
            var_df = var_df.join(var.set_axis(var.index.astype(str), axis=0))

        adata = ad.AnnData(X=matrix, obs=obs_df, var=var_df)
        dataset = cls(adata, dataset_id=dataset_id)
        if spatial is not None:
            dataset.set_spatial_coordinates(spatial)

        logger.debug(
            "Created dataset %s: %d cells x %d features",
            dataset_id, dataset.n_cells, dataset.n_features,
        )
        return dataset

    @classmethod
    def from_anndata(
        cls,
        adata: Any,
        dataset_id: str = "dataset",
        counts_layer: Optional[str] = None,
    ) -> "Dataset":
        """Create a Dataset from an AnnData holding raw counts.

        Parameters
        ----------
        adata : AnnData
            Source object; it is not modified
        dataset_id : str
            Dataset identifier
        counts_layer : str, optional
            Layer holding raw counts. Uses ``X`` if None.
        """
        counts = adata.layers[counts_layer] if counts_layer else adata.X
        spatial = adata.obsm[SPATIAL_KEY] if SPATIAL_KEY in adata.obsm else None
        return cls.from_counts(
            counts,
            cell_ids=adata.obs_names,
            feature_ids=adata.var_names,
            dataset_id=dataset_id,
            obs=adata.obs.copy(),
            var=adata.var.copy(),
            spatial=spatial,
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Dataset":
        """Load a Dataset snapshot written by ``save``."""
        import anndata as ad

        adata = ad.read_h5ad(Path(path))
        if META_KEY not in adata.uns:
            raise ConfigurationError(f"{path} is not a cellscope snapshot (missing uns['{META_KEY}'])")
        dataset = cls(adata)
        logger.info("Loaded dataset %s from %s", dataset.dataset_id, path)
        return dataset

    def save(self, path: Union[str, Path]) -> Path:
        """Write the Dataset to a single .h5ad snapshot."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._adata.write_h5ad(path)
        logger.info("Saved dataset %s to %s", self.dataset_id, path)
        return path

    def copy(self) -> "Dataset":
        """Deep copy sharing nothing with this dataset."""
        return Dataset(self._adata.copy())

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def adata(self) -> Any:
        """Backing AnnData. Treat as read-only outside the stage modules."""
        return self._adata

    @property
    def _meta(self) -> Dict[str, Any]:
        return self._adata.uns[META_KEY]

    @property
    def dataset_id(self) -> str:
        """Identifier recorded with the dataset and its lineage."""
        return str(self._meta["dataset_id"])

    @property
    def n_cells(self) -> int:
        """Number of cells."""
        return int(self._adata.n_obs)

    @property
    def n_features(self) -> int:
        """Number of features."""
        return int(self._adata.n_vars)

    @property
    def cell_ids(self) -> pd.Index:
        """Copy of the cell ids in row order."""
        return self._adata.obs_names.copy()

    @property
    def feature_ids(self) -> pd.Index:
        """Copy of the feature ids in column order."""
        return self._adata.var_names.copy()

    @property
    def obs(self) -> pd.DataFrame:
        """Copy of per-cell metadata."""
        return self._adata.obs.copy()

    @property
    def var(self) -> pd.DataFrame:
        """Copy of per-feature metadata."""
        return self._adata.var.copy()

    @property
    def normalization(self) -> Dict[str, Any]:
        """Record of how the normalized layer was produced (empty if absent)."""
        return dict(self._meta.get("normalization", {}))

    @property
    def selected_features(self) -> List[str]:
        """Feature ids flagged ``highly_variable``, in variability rank order."""
        var = self._adata.var
        if "highly_variable" not in var:
            return []
        selected = var[var["highly_variable"].astype(bool)]
        if "variability_rank" in selected:
            selected = selected.sort_values("variability_rank", kind="mergesort")
        return [str(f) for f in selected.index]

    def __repr__(self) -> str:
        layers = [layer.value for layer in Layer if self.has_layer(layer)]
        return (
            f"Dataset(id={self.dataset_id!r}, n_cells={self.n_cells}, "
            f"n_features={self.n_features}, layers={layers}, "
            f"embeddings={self.embedding_names}, graphs={self.graph_names}, "
            f"clusters={self.cluster_keys})"
        )

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def has_layer(self, layer: Union[str, Layer]) -> bool:
        """Whether ``layer`` has been computed."""
        layer = Layer.parse(layer)
        if layer is Layer.COUNTS:
            return True
        return layer.value in self._adata.layers

    def get_layer(self, layer: Union[str, Layer]) -> Any:
        """Return the matrix stored in a layer slot.

        Dense layers are returned as read-only views. Sparse layers are
        returned as stored and must not be modified by the caller.

        Raises
        ------
        ConfigurationError
            If the layer has not been computed yet
        """
        layer = Layer.parse(layer)
        if layer is Layer.COUNTS:
            return self._adata.X
        if layer.value not in self._adata.layers:
            raise ConfigurationError(
                f"Layer '{layer.value}' has not been computed for dataset {self.dataset_id}"
            )
        matrix = self._adata.layers[layer.value]
        if isinstance(matrix, np.ndarray):
            view = matrix.view()
            view.flags.writeable = False
            return view
        return matrix

    def layer_matrix(
        self,
        layer: Union[str, Layer],
        features: Optional[Sequence[str]] = None,
        cells: Optional[Sequence[str]] = None,
        dense: bool = True,
    ) -> Any:
        """Return a (cells x features) copy of a layer restricted to ids.

        Parameters
        ----------
        layer : str or Layer
            Source layer
        features : Sequence[str], optional
            Feature ids to keep, in the given order
        cells : Sequence[str], optional
            Cell ids to keep, in the given order
        dense : bool
            Return a dense float64 array when True
        """
        matrix = self.get_layer(layer)
        if cells is not None:
            matrix = matrix[self.cell_positions(cells), :]
        if features is not None:
            matrix = matrix[:, self.feature_positions(features)]
        if dense:
            if sparse.issparse(matrix):
                return matrix.toarray().astype(np.float64)
            return np.array(matrix, dtype=np.float64)
        if sparse.issparse(matrix):
            return matrix.copy()
        return np.array(matrix)

    def set_layer(
        self,
        layer: Union[str, Layer],
        matrix: Any,
        record: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Commit a derived layer, invalidating what was computed from it.

        Parameters
        ----------
        layer : str or Layer
            NORMALIZED or SCALED
        matrix : np.ndarray or sparse matrix
            Cells x features; must match the counts' shape
        record : dict, optional
            Provenance stored under ``uns`` (only for NORMALIZED)
        """
        layer = Layer.parse(layer)
        if layer is Layer.COUNTS:
            raise ConfigurationError("The counts layer is fixed at creation and cannot be replaced")
        if tuple(matrix.shape) != (self.n_cells, self.n_features):
            raise ConfigurationError(
                f"Layer '{layer.value}' shape {tuple(matrix.shape)} does not match "
                f"dataset shape {(self.n_cells, self.n_features)}"
            )
        if self.has_layer(layer):
            self._invalidate_layer(layer)
        self._adata.layers[layer.value] = matrix
        if layer is Layer.NORMALIZED:
            self._meta["normalization"] = _clean_meta(record or {})

    def _invalidate_layer(self, layer: Layer) -> None:
        for child in _LAYER_CHILDREN[layer]:
            if self.has_layer(child):
                self._invalidate_layer(child)
                del self._adata.layers[child.value]
                logger.info("Dropped layer '%s' derived from '%s'", child.value, layer.value)
        if layer is Layer.NORMALIZED:
            self._meta.pop("normalization", None)
        for name, meta in list(self._meta["embeddings"].items()):
            if meta.get("source_kind") == "layer" and meta.get("source") == layer.value:
                self.remove_embedding(name)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def add_cell_metadata(self, columns: Union[pd.DataFrame, Mapping[str, Any]]) -> None:
        """Add or replace per-cell metadata columns aligned on cell id.

        Series and DataFrame values are aligned on their index; arrays must
        already be in cell order.
        """
        for name, values in _aligned_columns(columns, self._adata.obs_names, "cell"):
            self._adata.obs[name] = values

    def add_feature_metadata(self, columns: Union[pd.DataFrame, Mapping[str, Any]]) -> None:
        """Add or replace per-feature metadata columns aligned on feature id."""
        for name, values in _aligned_columns(columns, self._adata.var_names, "feature"):
            self._adata.var[name] = values

    def cell_positions(self, cells: Iterable[str]) -> np.ndarray:
        """Integer positions of cell ids; unknown ids raise ConfigurationError."""
        return self._positions(self._adata.obs_names, cells, "cell")

    def feature_positions(self, features: Iterable[str]) -> np.ndarray:
        """Integer positions of feature ids; unknown ids raise ConfigurationError."""
        return self._positions(self._adata.var_names, features, "feature")

    @staticmethod
    def _positions(index: pd.Index, ids: Iterable[str], kind: str) -> np.ndarray:
        ids = [str(i) for i in ids]
        positions = index.get_indexer(ids)
        if np.any(positions < 0):
            missing = [i for i, p in zip(ids, positions) if p < 0]
            raise ConfigurationError(f"Unknown {kind} ids: {missing[:5]}{'...' if len(missing) > 5 else ''}")
        return positions

    # ------------------------------------------------------------------
    # Spatial coordinates
    # ------------------------------------------------------------------

    @property
    def spatial_coordinates(self) -> Optional[np.ndarray]:
        """Cells x 2 coordinates, or None when the dataset has none."""
        if SPATIAL_KEY not in self._adata.obsm:
            return None
        return np.asarray(self._adata.obsm[SPATIAL_KEY], dtype=np.float64).copy()

    def set_spatial_coordinates(self, coordinates: Any) -> None:
        """Store (n_cells, 2) positions; DataFrames are aligned on cell id."""
        if isinstance(coordinates, pd.DataFrame):
            coordinates = coordinates.reindex(self._adata.obs_names).to_numpy()
        coords = np.asarray(coordinates, dtype=np.float64)
        if coords.shape != (self.n_cells, 2):
            raise ConfigurationError(
                f"Spatial coordinates must have shape ({self.n_cells}, 2), got {coords.shape}"
            )
        if not np.all(np.isfinite(coords)):
            raise ConfigurationError("Spatial coordinates contain non-finite values")
        self._adata.obsm[SPATIAL_KEY] = coords

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    @property
    def embedding_names(self) -> List[str]:
        """Names of stored embeddings, sorted."""
        return sorted(self._meta["embeddings"])

    def has_embedding(self, name: str) -> bool:
        """Whether embedding ``name`` is stored."""
        return name in self._meta["embeddings"]

    def get_embedding(self, name: str) -> ReducedEmbedding:
        """Return a stored embedding.

        Raises
        ------
        ConfigurationError
            If the embedding does not exist
        """
        if name not in self._meta["embeddings"]:
            raise ConfigurationError(
                f"Embedding '{name}' not found. Available: {self.embedding_names}"
            )
        meta = self._meta["embeddings"][name]
        varm_key = f"{name}_loadings"
        loadings = self._adata.varm[varm_key] if varm_key in self._adata.varm else None
        feature_ids: Tuple[str, ...] = ()
        if loadings is not None:
            mask = np.asarray(meta.get("loading_mask", np.ones(self.n_features, dtype=bool)), dtype=bool)
            loadings = np.asarray(loadings)[mask].copy()
            feature_ids = tuple(str(f) for f in self._adata.var_names[mask])
        variance = meta.get("variance")
        variance_ratio = meta.get("variance_ratio")
        return ReducedEmbedding(
            name=name,
            coordinates=np.asarray(self._adata.obsm[f"X_{name}"], dtype=np.float64).copy(),
            source_kind=str(meta["source_kind"]),
            source=str(meta["source"]),
            variance=None if variance is None else np.asarray(variance, dtype=np.float64),
            variance_ratio=None if variance_ratio is None else np.asarray(variance_ratio, dtype=np.float64),
            loadings=loadings,
            feature_ids=feature_ids,
            params=dict(meta.get("params", {})),
        )

    def set_embedding(self, embedding: ReducedEmbedding) -> None:
        """Commit an embedding, replacing (and invalidating) one of the same name."""
        coords = np.asarray(embedding.coordinates, dtype=np.float64)
        if coords.ndim != 2 or coords.shape[0] != self.n_cells:
            raise ConfigurationError(
                f"Embedding '{embedding.name}' must have {self.n_cells} rows, got {coords.shape}"
            )
        if embedding.source_kind not in ("layer", "embedding"):
            raise ConfigurationError(f"Unknown embedding source kind '{embedding.source_kind}'")
        if self.has_embedding(embedding.name):
            self.remove_embedding(embedding.name)

        meta: Dict[str, Any] = {
            "source_kind": embedding.source_kind,
            "source": embedding.source,
            "params": _clean_meta(dict(embedding.params)),
            "variance": embedding.variance,
            "variance_ratio": embedding.variance_ratio,
        }
        if embedding.loadings is not None:
            positions = self.feature_positions(embedding.feature_ids)
            full = np.zeros((self.n_features, coords.shape[1]), dtype=np.float64)
            full[positions] = np.asarray(embedding.loadings, dtype=np.float64)
            mask = np.zeros(self.n_features, dtype=bool)
            mask[positions] = True
            # Loadings are stored full width; the mask restores the feature subset
            self._adata.varm[f"{embedding.name}_loadings"] = full
            meta["loading_mask"] = mask
        self._adata.obsm[f"X_{embedding.name}"] = coords
        self._meta["embeddings"][embedding.name] = _clean_meta(meta)

    def remove_embedding(self, name: str) -> None:
        """Remove an embedding and everything derived from it."""
        if name not in self._meta["embeddings"]:
            return
        for other, meta in list(self._meta["embeddings"].items()):
            if meta.get("source_kind") == "embedding" and meta.get("source") == name:
                self.remove_embedding(other)
        for graph_name, meta in list(self._meta["graphs"].items()):
            if meta.get("embedding") == name:
                self.remove_graph(graph_name)
        del self._meta["embeddings"][name]
        self._adata.obsm.pop(f"X_{name}", None)
        self._adata.varm.pop(f"{name}_loadings", None)
        logger.info("Removed embedding '%s'", name)

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    @property
    def graph_names(self) -> List[str]:
        """Names of stored neighbor graphs, sorted."""
        return sorted(self._meta["graphs"])

    def has_graph(self, name: str) -> bool:
        """Whether graph ``name`` is stored."""
        return name in self._meta["graphs"]

    def get_graph(self, name: str) -> NeighborGraph:
        """Stored neighbor graph ``name``; unknown names raise ConfigurationError."""
        if name not in self._meta["graphs"]:
            raise ConfigurationError(f"Graph '{name}' not found. Available: {self.graph_names}")
        meta = self._meta["graphs"][name]
        dims = tuple(int(d) for d in meta["dims"])
        return NeighborGraph(
            name=name,
            adjacency=sparse.csr_matrix(self._adata.obsp[f"{name}_connectivities"], copy=True),
            embedding=str(meta["embedding"]),
            dims=(dims[0], dims[1]),
            k=int(meta["k"]),
            prune=float(meta.get("prune", 0.0)),
        )

    def set_graph(self, graph: NeighborGraph) -> None:
        """Commit a graph, replacing (and invalidating) one of the same name."""
        if graph.embedding not in self._meta["embeddings"]:
            raise ConfigurationError(
                f"Graph '{graph.name}' refers to unknown embedding '{graph.embedding}'"
            )
        if graph.adjacency.shape != (self.n_cells, self.n_cells):
            raise ConfigurationError(
                f"Graph '{graph.name}' adjacency shape {graph.adjacency.shape} does not match "
                f"{self.n_cells} cells"
            )
        if self.has_graph(graph.name):
            self.remove_graph(graph.name)
        self._adata.obsp[f"{graph.name}_connectivities"] = sparse.csr_matrix(graph.adjacency)
        self._meta["graphs"][graph.name] = _clean_meta({
            "embedding": graph.embedding,
            "dims": list(graph.dims),
            "k": int(graph.k),
            "prune": float(graph.prune),
        })

    def remove_graph(self, name: str) -> None:
        """Remove a graph and the cluster assignments computed on it."""
        if name not in self._meta["graphs"]:
            return
        for key, meta in list(self._meta["clusters"].items()):
            if meta.get("graph") == name:
                self.remove_clusters(key)
        del self._meta["graphs"][name]
        self._adata.obsp.pop(f"{name}_connectivities", None)
        logger.info("Removed graph '%s'", name)

    # ------------------------------------------------------------------
    # Cluster assignments
    # ------------------------------------------------------------------

    @property
    def cluster_keys(self) -> List[str]:
        """Keys of stored cluster assignments, sorted."""
        return sorted(self._meta["clusters"])

    def has_clusters(self, key: str) -> bool:
        """Whether cluster assignment ``key`` is stored."""
        return key in self._meta["clusters"]

    def get_clusters(self, key: str) -> ClusterAssignment:
        """Stored cluster assignment ``key``; unknown keys raise ConfigurationError."""
        if key not in self._meta["clusters"]:
            raise ConfigurationError(f"Cluster assignment '{key}' not found. Available: {self.cluster_keys}")
        meta = self._meta["clusters"][key]
        labels = pd.Series(
            self._adata.obs[key].astype(int).to_numpy(),
            index=self._adata.obs_names.copy(),
            name=key,
        )
        return ClusterAssignment(
            key=key,
            labels=labels,
            graph=str(meta["graph"]),
            resolution=float(meta["resolution"]),
            seed=int(meta["seed"]),
        )

    def set_clusters(self, assignment: ClusterAssignment) -> None:
        """Commit a cluster assignment."""
        if assignment.graph not in self._meta["graphs"]:
            raise ConfigurationError(
                f"Clusters '{assignment.key}' refer to unknown graph '{assignment.graph}'"
            )
        labels = assignment.labels.reindex(self._adata.obs_names)
        if labels.isna().any():
            raise ConfigurationError(f"Clusters '{assignment.key}' do not cover every cell")
        values = labels.astype(int).to_numpy()
        categories = sorted(set(values.tolist()))
        self._adata.obs[assignment.key] = pd.Categorical(values, categories=categories)
        self._meta["clusters"][assignment.key] = _clean_meta({
            "graph": assignment.graph,
            "resolution": float(assignment.resolution),
            "seed": int(assignment.seed),
        })

    def remove_clusters(self, key: str) -> None:
        """Drop a cluster assignment and its metadata column, if present."""
        if key not in self._meta["clusters"]:
            return
        del self._meta["clusters"][key]
        if key in self._adata.obs:
            del self._adata.obs[key]
        logger.info("Removed cluster assignment '%s'", key)

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def subset(
        self,
        cells: Optional[Sequence[str]] = None,
        features: Optional[Sequence[str]] = None,
    ) -> "Dataset":
        """Return a new Dataset restricted to the given cells and features.

        Counts, the normalized layer and metadata are carried over. The scaled
        layer, embeddings, graphs and cluster lineage are dropped because
        they depend on the full cell and feature index.
        """
        cell_pos = (
            self.cell_positions(cells) if cells is not None else np.arange(self.n_cells)
        )
        feature_pos = (
            self.feature_positions(features) if features is not None else np.arange(self.n_features)
        )
        adata = self._adata[cell_pos, :][:, feature_pos].copy()

        dropped_clusters: Set[str] = set(self._meta["clusters"])
        for key in dropped_clusters:
            if key in adata.obs:
                del adata.obs[key]
        adata.layers.pop(Layer.SCALED.value, None)
        for key in list(adata.obsm.keys()):
            if key != SPATIAL_KEY:
                del adata.obsm[key]
        for key in list(adata.varm.keys()):
            del adata.varm[key]
        for key in list(adata.obsp.keys()):
            del adata.obsp[key]

        meta = adata.uns[META_KEY]
        meta["embeddings"] = {}
        meta["graphs"] = {}
        meta["clusters"] = {}
        return Dataset(adata)
