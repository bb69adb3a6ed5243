"""Anchor finding between a reference and a query dataset.

Both datasets are scaled with the reference feature means and standard
deviations and projected onto principal components fitted on the
reference alone. Anchors are mutual nearest neighbor pairs in the
L2-normalized projection, kept only when the reference cell is also
among the query cell's nearest reference cells in feature space, and
scored by the overlap of their neighborhoods.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError, DimensionalityError, NoAnchorsFoundError
from ...utils.stats import rescale_by_quantiles
from ..dataset import Dataset, Layer
from .config import TransferConfig


def l2_normalize(matrix: np.ndarray) -> np.ndarray:
    """Scale each row to unit Euclidean norm; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _neighbor_indices(
    data: np.ndarray,
    queries: np.ndarray,
    k: int,
    n_jobs: Optional[int] = None,
) -> np.ndarray:
    from sklearn.neighbors import NearestNeighbors

    k = min(k, data.shape[0])
    nn = NearestNeighbors(n_neighbors=k, n_jobs=n_jobs).fit(data)
    return nn.kneighbors(queries, return_distance=False)


def _membership(indices: np.ndarray, n_cols: int, offset: int = 0) -> sparse.csr_matrix:
    n_rows, k = indices.shape
    return sparse.csr_matrix(
        (np.ones(n_rows * k), (np.repeat(np.arange(n_rows), k), indices.ravel() + offset)),
        shape=(n_rows, n_cols),
    )


@dataclass(eq=False)
class AnchorSet:
    """Anchor pairs and the shared space they were found in.

    An AnchorSet is consumed by exactly one transfer.

    Attributes
    ----------
    reference_id : str
        Reference dataset id
    query_id : str
        Query dataset id
    anchors : pd.DataFrame
        ``reference_index``, ``query_index``, ``reference_cell``,
        ``query_cell`` and ``score`` in [0, 1]
    reference_embedding : np.ndarray
        L2-normalized reference projection
    query_embedding : np.ndarray
        L2-normalized query projection
    query_projection : np.ndarray
        Query cells projected onto the reference components
    features : Tuple[str, ...]
        Features spanning the shared space
    """

    reference_id: str
    query_id: str
    anchors: pd.DataFrame
    reference_embedding: np.ndarray
    query_embedding: np.ndarray
    query_projection: np.ndarray
    features: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)
    consumed: bool = False

    @property
    def n_anchors(self) -> int:
        return len(self.anchors)

    def ensure_unused(self) -> None:
        """Raise ConfigurationError if the set was already used."""
        if self.consumed:
            raise ConfigurationError(
                f"Anchor set {self.reference_id} -> {self.query_id} was already used for a transfer"
            )

    def consume(self) -> None:
        """Mark the set as used; a second use raises ConfigurationError."""
        self.ensure_unused()
        self.consumed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "query_id": self.query_id,
            "n_anchors": self.n_anchors,
            "n_features": len(self.features),
            "n_query_cells_anchored": int(self.anchors["query_index"].nunique()),
            "mean_score": float(self.anchors["score"].mean()) if self.n_anchors else 0.0,
            **self.params,
        }


class AnchorFinder:
    """Find transfer anchors between a reference and a query.

    Parameters
    ----------
    config : TransferConfig, optional
        Transfer configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.transfer import AnchorFinder, LabelTransfer
    >>> anchors = AnchorFinder().find_anchors(reference, query)
    >>> LabelTransfer().transfer(anchors, reference, query, label_key="celltype")
    """

    def __init__(
        self,
        config: Optional[TransferConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TransferConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _shared_features(
        self,
        reference: Dataset,
        query: Dataset,
        features: Optional[Sequence[str]],
    ) -> List[str]:
        if features is None:
            features = self.config.features
        if features is None:
            features = reference.selected_features
            if not features:
                raise ConfigurationError(
                    "Reference has no selected features; run feature selection or pass features"
                )
        query_ids = set(query.feature_ids)
        reference_ids = set(reference.feature_ids)
        shared = [str(f) for f in features if f in query_ids and f in reference_ids]
        missing = len(features) - len(shared)
        if missing:
            self.logger.warning(
                "%d of %d reference features are missing in the query and are ignored",
                missing, len(features),
            )
        if not shared:
            raise ConfigurationError("Reference and query share no features")
        return shared

    def project(
        self,
        reference: Dataset,
        query: Dataset,
        features: Sequence[str],
    ) -> Dict[str, Any]:
        """Scale both datasets with reference statistics and project onto reference PCs.

        Returns
        -------
        Dict[str, Any]
            ``features``, ``reference_scaled``, ``query_scaled``,
            ``reference_projection``, ``query_projection``, ``variance_ratio``

        Raises
        ------
        ConfigurationError
            If the two NORMALIZED layers come from different methods
        """
        import anndata as ad
        import scanpy as sc

        ref_method = reference.normalization.get("method")
        query_method = query.normalization.get("method")
        if ref_method != query_method:
            raise ConfigurationError(
                f"Reference {reference.dataset_id} was normalized with {ref_method} but "
                f"query {query.dataset_id} with {query_method}; normalize both the same way"
            )

        cfg = self.config
        ref_x = reference.layer_matrix(Layer.NORMALIZED, features=features)
        query_x = query.layer_matrix(Layer.NORMALIZED, features=features)

        mean = ref_x.mean(axis=0)
        sd = ref_x.std(axis=0, ddof=1) if ref_x.shape[0] > 1 else np.zeros(ref_x.shape[1])
        keep = sd > 0
        if not keep.any():
            raise ConfigurationError("All shared features are constant in the reference")
        if not keep.all():
            self.logger.info("Dropping %d features constant in the reference", int((~keep).sum()))
        features = [f for f, k in zip(features, keep) if k]
        mean, sd = mean[keep], sd[keep]

        ref_scaled = np.clip((ref_x[:, keep] - mean) / sd, -cfg.max_value, cfg.max_value)
        query_scaled = np.clip((query_x[:, keep] - mean) / sd, -cfg.max_value, cfg.max_value)

        limit = min(ref_scaled.shape[0], ref_scaled.shape[1])
        n_components = cfg.n_components
        if n_components > limit:
            raise DimensionalityError(
                f"Requested {n_components} reference components but only {limit} are available"
            )
        solver = "arpack" if n_components < limit else "full"
        tmp = ad.AnnData(X=ref_scaled)
        sc.tl.pca(tmp, n_comps=n_components, zero_center=True, svd_solver=solver, random_state=cfg.seed)
        loadings = np.asarray(tmp.varm["PCs"], dtype=np.float64)

        return {
            "features": features,
            "reference_scaled": ref_scaled,
            "query_scaled": query_scaled,
            # [cells, n_comps] = [cells, features] * [features, n_comps]
            "reference_projection": ref_scaled @ loadings,
            "query_projection": query_scaled @ loadings,
            "variance_ratio": np.asarray(tmp.uns["pca"]["variance_ratio"], dtype=np.float64),
        }

    def _mutual_pairs(self, ref_emb: np.ndarray, query_emb: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        k = self.config.k_anchor
        n_ref, n_query = ref_emb.shape[0], query_emb.shape[0]
        ref_to_query = _membership(
            _neighbor_indices(query_emb, ref_emb, k, self.config.n_jobs), n_query
        )
        query_to_ref = _membership(
            _neighbor_indices(ref_emb, query_emb, k, self.config.n_jobs), n_ref
        )
        mutual = ref_to_query.multiply(query_to_ref.T).tocoo()
        order = np.lexsort((mutual.col, mutual.row))
        return mutual.row[order], mutual.col[order]

    def _filter_pairs(
        self,
        ref_rows: np.ndarray,
        query_rows: np.ndarray,
        ref_scaled: np.ndarray,
        query_scaled: np.ndarray,
    ) -> np.ndarray:
        """Keep pairs whose reference cell is a feature-space neighbor of the query cell."""
        neighbors = _neighbor_indices(
            l2_normalize(ref_scaled), l2_normalize(query_scaled), self.config.k_filter, self.config.n_jobs
        )
        allowed = _membership(neighbors, ref_scaled.shape[0]).tocsr()
        return np.asarray(allowed[query_rows, ref_rows]).ravel() > 0

    def _score_pairs(
        self,
        ref_rows: np.ndarray,
        query_rows: np.ndarray,
        ref_emb: np.ndarray,
        query_emb: np.ndarray,
    ) -> np.ndarray:
        """Shared-neighborhood overlap over both datasets, rescaled to [0, 1]."""
        k = self.config.k_score
        n_ref = ref_emb.shape[0]
        n_total = n_ref + query_emb.shape[0]
        jobs = self.config.n_jobs

        ref_neighbors = (
            _membership(_neighbor_indices(ref_emb, ref_emb, k, jobs), n_total)
            + _membership(_neighbor_indices(query_emb, ref_emb, k, jobs), n_total, offset=n_ref)
        ).tocsr()
        query_neighbors = (
            _membership(_neighbor_indices(ref_emb, query_emb, k, jobs), n_total)
            + _membership(_neighbor_indices(query_emb, query_emb, k, jobs), n_total, offset=n_ref)
        ).tocsr()
        shared = np.asarray(
            ref_neighbors[ref_rows].multiply(query_neighbors[query_rows]).sum(axis=1)
        ).ravel()
        return rescale_by_quantiles(shared, lower=0.01, upper=0.90)

    def find_anchors(
        self,
        reference: Dataset,
        query: Dataset,
        features: Optional[Sequence[str]] = None,
    ) -> AnchorSet:
        """Find scored anchors between reference and query.

        Parameters
        ----------
        reference : Dataset
            Normalized reference with selected features
        query : Dataset
            Normalized query
        features : Sequence[str], optional
            Features for the shared space. Overrides config.

        Returns
        -------
        AnchorSet

        Raises
        ------
        NoAnchorsFoundError
            If no anchor survives filtering
        """
        cfg = self.config
        cfg.validate()
        shared = self._shared_features(reference, query, features)
        space = self.project(reference, query, shared)

        ref_emb = l2_normalize(space["reference_projection"])
        query_emb = l2_normalize(space["query_projection"])
        ref_rows, query_rows = self._mutual_pairs(ref_emb, query_emb)
        n_mutual = ref_rows.size
        if n_mutual:
            keep = self._filter_pairs(
                ref_rows, query_rows, space["reference_scaled"], space["query_scaled"]
            )
            ref_rows, query_rows = ref_rows[keep], query_rows[keep]
        self.logger.info(
            "Anchors %s -> %s: %d mutual pairs, %d after filtering",
            reference.dataset_id, query.dataset_id, n_mutual, ref_rows.size,
        )
        if ref_rows.size == 0:
            raise NoAnchorsFoundError(
                f"No anchors between {reference.dataset_id} and {query.dataset_id} "
                f"({n_mutual} mutual pairs before filtering)"
            )

        scores = self._score_pairs(ref_rows, query_rows, ref_emb, query_emb)
        anchors = pd.DataFrame({
            "reference_index": ref_rows.astype(int),
            "query_index": query_rows.astype(int),
            "reference_cell": [str(c) for c in reference.cell_ids[ref_rows]],
            "query_cell": [str(c) for c in query.cell_ids[query_rows]],
            "score": scores,
        })
        return AnchorSet(
            reference_id=reference.dataset_id,
            query_id=query.dataset_id,
            anchors=anchors,
            reference_embedding=ref_emb,
            query_embedding=query_emb,
            query_projection=space["query_projection"],
            features=tuple(space["features"]),
            params={
                "n_components": cfg.n_components,
                "k_anchor": cfg.k_anchor,
                "k_filter": cfg.k_filter,
                "k_score": cfg.k_score,
            },
        )
