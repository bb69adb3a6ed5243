"""Spatially variable feature detection.

Ranks features by how strongly their expression is spatially structured,
using either the normalized mark variogram at a fixed distance (lower is
more structured) or Moran's I over a spatial kNN graph (higher is more
structured).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError
from ...utils.stats import adjust_pvalues
from ..dataset import Dataset, Layer
from ..preprocessing.features import rank_by_score
from .config import SpatialConfig
from .graph import build_spatial_graph, get_graph_stats
from .morans import morans_i_matrix, morans_permutation_pvalues
from .parallel import compute_in_chunks
from .variogram import markvariogram_matrix


def _variogram_chunk(chunk: np.ndarray, graph: sparse.csr_matrix) -> np.ndarray:
    return markvariogram_matrix(graph, chunk)


def _morans_chunk(chunk: np.ndarray, graph: sparse.csr_matrix) -> np.ndarray:
    return morans_i_matrix(graph, chunk)


def _morans_pvalue_chunk(
    chunk: np.ndarray,
    graph: sparse.csr_matrix,
    n_permutations: int,
    seed: int,
) -> np.ndarray:
    observed = morans_i_matrix(graph, chunk)
    return morans_permutation_pvalues(graph, chunk, observed, n_permutations, seed=seed)


@dataclass
class SpatialResult:
    """Result from spatially variable feature detection.

    Attributes
    ----------
    method : str
        Statistic used
    table : pd.DataFrame
        Ranked table with ``feature``, ``statistic``, ``rank`` and, for
        Moran's I with permutations, ``p_val`` and ``p_val_adj``
    graph_stats : Dict[str, Any]
        Summary of the spatial graph
    elapsed_seconds : float
        Wall time
    """

    method: str
    table: pd.DataFrame = field(default_factory=pd.DataFrame)
    graph_stats: Dict[str, Any] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def n_features(self) -> int:
        return len(self.table)

    def top(self, n: int = 10) -> List[str]:
        return self.table["feature"].head(n).astype(str).tolist()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "n_features": self.n_features,
            "top_features": self.top(10),
            "graph": dict(self.graph_stats),
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


class SpatialFeatureFinder:
    """Find spatially variable features.

    Parameters
    ----------
    config : SpatialConfig, optional
        Spatial configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.spatial import SpatialFeatureFinder, SpatialConfig
    >>> finder = SpatialFeatureFinder(SpatialConfig(method="morans_i", k=6))
    >>> result = finder.find(dataset)
    >>> result.top(5)
    """

    def __init__(
        self,
        config: Optional[SpatialConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or SpatialConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _features(self, dataset: Dataset, features: Optional[Sequence[str]]) -> List[str]:
        if features is not None:
            return [str(f) for f in features]
        if self.config.features:
            return [str(f) for f in self.config.features]
        return dataset.selected_features or [str(f) for f in dataset.feature_ids]

    def find(
        self,
        dataset: Dataset,
        method: Optional[str] = None,
        features: Optional[Sequence[str]] = None,
    ) -> SpatialResult:
        """Rank features by spatial structure.

        Parameters
        ----------
        dataset : Dataset
            Dataset with spatial coordinates and the configured layer
        method : str, optional
            "markvariogram" or "morans_i". Overrides config.
        features : Sequence[str], optional
            Features to test. Overrides config.

        Returns
        -------
        SpatialResult

        Raises
        ------
        ConfigurationError
            If the dataset has no coordinates, or no cell pairs fall
            within ``r_metric`` for the mark variogram
        """
        cfg = self.config
        cfg.validate()
        method = method or cfg.method
        coords = dataset.spatial_coordinates
        if coords is None:
            raise ConfigurationError(
                f"Dataset {dataset.dataset_id} has no spatial coordinates"
            )
        features = self._features(dataset, features)
        if not features:
            raise ConfigurationError("No features to test for spatial variability")

        start_time = time.time()
        layer = Layer.parse(cfg.layer)
        positions = dataset.feature_positions(features)
        matrix = dataset.get_layer(layer)
        matrix = sparse.csc_matrix(matrix)[:, positions] if sparse.issparse(matrix) else np.asarray(matrix)[:, positions]

        chunk_kwargs = dict(chunk_size=cfg.chunk_size, n_jobs=cfg.n_jobs, batch_size=cfg.batch_size)
        pvalues = None
        if method == "markvariogram":
            graph = build_spatial_graph(coords, mode="radius", radius=cfg.r_metric)
            if graph.nnz == 0:
                raise ConfigurationError(
                    f"No cell pairs within r_metric={cfg.r_metric}; increase the distance"
                )
            statistic = compute_in_chunks(_variogram_chunk, matrix, graph, **chunk_kwargs)
            order = rank_by_score(-statistic)
        elif method == "morans_i":
            graph = build_spatial_graph(coords, mode="knn", k=cfg.k)
            statistic = compute_in_chunks(_morans_chunk, matrix, graph, **chunk_kwargs)
            order = rank_by_score(statistic)
            if cfg.n_permutations > 0:
                pvalues = compute_in_chunks(
                    _morans_pvalue_chunk, matrix, graph, cfg.n_permutations, cfg.seed,
                    **chunk_kwargs,
                )
        else:
            raise ConfigurationError(f"Unknown spatial method '{method}'")

        rank = np.empty(order.size, dtype=int)
        rank[order] = np.arange(1, order.size + 1)
        table = pd.DataFrame({
            "feature": features,
            "statistic": statistic,
            "rank": rank,
        })
        if pvalues is not None:
            table["p_val"] = pvalues
            table["p_val_adj"] = adjust_pvalues(pvalues, method=cfg.p_adjust)
        table = table.iloc[order].reset_index(drop=True)

        flagged = set(table["feature"].head(cfg.n_top))
        all_ids = dataset.feature_ids
        stat_full = pd.Series(np.nan, index=all_ids)
        stat_full[features] = statistic
        rank_full = pd.Series(np.nan, index=all_ids)
        rank_full[features] = rank
        dataset.add_feature_metadata({
            method: stat_full,
            "spatial_rank": rank_full,
            "spatially_variable": np.array([f in flagged for f in all_ids], dtype=bool),
        })

        result = SpatialResult(
            method=method,
            table=table,
            graph_stats=get_graph_stats(graph),
            elapsed_seconds=time.time() - start_time,
        )
        self.logger.info(
            "Spatial features (%s): tested %d, top: %s",
            method, len(features), ", ".join(result.top(5)),
        )
        return result
