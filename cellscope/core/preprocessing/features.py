"""Variable feature selection.

Flavors:

- ``vst``: fit a LOWESS trend of log10 variance on log10 mean over raw
  counts, standardize each feature by its expected standard deviation
  (values clipped at mean + sd * sqrt(n_cells)) and score it by the
  variance of the standardized values.
- ``dispersion``: scanpy's seurat-flavor normalized dispersion computed
  on the log-normalized layer.
- ``residual_variance``: variance of each feature in the Pearson-residual
  layer.

Features are ranked by score descending, ties broken by feature index.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError
from ..dataset import Dataset, Layer
from .config import FeatureSelectionConfig


@dataclass
class FeatureSelectionResult:
    """Result from feature selection.

    Attributes
    ----------
    flavor : str
        Scoring flavor used
    selected : List[str]
        Selected feature ids, best first
    scores : pd.Series
        Score per feature id (all features)
    """

    flavor: str
    selected: List[str] = field(default_factory=list)
    scores: Optional[pd.Series] = None

    @property
    def n_selected(self) -> int:
        return len(self.selected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flavor": self.flavor,
            "n_selected": self.n_selected,
            "top_features": self.selected[:10],
        }


def rank_by_score(scores: np.ndarray) -> np.ndarray:
    """Order feature positions by score descending, ties by position."""
    scores = np.nan_to_num(np.asarray(scores, dtype=np.float64), nan=-np.inf)
    return np.lexsort((np.arange(scores.size), -scores))


def _column_moments(counts: sparse.csr_matrix) -> tuple:
    n = counts.shape[0]
    mean = np.asarray(counts.mean(axis=0)).ravel()
    mean_sq = np.asarray(counts.multiply(counts).mean(axis=0)).ravel()
    var = (mean_sq - mean ** 2) * n / max(n - 1, 1)
    return mean, np.maximum(var, 0.0)


class FeatureSelector:
    """Select the most variable features.

    Parameters
    ----------
    config : FeatureSelectionConfig, optional
        Selection configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        config: Optional[FeatureSelectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FeatureSelectionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def vst_scores(self, counts: sparse.csr_matrix) -> pd.DataFrame:
        """Standardized variance of raw counts against a LOWESS mean-variance trend.

        Parameters
        ----------
        counts : sparse.csr_matrix
            Raw counts, cells x features

        Returns
        -------
        pd.DataFrame
            Columns ``mean``, ``variance``, ``variance_expected`` and
            ``score`` in feature order. Constant features score 0.
        """
        from statsmodels.nonparametric.smoothers_lowess import lowess

        counts = sparse.csc_matrix(counts, dtype=np.float64)
        n_cells, n_features = counts.shape
        mean, var = _column_moments(counts)

        expected = np.zeros(n_features)
        valid = var > 0
        if valid.sum() >= 2:
            log_mean = np.log10(mean[valid])
            log_var = np.log10(var[valid])
            fitted = lowess(log_var, log_mean, frac=self.config.loess_span, return_sorted=False)
            expected[valid] = 10 ** fitted
        elif valid.any():
            expected[valid] = var[valid]

        sd = np.sqrt(expected)
        clip_max = mean + sd * np.sqrt(n_cells)

        # Sum of squared deviations: non-zero entries are clipped, zeros
        # contribute mean^2 each.
        score = np.zeros(n_features)
        nnz_per_col = np.diff(counts.indptr)
        col_of_entry = np.repeat(np.arange(n_features), nnz_per_col)
        clipped = np.minimum(counts.data, clip_max[col_of_entry])
        sq_dev = np.bincount(
            col_of_entry, weights=(clipped - mean[col_of_entry]) ** 2, minlength=n_features
        )
        sq_dev += (n_cells - nnz_per_col) * mean ** 2
        score[valid] = sq_dev[valid] / ((n_cells - 1) * expected[valid])

        return pd.DataFrame({
            "mean": mean,
            "variance": var,
            "variance_expected": expected,
            "score": score,
        })

    def dispersion_scores(self, dataset: Dataset) -> pd.DataFrame:
        """Seurat-flavor normalized dispersion on the log-normalized layer."""
        import anndata as ad
        import scanpy as sc

        if dataset.normalization.get("method") != "log_normalize":
            raise ConfigurationError("The dispersion flavor requires a log_normalize layer")
        tmp = ad.AnnData(X=sparse.csr_matrix(dataset.get_layer(Layer.NORMALIZED)))
        table = sc.pp.highly_variable_genes(tmp, flavor="seurat", inplace=False)
        return pd.DataFrame({
            "mean": table["means"].to_numpy(dtype=float),
            "variance": table["dispersions"].to_numpy(dtype=float),
            "score": table["dispersions_norm"].to_numpy(dtype=float),
        })

    def residual_variance_scores(self, dataset: Dataset) -> pd.DataFrame:
        """Variance of each feature's Pearson residuals."""
        if dataset.normalization.get("method") != "vst":
            raise ConfigurationError("The residual_variance flavor requires a vst layer")
        residuals = dataset.layer_matrix(Layer.NORMALIZED)
        variance = residuals.var(axis=0, ddof=1)
        return pd.DataFrame({
            "mean": residuals.mean(axis=0),
            "variance": variance,
            "score": variance,
        })

    def select(
        self,
        dataset: Dataset,
        n_features: Optional[int] = None,
        flavor: Optional[str] = None,
    ) -> FeatureSelectionResult:
        """Score all features and mark the top K as ``highly_variable``.

        Parameters
        ----------
        dataset : Dataset
            Dataset with counts (and a normalized layer for the
            dispersion and residual_variance flavors)
        n_features : int, optional
            Number of features to select. Overrides config.
        flavor : str, optional
            Scoring flavor. Overrides config.

        Returns
        -------
        FeatureSelectionResult

        Raises
        ------
        ConfigurationError
            If K < 1 or K exceeds the number of features
        """
        k = int(n_features if n_features is not None else self.config.n_features)
        flavor = flavor or self.config.flavor
        self.config.validate()
        if k < 1 or k > dataset.n_features:
            raise ConfigurationError(
                f"Cannot select {k} features from a dataset with {dataset.n_features} features"
            )

        if flavor == "vst":
            table = self.vst_scores(dataset.get_layer(Layer.COUNTS))
        elif flavor == "dispersion":
            table = self.dispersion_scores(dataset)
        elif flavor == "residual_variance":
            table = self.residual_variance_scores(dataset)
        else:
            raise ConfigurationError(f"Unknown selection flavor '{flavor}'")

        scores = table["score"].to_numpy(dtype=np.float64)
        order = rank_by_score(scores)
        rank = np.empty(order.size, dtype=int)
        rank[order] = np.arange(1, order.size + 1)
        selected_mask = np.zeros(order.size, dtype=bool)
        selected_mask[order[:k]] = True

        feature_ids = dataset.feature_ids
        dataset.add_feature_metadata({
            "mean": table["mean"].to_numpy(dtype=float),
            "variance": table["variance"].to_numpy(dtype=float),
            "variability_score": scores,
            "variability_rank": rank,
            "highly_variable": selected_mask,
        })

        selected = [str(feature_ids[i]) for i in order[:k]]
        self.logger.info(
            "Selected %d of %d features (%s); top: %s",
            k, dataset.n_features, flavor, ", ".join(selected[:5]),
        )
        return FeatureSelectionResult(
            flavor=flavor,
            selected=selected,
            scores=pd.Series(scores, index=feature_ids, name="variability_score"),
        )
