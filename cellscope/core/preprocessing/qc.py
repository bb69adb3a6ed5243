"""Cell and feature quality control.

Computes per-cell and per-feature QC metrics with scanpy and removes
low-quality cells and rarely detected features. Detection thresholds are
iterated to a fixed point: removing cells can push features below their
minimum and vice versa.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging
import re

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import ConfigurationError, InsufficientDataError
from ...utils.stats import robust_zscore
from ..dataset import Dataset, Layer
from .config import QCConfig


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    cells_before : int
        Cells before filtering
    cells_after : int
        Cells retained
    features_before : int
        Features before filtering
    features_after : int
        Features retained
    removed_cells : List[str]
        Ids of removed cells
    removed_features : List[str]
        Ids of removed features
    reason_counts : Dict[str, int]
        Counts per removal reason. A cell failing several metric
        criteria is counted under each of them.
    iterations : int
        Passes needed for detection thresholds to converge
    """

    cells_before: int = 0
    cells_after: int = 0
    features_before: int = 0
    features_after: int = 0
    removed_cells: List[str] = field(default_factory=list)
    removed_features: List[str] = field(default_factory=list)
    reason_counts: Dict[str, int] = field(default_factory=dict)
    iterations: int = 0

    @property
    def removal_fraction(self) -> float:
        if self.cells_before == 0:
            return 0.0
        return (self.cells_before - self.cells_after) / self.cells_before

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_before": self.cells_before,
            "cells_after": self.cells_after,
            "features_before": self.features_before,
            "features_after": self.features_after,
            "removal_fraction": round(self.removal_fraction, 4),
            "iterations": self.iterations,
        }
        for reason, count in sorted(self.reason_counts.items()):
            result[f"removed_{reason}"] = int(count)
        return result


class QualityControl:
    """Quality-control filter over raw counts.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.preprocessing import QualityControl, QCConfig
    >>> qc = QualityControl(QCConfig(min_features_per_cell=200, max_pct={"mt": 5}))
    >>> filtered, result = qc.filter(dataset)
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _pattern_flags(self, feature_ids: pd.Index) -> Dict[str, np.ndarray]:
        flags = {}
        for name, pattern in self.config.patterns.items():
            try:
                regex = re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"Invalid feature pattern '{name}': {e}") from e
            flags[name] = np.array([bool(regex.search(f)) for f in feature_ids], dtype=bool)
        return flags

    def compute_metrics(self, dataset: Dataset) -> pd.DataFrame:
        """Compute and store QC metrics.

        Adds ``total_counts``, ``n_features_by_counts`` and
        ``pct_counts_<name>`` per cell, and ``n_cells_by_counts``,
        ``mean_counts`` and ``total_counts`` per feature. Re-running
        overwrites the same columns with the same values.

        Parameters
        ----------
        dataset : Dataset
            Dataset with raw counts

        Returns
        -------
        pd.DataFrame
            Per-cell metrics indexed by cell id
        """
        import anndata as ad
        import scanpy as sc

        flags = self._pattern_flags(dataset.feature_ids)
        tmp = ad.AnnData(
            X=dataset.get_layer(Layer.COUNTS),
            obs=pd.DataFrame(index=dataset.cell_ids),
            var=pd.DataFrame(flags, index=dataset.feature_ids),
        )
        obs_metrics, var_metrics = sc.pp.calculate_qc_metrics(
            tmp,
            qc_vars=list(flags),
            percent_top=None,
            log1p=False,
            inplace=False,
        )

        cell_metrics = pd.DataFrame(index=dataset.cell_ids)
        cell_metrics["total_counts"] = obs_metrics["total_counts"].to_numpy(dtype=float)
        cell_metrics["n_features_by_counts"] = obs_metrics["n_genes_by_counts"].to_numpy(dtype=int)
        for name in flags:
            cell_metrics[f"pct_counts_{name}"] = obs_metrics[f"pct_counts_{name}"].to_numpy(dtype=float)

        feature_metrics = pd.DataFrame(index=dataset.feature_ids)
        feature_metrics["n_cells_by_counts"] = var_metrics["n_cells_by_counts"].to_numpy(dtype=int)
        feature_metrics["mean_counts"] = var_metrics["mean_counts"].to_numpy(dtype=float)
        feature_metrics["total_counts"] = var_metrics["total_counts"].to_numpy(dtype=float)

        dataset.add_cell_metadata(cell_metrics)
        dataset.add_feature_metadata(feature_metrics)
        self.logger.debug(
            "Computed QC metrics for %d cells x %d features", dataset.n_cells, dataset.n_features
        )
        return cell_metrics

    def _metric_failures(self, metrics: pd.DataFrame) -> Dict[str, np.ndarray]:
        """Evaluate the metric-based cell criteria on unfiltered data."""
        cfg = self.config
        n_features = metrics["n_features_by_counts"].to_numpy()
        totals = metrics["total_counts"].to_numpy()
        failures: Dict[str, np.ndarray] = {}

        failures["high_features"] = (
            n_features > cfg.max_features_per_cell
            if cfg.max_features_per_cell is not None
            else np.zeros(len(metrics), dtype=bool)
        )
        failures["low_counts"] = totals < cfg.min_counts_per_cell
        failures["high_counts"] = (
            totals > cfg.max_counts_per_cell
            if cfg.max_counts_per_cell is not None
            else np.zeros(len(metrics), dtype=bool)
        )
        for name, limit in cfg.max_pct.items():
            failures[f"high_pct_{name}"] = metrics[f"pct_counts_{name}"].to_numpy() > float(limit)

        if cfg.mad_threshold is not None:
            z_counts = robust_zscore(np.log1p(totals))
            z_features = robust_zscore(np.log1p(n_features))
            failures["mad_outlier"] = (
                (np.abs(z_counts) > cfg.mad_threshold)
                | (np.abs(z_features) > cfg.mad_threshold)
            )
        else:
            failures["mad_outlier"] = np.zeros(len(metrics), dtype=bool)
        return failures

    def _detection_fixed_point(
        self,
        counts: sparse.csr_matrix,
        cell_keep: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, int, int, int]:
        """Iterate detection thresholds until no cell or feature is removed."""
        cfg = self.config
        detected = (counts > 0).astype(np.int32).tocsr()
        feature_keep = np.ones(counts.shape[1], dtype=bool)
        low_features = 0
        low_cells = 0
        iterations = 0

        while True:
            iterations += 1
            cell_idx = np.flatnonzero(cell_keep)
            feature_idx = np.flatnonzero(feature_keep)
            if cell_idx.size == 0 or feature_idx.size == 0:
                break
            sub = detected[cell_idx][:, feature_idx]
            per_cell = np.asarray(sub.sum(axis=1)).ravel()
            per_feature = np.asarray(sub.sum(axis=0)).ravel()
            cell_fail = per_cell < cfg.min_features_per_cell
            feature_fail = per_feature < cfg.min_cells_per_feature
            if not cell_fail.any() and not feature_fail.any():
                break
            cell_keep[cell_idx[cell_fail]] = False
            feature_keep[feature_idx[feature_fail]] = False
            low_features += int(cell_fail.sum())
            low_cells += int(feature_fail.sum())
            self.logger.debug(
                "QC pass %d: removed %d cells, %d features",
                iterations, int(cell_fail.sum()), int(feature_fail.sum()),
            )
        return cell_keep, feature_keep, iterations, low_features, low_cells

    def filter(self, dataset: Dataset) -> Tuple[Dataset, QCResult]:
        """Filter cells and features.

        Metric criteria (counts, feature maxima, pattern percentages,
        MAD outliers) are evaluated once on the unfiltered data. Detection
        minima are then iterated to a fixed point, so that every retained
        cell has at least ``min_features_per_cell`` retained features and
        every retained feature is detected in at least
        ``min_cells_per_feature`` retained cells.

        Parameters
        ----------
        dataset : Dataset
            Dataset with raw counts. Only its QC metric columns change.

        Returns
        -------
        Tuple[Dataset, QCResult]
            Filtered dataset (with recomputed metrics) and summary

        Raises
        ------
        InsufficientDataError
            If no cells or no features remain
        """
        self.config.validate()
        metrics = self.compute_metrics(dataset)
        counts = sparse.csr_matrix(dataset.get_layer(Layer.COUNTS))

        failures = self._metric_failures(metrics)
        metric_fail = np.zeros(dataset.n_cells, dtype=bool)
        for mask in failures.values():
            metric_fail |= mask

        cell_keep, feature_keep, iterations, low_features, low_cells = (
            self._detection_fixed_point(counts, ~metric_fail)
        )

        reason_counts = {reason: int(mask.sum()) for reason, mask in failures.items()}
        reason_counts["low_features"] = low_features
        reason_counts["low_cells"] = low_cells

        cell_ids = dataset.cell_ids
        feature_ids = dataset.feature_ids
        n_cells_after = int(cell_keep.sum())
        n_features_after = int(feature_keep.sum())
        if n_cells_after == 0:
            raise InsufficientDataError(
                f"QC removed all {dataset.n_cells} cells; relax the thresholds ({reason_counts})"
            )
        if n_features_after == 0:
            raise InsufficientDataError(
                f"QC removed all {dataset.n_features} features; relax min_cells_per_feature"
            )

        result = QCResult(
            cells_before=dataset.n_cells,
            cells_after=n_cells_after,
            features_before=dataset.n_features,
            features_after=n_features_after,
            removed_cells=[str(c) for c in cell_ids[~cell_keep]],
            removed_features=[str(f) for f in feature_ids[~feature_keep]],
            reason_counts=reason_counts,
            iterations=iterations,
        )

        if cell_keep.all() and feature_keep.all():
            filtered = dataset.copy()
        else:
            filtered = dataset.subset(
                cells=list(cell_ids[cell_keep]),
                features=list(feature_ids[feature_keep]),
            )
            self.compute_metrics(filtered)

        self.logger.info(
            "QC: %d -> %d cells, %d -> %d features (%d passes)",
            result.cells_before, result.cells_after,
            result.features_before, result.features_after,
            result.iterations,
        )
        return filtered, result
