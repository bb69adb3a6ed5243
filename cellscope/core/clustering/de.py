"""Differential marker detection between groups of cells.

Provides Wilcoxon rank-sum (Mann-Whitney U) and Welch t-tests with
detection-fraction and fold-change prefilters, Bonferroni adjustment over
all dataset features and one-vs-rest search across clusters.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import time

import numpy as np
import pandas as pd
from scipy import sparse, stats

from ...errors import ConfigurationError
from ...utils.stats import adjust_pvalues
from ..dataset import Dataset, Layer
from .config import AnalysisConfig, MarkerConfig


MARKER_COLUMNS = [
    "feature",
    "group",
    "reference",
    "avg_log2FC",
    "p_val",
    "p_val_adj",
    "pct_1",
    "pct_2",
    "direction",
]

# Features tested per block to bound dense memory
_FEATURE_BLOCK = 2000


@dataclass(frozen=True, eq=False)
class MarkerResult:
    """Marker table for one group comparison.

    Attributes
    ----------
    group : str
        Label of group 1
    reference : str
        Label of group 2 ("rest" for one-vs-rest)
    test : str
        Statistical test used
    n_cells_1 : int
        Cells in group 1
    n_cells_2 : int
        Cells in group 2
    """

    group: str
    reference: str
    test: str
    n_cells_1: int
    n_cells_2: int
    _table: pd.DataFrame = field(repr=False, default_factory=lambda: pd.DataFrame(columns=MARKER_COLUMNS))

    @property
    def table(self) -> pd.DataFrame:
        """Copy of the sorted marker table."""
        return self._table.copy()

    @property
    def features(self) -> List[str]:
        return self._table["feature"].astype(str).tolist()

    def __len__(self) -> int:
        return len(self._table)

    def top(self, n: int = 10, positive_only: bool = True) -> pd.DataFrame:
        return top_markers(self._table, n=n, positive_only=positive_only)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.group,
            "reference": self.reference,
            "test": self.test,
            "n_cells_1": self.n_cells_1,
            "n_cells_2": self.n_cells_2,
            "n_markers": len(self._table),
            "n_up": int((self._table["direction"] == "up").sum()),
            "n_down": int((self._table["direction"] == "down").sum()),
        }


def top_markers(table: pd.DataFrame, n: int = 10, positive_only: bool = True) -> pd.DataFrame:
    """Take the first n markers of each group from a sorted marker table.

    Parameters
    ----------
    table : pd.DataFrame
        Marker table (one group or the output of ``find_all_markers``)
    n : int
        Markers per group
    positive_only : bool
        Keep only features higher in the group

    Returns
    -------
    pd.DataFrame
        Subset of rows in their original order
    """
    if positive_only:
        table = table[table["avg_log2FC"] > 0]
    return table.groupby("group", sort=False).head(n).reset_index(drop=True)


def _column_means(matrix: Any) -> np.ndarray:
    return np.asarray(matrix.mean(axis=0), dtype=np.float64).ravel()


def _detection_fraction(counts: sparse.csr_matrix, rows: np.ndarray) -> np.ndarray:
    sub = counts[rows]
    return np.asarray((sub > 0).sum(axis=0), dtype=np.float64).ravel() / max(len(rows), 1)


class MarkerFinder:
    """Differential marker finder.

    Parameters
    ----------
    config : AnalysisConfig or MarkerConfig, optional
        Configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellscope.core.clustering import MarkerFinder, MarkerConfig
    >>> finder = MarkerFinder(MarkerConfig(only_positive=True))
    >>> result = finder.find_markers(dataset, ident_1=0, cluster_key="leiden")
    >>> all_markers = finder.find_all_markers(dataset, cluster_key="leiden")
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if isinstance(config, AnalysisConfig):
            config = config.markers
        self.config: MarkerConfig = config or MarkerConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _resolve_groups(
        self,
        dataset: Dataset,
        ident_1: Any,
        ident_2: Any,
        cluster_key: Optional[str],
        cells_1: Optional[Sequence[str]],
        cells_2: Optional[Sequence[str]],
    ) -> Tuple[np.ndarray, np.ndarray, str, str]:
        labels = None
        if cells_1 is None or (cells_2 is None and ident_2 is not None):
            if cluster_key is None:
                raise ConfigurationError("cluster_key is required to select groups by identity")
            labels = dataset.get_clusters(cluster_key).labels.astype(str).to_numpy()

        if cells_1 is not None:
            rows_1 = dataset.cell_positions(cells_1)
            group = str(ident_1) if ident_1 is not None else "group_1"
        else:
            if ident_1 is None:
                raise ConfigurationError("Either ident_1 or cells_1 must be given")
            rows_1 = np.flatnonzero(labels == str(ident_1))
            group = str(ident_1)

        if cells_2 is not None:
            rows_2 = dataset.cell_positions(cells_2)
            reference = str(ident_2) if ident_2 is not None else "group_2"
        elif ident_2 is not None:
            rows_2 = np.flatnonzero(labels == str(ident_2))
            reference = str(ident_2)
        else:
            in_1 = np.zeros(dataset.n_cells, dtype=bool)
            in_1[rows_1] = True
            rows_2 = np.flatnonzero(~in_1)
            reference = "rest"

        if rows_1.size == 0:
            raise ConfigurationError(f"Group '{group}' contains no cells")
        if rows_2.size == 0:
            raise ConfigurationError(f"Reference group '{reference}' contains no cells")
        overlap = np.intersect1d(rows_1, rows_2)
        if overlap.size:
            raise ConfigurationError(
                f"Groups '{group}' and '{reference}' share {overlap.size} cells"
            )
        return rows_1, rows_2, group, reference

    def _fold_change_mode(self, dataset: Dataset, layer: Layer) -> str:
        mode = self.config.fold_change
        if mode != "auto":
            return mode
        if layer is Layer.NORMALIZED and dataset.normalization.get("method") == "vst":
            return "difference"
        if layer is Layer.SCALED:
            return "difference"
        return "log_expm1"

    def _fold_change(self, x1: Any, x2: Any, mode: str) -> np.ndarray:
        if mode == "difference":
            return _column_means(x1) - _column_means(x2)
        if sparse.issparse(x1):
            m1 = _column_means(x1.expm1())
            m2 = _column_means(x2.expm1())
        else:
            m1 = np.expm1(np.asarray(x1, dtype=np.float64)).mean(axis=0)
            m2 = np.expm1(np.asarray(x2, dtype=np.float64)).mean(axis=0)
        return np.log2(m1 + 1.0) - np.log2(m2 + 1.0)

    def _test(self, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            if self.config.test == "wilcoxon":
                p = stats.mannwhitneyu(
                    x1, x2,
                    axis=0,
                    method="asymptotic",
                    use_continuity=True,
                    alternative="two-sided",
                ).pvalue
            else:
                p = stats.ttest_ind(x1, x2, axis=0, equal_var=False).pvalue
        p = np.asarray(p, dtype=np.float64)
        # Constant features give undefined statistics
        return np.where(np.isfinite(p), p, 1.0)

    def find_markers(
        self,
        dataset: Dataset,
        ident_1: Any = None,
        ident_2: Any = None,
        cluster_key: Optional[str] = None,
        cells_1: Optional[Sequence[str]] = None,
        cells_2: Optional[Sequence[str]] = None,
        layer: Union[str, Layer] = Layer.NORMALIZED,
        features: Optional[Sequence[str]] = None,
    ) -> MarkerResult:
        """Find features differing between two groups of cells.

        Group 1 is given by cluster ``ident_1`` or explicit ``cells_1``;
        group 2 by ``ident_2``, ``cells_2`` or all remaining cells.

        Parameters
        ----------
        dataset : Dataset
            Dataset with the expression layer
        ident_1, ident_2 : Any, optional
            Cluster labels in ``cluster_key``
        cluster_key : str, optional
            Cluster assignment to select groups from
        cells_1, cells_2 : Sequence[str], optional
            Explicit cell ids
        layer : str or Layer
            Expression layer tested
        features : Sequence[str], optional
            Restrict testing to these features. Adjustment still counts
            every dataset feature.

        Returns
        -------
        MarkerResult
            Table sorted by p ascending, |avg_log2FC| descending, then
            feature position

        Raises
        ------
        ConfigurationError
            If a group is empty or the groups overlap
        """
        cfg = self.config
        cfg.validate()
        layer = Layer.parse(layer)
        rows_1, rows_2, group, reference = self._resolve_groups(
            dataset, ident_1, ident_2, cluster_key, cells_1, cells_2
        )
        mode = self._fold_change_mode(dataset, layer)

        positions = (
            dataset.feature_positions(features) if features is not None
            else np.arange(dataset.n_features)
        )
        matrix = dataset.get_layer(layer)
        if sparse.issparse(matrix):
            matrix = sparse.csc_matrix(matrix)
        counts = sparse.csr_matrix(dataset.get_layer(Layer.COUNTS))
        pct_1_all = _detection_fraction(counts, rows_1)
        pct_2_all = _detection_fraction(counts, rows_2)

        blocks = []
        for start in range(0, positions.size, _FEATURE_BLOCK):
            cols = positions[start:start + _FEATURE_BLOCK]
            sub = matrix[:, cols]
            x1 = sub[rows_1]
            x2 = sub[rows_2]
            lfc = self._fold_change(x1, x2, mode)
            pct_1 = pct_1_all[cols]
            pct_2 = pct_2_all[cols]

            keep = (np.maximum(pct_1, pct_2) >= cfg.min_pct) & (np.abs(lfc) >= cfg.logfc_threshold)
            if cfg.only_positive:
                keep &= lfc > 0
            if not keep.any():
                continue

            x1_dense = x1[:, keep].toarray() if sparse.issparse(x1) else np.asarray(x1)[:, keep]
            x2_dense = x2[:, keep].toarray() if sparse.issparse(x2) else np.asarray(x2)[:, keep]
            blocks.append(pd.DataFrame({
                "position": cols[keep],
                "avg_log2FC": lfc[keep],
                "p_val": self._test(x1_dense, x2_dense),
                "pct_1": np.round(pct_1[keep], 3),
                "pct_2": np.round(pct_2[keep], 3),
            }))

        if blocks:
            table = pd.concat(blocks, ignore_index=True)
        else:
            table = pd.DataFrame(columns=["position", "avg_log2FC", "p_val", "pct_1", "pct_2"])

        table["p_val_adj"] = adjust_pvalues(
            table["p_val"].to_numpy(dtype=np.float64),
            method=cfg.p_adjust,
            n_tests=dataset.n_features,
        )
        order = np.lexsort((
            table["position"].to_numpy(dtype=np.int64),
            -np.abs(table["avg_log2FC"].to_numpy(dtype=np.float64)),
            table["p_val"].to_numpy(dtype=np.float64),
        ))
        table = table.iloc[order].reset_index(drop=True)
        feature_ids = dataset.feature_ids
        table["feature"] = [str(feature_ids[p]) for p in table["position"].astype(int)]
        table["group"] = group
        table["reference"] = reference
        table["direction"] = np.select(
            [table["avg_log2FC"] > 0, table["avg_log2FC"] < 0], ["up", "down"], default="none"
        )
        table = table[MARKER_COLUMNS]

        self.logger.debug(
            "Markers %s vs %s: %d of %d features passed filters",
            group, reference, len(table), positions.size,
        )
        return MarkerResult(
            group=group,
            reference=reference,
            test=cfg.test,
            n_cells_1=int(rows_1.size),
            n_cells_2=int(rows_2.size),
            _table=table,
        )

    def find_all_markers(
        self,
        dataset: Dataset,
        cluster_key: str,
        layer: Union[str, Layer] = Layer.NORMALIZED,
        n_workers: Optional[int] = None,
    ) -> pd.DataFrame:
        """One-vs-rest markers for every cluster, computed in a thread pool.

        Parameters
        ----------
        dataset : Dataset
            Clustered dataset
        cluster_key : str
            Cluster assignment
        layer : str or Layer
            Expression layer tested
        n_workers : int, optional
            Worker threads. Uses config default if None.

        Returns
        -------
        pd.DataFrame
            Concatenated marker tables in cluster order; ``group`` holds
            the cluster id
        """
        assignment = dataset.get_clusters(cluster_key)
        clusters = sorted(assignment.cluster_sizes)
        if len(clusters) < 2:
            raise ConfigurationError(
                f"One-vs-rest markers need at least two clusters in '{cluster_key}'"
            )
        n_workers = n_workers or self.config.n_workers

        self.logger.info(
            "Finding markers for %d clusters of '%s' with %d workers",
            len(clusters), cluster_key, n_workers,
        )
        start_time = time.time()
        results: Dict[int, MarkerResult] = {}

        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(
                    self.find_markers, dataset, ident_1=c, cluster_key=cluster_key, layer=layer
                ): c
                for c in clusters
            }
            for future in as_completed(futures):
                cluster = futures[future]
                results[cluster] = future.result()
                self.logger.debug("Completed markers for cluster %s", cluster)

        tables = [results[c].table for c in clusters]
        combined = pd.concat(tables, ignore_index=True)
        self.logger.info(
            "Marker search completed: %d rows in %.1f seconds",
            len(combined), time.time() - start_time,
        )
        return combined
