"""Statistical utilities for cellscope.

Provides robust statistics, quantile rescaling and multiple-testing
correction shared by the QC, marker, spatial and transfer modules.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence, Union

import numpy as np

ArrayLike = Union[Iterable[float], np.ndarray]

P_ADJUST_METHODS = ("bonferroni", "holm", "fdr_bh", "none")


def _to_clean_array(values: ArrayLike) -> np.ndarray:
    """Convert input to clean numpy array, removing non-finite values.

    Parameters
    ----------
    values : ArrayLike
        Input values (list, iterable, or array).

    Returns
    -------
    np.ndarray
        Clean array with only finite values.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr
    return arr[np.isfinite(arr)]


def compute_percentiles(values: ArrayLike, percentiles: Sequence[float]) -> np.ndarray:
    """Compute percentile values ignoring NaNs.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    percentiles : Sequence[float]
        Percentiles to compute (0-100).

    Returns
    -------
    np.ndarray
        Computed percentile values. Returns NaN array if input is empty.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return np.full(len(percentiles), np.nan)
    return np.percentile(arr, percentiles)


def robust_zscore(
    values: ArrayLike,
    *,
    median: float | None = None,
    mad: float | None = None,
) -> np.ndarray:
    """Compute a robust z-score using the median absolute deviation (MAD).

    Uses the standard conversion factor of 1.4826 to make MAD comparable
    to standard deviation for normally distributed data.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    median : float, optional
        Pre-computed median. If None, computed from data.
    mad : float, optional
        Pre-computed MAD. If None, computed from data.

    Returns
    -------
    np.ndarray
        Robust z-scores. Non-finite inputs become NaN in output.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr

    mask = np.isfinite(arr)
    clean = arr[mask]
    if clean.size == 0:
        return np.full_like(arr, np.nan, dtype=float)

    if median is None:
        median = np.median(clean)
    if mad is None:
        mad = np.median(np.abs(clean - median))

    scale = mad * 1.4826 if mad else np.nan

    if not np.isfinite(scale) or scale == 0:
        z = np.zeros_like(clean)
    else:
        z = (clean - median) / scale

    result = np.full_like(arr, np.nan, dtype=float)
    result[mask] = z
    return result


def rescale_by_quantiles(
    values: ArrayLike,
    lower: float = 0.01,
    upper: float = 0.90,
) -> np.ndarray:
    """Rescale values to [0, 1] between two quantiles, clipping outside.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    lower : float
        Quantile mapped to 0.
    upper : float
        Quantile mapped to 1.

    Returns
    -------
    np.ndarray
        Rescaled values. All ones when the quantiles coincide.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr
    lo, hi = compute_percentiles(arr, [lower * 100, upper * 100])
    if not np.isfinite(hi - lo) or hi <= lo:
        return np.ones_like(arr)
    return np.clip((arr - lo) / (hi - lo), 0.0, 1.0)


def adjust_pvalues(
    p_values: np.ndarray,
    method: str = "bonferroni",
    n_tests: Optional[int] = None,
) -> np.ndarray:
    """Apply multiple testing correction to p-values.

    Parameters
    ----------
    p_values : np.ndarray
        Raw p-values
    method : str
        Correction method: "bonferroni", "holm", "fdr_bh", "none"
    n_tests : int, optional
        Number of tests to correct for. Defaults to the number of
        p-values; pass a larger value when candidates were pre-filtered.

    Returns
    -------
    np.ndarray
        Corrected p-values
    """
    p_values = np.asarray(p_values, dtype=float)
    original_shape = p_values.shape
    flat_pvals = p_values.ravel()
    n = len(flat_pvals)
    if n == 0:
        return p_values.copy()
    m = max(n_tests or n, n)

    if method == "none":
        return p_values.copy()

    elif method == "bonferroni":
        adjusted = np.clip(flat_pvals * m, 0, 1)

    elif method == "fdr_bh":
        sorted_idx = np.argsort(flat_pvals, kind="stable")
        sorted_pvals = flat_pvals[sorted_idx]

        ranks = np.arange(1, n + 1)
        adjusted_sorted = sorted_pvals * m / ranks

        adjusted_sorted = np.minimum.accumulate(adjusted_sorted[::-1])[::-1]
        adjusted_sorted = np.clip(adjusted_sorted, 0, 1)

        adjusted = np.empty(n)
        adjusted[sorted_idx] = adjusted_sorted

    elif method == "holm":
        sorted_idx = np.argsort(flat_pvals, kind="stable")
        sorted_pvals = flat_pvals[sorted_idx]

        adjusted_sorted = sorted_pvals * (m - np.arange(n))

        adjusted_sorted = np.maximum.accumulate(adjusted_sorted)
        adjusted_sorted = np.clip(adjusted_sorted, 0, 1)

        adjusted = np.empty(n)
        adjusted[sorted_idx] = adjusted_sorted

    else:
        raise ValueError(f"Unknown correction method: {method}")

    return adjusted.reshape(original_shape)
