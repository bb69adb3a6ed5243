"""Utility functions for cellscope.

Provides statistical helpers shared across modules.
"""

from .stats import (
    P_ADJUST_METHODS,
    adjust_pvalues,
    compute_percentiles,
    rescale_by_quantiles,
    robust_zscore,
)

__all__ = [
    "P_ADJUST_METHODS",
    "adjust_pvalues",
    "compute_percentiles",
    "rescale_by_quantiles",
    "robust_zscore",
]
