"""Parallel execution of per-feature spatial statistics.

Features are split into column chunks that joblib processes
independently; each chunk writes a disjoint slice of the output.
"""

from typing import Any, Callable, List
import logging

import numpy as np
from joblib import Parallel, delayed

logger = logging.getLogger(__name__)


def split_chunks(n_features: int, chunk_size: int) -> List[slice]:
    """Split a feature axis into contiguous slices."""
    return [slice(i, min(i + chunk_size, n_features)) for i in range(0, n_features, chunk_size)]


def compute_in_chunks(
    func: Callable[..., np.ndarray],
    matrix: Any,
    *args: Any,
    chunk_size: int = 500,
    n_jobs: int = 1,
    batch_size: int = 16,
    **kwargs: Any,
) -> np.ndarray:
    """Apply a column-wise statistic over feature chunks in parallel.

    Parameters
    ----------
    func : Callable
        ``func(dense_chunk, *args, **kwargs)`` returning one value per column
    matrix : np.ndarray or sparse matrix
        Cells x features values
    chunk_size : int
        Features per task
    n_jobs : int
        Number of parallel jobs
    batch_size : int
        Batch size for joblib

    Returns
    -------
    np.ndarray
        Concatenated per-feature results in column order
    """
    n_features = matrix.shape[1]
    if n_features == 0:
        return np.zeros(0)
    chunks = split_chunks(n_features, chunk_size)
    logger.debug("Computing %d features in %d chunks (n_jobs=%d)", n_features, len(chunks), n_jobs)

    def _dense(block: Any) -> np.ndarray:
        if hasattr(block, "toarray"):
            block = block.toarray()
        return np.asarray(block, dtype=np.float64)

    if n_jobs == 1 or len(chunks) == 1:
        results = [func(_dense(matrix[:, chunk]), *args, **kwargs) for chunk in chunks]
    else:
        results = Parallel(n_jobs=n_jobs, batch_size=batch_size, verbose=0)(
            delayed(func)(_dense(matrix[:, chunk]), *args, **kwargs) for chunk in chunks
        )
    return np.concatenate(results)
