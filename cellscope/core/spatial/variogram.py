"""Normalized mark variogram at a fixed distance.

For a feature x and the set of ordered cell pairs (i, j) closer than r,

    gamma(r) = sum_{(i,j)} (x_i - x_j)^2 / (2 * n_pairs) / var(x)

Values well below 1 mean that nearby cells have more similar expression
than random pairs, i.e. spatial structure. Constant features yield NaN.
"""

import numpy as np
from scipy import sparse


def markvariogram_matrix(
    graph: sparse.csr_matrix,
    matrix: np.ndarray,
) -> np.ndarray:
    """Normalized mark variogram for every column of a cells x features matrix.

    Parameters
    ----------
    graph : sparse.csr_matrix
        Symmetric binary adjacency of pairs within the distance cutoff
    matrix : np.ndarray
        Dense cells x features values

    Returns
    -------
    np.ndarray
        One statistic per column
    """
    n_pairs = graph.sum()
    if n_pairs == 0:
        return np.full(matrix.shape[1], np.nan)

    degree = np.asarray(graph.sum(axis=1)).ravel()
    # sum over ordered pairs of (x_i - x_j)^2 = 2 * (x'Dx - x'Ax)
    xdx = np.einsum("i,ij,ij->j", degree, matrix, matrix)
    xax = np.einsum("ij,ij->j", matrix, graph @ matrix)
    gamma = (xdx - xax) / n_pairs

    variance = matrix.var(axis=0, ddof=1) if matrix.shape[0] > 1 else np.zeros(matrix.shape[1])
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = gamma / variance
    normalized[variance == 0] = np.nan
    return normalized
