"""Synthetic count generators for testing.

Every generator draws from a seeded numpy Generator, so repeated calls
return identical data. Marker features are over-dispersed against
Poisson background features spread over the same mean range, which keeps
variable feature selection and clustering outcomes predictable.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd


def feature_names(n_features: int, prefix: str = "GENE") -> List[str]:
    """Feature ids GENE00, GENE01, ..."""
    return [f"{prefix}{i:02d}" for i in range(n_features)]


def create_two_group_counts(
    n_cells: int = 100,
    n_features: int = 50,
    n_markers: int = 5,
    seed: int = 0,
) -> Dict[str, object]:
    """Two equally sized groups separated by a block of marker features.

    Cells in the first half (group "A") express the first ``n_markers``
    features at Poisson rates between 40 and 120; cells in group "B"
    express them at rate 1. The remaining features are Poisson background
    with rates spread between 2 and 60.

    Parameters
    ----------
    n_cells : int
        Number of cells (even)
    n_features : int
        Number of features
    n_markers : int
        Number of group A markers
    seed : int
        Random seed

    Returns
    -------
    Dict[str, object]
        ``counts`` (cells x features int array), ``cell_ids``,
        ``feature_ids``, ``groups`` (array of "A"/"B") and ``markers``
    """
    rng = np.random.default_rng(seed)
    half = n_cells // 2
    counts = np.zeros((n_cells, n_features), dtype=np.int64)

    marker_rates = np.linspace(40, 120, n_markers)
    for j, rate in enumerate(marker_rates):
        counts[:half, j] = rng.poisson(rate, size=half)
        counts[half:, j] = rng.poisson(1.0, size=n_cells - half)

    background_rates = np.linspace(2, 60, n_features - n_markers)
    for j, rate in enumerate(background_rates, start=n_markers):
        counts[:, j] = rng.poisson(rate, size=n_cells)

    features = feature_names(n_features)
    return {
        "counts": counts,
        "cell_ids": [f"cell_{i:03d}" for i in range(n_cells)],
        "feature_ids": features,
        "groups": np.array(["A"] * half + ["B"] * (n_cells - half)),
        "markers": features[:n_markers],
    }


def create_overdispersed_counts(
    n_cells: int = 200,
    n_features: int = 40,
    every: int = 8,
    seed: int = 1,
) -> Dict[str, object]:
    """Poisson features with every ``every``-th feature made bimodal.

    Bimodal features are zero in half the cells and twice their mean in
    the other half, so their variance far exceeds the Poisson trend at
    the same mean.

    Returns
    -------
    Dict[str, object]
        ``counts``, ``cell_ids``, ``feature_ids`` and ``variable`` (the
        bimodal feature ids)
    """
    rng = np.random.default_rng(seed)
    rates = np.linspace(5, 50, n_features)
    counts = np.zeros((n_cells, n_features), dtype=np.int64)
    on = rng.permutation(n_cells) < n_cells // 2
    variable = []
    features = feature_names(n_features)
    for j, rate in enumerate(rates):
        if j % every == 0:
            counts[on, j] = rng.poisson(2 * rate, size=int(on.sum()))
            variable.append(features[j])
        else:
            counts[:, j] = rng.poisson(rate, size=n_cells)
    return {
        "counts": counts,
        "cell_ids": [f"cell_{i:03d}" for i in range(n_cells)],
        "feature_ids": features,
        "variable": variable,
    }


def create_bimodal_noise_counts(
    n_cells: int = 100,
    n_features: int = 50,
    n_markers: int = 5,
    seed: int = 0,
) -> Dict[str, object]:
    """Marker features split two groups; every other feature is uniform noise.

    The first ``n_markers`` features are Poisson(30) in group "A" (first
    half) and Poisson(1) in group "B". The remaining features are i.i.d.
    integers drawn uniformly from [0, 10) for every cell.

    Returns
    -------
    Dict[str, object]
        ``counts``, ``cell_ids``, ``feature_ids``, ``groups`` and ``markers``
    """
    rng = np.random.default_rng(seed)
    half = n_cells // 2
    counts = rng.integers(0, 10, size=(n_cells, n_features)).astype(np.int64)
    counts[:half, :n_markers] = rng.poisson(30.0, size=(half, n_markers))
    counts[half:, :n_markers] = rng.poisson(1.0, size=(n_cells - half, n_markers))

    features = feature_names(n_features)
    return {
        "counts": counts,
        "cell_ids": [f"cell_{i:03d}" for i in range(n_cells)],
        "feature_ids": features,
        "groups": np.array(["A"] * half + ["B"] * (n_cells - half)),
        "markers": features[:n_markers],
    }


def create_spatial_counts(
    grid: int = 12,
    n_noise: int = 9,
    seed: int = 2,
) -> Dict[str, object]:
    """Cells on a square grid with one spatially patterned feature.

    ``PATTERN`` is high (rate 30) on the left half of the grid and low
    (rate 3) on the right half. ``NOISE*`` features are iid Poisson(10).

    Returns
    -------
    Dict[str, object]
        ``counts``, ``cell_ids``, ``feature_ids`` and ``coordinates``
        (cells x 2, unit spacing)
    """
    rng = np.random.default_rng(seed)
    xs, ys = np.meshgrid(np.arange(grid), np.arange(grid))
    coords = np.column_stack([xs.ravel(), ys.ravel()]).astype(float)
    n_cells = coords.shape[0]

    left = coords[:, 0] < grid / 2
    pattern = np.where(left, rng.poisson(30, n_cells), rng.poisson(3, n_cells))
    noise = rng.poisson(10, size=(n_cells, n_noise))
    counts = np.column_stack([pattern, noise]).astype(np.int64)

    return {
        "counts": counts,
        "cell_ids": [f"spot_{i:03d}" for i in range(n_cells)],
        "feature_ids": ["PATTERN"] + [f"NOISE{i}" for i in range(n_noise)],
        "coordinates": coords,
    }


def create_reference_query_counts(
    n_reference: int = 90,
    n_query: int = 60,
    n_types: int = 3,
    markers_per_type: int = 4,
    n_background: int = 18,
    seed: int = 3,
) -> Tuple[Dict[str, object], Dict[str, object]]:
    """Reference and query drawn from the same cell types.

    Each type expresses its own block of marker features at rate 50 and
    the other types' markers at rate 1. Background features are Poisson
    with rates spread between 2 and 40. The two datasets use different
    random streams and cell id prefixes.

    Returns
    -------
    Tuple[Dict[str, object], Dict[str, object]]
        Reference and query, each with ``counts``, ``cell_ids``,
        ``feature_ids`` and ``labels`` ("type_0", ...)
    """
    n_features = n_types * markers_per_type + n_background
    features = feature_names(n_features)
    background_rates = np.linspace(2, 40, n_background)

    def _draw(n_cells: int, rng: np.random.Generator, prefix: str) -> Dict[str, object]:
        types = np.repeat(np.arange(n_types), int(np.ceil(n_cells / n_types)))[:n_cells]
        counts = np.zeros((n_cells, n_features), dtype=np.int64)
        for t in range(n_types):
            block = slice(t * markers_per_type, (t + 1) * markers_per_type)
            rates = np.where(types == t, 50.0, 1.0)[:, None]
            counts[:, block] = rng.poisson(np.repeat(rates, markers_per_type, axis=1))
        start = n_types * markers_per_type
        for j, rate in enumerate(background_rates):
            counts[:, start + j] = rng.poisson(rate, size=n_cells)
        return {
            "counts": counts,
            "cell_ids": [f"{prefix}_{i:03d}" for i in range(n_cells)],
            "feature_ids": features,
            "labels": np.array([f"type_{t}" for t in types]),
        }

    reference = _draw(n_reference, np.random.default_rng(seed), "ref")
    query = _draw(n_query, np.random.default_rng(seed + 100), "qry")
    return reference, query


def create_counts_anndata(
    data: Dict[str, object],
    obs: Optional[pd.DataFrame] = None,
) -> "AnnData":
    """Plain AnnData holding the raw counts of a generator output."""
    import anndata as ad
    from scipy import sparse

    return ad.AnnData(
        X=sparse.csr_matrix(np.asarray(data["counts"], dtype=np.float32)),
        obs=obs if obs is not None else pd.DataFrame(index=list(data["cell_ids"])),
        var=pd.DataFrame(index=list(data["feature_ids"])),
    )
