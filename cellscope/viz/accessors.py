"""Read-only, plot-ready views of a Dataset.

Each accessor returns a fresh pandas object built from the Dataset; none
of them modify it or draw anything. They cover what an external renderer
needs for violin plots, embedding scatters, expression heatmaps, spatial
overlays and QC distributions.
"""

from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..core.dataset import Dataset, Layer
from ..errors import ConfigurationError

QC_COLUMNS = ("total_counts", "n_features_by_counts")


def _as_list(values: Union[str, Iterable[str], None]) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return [str(v) for v in values]


def _cell_values(
    dataset: Dataset,
    name: str,
    layer: Union[str, Layer] = Layer.NORMALIZED,
) -> pd.Series:
    """Per-cell values of a metadata column or a feature."""
    obs = dataset.obs
    if name in obs.columns:
        return obs[name].copy()
    if name in dataset.feature_ids:
        values = dataset.layer_matrix(layer, features=[name])[:, 0]
        return pd.Series(values, index=dataset.cell_ids, name=name)
    raise ConfigurationError(f"'{name}' is neither a cell metadata column nor a feature")


def _groups(dataset: Dataset, group_by: Optional[str]) -> pd.Series:
    if group_by is None:
        return pd.Series("all", index=dataset.cell_ids, name="group")
    obs = dataset.obs
    if group_by not in obs.columns:
        raise ConfigurationError(f"Unknown grouping column '{group_by}'")
    return obs[group_by].rename("group")


def violin_frame(
    dataset: Dataset,
    features: Union[str, Sequence[str]],
    group_by: Optional[str] = None,
    layer: Union[str, Layer] = Layer.NORMALIZED,
) -> pd.DataFrame:
    """Long table of expression values for violin plots.

    Parameters
    ----------
    dataset : Dataset
        Source dataset
    features : str or Sequence[str]
        Features or numeric metadata columns to show
    group_by : str, optional
        Cell metadata column to split by (for example a cluster key)
    layer : str or Layer
        Layer for feature values

    Returns
    -------
    pd.DataFrame
        Columns ``cell_id``, ``group``, ``feature``, ``value``; one row
        per cell and feature
    """
    names = _as_list(features)
    if not names:
        raise ConfigurationError("violin_frame needs at least one feature")
    groups = _groups(dataset, group_by)
    frames = []
    for name in names:
        values = pd.to_numeric(pd.Series(np.asarray(_cell_values(dataset, name, layer))), errors="coerce")
        frames.append(pd.DataFrame({
            "cell_id": dataset.cell_ids.astype(str),
            "group": groups.to_numpy(),
            "feature": name,
            "value": values.to_numpy(dtype=np.float64),
        }))
    return pd.concat(frames, ignore_index=True)


def embedding_frame(
    dataset: Dataset,
    embedding: str = "umap",
    color_by: Union[str, Sequence[str], None] = None,
    components: Tuple[int, int] = (0, 1),
    layer: Union[str, Layer] = Layer.NORMALIZED,
) -> pd.DataFrame:
    """Two embedding coordinates per cell plus colouring columns.

    Coordinates are named ``<EMBEDDING>_<n>`` with 1-based component
    numbers, for example ``UMAP_1`` and ``UMAP_2``.
    """
    stored = dataset.get_embedding(embedding)
    n = stored.n_components
    for c in components:
        if not 0 <= c < n:
            raise ConfigurationError(
                f"Component {c} out of range for embedding '{embedding}' with {n} components"
            )
    frame = pd.DataFrame(index=dataset.cell_ids.copy())
    for c in components:
        frame[f"{embedding.upper()}_{c + 1}"] = stored.coordinates[:, c]
    for name in _as_list(color_by):
        frame[name] = _cell_values(dataset, name, layer).to_numpy()
    return frame


def heatmap_matrix(
    dataset: Dataset,
    features: Sequence[str],
    group_by: str,
    layer: Union[str, Layer] = Layer.SCALED,
) -> Tuple[pd.DataFrame, pd.Series]:
    """Features x cells matrix with cells ordered by group.

    Cells keep their original order inside each group. With the scaled
    layer every feature must belong to the scaled subset, since other
    features hold zeros there.

    Returns
    -------
    Tuple[pd.DataFrame, pd.Series]
        The matrix (rows features, columns cell ids) and the group of each
        column
    """
    features = _as_list(features)
    if not features:
        raise ConfigurationError("heatmap_matrix needs at least one feature")
    layer = Layer.parse(layer)
    if layer is Layer.SCALED:
        var = dataset.var
        scaled = var["scaled"].astype(bool) if "scaled" in var else pd.Series(False, index=var.index)
        missing = [f for f in features if f in scaled.index and not scaled[f]]
        if missing:
            raise ConfigurationError(f"Features not in the scaled subset: {missing}")

    groups = _groups(dataset, group_by)
    if isinstance(groups.dtype, pd.CategoricalDtype):
        keys = groups.cat.codes.to_numpy()
    else:
        keys = pd.factorize(groups, sort=True)[0]
    order = np.argsort(keys, kind="stable")
    cells = dataset.cell_ids[order]

    values = dataset.layer_matrix(layer, features=features, cells=cells)
    matrix = pd.DataFrame(values.T, index=features, columns=cells)
    return matrix, groups.iloc[order]


def spatial_frame(
    dataset: Dataset,
    color_by: Union[str, Sequence[str], None] = None,
    layer: Union[str, Layer] = Layer.NORMALIZED,
) -> pd.DataFrame:
    """Spatial positions (``x``, ``y``) per cell plus colouring columns."""
    coords = dataset.spatial_coordinates
    if coords is None:
        raise ConfigurationError(f"Dataset {dataset.dataset_id} has no spatial coordinates")
    frame = pd.DataFrame(
        {"x": coords[:, 0], "y": coords[:, 1]},
        index=dataset.cell_ids.copy(),
    )
    for name in _as_list(color_by):
        frame[name] = _cell_values(dataset, name, layer).to_numpy()
    return frame


def qc_frame(dataset: Dataset) -> pd.DataFrame:
    """Per-cell QC metrics: totals, detected features and pattern percentages."""
    obs = dataset.obs
    missing = [c for c in QC_COLUMNS if c not in obs.columns]
    if missing:
        raise ConfigurationError(f"QC metrics missing ({missing}); run quality control first")
    columns = list(QC_COLUMNS) + [c for c in obs.columns if c.startswith("pct_counts_")]
    return obs[columns].copy()
