"""Readers for count matrices and spatial coordinates.

Supported inputs:

- 10x Genomics matrix directories (``matrix.mtx``, ``genes.tsv`` or
  ``features.tsv``, ``barcodes.tsv``, optionally gzipped)
- ``.h5ad`` files: cellscope snapshots, or plain AnnData with raw counts
- spatial coordinate tables with a cell id column and two coordinate columns
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd

from ..core.dataset import Dataset
from ..core.dataset.container import META_KEY
from ..errors import ConfigurationError
from .tables import read_table

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_10x(path: PathLike, dataset_id: Optional[str] = None) -> Dataset:
    """Read a 10x matrix directory with scanpy into a Dataset.

    Feature ids are gene symbols made unique with scanpy's suffix scheme.
    """
    import scanpy as sc

    path = Path(path)
    if not path.is_dir():
        raise ConfigurationError(f"10x input {path} is not a directory")
    adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=True)
    logger.info("Read 10x matrix %s: %d cells x %d features", path, adata.n_obs, adata.n_vars)
    return Dataset.from_anndata(adata, dataset_id=dataset_id or path.name)


def read_h5ad(
    path: PathLike,
    dataset_id: Optional[str] = None,
    counts_layer: Optional[str] = None,
) -> Dataset:
    """Read an .h5ad file.

    Snapshots written by ``Dataset.save`` are restored with their lineage;
    other files must hold raw counts in ``X`` or ``counts_layer``.
    """
    import anndata as ad

    path = Path(path)
    adata = ad.read_h5ad(path)
    if META_KEY in adata.uns and counts_layer is None:
        return Dataset(adata, dataset_id=dataset_id)
    return Dataset.from_anndata(adata, dataset_id=dataset_id or path.stem, counts_layer=counts_layer)


def read_dataset(
    path: PathLike,
    dataset_id: Optional[str] = None,
    counts_layer: Optional[str] = None,
) -> Dataset:
    """Read a Dataset from a 10x directory or an .h5ad file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Input {path} does not exist")
    if path.is_dir():
        return read_10x(path, dataset_id=dataset_id)
    if path.suffix == ".h5ad":
        return read_h5ad(path, dataset_id=dataset_id, counts_layer=counts_layer)
    raise ConfigurationError(f"Unsupported input {path}; expected a 10x directory or .h5ad file")


def read_spatial_coordinates(
    path: PathLike,
    cell_column: str = "cell_id",
    coordinate_columns: Tuple[str, str] = ("x", "y"),
) -> pd.DataFrame:
    """Read a coordinate table indexed by cell id with columns x and y."""
    table = read_table(path)
    required = [cell_column, *coordinate_columns]
    missing = [c for c in required if c not in table.columns]
    if missing:
        raise ConfigurationError(f"Spatial table {path} missing columns: {missing}")
    coords = table[required].copy()
    coords[cell_column] = coords[cell_column].astype(str)
    if coords[cell_column].duplicated().any():
        raise ConfigurationError(f"Spatial table {path} has duplicated cell ids")
    return coords.set_index(cell_column).rename(
        columns={coordinate_columns[0]: "x", coordinate_columns[1]: "y"}
    )


def attach_spatial_coordinates(
    dataset: Dataset,
    coordinates: pd.DataFrame,
) -> None:
    """Attach coordinates to a dataset; every cell must have a position."""
    aligned = coordinates.reindex(dataset.cell_ids)
    missing = aligned.index[aligned.isna().any(axis=1)]
    if len(missing):
        raise ConfigurationError(
            f"{len(missing)} cells have no spatial coordinates (first: {list(missing[:5])})"
        )
    dataset.set_spatial_coordinates(aligned[["x", "y"]].to_numpy(dtype=np.float64))
