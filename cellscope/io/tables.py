"""Tabular output for marker, spatial and transfer results."""

from __future__ import annotations

from pathlib import Path
from typing import Union

import pandas as pd

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if needed and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write a DataFrame as CSV, creating the parent directory.

    Parameters
    ----------
    df : pd.DataFrame
        Table to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write the row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def read_table(path: PathLike, **kwargs) -> pd.DataFrame:
    """Read a CSV or TSV table, picking the separator from the suffix."""
    path = Path(path)
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    return pd.read_csv(path, sep=sep, **kwargs)
