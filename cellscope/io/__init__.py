"""I/O utilities for cellscope.

Provides logging, dataset readers and table writers.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml, to_builtin
from .readers import (
    attach_spatial_coordinates,
    read_10x,
    read_dataset,
    read_h5ad,
    read_spatial_coordinates,
)
from .tables import ensure_output_dir, read_table, write_dataframe

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    "to_builtin",
    # Readers
    "read_10x",
    "read_h5ad",
    "read_dataset",
    "read_spatial_coordinates",
    "attach_spatial_coordinates",
    # Tables
    "ensure_output_dir",
    "read_table",
    "write_dataframe",
]
