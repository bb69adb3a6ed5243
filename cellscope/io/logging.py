"""Logging utilities for cellscope.

Provides timestamped file loggers for pipeline runs and structured
stage summaries appended as JSON lines or YAML documents.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Tuple, Union

import numpy as np
import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Insert a timestamp before the suffix of a log path.

    Example: cluster.log -> cluster_20251209_080530.log
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """Return a logger writing to its own file.

    Parameters
    ----------
    name : str
        Logger name (typically the run or stage name).
    log_path : PathLike
        Base path for the log file.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        Add a timestamp to the filename so earlier runs are kept.
        If False, an existing file is replaced.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the path it writes to.
    """
    path = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
    if not timestamped:
        path.unlink(missing_ok=True)
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    return logger, path


def to_builtin(value: Any) -> Any:
    """Convert numpy and pandas scalars and containers to plain Python types."""
    if isinstance(value, Mapping):
        return {str(k): to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_builtin(v) for v in value]
    if isinstance(value, np.ndarray):
        return [to_builtin(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def _prepare_log_destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def log_json(log_path: PathLike, record: Mapping[str, Any]) -> None:
    """Append one record as a JSON line to log_path."""
    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(to_builtin(record), default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: Mapping[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append one record as a YAML document to log_path.

    Parameters
    ----------
    log_path : PathLike
        Path to log file.
    record : Mapping
        Record to serialize.
    logger : logging.Logger, optional
        If provided, emit the document through this logger instead.
    """
    text = yaml.safe_dump(to_builtin(record), sort_keys=False).rstrip("\n")
    message = f"{text}\n---"
    if logger is not None:
        logger.info("%s", message)
        return

    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")
