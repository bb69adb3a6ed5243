"""Error kinds raised by cellscope analysis stages.

All errors indicate invalid input or configuration, never a transient
condition, so none of them is retried.
"""

from typing import Optional, Sequence


class CellscopeError(Exception):
    """Base class for all cellscope errors."""


class ConfigurationError(CellscopeError, ValueError):
    """Raised when a parameter is invalid for the data it is applied to."""


class InsufficientDataError(CellscopeError, ValueError):
    """Raised when filtering would leave zero cells or zero features."""


class DegenerateCellError(CellscopeError, ValueError):
    """Raised when a cell with zero total count reaches normalization."""

    def __init__(self, message: str, cell_ids: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.cell_ids = list(cell_ids or [])


class DimensionalityError(CellscopeError, ValueError):
    """Raised when requested components exceed the available rank."""


class NoAnchorsFoundError(CellscopeError, RuntimeError):
    """Raised when anchor finding yields no anchors after filtering."""


__all__ = [
    "CellscopeError",
    "ConfigurationError",
    "InsufficientDataError",
    "DegenerateCellError",
    "DimensionalityError",
    "NoAnchorsFoundError",
]
