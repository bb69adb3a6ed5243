"""Configuration for spatially variable feature detection."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

import yaml

from ...errors import ConfigurationError
from ...utils.stats import P_ADJUST_METHODS

logger = logging.getLogger(__name__)


@dataclass
class SpatialConfig:
    """Configuration for spatial statistics.

    Attributes
    ----------
    method : str
        "markvariogram" or "morans_i"
    r_metric : float
        Distance at which the mark variogram is evaluated
    k : int
        Spatial neighbors per cell for Moran's I
    n_top : int
        Number of top-ranked features flagged ``spatially_variable``
    layer : str
        Expression layer tested
    features : List[str], optional
        Features to test. Defaults to the selected variable features,
        or all features when none are selected.
    n_permutations : int
        Moran's I permutations for p-values; 0 disables them
    p_adjust : str
        Correction applied to permutation p-values
    seed : int
        Random seed for permutations
    n_jobs : int
        Joblib workers over feature chunks
    chunk_size : int
        Features per joblib task
    batch_size : int
        Joblib batch size
    """

    method: str = "markvariogram"
    r_metric: float = 5.0
    k: int = 6
    n_top: int = 1000
    layer: str = "normalized"
    features: Optional[List[str]] = None
    n_permutations: int = 0
    p_adjust: str = "fdr_bh"
    seed: int = 42
    n_jobs: int = 1
    chunk_size: int = 500
    batch_size: int = 16

    @classmethod
    def from_yaml(cls, path: Path) -> "SpatialConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested spatial section
        if "spatial" in data:
            data = data["spatial"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpatialConfig":
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid spatial configuration: {e}") from e
        config.validate()
        return config

    def validate(self) -> None:
        if self.method not in ("markvariogram", "morans_i"):
            raise ConfigurationError(
                f"Unknown spatial method '{self.method}'. Use markvariogram or morans_i"
            )
        if self.r_metric <= 0:
            raise ConfigurationError("r_metric must be positive")
        if self.k < 1:
            raise ConfigurationError("k must be at least 1")
        if self.n_top < 1:
            raise ConfigurationError("n_top must be at least 1")
        if self.n_permutations < 0:
            raise ConfigurationError("n_permutations must be non-negative")
        if self.p_adjust not in P_ADJUST_METHODS:
            raise ConfigurationError(f"Unknown p_adjust '{self.p_adjust}'")
        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
