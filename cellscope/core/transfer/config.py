"""Configuration for anchor-based label transfer."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ...errors import ConfigurationError


@dataclass
class TransferConfig:
    """Configuration for anchor finding and label transfer.

    Attributes
    ----------
    n_components : int
        Reference principal components used for the shared space
    max_value : float
        Clip scaled values at +/- max_value
    k_anchor : int
        Neighbors searched in each direction for mutual pairs
    k_filter : int
        Reference neighbors in feature space an anchor must fall within
    k_score : int
        Neighborhood size for anchor scoring
    k_weight : int
        Nearest anchors used to weight each query cell
    sd_weight : float
        Bandwidth of the Gaussian weighting kernel
    label_key : str
        Reference cell metadata column holding labels
    prediction_key : str
        Query cell metadata column receiving predicted labels
    features : List[str], optional
        Features for the shared space. Defaults to the reference's
        selected features present in the query.
    seed : int
        Random seed for the reference PCA
    n_jobs : int, optional
        Workers for nearest-neighbor search
    """

    n_components: int = 30
    max_value: float = 10.0
    k_anchor: int = 5
    k_filter: int = 200
    k_score: int = 30
    k_weight: int = 50
    sd_weight: float = 1.0
    label_key: str = "celltype"
    prediction_key: str = "predicted_id"
    features: Optional[List[str]] = None
    seed: int = 42
    n_jobs: Optional[int] = None

    @classmethod
    def from_yaml(cls, path: Path) -> "TransferConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested transfer section
        if "transfer" in data:
            data = data["transfer"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferConfig":
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid transfer configuration: {e}") from e
        config.validate()
        return config

    def validate(self) -> None:
        for name in ("n_components", "k_anchor", "k_filter", "k_score", "k_weight"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.sd_weight <= 0:
            raise ConfigurationError("sd_weight must be positive")
        if self.max_value <= 0:
            raise ConfigurationError("max_value must be positive")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
