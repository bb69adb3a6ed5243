"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML. Each section
validates itself and raises ConfigurationError on invalid values.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ...errors import ConfigurationError


@dataclass
class QCConfig:
    """Configuration for cell and feature quality control.

    Attributes
    ----------
    min_features_per_cell : int
        Minimum number of detected features per cell
    max_features_per_cell : int, optional
        Maximum number of detected features per cell (doublet guard)
    min_counts_per_cell : int
        Minimum total counts per cell
    max_counts_per_cell : int, optional
        Maximum total counts per cell
    min_cells_per_feature : int
        Minimum number of cells a feature must be detected in
    patterns : Dict[str, str]
        Named regular expressions over feature ids; each yields a
        ``pct_counts_<name>`` metric (e.g. mitochondrial fraction)
    max_pct : Dict[str, float]
        Maximum allowed percentage per pattern name
    mad_threshold : float, optional
        Remove cells whose log total counts or log detected features
        deviate more than this many MADs from the median
    """

    min_features_per_cell: int = 200
    max_features_per_cell: Optional[int] = None
    min_counts_per_cell: int = 0
    max_counts_per_cell: Optional[int] = None
    min_cells_per_feature: int = 3
    patterns: Dict[str, str] = field(default_factory=lambda: {"mt": "^MT-"})
    max_pct: Dict[str, float] = field(default_factory=dict)
    mad_threshold: Optional[float] = None

    def validate(self) -> None:
        if self.min_features_per_cell < 0 or self.min_cells_per_feature < 0:
            raise ConfigurationError("QC minimum thresholds must be non-negative")
        if self.min_counts_per_cell < 0:
            raise ConfigurationError("min_counts_per_cell must be non-negative")
        if (
            self.max_features_per_cell is not None
            and self.max_features_per_cell < self.min_features_per_cell
        ):
            raise ConfigurationError("max_features_per_cell is below min_features_per_cell")
        if (
            self.max_counts_per_cell is not None
            and self.max_counts_per_cell < self.min_counts_per_cell
        ):
            raise ConfigurationError("max_counts_per_cell is below min_counts_per_cell")
        unknown = set(self.max_pct) - set(self.patterns)
        if unknown:
            raise ConfigurationError(f"max_pct refers to undefined patterns: {sorted(unknown)}")
        for name, value in self.max_pct.items():
            if not 0 <= float(value) <= 100:
                raise ConfigurationError(f"max_pct['{name}'] must be within [0, 100]")
        if self.mad_threshold is not None and self.mad_threshold <= 0:
            raise ConfigurationError("mad_threshold must be positive")


@dataclass
class NormalizationConfig:
    """Configuration for normalization.

    Attributes
    ----------
    method : str
        "log_normalize" or "vst"
    scale_factor : float
        Target total per cell for log_normalize
    theta : float
        Negative binomial overdispersion for vst
    clip : float, optional
        Clip residuals at +/- clip. Defaults to sqrt(n_cells).
    """

    method: str = "log_normalize"
    scale_factor: float = 1e4
    theta: float = 100.0
    clip: Optional[float] = None

    def validate(self) -> None:
        if self.method not in ("log_normalize", "vst"):
            raise ConfigurationError(
                f"Unknown normalization method '{self.method}'. Use log_normalize or vst"
            )
        if self.scale_factor <= 0:
            raise ConfigurationError("scale_factor must be positive")
        if self.theta <= 0:
            raise ConfigurationError("theta must be positive")
        if self.clip is not None and self.clip <= 0:
            raise ConfigurationError("clip must be positive")


@dataclass
class FeatureSelectionConfig:
    """Configuration for variable feature selection.

    Attributes
    ----------
    n_features : int
        Number of top-ranked features to select
    flavor : str
        "vst", "dispersion" or "residual_variance"
    loess_span : float
        LOWESS span for the vst mean-variance trend
    """

    n_features: int = 2000
    flavor: str = "vst"
    loess_span: float = 0.3

    def validate(self) -> None:
        if self.flavor not in ("vst", "dispersion", "residual_variance"):
            raise ConfigurationError(
                f"Unknown selection flavor '{self.flavor}'. "
                "Use vst, dispersion or residual_variance"
            )
        if self.n_features < 1:
            raise ConfigurationError("n_features must be at least 1")
        if not 0 < self.loess_span <= 1:
            raise ConfigurationError("loess_span must be within (0, 1]")


@dataclass
class ScalingConfig:
    """Configuration for scaling.

    Attributes
    ----------
    max_value : float, optional
        Clip scaled values at +/- max_value
    regress_out : List[str]
        Cell metadata columns regressed out before scaling
    n_jobs : int, optional
        Workers for covariate regression
    """

    max_value: Optional[float] = 10.0
    regress_out: List[str] = field(default_factory=list)
    n_jobs: Optional[int] = None

    def validate(self) -> None:
        if self.max_value is not None and self.max_value <= 0:
            raise ConfigurationError("max_value must be positive")


@dataclass
class PreprocessingConfig:
    """Master configuration for preprocessing.

    Attributes
    ----------
    qc : QCConfig
        Quality control configuration
    normalization : NormalizationConfig
        Normalization configuration
    feature_selection : FeatureSelectionConfig
        Variable feature configuration
    scaling : ScalingConfig
        Scaling configuration
    """

    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    feature_selection: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested preprocessing section
        if "preprocessing" in data:
            data = data["preprocessing"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        try:
            config = cls(
                qc=QCConfig(**data.get("qc", {})),
                normalization=NormalizationConfig(**data.get("normalization", {})),
                feature_selection=FeatureSelectionConfig(**data.get("feature_selection", {})),
                scaling=ScalingConfig(**data.get("scaling", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid preprocessing configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def default(cls) -> "PreprocessingConfig":
        """Create default configuration."""
        return cls()

    def validate(self) -> None:
        self.qc.validate()
        self.normalization.validate()
        self.feature_selection.validate()
        self.scaling.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "qc": asdict(self.qc),
            "normalization": asdict(self.normalization),
            "feature_selection": asdict(self.feature_selection),
            "scaling": asdict(self.scaling),
        }
