"""Presentation settings kept outside the analysis core.

Figure size, resolution, verbosity and colour palette change how results
look and how chatty the libraries are, never what is computed. They live
here and are applied to process-wide scanpy and matplotlib state by the
command line only.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from ..errors import ConfigurationError

DEFAULT_PALETTE = [
    "#1f77b4", "#ff7f0e", "#2ca02c", "#d62728", "#9467bd",
    "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf",
]

_DEFAULT_STYLE = {
    "axes.titlesize": 12,
    "axes.labelsize": 11,
    "legend.frameon": False,
}


@dataclass
class PresentationConfig:
    """Rendering configuration for an external plotting layer.

    Attributes
    ----------
    figsize : Tuple[float, float]
        Default figure size in inches
    dpi : int
        Screen resolution
    dpi_save : int
        Resolution of saved figures
    verbosity : int
        scanpy verbosity (0 errors, 1 warnings, 2 info, 3 hints, 4 debug)
    palette : List[str]
        Categorical colours, cycled for clusters and cell types
    """

    figsize: Tuple[float, float] = (7.0, 7.0)
    dpi: int = 80
    dpi_save: int = 150
    verbosity: int = 1
    palette: List[str] = field(default_factory=lambda: list(DEFAULT_PALETTE))

    @classmethod
    def from_yaml(cls, path: Path) -> "PresentationConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested presentation section
        if "presentation" in data:
            data = data["presentation"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PresentationConfig":
        data = dict(data)
        if data.get("figsize") is not None:
            data["figsize"] = tuple(float(v) for v in data["figsize"])
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid presentation configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def default(cls) -> "PresentationConfig":
        """Create default configuration."""
        return cls()

    def validate(self) -> None:
        if len(self.figsize) != 2 or min(self.figsize) <= 0:
            raise ConfigurationError(f"figsize must be two positive numbers, got {self.figsize}")
        if self.dpi < 1 or self.dpi_save < 1:
            raise ConfigurationError("dpi and dpi_save must be positive")
        if not 0 <= self.verbosity <= 4:
            raise ConfigurationError("verbosity must be between 0 and 4")
        if not self.palette:
            raise ConfigurationError("palette must not be empty")

    def colors_for(self, categories: List[Any]) -> Dict[str, str]:
        """Map categories to palette colours, cycling when there are more."""
        return {
            str(category): self.palette[i % len(self.palette)]
            for i, category in enumerate(categories)
        }

    def apply(self) -> None:
        """Set scanpy and matplotlib global state from this configuration."""
        import matplotlib.pyplot as plt
        import scanpy as sc
        from matplotlib import cycler

        self.validate()
        sc.settings.verbosity = self.verbosity
        sc.settings.set_figure_params(
            dpi=self.dpi,
            dpi_save=self.dpi_save,
            figsize=self.figsize,
        )
        plt.rcParams.update(_DEFAULT_STYLE)
        plt.rcParams["axes.prop_cycle"] = cycler(color=self.palette)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result["figsize"] = list(self.figsize)
        return result
