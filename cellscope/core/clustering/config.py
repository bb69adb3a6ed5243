"""Configuration classes for the clustering module.

Covers dimensionality reduction, the shared-neighbor graph, Leiden
clustering and marker detection.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ...errors import ConfigurationError
from ...utils.stats import P_ADJUST_METHODS


@dataclass
class ReductionConfig:
    """Configuration for PCA and UMAP.

    Attributes
    ----------
    n_pcs : int
        Number of principal components
    umap_components : int
        UMAP output dimensions
    umap_dims : Tuple[int, int], optional
        Half-open PCA component range for UMAP. Defaults to all.
    umap_neighbors : int
        Neighbors for the UMAP fuzzy graph
    umap_min_dist : float
        UMAP minimum distance
    random_seed : int
        Seed for PCA initialisation and UMAP
    """

    n_pcs: int = 50
    umap_components: int = 2
    umap_dims: Optional[Tuple[int, int]] = None
    umap_neighbors: int = 30
    umap_min_dist: float = 0.3
    random_seed: int = 42

    def validate(self) -> None:
        if self.n_pcs < 1:
            raise ConfigurationError("n_pcs must be at least 1")
        if self.umap_components < 1:
            raise ConfigurationError("umap_components must be at least 1")
        if self.umap_neighbors < 2:
            raise ConfigurationError("umap_neighbors must be at least 2")
        if self.umap_dims is not None:
            start, stop = self.umap_dims
            if start < 0 or stop <= start:
                raise ConfigurationError(f"Invalid umap_dims range {self.umap_dims}")


@dataclass
class NeighborsConfig:
    """Configuration for the shared nearest neighbor graph.

    Attributes
    ----------
    k : int
        Nearest neighbors per cell, the cell itself excluded
    dims : Tuple[int, int], optional
        Half-open embedding component range. Defaults to all.
    prune_snn : float
        Drop edges whose Jaccard weight is below this value
    embedding : str
        Source embedding name
    graph_name : str
        Name the graph is stored under
    n_jobs : int, optional
        Workers for nearest-neighbor search
    """

    k: int = 20
    dims: Optional[Tuple[int, int]] = None
    prune_snn: float = 1.0 / 15.0
    embedding: str = "pca"
    graph_name: str = "snn"
    n_jobs: Optional[int] = None

    def validate(self) -> None:
        if self.k < 1:
            raise ConfigurationError("k must be at least 1")
        if not 0 <= self.prune_snn < 1:
            raise ConfigurationError("prune_snn must be within [0, 1)")
        if self.dims is not None:
            start, stop = self.dims
            if start < 0 or stop <= start:
                raise ConfigurationError(f"Invalid dims range {self.dims}")


@dataclass
class ClusteringConfig:
    """Configuration for Leiden clustering.

    The default resolution suits thousands of cells with many cell
    types. A dataset of about a hundred cells holding two populations
    splits into several clusters at 0.8 and needs a resolution near 0.05
    to come out as exactly two.

    Attributes
    ----------
    resolution : float
        Leiden resolution; higher values give more clusters
    n_iterations : int
        Leiden iterations; -1 runs until no improvement
    random_seed : int
        Random seed for reproducibility
    cluster_key : str
        Cell metadata column for the labels
    graph_name : str
        Graph to cluster
    """

    resolution: float = 0.8
    n_iterations: int = -1
    random_seed: int = 0
    cluster_key: str = "leiden"
    graph_name: str = "snn"

    def validate(self) -> None:
        if self.resolution <= 0:
            raise ConfigurationError("resolution must be positive")
        if self.n_iterations == 0 or self.n_iterations < -1:
            raise ConfigurationError("n_iterations must be positive or -1")


@dataclass
class MarkerConfig:
    """Configuration for differential marker detection.

    Attributes
    ----------
    test : str
        "wilcoxon" (Mann-Whitney U) or "t-test" (Welch)
    min_pct : float
        Minimum detection fraction in either group
    logfc_threshold : float
        Minimum absolute average log2 fold change
    only_positive : bool
        Keep only features higher in group 1
    p_adjust : str
        Multiple-testing correction over all dataset features
    fold_change : str
        "auto", "log_expm1" or "difference". "auto" picks log_expm1 for
        log-normalized data and difference for residual data.
    n_workers : int
        Threads for one-vs-rest marker search
    """

    test: str = "wilcoxon"
    min_pct: float = 0.1
    logfc_threshold: float = 0.25
    only_positive: bool = False
    p_adjust: str = "bonferroni"
    fold_change: str = "auto"
    n_workers: int = 4

    def validate(self) -> None:
        if self.test not in ("wilcoxon", "t-test"):
            raise ConfigurationError(f"Unknown marker test '{self.test}'. Use wilcoxon or t-test")
        if not 0 <= self.min_pct <= 1:
            raise ConfigurationError("min_pct must be within [0, 1]")
        if self.logfc_threshold < 0:
            raise ConfigurationError("logfc_threshold must be non-negative")
        if self.p_adjust not in P_ADJUST_METHODS:
            raise ConfigurationError(
                f"Unknown p_adjust '{self.p_adjust}'. Use one of {', '.join(P_ADJUST_METHODS)}"
            )
        if self.fold_change not in ("auto", "log_expm1", "difference"):
            raise ConfigurationError(f"Unknown fold_change '{self.fold_change}'")
        if self.n_workers < 1:
            raise ConfigurationError("n_workers must be at least 1")


@dataclass
class AnalysisConfig:
    """Master configuration for reduction, graph, clustering and markers.

    Attributes
    ----------
    reduction : ReductionConfig
        PCA/UMAP configuration
    neighbors : NeighborsConfig
        Graph configuration
    clustering : ClusteringConfig
        Leiden configuration
    markers : MarkerConfig
        Marker detection configuration
    """

    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    neighbors: NeighborsConfig = field(default_factory=NeighborsConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "AnalysisConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested analysis section
        if "analysis" in data:
            data = data["analysis"]

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        reduction = dict(data.get("reduction", {}))
        if reduction.get("umap_dims") is not None:
            reduction["umap_dims"] = tuple(reduction["umap_dims"])
        neighbors = dict(data.get("neighbors", {}))
        if neighbors.get("dims") is not None:
            neighbors["dims"] = tuple(neighbors["dims"])
        try:
            config = cls(
                reduction=ReductionConfig(**reduction),
                neighbors=NeighborsConfig(**neighbors),
                clustering=ClusteringConfig(**data.get("clustering", {})),
                markers=MarkerConfig(**data.get("markers", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid analysis configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def validate(self) -> None:
        self.reduction.validate()
        self.neighbors.validate()
        self.clustering.validate()
        self.markers.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reduction": asdict(self.reduction),
            "neighbors": asdict(self.neighbors),
            "clustering": asdict(self.clustering),
            "markers": asdict(self.markers),
        }
