"""Pytest configuration and shared fixtures for cellscope tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_counts_anndata,
    create_reference_query_counts,
    create_spatial_counts,
    create_two_group_counts,
)

from cellscope.core.clustering import (
    ClusteringConfig,
    ClusteringEngine,
    DimensionalityReducer,
    NeighborGraphBuilder,
    NeighborsConfig,
    ReductionConfig,
)
from cellscope.core.dataset import Dataset
from cellscope.core.preprocessing import (
    FeatureSelector,
    NormalizationConfig,
    Normalizer,
    Scaler,
)


# ============================================================================
# Raw Data Fixtures
# ============================================================================


@pytest.fixture
def two_group_data() -> dict:
    """100 cells x 50 features; GENE00-GENE04 mark the first 50 cells."""
    return create_two_group_counts()


@pytest.fixture
def spatial_data() -> dict:
    """12 x 12 grid with a left/right patterned feature."""
    return create_spatial_counts()


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Dataset Fixtures
# ============================================================================


@pytest.fixture
def two_group_dataset(two_group_data) -> Dataset:
    """Raw-count Dataset with the true group in obs["group"]."""
    obs = pd.DataFrame(
        {"group": two_group_data["groups"]},
        index=two_group_data["cell_ids"],
    )
    return Dataset.from_counts(
        two_group_data["counts"],
        cell_ids=two_group_data["cell_ids"],
        feature_ids=two_group_data["feature_ids"],
        dataset_id="two_group",
        obs=obs,
    )


@pytest.fixture
def normalized_dataset(two_group_dataset) -> Dataset:
    """Two-group Dataset with a log-normalized layer."""
    Normalizer().normalize(two_group_dataset, "log_normalize")
    return two_group_dataset


@pytest.fixture
def scaled_dataset(normalized_dataset) -> Dataset:
    """Normalized Dataset with 10 selected features scaled."""
    FeatureSelector().select(normalized_dataset, n_features=10, flavor="vst")
    Scaler().scale(normalized_dataset)
    return normalized_dataset


@pytest.fixture
def clustered_dataset(scaled_dataset) -> Dataset:
    """Scaled Dataset with a 2-component PCA, SNN graph and Leiden labels."""
    DimensionalityReducer(ReductionConfig(n_pcs=2)).run_pca(scaled_dataset)
    NeighborGraphBuilder(NeighborsConfig(k=10)).build(scaled_dataset)
    ClusteringEngine(ClusteringConfig(resolution=0.05)).cluster(scaled_dataset)
    return scaled_dataset


@pytest.fixture
def spatial_dataset(spatial_data) -> Dataset:
    """Log-normalized grid Dataset with spatial coordinates."""
    dataset = Dataset.from_counts(
        spatial_data["counts"],
        cell_ids=spatial_data["cell_ids"],
        feature_ids=spatial_data["feature_ids"],
        dataset_id="grid",
        spatial=spatial_data["coordinates"],
    )
    Normalizer().normalize(dataset, "log_normalize")
    return dataset


@pytest.fixture
def reference_query():
    """Normalized reference (labels in obs["celltype"], 15 selected features) and query."""
    ref_data, query_data = create_reference_query_counts()
    reference = Dataset.from_counts(
        ref_data["counts"],
        cell_ids=ref_data["cell_ids"],
        feature_ids=ref_data["feature_ids"],
        dataset_id="reference",
        obs=pd.DataFrame(
            {
                "celltype": ref_data["labels"],
                "type_index": [int(label.split("_")[1]) for label in ref_data["labels"]],
            },
            index=ref_data["cell_ids"],
        ),
    )
    query = Dataset.from_counts(
        query_data["counts"],
        cell_ids=query_data["cell_ids"],
        feature_ids=query_data["feature_ids"],
        dataset_id="query",
        obs=pd.DataFrame({"truth": query_data["labels"]}, index=query_data["cell_ids"]),
    )
    normalizer = Normalizer(NormalizationConfig(method="log_normalize"))
    normalizer.normalize(reference)
    normalizer.normalize(query)
    FeatureSelector().select(reference, n_features=15, flavor="vst")
    return reference, query


# ============================================================================
# File Fixtures
# ============================================================================


@pytest.fixture
def two_group_h5ad(tmp_path, two_group_data) -> Path:
    """Plain AnnData .h5ad file with raw counts."""
    path = tmp_path / "two_group.h5ad"
    create_counts_anndata(two_group_data).write_h5ad(path)
    return path


@pytest.fixture
def analysis_config_file(tmp_path) -> Path:
    """Preprocessing and analysis settings suited to the two-group data."""
    import yaml

    config = {
        "preprocessing": {
            "qc": {"min_features_per_cell": 1, "min_cells_per_feature": 1},
            "feature_selection": {"n_features": 10},
        },
        "analysis": {
            "reduction": {"n_pcs": 2, "umap_neighbors": 15},
            "neighbors": {"k": 10},
            "clustering": {"resolution": 0.05},
            "markers": {"only_positive": True},
        },
    }
    path = tmp_path / "analysis.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)
    return path


@pytest.fixture
def sample_pipeline_config(tmp_path, two_group_h5ad) -> Path:
    """Pipeline from raw counts to markers over the two-group data."""
    import yaml

    config = {
        "pipeline": {
            "name": "Test Pipeline",
            "version": "1.0",
        },
        "global": {
            "output_dir": str(tmp_path / "output"),
            "seed": 7,
        },
        "stages": {
            "load": {
                "name": "Load counts",
                "operation": "load",
                "inputs": {"data": str(two_group_h5ad)},
                "params": {"dataset_id": "two_group"},
            },
            "qc": {
                "name": "Quality control",
                "operation": "qc",
                "depends_on": ["load"],
                "params": {"min_features_per_cell": 1, "min_cells_per_feature": 1},
            },
            "normalize": {
                "operation": "normalize",
                "depends_on": ["qc"],
                "params": {"method": "log_normalize"},
            },
            "hvf": {
                "operation": "select_features",
                "depends_on": ["normalize"],
                "params": {"n_features": 10},
            },
            "scale": {
                "operation": "scale",
                "depends_on": ["hvf"],
            },
            "pca": {
                "operation": "pca",
                "depends_on": ["scale"],
                "params": {"n_pcs": 2, "random_seed": "{global.seed}"},
                "outputs": {"elbow": "{global.output_dir}/elbow.csv"},
            },
            "neighbors": {
                "operation": "neighbors",
                "depends_on": ["pca"],
                "params": {"k": 10},
            },
            "cluster": {
                "operation": "cluster",
                "depends_on": ["neighbors"],
                "params": {"resolution": 0.05},
            },
            "markers": {
                "operation": "markers",
                "depends_on": ["cluster"],
                "params": {"only_positive": True, "n_top": 5},
                "outputs": {
                    "table": "{global.output_dir}/markers.csv",
                    "top": "{global.output_dir}/top_markers.csv",
                },
            },
        },
    }

    path = tmp_path / "pipeline.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f, sort_keys=False)

    return path
