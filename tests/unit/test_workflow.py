"""End-to-end tests of the standard analysis workflow."""

import pytest
import numpy as np
import pandas as pd

from cellscope.core.clustering import (
    AnalysisConfig,
    ClusteringEngine,
    DimensionalityReducer,
    MarkerConfig,
    MarkerFinder,
    NeighborGraphBuilder,
)
from cellscope.core.dataset import Dataset, Layer
from cellscope.core.preprocessing import (
    FeatureSelector,
    Normalizer,
    PreprocessingConfig,
    QualityControl,
    Scaler,
)
from cellscope.core.spatial import SpatialConfig, SpatialFeatureFinder
from tests.fixtures import create_bimodal_noise_counts, same_partition


def _analyze(dataset: Dataset, prep: PreprocessingConfig, analysis: AnalysisConfig) -> Dataset:
    dataset, _ = QualityControl(prep.qc).filter(dataset)
    Normalizer(prep.normalization).normalize(dataset)
    FeatureSelector(prep.feature_selection).select(dataset)
    Scaler(prep.scaling).scale(dataset)
    DimensionalityReducer(analysis.reduction).run_pca(dataset)
    NeighborGraphBuilder(analysis.neighbors).build(dataset)
    ClusteringEngine(analysis).cluster(dataset)
    return dataset


class TestStandardWorkflow:
    """Tests for QC through markers on one dataset."""

    def test_recovers_groups_and_markers(self, two_group_dataset, two_group_data, analysis_config_file):
        """Test the workflow finds both groups and their markers."""
        prep = PreprocessingConfig.from_yaml(analysis_config_file)
        analysis = AnalysisConfig.from_yaml(analysis_config_file)
        dataset = _analyze(two_group_dataset, prep, analysis)

        assignment = dataset.get_clusters("leiden")
        assert same_partition(assignment.labels.to_numpy(), dataset.obs["group"].to_numpy())

        group_a = dataset.obs["group"].to_numpy() == "A"
        cluster_a = int(np.bincount(assignment.labels.to_numpy()[group_a]).argmax())
        result = MarkerFinder(analysis.markers).find_markers(
            dataset, ident_1=cluster_a, cluster_key="leiden"
        )
        assert set(result.features[:5]) == set(two_group_data["markers"])

    def test_vst_normalization(self, two_group_dataset, analysis_config_file):
        """Test the variance stabilizing path clusters the same groups."""
        prep = PreprocessingConfig.from_yaml(analysis_config_file)
        prep.normalization.method = "vst"
        prep.feature_selection.flavor = "residual_variance"
        analysis = AnalysisConfig.from_yaml(analysis_config_file)
        dataset = _analyze(two_group_dataset, prep, analysis)

        assert dataset.normalization["method"] == "vst"
        assert same_partition(
            dataset.get_clusters("leiden").labels.to_numpy(), dataset.obs["group"].to_numpy()
        )

    def test_snapshot_round_trip(self, clustered_dataset, tmp_path):
        """Test a saved analysis restores layers, embeddings, graphs and clusters."""
        path = clustered_dataset.save(tmp_path / "analysis.h5ad")
        restored = Dataset.load(path)

        np.testing.assert_allclose(
            restored.layer_matrix(Layer.SCALED), clustered_dataset.layer_matrix(Layer.SCALED)
        )
        np.testing.assert_allclose(
            restored.get_embedding("pca").coordinates,
            clustered_dataset.get_embedding("pca").coordinates,
        )
        assert restored.graph_names == ["snn"]
        assert restored.selected_features == clustered_dataset.selected_features
        assert (
            restored.get_clusters("leiden").labels.tolist()
            == clustered_dataset.get_clusters("leiden").labels.tolist()
        )

    def test_reanalyze_subset(self, clustered_dataset):
        """Test a subset keeps counts and can be analyzed again."""
        group_a = clustered_dataset.cell_ids[clustered_dataset.obs["group"] == "A"]
        subset = clustered_dataset.subset(cells=list(group_a))

        assert subset.n_cells == 50
        assert subset.cluster_keys == []
        assert not subset.has_layer(Layer.SCALED)
        assert subset.has_layer(Layer.NORMALIZED)

        FeatureSelector().select(subset, n_features=10)
        Scaler().scale(subset)
        embedding = DimensionalityReducer().run_pca(subset, n_components=3)
        assert embedding.coordinates.shape == (50, 3)


class TestTwoPopulationScenario:
    """Tests for marker features over a background of uniform noise."""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_two_clusters_and_markers(self, seed):
        """Test 100 x 50 counts give two clusters whose markers are features 0-4."""
        data = create_bimodal_noise_counts(seed=seed)
        dataset = Dataset.from_counts(
            data["counts"], data["cell_ids"], data["feature_ids"], dataset_id="bimodal",
            obs=pd.DataFrame({"group": data["groups"]}, index=data["cell_ids"]),
        )
        prep = PreprocessingConfig()
        prep.qc.min_features_per_cell = 1
        prep.qc.min_cells_per_feature = 1
        prep.feature_selection.n_features = 10
        analysis = AnalysisConfig()
        analysis.reduction.n_pcs = 2
        analysis.neighbors.k = 10
        # two populations of 50 need a low resolution, see ClusteringConfig
        analysis.clustering.resolution = 0.05
        analysis.clustering.random_seed = seed

        dataset = _analyze(dataset, prep, analysis)

        assignment = dataset.get_clusters("leiden")
        assert assignment.n_clusters == 2
        assert same_partition(assignment.labels.to_numpy(), data["groups"])

        result = MarkerFinder(MarkerConfig(only_positive=False)).find_markers(
            dataset, ident_1=0, ident_2=1, cluster_key="leiden"
        )
        assert set(result.features[:5]) == set(data["markers"])


class TestSpatialWorkflow:
    """Tests for spatial feature ranking after normalization."""

    def test_selected_then_spatial(self, spatial_dataset):
        """Test the patterned feature survives selection and ranks first."""
        FeatureSelector().select(spatial_dataset, n_features=5)
        result = SpatialFeatureFinder(SpatialConfig(method="morans_i")).find(spatial_dataset)

        assert result.n_features == 5
        assert result.top(1) == ["PATTERN"]
