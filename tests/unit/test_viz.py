"""Unit tests for presentation settings and plot-ready accessors."""

import pytest
import numpy as np
import pandas as pd
import yaml

from cellscope.core.preprocessing import QualityControl
from cellscope.errors import ConfigurationError
from cellscope.viz import (
    DEFAULT_PALETTE,
    PresentationConfig,
    embedding_frame,
    heatmap_matrix,
    qc_frame,
    spatial_frame,
    violin_frame,
)


class TestPresentationConfig:
    """Tests for PresentationConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = PresentationConfig.default()
        assert config.figsize == (7.0, 7.0)
        assert config.dpi == 80
        assert config.verbosity == 1
        assert config.palette == DEFAULT_PALETTE

    def test_from_yaml(self, tmp_path):
        """Test loading a nested presentation section."""
        path = tmp_path / "presentation.yaml"
        with open(path, "w") as f:
            yaml.dump({"presentation": {"figsize": [4, 3], "dpi_save": 300}}, f)
        config = PresentationConfig.from_yaml(path)
        assert config.figsize == (4.0, 3.0)
        assert config.dpi_save == 300
        assert config.to_dict()["figsize"] == [4.0, 3.0]

    def test_invalid(self):
        """Test invalid values raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid presentation"):
            PresentationConfig.from_dict({"style": "dark"})
        with pytest.raises(ConfigurationError, match="verbosity"):
            PresentationConfig.from_dict({"verbosity": 9})
        with pytest.raises(ConfigurationError, match="palette"):
            PresentationConfig.from_dict({"palette": []})

    def test_colors_cycle(self):
        """Test categories beyond the palette reuse colours."""
        config = PresentationConfig(palette=["red", "blue"])
        assert config.colors_for([0, 1, 2]) == {"0": "red", "1": "blue", "2": "red"}

    def test_apply(self):
        """Test global plotting state follows the configuration."""
        import matplotlib.pyplot as plt

        with plt.rc_context():
            PresentationConfig(dpi=100, palette=["#000000", "#ffffff"]).apply()
            colors = plt.rcParams["axes.prop_cycle"].by_key()["color"]
            assert colors == ["#000000", "#ffffff"]
            assert plt.rcParams["figure.dpi"] == 100


class TestAccessors:
    """Tests for read-only plot accessors."""

    def test_violin_frame(self, clustered_dataset):
        """Test one row per cell and feature with group labels."""
        frame = violin_frame(clustered_dataset, ["GENE00", "GENE01"], group_by="group")

        assert list(frame.columns) == ["cell_id", "group", "feature", "value"]
        assert len(frame) == 200
        assert set(frame["group"]) == {"A", "B"}
        means = frame[frame["feature"] == "GENE00"].groupby("group")["value"].mean()
        assert means["A"] > means["B"]

    def test_violin_frame_metadata_column(self, clustered_dataset):
        """Test numeric metadata can be shown like a feature."""
        QualityControl().compute_metrics(clustered_dataset)
        frame = violin_frame(clustered_dataset, "total_counts")
        assert (frame["group"] == "all").all()
        np.testing.assert_allclose(
            frame["value"], clustered_dataset.obs["total_counts"].to_numpy()
        )

    def test_violin_frame_unknown(self, clustered_dataset):
        """Test unknown names and groupings raise."""
        with pytest.raises(ConfigurationError, match="neither"):
            violin_frame(clustered_dataset, "NOT_A_GENE")
        with pytest.raises(ConfigurationError, match="Unknown grouping column"):
            violin_frame(clustered_dataset, "GENE00", group_by="batch")

    def test_embedding_frame(self, clustered_dataset):
        """Test coordinates are named by component and colours appended."""
        frame = embedding_frame(clustered_dataset, "pca", color_by=["leiden", "GENE00"])

        assert list(frame.columns) == ["PCA_1", "PCA_2", "leiden", "GENE00"]
        assert list(frame.index) == list(clustered_dataset.cell_ids)
        np.testing.assert_allclose(
            frame["PCA_1"], clustered_dataset.get_embedding("pca").coordinates[:, 0]
        )

    def test_embedding_frame_component_range(self, clustered_dataset):
        """Test components beyond the embedding raise."""
        with pytest.raises(ConfigurationError, match="out of range"):
            embedding_frame(clustered_dataset, "pca", components=(0, 2))

    def test_heatmap_matrix(self, clustered_dataset):
        """Test cells are grouped and features are rows."""
        features = clustered_dataset.selected_features[:3]
        matrix, groups = heatmap_matrix(clustered_dataset, features, group_by="leiden")

        assert matrix.shape == (3, 100)
        assert list(matrix.index) == list(features)
        assert list(matrix.columns) == list(groups.index)
        codes = pd.factorize(groups, sort=True)[0]
        assert np.all(np.diff(codes) >= 0)

    def test_heatmap_rejects_unscaled(self, clustered_dataset):
        """Test features outside the scaled subset are rejected."""
        unscaled = [f for f in clustered_dataset.feature_ids if f not in clustered_dataset.selected_features]
        with pytest.raises(ConfigurationError, match="not in the scaled subset"):
            heatmap_matrix(clustered_dataset, unscaled[:1], group_by="leiden")
        matrix, _ = heatmap_matrix(
            clustered_dataset, unscaled[:1], group_by="leiden", layer="normalized"
        )
        assert matrix.shape == (1, 100)

    def test_spatial_frame(self, spatial_dataset):
        """Test positions are returned per cell."""
        frame = spatial_frame(spatial_dataset, color_by="PATTERN", layer="counts")
        assert list(frame.columns) == ["x", "y", "PATTERN"]
        np.testing.assert_allclose(frame[["x", "y"]].to_numpy(), spatial_dataset.spatial_coordinates)

    def test_spatial_frame_requires_coordinates(self, clustered_dataset):
        """Test datasets without coordinates raise."""
        with pytest.raises(ConfigurationError, match="no spatial coordinates"):
            spatial_frame(clustered_dataset)

    def test_qc_frame(self, two_group_dataset):
        """Test QC metrics are exposed once computed."""
        with pytest.raises(ConfigurationError, match="run quality control first"):
            qc_frame(two_group_dataset)
        QualityControl().compute_metrics(two_group_dataset)
        frame = qc_frame(two_group_dataset)
        assert list(frame.columns[:2]) == ["total_counts", "n_features_by_counts"]
        assert len(frame) == 100

    def test_accessors_do_not_modify(self, clustered_dataset):
        """Test accessors leave the dataset metadata untouched."""
        before = clustered_dataset.obs.copy()
        frame = embedding_frame(clustered_dataset, "pca", color_by="leiden")
        frame["leiden"] = -1
        pd.testing.assert_frame_equal(clustered_dataset.obs, before)
