"""Unit tests for anchor finding and label transfer."""

import pytest
import numpy as np

from cellscope.core.preprocessing import Normalizer
from cellscope.core.transfer import (
    AnchorFinder,
    LabelTransfer,
    TransferConfig,
    l2_normalize,
)
from cellscope.errors import (
    ConfigurationError,
    DimensionalityError,
    NoAnchorsFoundError,
)


@pytest.fixture
def transfer_config() -> TransferConfig:
    """Settings sized for 90 reference and 60 query cells."""
    return TransferConfig(n_components=5, k_weight=20)


@pytest.fixture
def anchors(reference_query, transfer_config):
    reference, query = reference_query
    return AnchorFinder(transfer_config).find_anchors(reference, query)


class TestTransferConfig:
    """Tests for TransferConfig."""

    def test_default_values(self):
        """Test default configuration values."""
        config = TransferConfig()
        assert config.n_components == 30
        assert config.k_anchor == 5
        assert config.k_filter == 200
        assert config.k_score == 30
        assert config.k_weight == 50
        assert config.label_key == "celltype"
        assert config.prediction_key == "predicted_id"

    def test_invalid(self):
        """Test invalid values raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="k_anchor"):
            TransferConfig.from_dict({"k_anchor": 0})
        with pytest.raises(ConfigurationError, match="Invalid transfer"):
            TransferConfig.from_dict({"dims": 30})


class TestAnchorFinder:
    """Tests for AnchorFinder."""

    def test_l2_normalize(self):
        """Test rows get unit norm and zero rows stay zero."""
        result = l2_normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(result, [[0.6, 0.8], [0.0, 0.0]])

    def test_find_anchors(self, anchors, reference_query):
        """Test anchors link cells of the same type."""
        reference, query = reference_query
        table = anchors.anchors

        assert anchors.n_anchors > 0
        assert list(table.columns) == [
            "reference_index", "query_index", "reference_cell", "query_cell", "score",
        ]
        assert table["score"].between(0, 1).all()
        assert table["reference_cell"].str.startswith("ref_").all()

        ref_types = reference.obs["celltype"].to_numpy()[table["reference_index"]]
        query_types = query.obs["truth"].to_numpy()[table["query_index"]]
        assert (ref_types == query_types).mean() >= 0.9

    def test_shared_space(self, anchors, reference_query):
        """Test the projections span the configured components."""
        reference, query = reference_query
        assert anchors.reference_embedding.shape == (90, 5)
        assert anchors.query_projection.shape == (60, 5)
        assert set(anchors.features) <= set(reference.selected_features)
        summary = anchors.to_dict()
        assert summary["reference_id"] == "reference"
        assert summary["n_anchors"] == anchors.n_anchors
        assert summary["n_components"] == 5

    def test_requires_selected_features(self, reference_query, transfer_config):
        """Test a reference without selected features is rejected."""
        reference, query = reference_query
        with pytest.raises(ConfigurationError, match="no selected features"):
            AnchorFinder(transfer_config).find_anchors(query, reference)

    def test_no_shared_features(self, reference_query, transfer_config):
        """Test features missing from both datasets are rejected."""
        reference, query = reference_query
        with pytest.raises(ConfigurationError, match="share no features"):
            AnchorFinder(transfer_config).find_anchors(reference, query, features=["NOT_A_GENE"])

    def test_too_many_components(self, reference_query):
        """Test components beyond the feature count raise."""
        reference, query = reference_query
        with pytest.raises(DimensionalityError):
            AnchorFinder(TransferConfig(n_components=20)).find_anchors(reference, query)

    def test_normalization_mismatch(self, reference_query, transfer_config):
        """Test reference and query must share a normalization method."""
        reference, query = reference_query
        Normalizer().normalize(query, "vst")
        with pytest.raises(ConfigurationError, match="normalize both the same way"):
            AnchorFinder(transfer_config).find_anchors(reference, query)

    def test_no_anchors(self, reference_query, transfer_config, monkeypatch):
        """Test an empty anchor set raises NoAnchorsFoundError."""
        reference, query = reference_query
        empty = (np.array([], dtype=int), np.array([], dtype=int))
        monkeypatch.setattr(AnchorFinder, "_mutual_pairs", lambda self, a, b: empty)
        with pytest.raises(NoAnchorsFoundError, match="No anchors"):
            AnchorFinder(transfer_config).find_anchors(reference, query)


class TestLabelTransfer:
    """Tests for LabelTransfer."""

    def test_predicts_query_types(self, anchors, reference_query, transfer_config):
        """Test predictions recover the query cell types."""
        reference, query = reference_query
        result = LabelTransfer(transfer_config).transfer(anchors, reference, query)
        predictions = result.predictions

        assert result.labels == ["type_0", "type_1", "type_2"]
        assert list(predictions.index) == list(query.cell_ids)
        accuracy = (predictions["predicted_id"].astype(str) == query.obs["truth"]).mean()
        assert accuracy >= 0.9

    def test_scores(self, anchors, reference_query, transfer_config):
        """Test per-label scores form a distribution per cell."""
        reference, query = reference_query
        predictions = LabelTransfer(transfer_config).transfer(anchors, reference, query).predictions

        score_columns = [f"prediction_score_type_{i}" for i in range(3)]
        np.testing.assert_allclose(predictions[score_columns].sum(axis=1), 1.0)
        np.testing.assert_allclose(
            predictions["prediction_score_max"], predictions[score_columns].max(axis=1)
        )

    def test_writes_query_metadata(self, anchors, reference_query, transfer_config):
        """Test predictions and the projection are stored on the query."""
        reference, query = reference_query
        LabelTransfer(transfer_config).transfer(anchors, reference, query)

        assert "predicted_id" in query.obs.columns
        assert "prediction_score_max" in query.obs.columns
        assert query.get_embedding("ref_pca").coordinates.shape == (60, 5)

    def test_continuous_values(self, anchors, reference_query, transfer_config):
        """Test numeric metadata and features transfer as weighted averages."""
        reference, query = reference_query
        result = LabelTransfer(transfer_config).transfer(
            anchors, reference, query, refdata=["type_index", "GENE00"]
        )
        continuous = result.continuous
        truth = np.array([int(t.split("_")[1]) for t in query.obs["truth"]])

        assert list(continuous.columns) == ["predicted_type_index", "predicted_GENE00"]
        assert np.abs(continuous["predicted_type_index"].to_numpy() - truth).mean() < 0.5
        assert "predicted_GENE00" in query.obs.columns
        assert result.to_dict()["transferred_values"] == list(continuous.columns)

    def test_unlabeled_reference_cells(self, anchors, reference_query, transfer_config):
        """Test missing reference labels are never predicted."""
        reference, query = reference_query
        labels = reference.obs["celltype"].to_numpy(dtype=object).copy()
        labels[::2] = None
        reference.add_cell_metadata({"celltype": labels})

        result = LabelTransfer(transfer_config).transfer(anchors, reference, query)
        predicted = set(result.predictions["predicted_id"].astype(str))

        assert result.labels == ["type_0", "type_1", "type_2"]
        assert predicted <= set(result.labels)
        assert result.n_anchors < anchors.n_anchors
        accuracy = (result.predictions["predicted_id"].astype(str) == query.obs["truth"]).mean()
        assert accuracy >= 0.8

    def test_all_anchors_unlabeled(self, anchors, reference_query, transfer_config):
        """Test a reference without labels at its anchors raises NoAnchorsFoundError."""
        reference, query = reference_query
        reference.add_cell_metadata({"celltype": np.full(reference.n_cells, None, dtype=object)})
        with pytest.raises(NoAnchorsFoundError, match="without a 'celltype' label"):
            LabelTransfer(transfer_config).transfer(anchors, reference, query)
        assert not anchors.consumed

    def test_unknown_refdata(self, anchors, reference_query, transfer_config):
        """Test unknown refdata names fail without using the anchors."""
        reference, query = reference_query
        with pytest.raises(ConfigurationError, match="neither"):
            LabelTransfer(transfer_config).transfer(
                anchors, reference, query, refdata=["no_such_value"]
            )
        assert not anchors.consumed
        assert "predicted_id" not in query.obs.columns

        result = LabelTransfer(transfer_config).transfer(anchors, reference, query)
        assert result.n_anchors == anchors.n_anchors

    def test_anchor_set_used_once(self, anchors, reference_query, transfer_config):
        """Test an anchor set cannot be reused."""
        reference, query = reference_query
        transfer = LabelTransfer(transfer_config)
        transfer.transfer(anchors, reference, query)
        with pytest.raises(ConfigurationError, match="already used"):
            transfer.transfer(anchors, reference, query)

    def test_missing_label_column(self, anchors, reference_query, transfer_config):
        """Test a missing label column raises before the anchors are used."""
        reference, query = reference_query
        with pytest.raises(ConfigurationError, match="no label column"):
            LabelTransfer(transfer_config).transfer(anchors, reference, query, label_key="subtype")
        assert not anchors.consumed

    def test_mismatched_datasets(self, anchors, reference_query, transfer_config):
        """Test anchors only apply to the pair they were found on."""
        reference, query = reference_query
        with pytest.raises(ConfigurationError, match="Anchors were found for"):
            LabelTransfer(transfer_config).transfer(anchors, query, reference)

    def test_to_dict(self, anchors, reference_query, transfer_config):
        """Test the summary counts predictions per label."""
        reference, query = reference_query
        summary = LabelTransfer(transfer_config).transfer(anchors, reference, query).to_dict()
        assert summary["n_query_cells"] == 60
        assert sum(summary["predicted_counts"].values()) == 60
