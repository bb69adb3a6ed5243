"""Unit tests for the Dataset container and its derived records."""

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from cellscope.core.dataset import (
    ClusterAssignment,
    Dataset,
    Layer,
    NeighborGraph,
    ReducedEmbedding,
)
from cellscope.errors import ConfigurationError


def _tiny_dataset(**kwargs) -> Dataset:
    counts = np.array([[1, 0, 3], [0, 2, 5], [4, 1, 0], [2, 2, 2]])
    return Dataset.from_counts(
        counts,
        cell_ids=["c0", "c1", "c2", "c3"],
        feature_ids=["f0", "f1", "f2"],
        dataset_id="tiny",
        **kwargs,
    )


class TestLayer:
    """Tests for the Layer enum."""

    def test_parse_names(self):
        """Layer names parse case-insensitively."""
        assert Layer.parse("counts") is Layer.COUNTS
        assert Layer.parse("NORMALIZED") is Layer.NORMALIZED
        assert Layer.parse(Layer.SCALED) is Layer.SCALED

    def test_parse_rejects_unknown(self):
        """Names outside the enum are rejected."""
        with pytest.raises(ConfigurationError, match="Unknown layer"):
            Layer.parse("imputed")


class TestDatasetCreation:
    """Tests for building datasets from counts."""

    def test_from_counts_basic(self):
        """Counts are stored as CSR with the given ids."""
        dataset = _tiny_dataset()
        assert dataset.dataset_id == "tiny"
        assert dataset.n_cells == 4
        assert dataset.n_features == 3
        assert list(dataset.cell_ids) == ["c0", "c1", "c2", "c3"]
        assert sparse.isspmatrix_csr(dataset.get_layer(Layer.COUNTS))
        assert dataset.layer_matrix("counts")[1, 2] == 5

    def test_rejects_negative_counts(self):
        """Negative values are not counts."""
        with pytest.raises(ConfigurationError, match="non-negative"):
            Dataset.from_counts(np.array([[1, -1]]), ["c0"], ["f0", "f1"])

    def test_rejects_fractional_counts(self):
        """Fractional values are not counts."""
        with pytest.raises(ConfigurationError, match="integer"):
            Dataset.from_counts(np.array([[1.5, 1.0]]), ["c0"], ["f0", "f1"])

    def test_rejects_shape_mismatch(self):
        """Ids must match the matrix shape."""
        with pytest.raises(ConfigurationError, match="does not match"):
            Dataset.from_counts(np.ones((2, 2)), ["c0"], ["f0", "f1"])

    def test_rejects_duplicate_ids(self):
        """Cell ids must be unique."""
        with pytest.raises(ConfigurationError, match="unique"):
            Dataset.from_counts(np.ones((2, 2)), ["c0", "c0"], ["f0", "f1"])

    def test_obs_is_joined_on_cell_id(self):
        """Initial metadata is aligned by cell id, not position."""
        obs = pd.DataFrame({"batch": ["b3", "b0"]}, index=["c3", "c0"])
        dataset = _tiny_dataset(obs=obs)
        assert dataset.obs.loc["c0", "batch"] == "b0"
        assert dataset.obs.loc["c3", "batch"] == "b3"
        assert pd.isna(dataset.obs.loc["c1", "batch"])

    def test_from_anndata(self, two_group_data):
        """AnnData input keeps ids and metadata."""
        from tests.fixtures import create_counts_anndata

        adata = create_counts_anndata(two_group_data)
        adata.obs["group"] = two_group_data["groups"]
        dataset = Dataset.from_anndata(adata, dataset_id="from_adata")
        assert dataset.n_cells == 100
        assert dataset.obs["group"].iloc[0] == "A"
        assert not dataset.has_layer(Layer.NORMALIZED)


class TestLayers:
    """Tests for layer storage and invalidation."""

    def test_counts_always_present(self):
        """The counts layer exists from creation."""
        dataset = _tiny_dataset()
        assert dataset.has_layer(Layer.COUNTS)
        assert not dataset.has_layer(Layer.NORMALIZED)

    def test_missing_layer_raises(self):
        """Reading an uncomputed layer raises."""
        with pytest.raises(ConfigurationError, match="has not been computed"):
            _tiny_dataset().get_layer("scaled")

    def test_counts_cannot_be_replaced(self):
        """Counts are fixed at creation."""
        dataset = _tiny_dataset()
        with pytest.raises(ConfigurationError, match="cannot be replaced"):
            dataset.set_layer(Layer.COUNTS, np.zeros((4, 3)))

    def test_shape_checked(self):
        """Derived layers share the counts shape."""
        with pytest.raises(ConfigurationError, match="does not match"):
            _tiny_dataset().set_layer(Layer.NORMALIZED, np.zeros((3, 3)))

    def test_dense_layer_is_read_only(self):
        """Dense layers are returned as read-only views."""
        dataset = _tiny_dataset()
        dataset.set_layer(Layer.NORMALIZED, np.ones((4, 3)))
        view = dataset.get_layer(Layer.NORMALIZED)
        with pytest.raises(ValueError):
            view[0, 0] = 5.0

    def test_layer_matrix_subsets_in_order(self):
        """Features and cells are returned in the requested order."""
        dataset = _tiny_dataset()
        matrix = dataset.layer_matrix("counts", features=["f2", "f0"], cells=["c1", "c0"])
        np.testing.assert_array_equal(matrix, [[5, 0], [3, 1]])

    def test_unknown_ids_raise(self):
        """Unknown feature ids are reported."""
        with pytest.raises(ConfigurationError, match="Unknown feature ids"):
            _tiny_dataset().layer_matrix("counts", features=["nope"])

    def test_replacing_normalized_drops_scaled(self):
        """Scaled data computed from the old normalized layer is dropped."""
        dataset = _tiny_dataset()
        dataset.set_layer(Layer.NORMALIZED, np.ones((4, 3)), record={"method": "log_normalize"})
        dataset.set_layer(Layer.SCALED, np.zeros((4, 3)))
        dataset.set_layer(Layer.NORMALIZED, np.full((4, 3), 2.0), record={"method": "vst"})
        assert not dataset.has_layer(Layer.SCALED)
        assert dataset.normalization["method"] == "vst"

    def test_renormalizing_invalidates_lineage(self, clustered_dataset):
        """Embeddings, graphs and clusters derived from scaled data are removed."""
        assert clustered_dataset.embedding_names == ["pca"]
        matrix = clustered_dataset.get_layer(Layer.NORMALIZED).copy()
        clustered_dataset.set_layer(Layer.NORMALIZED, matrix, record={"method": "log_normalize"})
        assert clustered_dataset.embedding_names == []
        assert clustered_dataset.graph_names == []
        assert clustered_dataset.cluster_keys == []
        assert "leiden" not in clustered_dataset.obs.columns


class TestMetadata:
    """Tests for per-cell and per-feature metadata."""

    def test_series_aligned_by_index(self):
        """Series values are aligned on cell id."""
        dataset = _tiny_dataset()
        dataset.add_cell_metadata({"score": pd.Series([3.0, 0.0], index=["c3", "c0"])})
        obs = dataset.obs
        assert obs.loc["c0", "score"] == 0.0
        assert obs.loc["c3", "score"] == 3.0

    def test_array_length_checked(self):
        """Plain arrays must have one value per cell."""
        with pytest.raises(ConfigurationError, match="expected 4"):
            _tiny_dataset().add_cell_metadata({"score": [1, 2]})

    def test_obs_is_a_copy(self):
        """Modifying the returned metadata does not touch the dataset."""
        dataset = _tiny_dataset()
        obs = dataset.obs
        obs["extra"] = 1
        assert "extra" not in dataset.obs.columns

    def test_selected_features_in_rank_order(self):
        """Selected features follow variability rank."""
        dataset = _tiny_dataset()
        dataset.add_feature_metadata({
            "highly_variable": [True, False, True],
            "variability_rank": [2, 3, 1],
        })
        assert dataset.selected_features == ["f2", "f0"]


class TestSpatial:
    """Tests for spatial coordinates."""

    def test_set_and_get(self):
        """Coordinates are stored per cell."""
        coords = np.arange(8, dtype=float).reshape(4, 2)
        dataset = _tiny_dataset(spatial=coords)
        np.testing.assert_allclose(dataset.spatial_coordinates, coords)

    def test_none_without_coordinates(self):
        """Datasets without coordinates report None."""
        assert _tiny_dataset().spatial_coordinates is None

    def test_dataframe_aligned_by_cell_id(self):
        """DataFrame coordinates are reordered to the cell index."""
        dataset = _tiny_dataset()
        frame = pd.DataFrame(
            {"x": [3.0, 2.0, 1.0, 0.0], "y": [0.0, 0.0, 0.0, 0.0]},
            index=["c3", "c2", "c1", "c0"],
        )
        dataset.set_spatial_coordinates(frame)
        np.testing.assert_allclose(dataset.spatial_coordinates[:, 0], [0.0, 1.0, 2.0, 3.0])

    def test_shape_and_finite_checked(self):
        """Coordinates must be cells x 2 and finite."""
        dataset = _tiny_dataset()
        with pytest.raises(ConfigurationError, match="shape"):
            dataset.set_spatial_coordinates(np.zeros((4, 3)))
        coords = np.zeros((4, 2))
        coords[0, 0] = np.nan
        with pytest.raises(ConfigurationError, match="non-finite"):
            dataset.set_spatial_coordinates(coords)


class TestRecords:
    """Tests for embeddings, graphs and cluster assignments."""

    def test_embedding_round_trip(self):
        """Stored embeddings come back with their loadings and feature ids."""
        dataset = _tiny_dataset()
        dataset.set_layer(Layer.SCALED, np.zeros((4, 3)))
        loadings = np.array([[0.5], [-0.5]])
        dataset.set_embedding(ReducedEmbedding(
            name="pca",
            coordinates=np.arange(4, dtype=float).reshape(4, 1),
            source_kind="layer",
            source="scaled",
            loadings=loadings,
            feature_ids=("f2", "f0"),
        ))
        stored = dataset.get_embedding("pca")
        assert stored.n_components == 1
        assert set(stored.feature_ids) == {"f0", "f2"}
        by_feature = dict(zip(stored.feature_ids, stored.loadings[:, 0]))
        assert by_feature["f2"] == 0.5
        assert by_feature["f0"] == -0.5

    def test_embedding_copy_is_independent(self, clustered_dataset):
        """Mutating a returned embedding does not change the dataset."""
        embedding = clustered_dataset.get_embedding("pca")
        embedding.coordinates[:] = 0.0
        assert np.abs(clustered_dataset.get_embedding("pca").coordinates).sum() > 0

    def test_missing_embedding_raises(self):
        """Unknown embedding names list the available ones."""
        with pytest.raises(ConfigurationError, match="Available"):
            _tiny_dataset().get_embedding("umap")

    def test_graph_requires_known_embedding(self):
        """Graphs must refer to a stored embedding."""
        graph = NeighborGraph(
            name="snn",
            adjacency=sparse.csr_matrix((4, 4)),
            embedding="pca",
            dims=(0, 1),
            k=2,
        )
        with pytest.raises(ConfigurationError, match="unknown embedding"):
            _tiny_dataset().set_graph(graph)

    def test_clusters_require_every_cell(self, clustered_dataset):
        """A partial assignment is rejected."""
        labels = pd.Series([0, 1], index=clustered_dataset.cell_ids[:2])
        assignment = ClusterAssignment(
            key="partial", labels=labels, graph="snn", resolution=1.0, seed=0
        )
        with pytest.raises(ConfigurationError, match="do not cover every cell"):
            clustered_dataset.set_clusters(assignment)

    def test_remove_embedding_cascades(self, clustered_dataset):
        """Removing an embedding drops the graph and clusters built on it."""
        clustered_dataset.remove_embedding("pca")
        assert clustered_dataset.graph_names == []
        assert clustered_dataset.cluster_keys == []


class TestClusterAssignment:
    """Tests for the ClusterAssignment record."""

    def _assignment(self, labels):
        series = pd.Series(labels, index=[f"c{i}" for i in range(len(labels))])
        return ClusterAssignment(key="k", labels=series, graph="g", resolution=1.0, seed=0)

    def test_sizes_and_members(self):
        """Cluster sizes and members are derived from labels."""
        assignment = self._assignment([0, 0, 1, 0])
        assert assignment.n_clusters == 2
        assert assignment.cluster_sizes == {0: 3, 1: 1}
        assert list(assignment.cells_in(1)) == ["c2"]

    def test_partition_ignores_label_values(self):
        """Relabelled clusters give the same partition."""
        first = self._assignment([0, 0, 1, 2])
        second = self._assignment([5, 5, 3, 9])
        assert first.partition() == second.partition()

    def test_annotate_keeps_unmapped_ids(self):
        """Unmapped clusters keep their id as name."""
        names = self._assignment([0, 1, 2]).annotate({0: "T cell", "1": "B cell"})
        assert names.tolist() == ["T cell", "B cell", "2"]


class TestSubsetAndPersistence:
    """Tests for subsetting, copying and snapshots."""

    def test_subset_keeps_normalized_drops_lineage(self, clustered_dataset):
        """Subsets keep counts and normalized data but no derived records."""
        cells = list(clustered_dataset.cell_ids[:30])
        features = list(clustered_dataset.feature_ids[:20])
        sub = clustered_dataset.subset(cells=cells, features=features)
        assert (sub.n_cells, sub.n_features) == (30, 20)
        assert sub.has_layer(Layer.NORMALIZED)
        assert not sub.has_layer(Layer.SCALED)
        assert sub.embedding_names == []
        assert sub.cluster_keys == []
        assert "leiden" not in sub.obs.columns
        assert clustered_dataset.embedding_names == ["pca"]

    def test_copy_is_independent(self):
        """Copies do not share metadata."""
        dataset = _tiny_dataset()
        copy = dataset.copy()
        copy.add_cell_metadata({"flag": [1, 1, 1, 1]})
        assert "flag" not in dataset.obs.columns

    def test_save_and_load(self, clustered_dataset, tmp_path):
        """A snapshot restores layers, records and lineage."""
        path = clustered_dataset.save(tmp_path / "snap" / "clustered.h5ad")
        loaded = Dataset.load(path)

        assert loaded.dataset_id == "two_group"
        assert loaded.has_layer(Layer.SCALED)
        assert loaded.normalization["method"] == "log_normalize"
        assert loaded.embedding_names == ["pca"]
        assert loaded.graph_names == ["snn"]
        assert loaded.cluster_keys == ["leiden"]
        np.testing.assert_allclose(
            loaded.get_embedding("pca").coordinates,
            clustered_dataset.get_embedding("pca").coordinates,
        )
        assert loaded.get_graph("snn").k == 10
        assert loaded.get_clusters("leiden").partition() == (
            clustered_dataset.get_clusters("leiden").partition()
        )
        assert loaded.selected_features == clustered_dataset.selected_features

    def test_load_rejects_plain_anndata(self, two_group_h5ad):
        """Only snapshots written by save can be loaded."""
        with pytest.raises(ConfigurationError, match="not a cellscope snapshot"):
            Dataset.load(two_group_h5ad)


class TestDocumentation:
    """Tests for the public Dataset surface."""

    def test_public_members_documented(self):
        """Every public method and property carries a docstring."""
        undocumented = [
            name for name, member in vars(Dataset).items()
            if not name.startswith("_")
            and callable(getattr(member, "fget", member))
            and not (getattr(member, "__doc__", None) or "").strip()
        ]
        assert undocumented == []
