"""
Unit tests for the Dataset record.

Tests field bookkeeping, joint observation subsetting and the AnnData
round trip used by the snapshot backend.
"""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from cellpipe.core.dataset import DATASET_FIELDS, Dataset, sorted_cluster_ids


# ===============================================================================
# Fixtures
# ===============================================================================


@pytest.fixture
def tiny_dataset():
    counts = spr.csr_matrix(np.arange(12, dtype=float).reshape(4, 3))
    metadata = pd.DataFrame(
        {"n_features": [2, 3, 3, 3]}, index=pd.Index(["a", "b", "c", "d"], name="barcode")
    )
    return Dataset(
        counts=counts,
        features=pd.Index(["G1", "G2", "MT-1"]),
        metadata=metadata,
        name="tiny",
    )


# ===============================================================================
# Construction
# ===============================================================================


@pytest.mark.unit
class TestDatasetConstruction:
    """Test suite for Dataset invariants at construction."""

    def test_dense_counts_are_converted_to_csr(self):
        """Dense input counts are stored as a CSR matrix."""
        dataset = Dataset(
            counts=np.ones((2, 2)),
            features=["A", "B"],
            metadata=pd.DataFrame(index=["x", "y"]),
        )

        assert spr.isspmatrix_csr(dataset.counts)
        assert dataset.shape == (2, 2)

    def test_shape_mismatch_rejected(self):
        """Counts must match metadata rows and feature count."""
        with pytest.raises(ValueError, match="does not match"):
            Dataset(
                counts=np.ones((3, 2)),
                features=["A", "B"],
                metadata=pd.DataFrame(index=["x", "y"]),
            )

    def test_duplicate_features_rejected(self):
        """Feature identifiers are unique."""
        with pytest.raises(ValueError, match="unique"):
            Dataset(
                counts=np.ones((1, 2)),
                features=["A", "A"],
                metadata=pd.DataFrame(index=["x"]),
            )


@pytest.mark.unit
class TestDatasetFields:
    """Test suite for Dataset.has and cluster bookkeeping."""

    def test_initial_fields(self, tiny_dataset):
        """A fresh dataset holds counts and metadata only."""
        present = {name for name in DATASET_FIELDS if tiny_dataset.has(name)}
        assert present == {"counts", "metadata"}

    def test_reduction_addressing(self, tiny_dataset):
        """Single embeddings are addressed as reductions.<name>."""
        assert not tiny_dataset.has("reductions.pca")
        tiny_dataset.reductions["pca"] = np.zeros((4, 2))
        assert tiny_dataset.has("reductions.pca")
        assert tiny_dataset.has("reductions")
        assert not tiny_dataset.has("reductions.umap")

    def test_unknown_field_raises(self, tiny_dataset):
        with pytest.raises(KeyError):
            tiny_dataset.has("velocity")

    def test_cluster_ids_natural_order(self, tiny_dataset):
        """Cluster IDs sort numerically, "2" before "10"."""
        tiny_dataset.cluster_labels = pd.Series(
            ["10", "2", "0", "2"], index=tiny_dataset.observation_ids
        )
        assert tiny_dataset.cluster_ids() == ["0", "2", "10"]

    def test_sorted_cluster_ids_mixed(self):
        """Numeric IDs come before named ones."""
        assert sorted_cluster_ids(["B", "1", "A", "0"]) == ["0", "1", "A", "B"]


# ===============================================================================
# Subsetting
# ===============================================================================


@pytest.mark.unit
class TestSubsetObservations:
    """Test suite for joint observation subsetting."""

    def test_all_observation_fields_are_subset(self, tiny_dataset):
        """Counts, matrices, embeddings, graph and labels shrink together."""
        tiny_dataset.normalized = tiny_dataset.counts.copy()
        tiny_dataset.scaled_matrix = np.arange(8, dtype=float).reshape(4, 2)
        tiny_dataset.reductions["pca"] = np.arange(8, dtype=float).reshape(4, 2)
        tiny_dataset.graph = spr.csr_matrix(np.ones((4, 4)))
        tiny_dataset.graph_distances = spr.csr_matrix(np.ones((4, 4)))
        tiny_dataset.cluster_labels = pd.Series(
            ["0", "0", "1", "1"], index=tiny_dataset.observation_ids
        )

        subset = tiny_dataset.subset_observations([True, False, True, False])

        assert list(subset.observation_ids) == ["a", "c"]
        assert subset.counts.shape == (2, 3)
        assert subset.normalized.shape == (2, 3)
        assert subset.scaled_matrix.shape == (2, 2)
        assert subset.reductions["pca"].tolist() == [[0.0, 1.0], [4.0, 5.0]]
        assert subset.graph.shape == (2, 2)
        assert subset.graph_distances.shape == (2, 2)
        assert list(subset.cluster_labels) == ["0", "1"]

    def test_subset_leaves_original_untouched(self, tiny_dataset):
        tiny_dataset.subset_observations([True, True, False, False])
        assert tiny_dataset.n_observations == 4

    def test_subset_shares_provenance_and_params(self, tiny_dataset):
        """Params and provenance carry over to the subset."""
        tiny_dataset.params["load"] = {"min_cells": 3}
        subset = tiny_dataset.subset_observations([True, True, True, False])
        assert subset.params == {"load": {"min_cells": 3}}
        assert subset.provenance is tiny_dataset.provenance

    def test_series_mask_is_aligned_by_index(self, tiny_dataset):
        mask = pd.Series([True, True], index=["d", "b"])
        subset = tiny_dataset.subset_observations(mask)
        assert list(subset.observation_ids) == ["b", "d"]

    def test_wrong_mask_length(self, tiny_dataset):
        with pytest.raises(ValueError, match="Mask length"):
            tiny_dataset.subset_observations([True, False])


# ===============================================================================
# AnnData conversion
# ===============================================================================


@pytest.mark.unit
class TestAnnDataConversion:
    """Test suite for Dataset <-> AnnData conversion."""

    def test_round_trip_keeps_analysis_fields(self, tiny_dataset):
        """Every produced field survives to_anndata/from_anndata."""
        tiny_dataset.normalized = spr.csr_matrix(np.log1p(tiny_dataset.counts.toarray()))
        tiny_dataset.variable_features = ["MT-1", "G2"]
        tiny_dataset.pca_loadings = np.array([[0.5], [-0.5]])
        tiny_dataset.pca_variance_ratio = np.array([0.9])
        tiny_dataset.reductions["pca"] = np.ones((4, 1))
        tiny_dataset.reductions["umap"] = np.zeros((4, 2))
        tiny_dataset.graph = spr.csr_matrix(np.eye(4))
        tiny_dataset.graph_distances = spr.csr_matrix(np.eye(4))
        tiny_dataset.cluster_labels = pd.Series(
            ["1", "0", "1", "0"], index=tiny_dataset.observation_ids, name="cluster"
        )
        tiny_dataset.markers = pd.DataFrame(
            {"cluster": ["0"], "feature": ["G1"], "log2_fold_change": [1.5]}
        )
        tiny_dataset.params["pca"] = {"n_components": 1}
        tiny_dataset.provenance.log_stage("pca", "ClusteringService", {"n_components": 1})

        restored = Dataset.from_anndata(tiny_dataset.to_anndata())

        assert restored.name == "tiny"
        assert (restored.counts != tiny_dataset.counts).nnz == 0
        assert np.allclose(restored.normalized.toarray(), tiny_dataset.normalized.toarray())
        assert restored.variable_features == ["MT-1", "G2"]
        assert np.allclose(restored.pca_loadings, tiny_dataset.pca_loadings)
        assert set(restored.reductions) == {"pca", "umap"}
        assert list(restored.cluster_labels) == ["1", "0", "1", "0"]
        assert restored.params == {"pca": {"n_components": 1}}
        assert restored.markers["feature"].tolist() == ["G1"]
        assert [a["type"] for a in restored.provenance.activities] == ["pca"]

    def test_loadings_expand_to_all_features(self, tiny_dataset):
        """varm['PCs'] covers every feature with zeros outside the variable set."""
        tiny_dataset.variable_features = ["G2"]
        tiny_dataset.pca_loadings = np.array([[2.0]])

        adata = tiny_dataset.to_anndata()

        assert adata.varm["PCs"].tolist() == [[0.0], [2.0], [0.0]]
        assert adata.var["highly_variable"].tolist() == [False, True, False]
