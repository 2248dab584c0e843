"""
Unit tests for the marker service.

Tests the marker table layout and ordering, threshold filtering, the
handling of single-observation and single-cluster inputs, and pairwise
comparisons.
"""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from cellpipe.core.dataset import MARKER_COLUMNS, Dataset
from cellpipe.tools.marker_service import (
    MarkerError,
    MarkerService,
    empty_markers,
    sort_markers,
)


# ===============================================================================
# Fixtures
# ===============================================================================


@pytest.fixture
def service():
    return MarkerService()


@pytest.fixture
def markers_dataset(service, clustered_dataset):
    dataset, _ = service.find_all_markers(
        clustered_dataset, min_detection_fraction=0.25, min_log2_fold_change=0.25
    )
    return dataset


def _labelled_dataset(counts, labels):
    counts = np.asarray(counts, dtype=float)
    ids = [f"c{i}" for i in range(counts.shape[0])]
    dataset = Dataset(
        counts=spr.csr_matrix(counts),
        features=[f"F{j}" for j in range(counts.shape[1])],
        metadata=pd.DataFrame(index=ids),
    )
    dataset.normalized = spr.csr_matrix(np.log1p(counts))
    dataset.cluster_labels = pd.Series(labels, index=ids, name="cluster")
    return dataset


# ===============================================================================
# Helpers
# ===============================================================================


@pytest.mark.unit
class TestMarkerTableHelpers:
    """Test suite for the module-level table helpers."""

    def test_empty_markers_layout(self):
        table = empty_markers()
        assert list(table.columns) == MARKER_COLUMNS
        assert table.empty

    def test_sort_markers_natural_cluster_order(self):
        table = pd.DataFrame(
            {
                "cluster": ["10", "2", "2", "10"],
                "feature": ["a", "b", "c", "d"],
                "log2_fold_change": [1.0, 0.5, 3.0, 2.0],
            }
        )

        ranked = sort_markers(table)

        assert ranked["cluster"].tolist() == ["2", "2", "10", "10"]
        assert ranked["feature"].tolist() == ["c", "b", "d", "a"]


# ===============================================================================
# One-vs-rest
# ===============================================================================


@pytest.mark.unit
class TestFindAllMarkers:
    """Test suite for one-vs-rest marker detection."""

    def test_columns(self, markers_dataset):
        assert list(markers_dataset.markers.columns) == MARKER_COLUMNS
        assert not markers_dataset.markers.empty

    def test_thresholds_hold_for_every_row(self, markers_dataset):
        markers = markers_dataset.markers
        assert (np.maximum(markers["pct_in"], markers["pct_out"]) >= 0.25).all()
        assert (markers["log2_fold_change"] >= 0.25).all()
        assert markers["p_value_adj"].between(0, 1).all()

    def test_sorted_by_cluster_then_fold_change(self, markers_dataset):
        markers = markers_dataset.markers
        assert markers["cluster"].tolist() == sort_markers(markers)["cluster"].tolist()
        for _, group in markers.groupby("cluster"):
            assert group["log2_fold_change"].is_monotonic_decreasing

    def test_marker_genes_found_for_their_cluster(self, markers_dataset):
        """Synthetic marker genes appear among the markers."""
        features = set(markers_dataset.markers["feature"])
        assert any(f.startswith("MARKER") for f in features)

    def test_stats(self, service, clustered_dataset):
        dataset, stats = service.find_all_markers(clustered_dataset, 0.25, 0.25)
        assert stats["n_markers"] == len(dataset.markers)
        assert stats["skipped_clusters"] == []
        assert set(stats["markers_per_cluster"]) == set(dataset.cluster_ids())

    def test_single_observation_cluster_is_skipped(self, service):
        counts = [[9, 0, 1], [8, 0, 1], [7, 1, 0], [0, 9, 1], [1, 8, 0], [0, 0, 9]]
        dataset = _labelled_dataset(counts, ["0", "0", "0", "1", "1", "2"])

        dataset, stats = service.find_all_markers(dataset, 0.1, 0.25)

        assert stats["skipped_clusters"] == ["2"]
        assert "2" not in set(dataset.markers["cluster"])
        assert stats["markers_per_cluster"]["2"] == 0

    def test_single_cluster_gives_empty_table(self, service):
        dataset = _labelled_dataset([[1, 2], [3, 4], [5, 6]], ["0", "0", "0"])

        dataset, stats = service.find_all_markers(dataset, 0.1, 0.25)

        assert dataset.markers.empty
        assert list(dataset.markers.columns) == MARKER_COLUMNS
        assert stats["n_clusters_tested"] == 0


# ===============================================================================
# Pairwise comparisons and top markers
# ===============================================================================


@pytest.mark.unit
class TestFindMarkers:
    """Test suite for comparisons between two clusters."""

    def test_against_rest(self, service, clustered_dataset):
        first = clustered_dataset.cluster_ids()[0]
        table = service.find_markers(clustered_dataset, first)

        assert list(table.columns) == MARKER_COLUMNS
        assert set(table["cluster"]) <= {first}

    def test_against_other_cluster(self, service, clustered_dataset):
        first, second = clustered_dataset.cluster_ids()[:2]
        table = service.find_markers(clustered_dataset, first, second, only_positive=True)

        assert not table.empty
        assert list(table.columns) == MARKER_COLUMNS
        assert set(table["cluster"]) == {first}
        assert (table["log2_fold_change"] > 0).all()

    def test_reference_fraction_uses_other_cluster(self, service, clustered_dataset):
        first, second = clustered_dataset.cluster_ids()[:2]
        table = service.find_markers(
            clustered_dataset,
            first,
            second,
            min_detection_fraction=0.0,
            min_log2_fold_change=0.0,
        )

        labels = clustered_dataset.cluster_labels.astype(str).to_numpy()
        normalized = clustered_dataset.normalized
        features = list(clustered_dataset.features.astype(str))
        row = table.iloc[0]
        column = normalized[labels == second][:, features.index(row["feature"])]
        column = column.toarray() if hasattr(column, "toarray") else column
        expected = float((np.asarray(column) > 0).mean())

        assert row["pct_out"] == pytest.approx(expected)
        assert table["pct_out"].between(0, 1).all()

    def test_unknown_cluster(self, service, clustered_dataset):
        with pytest.raises(MarkerError, match="not found"):
            service.find_markers(clustered_dataset, "999")

    def test_same_cluster_twice(self, service, clustered_dataset):
        with pytest.raises(MarkerError, match="must differ"):
            service.find_markers(clustered_dataset, "0", "0")


@pytest.mark.unit
class TestTopMarkers:
    """Test suite for top marker selection."""

    def test_top_markers_per_cluster(self, service, markers_dataset):
        top = service.top_markers(markers_dataset.markers, n=2)
        assert (top.groupby("cluster").size() <= 2).all()

    def test_top_features_are_unique(self, service, markers_dataset):
        features = service.top_features(markers_dataset.markers, n=3)
        assert len(features) == len(set(features))

    def test_empty_input(self, service):
        assert service.top_markers(None).empty
        assert service.top_features(empty_markers()) == []
