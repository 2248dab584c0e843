"""
Unit tests for the preprocessing service.

Tests log-normalization values, exact-k variable feature selection and
standardization including the zero-variance recovery.
"""

import warnings

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as spr

from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import DegenerateFeature, InsufficientData
from cellpipe.tools.preprocessing_service import PreprocessingError, PreprocessingService


# ===============================================================================
# Fixtures
# ===============================================================================


@pytest.fixture
def service():
    return PreprocessingService()


@pytest.fixture
def normalized_dataset(service, mock_dataset):
    dataset, _ = service.normalize(mock_dataset, scale_factor=1e4)
    return dataset


def _dataset(counts, features):
    counts = np.asarray(counts, dtype=float)
    return Dataset(
        counts=spr.csr_matrix(counts),
        features=features,
        metadata=pd.DataFrame(index=[f"c{i}" for i in range(counts.shape[0])]),
    )


# ===============================================================================
# Normalization
# ===============================================================================


@pytest.mark.unit
class TestNormalize:
    """Test suite for LogNormalize."""

    def test_values(self, service):
        """normalized = log1p(count / total * scale_factor)."""
        dataset = _dataset([[1, 3], [2, 2]], ["A", "B"])

        dataset, stats = service.normalize(dataset, scale_factor=100)

        expected = np.log1p(np.array([[25.0, 75.0], [50.0, 50.0]]))
        assert np.allclose(dataset.normalized.toarray(), expected)
        assert stats["scale_factor"] == 100

    def test_counts_unchanged_and_shape_kept(self, service, mock_dataset):
        before = mock_dataset.counts.copy()

        dataset, _ = service.normalize(mock_dataset)

        assert dataset.normalized.shape == dataset.counts.shape
        assert (dataset.counts != before).nnz == 0
        assert spr.isspmatrix_csr(dataset.normalized)

    def test_rows_sum_to_scale_factor(self, service, mock_dataset):
        dataset, _ = service.normalize(mock_dataset, scale_factor=1e4)
        totals = np.expm1(dataset.normalized.toarray()).sum(axis=1)
        assert np.allclose(totals, 1e4)

    def test_empty_observation_is_reported(self, service):
        dataset, stats = service.normalize(_dataset([[0, 0], [1, 1]], ["A", "B"]))
        assert stats["n_empty_observations"] == 1
        assert np.all(np.isfinite(dataset.normalized.toarray()))


# ===============================================================================
# Variable features
# ===============================================================================


@pytest.mark.unit
class TestVariableFeatures:
    """Test suite for exact-k dispersion ranking."""

    @pytest.mark.parametrize("k", [1, 10, 30])
    def test_exactly_k_features(self, service, normalized_dataset, k):
        dataset, stats = service.select_variable_features(normalized_dataset, n_features=k)

        assert len(dataset.variable_features) == k
        assert len(set(dataset.variable_features)) == k
        assert set(dataset.variable_features) <= set(dataset.features)
        assert stats["n_variable_features"] == k

    def test_all_features(self, service, normalized_dataset):
        """k equal to the feature count selects every feature."""
        n = normalized_dataset.n_features
        dataset, _ = service.select_variable_features(normalized_dataset, n_features=n)
        assert sorted(dataset.variable_features) == sorted(dataset.features)

    def test_too_many_features(self, service, normalized_dataset):
        with pytest.raises(InsufficientData) as exc_info:
            service.select_variable_features(
                normalized_dataset, n_features=normalized_dataset.n_features + 1
            )
        assert exc_info.value.details["stage"] == "variable_features"
        assert exc_info.value.details["available"] == normalized_dataset.n_features

    def test_zero_features(self, service, normalized_dataset):
        with pytest.raises(InsufficientData):
            service.select_variable_features(normalized_dataset, n_features=0)

    def test_order_is_decreasing_score(self, service, normalized_dataset):
        _, stats = service.select_variable_features(normalized_dataset, n_features=20)
        scores = [s for s in stats["scores"].values() if s is not None]
        assert scores == sorted(scores, reverse=True)

    def test_unknown_flavor(self, service, normalized_dataset):
        with pytest.raises(PreprocessingError, match="Unknown flavor"):
            service.select_variable_features(normalized_dataset, 5, flavor="pearson")


# ===============================================================================
# Scaling
# ===============================================================================


@pytest.mark.unit
class TestScale:
    """Test suite for standardization over the variable features."""

    def test_zero_mean_unit_variance(self, service, normalized_dataset):
        dataset, _ = service.select_variable_features(normalized_dataset, n_features=20)

        dataset, stats = service.scale(dataset, max_value=None)

        scaled = dataset.scaled_matrix
        assert scaled.shape == (dataset.n_observations, 20)
        assert np.allclose(scaled.mean(axis=0), 0, atol=1e-8)
        assert np.allclose(scaled.std(axis=0, ddof=1), 1, atol=1e-6)
        assert stats["degenerate_features"] == []

    def test_clipping(self, service, normalized_dataset):
        dataset, _ = service.select_variable_features(normalized_dataset, n_features=20)
        dataset, _ = service.scale(dataset, max_value=0.5)
        assert dataset.scaled_matrix.max() <= 0.5

    def test_zero_variance_feature_scales_to_zero(self, service):
        """A constant feature warns and is set to 0 in every observation."""
        dataset = _dataset([[1, 5, 2], [4, 5, 2], [9, 5, 2]], ["A", "FLAT", "B"])
        dataset.normalized = dataset.counts.copy()
        dataset.variable_features = ["A", "FLAT"]

        with pytest.warns(DegenerateFeature, match="zero variance") as record:
            dataset, stats = service.scale(dataset)

        assert np.all(dataset.scaled_matrix[:, 1] == 0.0)
        assert np.all(np.isfinite(dataset.scaled_matrix))
        assert stats["degenerate_features"] == ["FLAT"]
        degenerate = [w.message for w in record if isinstance(w.message, DegenerateFeature)]
        assert degenerate[0].details == {"features": ["FLAT"]}

    def test_degenerate_feature_can_be_escalated(self, service):
        dataset = _dataset([[1, 5], [4, 5]], ["A", "FLAT"])
        dataset.normalized = dataset.counts.copy()
        dataset.variable_features = ["A", "FLAT"]

        with warnings.catch_warnings():
            warnings.simplefilter("error", DegenerateFeature)
            with pytest.raises(DegenerateFeature):
                service.scale(dataset)

    def test_column_order_follows_variable_features(self, service):
        dataset = _dataset([[1, 10], [2, 20], [3, 60]], ["A", "B"])
        dataset.normalized = dataset.counts.copy()
        dataset.variable_features = ["B", "A"]

        dataset, _ = service.scale(dataset, max_value=None)

        b = np.array([10.0, 20.0, 60.0])
        expected_b = (b - b.mean()) / b.std(ddof=1)
        assert np.allclose(dataset.scaled_matrix[:, 0], expected_b, atol=1e-6)
