"""
Pytest configuration and fixtures for the cellpipe test suite.

This module provides the shared fixtures: isolated workspaces, synthetic
datasets at every stage of the workflow, on-disk 10x inputs and a
pipeline configuration for the small end-to-end matrix.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import plotly.graph_objects as go
import pytest
from faker import Faker
from rich.logging import RichHandler

from cellpipe.core.dataset import Dataset
from cellpipe.tools.clustering_service import ClusteringService
from cellpipe.tools.preprocessing_service import PreprocessingService
from tests.mock_data import (
    MEDIUM_DATASET_CONFIG,
    SMALL_DATASET_CONFIG,
    DatasetFactory,
    toy_pipeline_counts,
    write_10x_directory,
)

# Suppress library chatter during testing
logging.getLogger("scanpy").setLevel(logging.ERROR)
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("numba").setLevel(logging.ERROR)
logging.getLogger("matplotlib").setLevel(logging.ERROR)

# Initialize faker for generating test data
fake = Faker()
Faker.seed(42)

TEST_WORKSPACE_PREFIX = "cellpipe_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="function")
def temp_workspace() -> Generator[Path, None, None]:
    """Create an isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=TEST_WORKSPACE_PREFIX))
    (workspace_path / "data").mkdir(exist_ok=True)
    (workspace_path / "output").mkdir(exist_ok=True)

    try:
        yield workspace_path
    finally:
        shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The CLI installs a RichHandler on the root logger; remove it after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers and isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def fake_png_export(mocker):
    """Replace kaleido export with a write of placeholder bytes."""

    def _write_image(fig, path, **kwargs):
        Path(path).write_bytes(b"\x89PNG placeholder")

    return mocker.patch.object(
        go.Figure, "write_image", autospec=True, side_effect=_write_image
    )


# ==============================================================================
# Dataset Fixtures
# ==============================================================================


@pytest.fixture
def small_dataset() -> Dataset:
    """Two groups of 15 observations, raw counts only."""
    return DatasetFactory(config=SMALL_DATASET_CONFIG)


@pytest.fixture
def mock_dataset() -> Dataset:
    """Three groups of 30 observations, raw counts only."""
    return DatasetFactory(config=MEDIUM_DATASET_CONFIG)


@pytest.fixture
def preprocessed_dataset(mock_dataset) -> Dataset:
    """Normalized, 30 variable features selected and scaled."""
    service = PreprocessingService()
    dataset, _ = service.normalize(mock_dataset, scale_factor=1e4)
    dataset, _ = service.select_variable_features(dataset, n_features=30)
    dataset, _ = service.scale(dataset, max_value=10)
    return dataset


@pytest.fixture
def graph_dataset(preprocessed_dataset) -> Dataset:
    """Preprocessed dataset with 10 principal components and a kNN graph."""
    service = ClusteringService()
    dataset, _ = service.run_pca(preprocessed_dataset, n_components=10)
    dataset, _ = service.build_neighbor_graph(dataset, n_neighbors=10, n_dims=10)
    return dataset


@pytest.fixture
def clustered_dataset(graph_dataset) -> Dataset:
    """Graph dataset with Leiden cluster labels."""
    dataset, _ = ClusteringService().assign_clusters(graph_dataset, resolution=0.5)
    return dataset


# ==============================================================================
# On-disk Input Fixtures
# ==============================================================================


@pytest.fixture
def toy_10x_dir(temp_workspace) -> Path:
    """The ten-observation end-to-end matrix as a Cell Ranger v3 directory."""
    counts, barcodes, features = toy_pipeline_counts()
    return write_10x_directory(
        temp_workspace / "toy" / "filtered_feature_bc_matrix", counts, barcodes, features
    )


@pytest.fixture
def toy_config_dict(toy_10x_dir, temp_workspace) -> Dict[str, Any]:
    """Pipeline configuration sized for the end-to-end matrix."""
    return {
        "name": "toy",
        "seed": 0,
        "loader": {"source": str(toy_10x_dir), "min_cells": 0, "min_features": 0},
        "qc": {"min_features": 2, "max_features": 15, "max_mito_fraction": 0.5},
        "variable_features": {"n_features": 5},
        "pca": {"n_components": 3},
        "neighbors": {"n_neighbors": 4, "n_dims": 3},
        "clustering": {"resolution": 0.5},
        "umap": {"init_pos": "pca"},
        "markers": {"min_detection_fraction": 0.25, "min_log2_fold_change": 0.25},
        "annotation": {"labels": ["Alpha", "Beta"]},
        "output": {
            "output_dir": str(temp_workspace / "output"),
            "data_dir": str(temp_workspace / "data"),
            "plots": False,
        },
    }
