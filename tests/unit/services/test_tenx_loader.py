"""
Unit tests for the 10x matrix loader.

Tests Cell Ranger v2 and v3 directory layouts, single-column feature
files, archives and the min_cells/min_features pre-filter on the small
hand-built matrix.
"""

import io

import pytest
from rich.console import Console

from cellpipe.core.exceptions import DataUnavailable, InsufficientData
from cellpipe.core.provenance import ProvenanceTracker
from cellpipe.services.data_access.tenx_downloader import TenXDownloader
from cellpipe.services.data_access.tenx_loader import TenXLoader
from tests.mock_data import toy_pipeline_counts, write_10x_archive, write_10x_directory


@pytest.fixture
def loader(temp_workspace):
    downloader = TenXDownloader(
        temp_workspace / "data", console=Console(file=io.StringIO())
    )
    return TenXLoader(downloader)


@pytest.fixture
def toy():
    return toy_pipeline_counts()


@pytest.mark.unit
class TestLayouts:
    """Test suite for the supported on-disk layouts."""

    def test_v3_directory(self, loader, toy_10x_dir, toy):
        counts, barcodes, features = toy

        dataset, stats = loader.load(toy_10x_dir, min_cells=0, min_features=0, name="toy")

        assert dataset.shape == (10, 20)
        assert list(dataset.observation_ids) == barcodes
        assert list(dataset.features) == features
        assert dataset.metadata.index.name == "barcode"
        assert (dataset.counts.toarray() == counts).all()
        assert dataset.name == "toy"
        assert stats["features_format"] == "standard_10x"

    def test_v2_directory(self, loader, temp_workspace, toy):
        counts, barcodes, features = toy
        path = write_10x_directory(
            temp_workspace / "v2" / "hg19", counts, barcodes, features, compressed=False
        )

        dataset, _ = loader.load(path, min_cells=0, min_features=0)

        assert dataset.shape == (10, 20)
        assert list(dataset.features) == features

    def test_single_column_features(self, loader, temp_workspace, toy):
        counts, barcodes, features = toy
        path = write_10x_directory(
            temp_workspace / "single", counts, barcodes, features, single_column=True
        )

        dataset, stats = loader.load(path, min_cells=0, min_features=0)

        assert stats["features_format"] == "symbols_only"
        assert list(dataset.features) == features
        assert (dataset.counts.toarray() == counts).all()

    def test_archive(self, loader, temp_workspace, toy_10x_dir):
        archive = write_10x_archive(toy_10x_dir, temp_workspace / "toy_matrices.tar.gz")

        dataset, stats = loader.load(archive, min_cells=0, min_features=0)

        assert dataset.shape == (10, 20)
        assert stats["matrix_dir"].endswith("hg19")

    def test_parent_directory_is_searched(self, loader, toy_10x_dir):
        dataset, _ = loader.load(toy_10x_dir.parent, min_cells=0, min_features=0)
        assert dataset.n_observations == 10

    def test_missing_features_file(self, loader, toy_10x_dir):
        (toy_10x_dir / "features.tsv.gz").unlink()
        with pytest.raises(DataUnavailable, match="No features/genes file"):
            loader.load(toy_10x_dir, min_cells=0, min_features=0)

    def test_corrupt_matrix(self, loader, toy_10x_dir):
        (toy_10x_dir / "matrix.mtx.gz").write_bytes(b"not a matrix")
        with pytest.raises(DataUnavailable, match="Failed to parse"):
            loader.load(toy_10x_dir, min_cells=0, min_features=0)

    @pytest.mark.parametrize(
        "first_line,expected",
        [
            ("ENSG00000243485\tMIR1302-2HG\tGene Expression", "standard_10x"),
            ("ENSG00000243485", "ids_only"),
            ("MIR1302-2HG", "symbols_only"),
        ],
    )
    def test_detect_features_format(self, loader, temp_workspace, first_line, expected):
        path = temp_workspace / "features.tsv"
        path.write_text(first_line + "\n")
        assert loader.detect_features_format(path) == expected


@pytest.mark.unit
class TestPrefilter:
    """Test suite for the load-time pre-filter."""

    def test_observations_then_features(self, loader, toy_10x_dir):
        """CELL8 has three features; GENE14-17 are only seen in CELL9."""
        dataset, stats = loader.load(toy_10x_dir, min_cells=2, min_features=4)

        assert "CELL8-1" not in dataset.observation_ids
        assert dataset.n_observations == 9
        assert not any(f in dataset.features for f in ["GENE14", "GENE15", "GENE16", "GENE17"])
        assert dataset.n_features == 16
        assert stats["n_observations_raw"] == 10
        assert stats["n_features_raw"] == 20

    def test_metadata_metrics_follow_filtering(self, loader, toy_10x_dir):
        dataset, _ = loader.load(toy_10x_dir, min_cells=2, min_features=4)
        assert dataset.metadata.loc["CELL9-1", "n_features"] == 16

    def test_nothing_survives(self, loader, toy_10x_dir):
        with pytest.raises(InsufficientData) as exc_info:
            loader.load(toy_10x_dir, min_cells=0, min_features=100)
        assert exc_info.value.details["stage"] == "load"

    def test_provenance_is_attached(self, loader, toy_10x_dir):
        tracker = ProvenanceTracker()
        dataset, _ = loader.load(toy_10x_dir, 0, 0, provenance=tracker)
        assert dataset.provenance is tracker
