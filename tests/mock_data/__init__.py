"""
Mock data generation utilities for the cellpipe test suite.

Synthetic count matrices keep a known cluster structure while being
completely reproducible.
"""

from .base import (
    LARGE_DATASET_CONFIG,
    MEDIUM_DATASET_CONFIG,
    SMALL_DATASET_CONFIG,
    MockDataConfig,
)
from .factories import DatasetFactory, make_barcodes, marker_gene_names
from .generators import toy_pipeline_counts, write_10x_archive, write_10x_directory

__all__ = [
    # Factories
    "DatasetFactory",
    "make_barcodes",
    "marker_gene_names",
    # Generators
    "toy_pipeline_counts",
    "write_10x_archive",
    "write_10x_directory",
    # Configuration
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "MEDIUM_DATASET_CONFIG",
    "LARGE_DATASET_CONFIG",
]
