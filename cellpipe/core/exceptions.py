"""
Core exceptions for cellpipe.

This module provides the exception hierarchy used by the pipeline
orchestrator and its stages. Fatal errors abort the run before the
snapshot is written; DegenerateFeature is a warning that stages recover
from locally.
"""

from typing import Any, Dict, Optional


class CellpipeCoreError(Exception):
    """Base exception for all cellpipe core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DataUnavailable(CellpipeCoreError):
    """
    Raised when the input matrix cannot be fetched, extracted or parsed.

    Raised by the loader, so no stage has run when it surfaces.

    Attributes:
        details: Contains:
            - source: URL or path that was requested
            - reason: Underlying error message

    Example:
        try:
            dataset = loader.load(source)
        except DataUnavailable as e:
            print(f"Cannot load {e.details['source']}: {e.details['reason']}")
    """

    pass


class InsufficientData(CellpipeCoreError):
    """
    Raised when too few observations or features remain for a stage.

    Covers empty QC output, more variable features requested than exist,
    PCA rank larger than the data supports and neighbor counts larger than
    the number of observations.

    Attributes:
        details: Contains:
            - stage: Stage that detected the problem
            - required: What the stage needed
            - available: What the dataset provides
    """

    pass


class DegenerateFeature(CellpipeCoreError, UserWarning):
    """
    Warning emitted when a feature has zero variance during scaling.

    The scaler recovers by defining the standardized value as 0 for every
    observation. Emitted with ``warnings.warn`` so callers can escalate it
    with a warnings filter.

    Attributes:
        details: Contains:
            - features: Names of the zero-variance features
    """

    pass


class IncompleteMapping(CellpipeCoreError):
    """
    Raised when the cluster-to-label mapping misses an observed cluster.

    Raised before any label is rewritten, so cluster labels are unchanged.

    Attributes:
        details: Contains:
            - missing: Sorted list of cluster IDs without a label
            - observed: Sorted list of all observed cluster IDs

    Example:
        try:
            annotator.annotate(dataset, {"0": "T cells", "1": "B cells"})
        except IncompleteMapping as e:
            print(f"Add labels for: {', '.join(e.details['missing'])}")
    """

    pass


class StageDependencyError(CellpipeCoreError):
    """
    Raised when a stage plan requires a field no earlier stage produces.

    Detected by ``Pipeline.validate()`` before any stage runs.

    Attributes:
        details: Contains:
            - stage: Name of the offending stage
            - missing: Fields that are required but not yet produced
    """

    pass


class ConfigurationError(CellpipeCoreError):
    """Raised for missing or invalid pipeline configuration."""

    pass


class ExportError(CellpipeCoreError):
    """
    Raised when an output artifact cannot be written.

    Export errors are reported in the run result; they never invalidate
    the in-memory dataset.
    """

    pass
