"""
cellpipe core module: the Dataset record and the exception hierarchy.

The orchestrator lives in ``cellpipe.core.pipeline`` and the stage objects
in ``cellpipe.core.stages``; they are not imported here so that loading
the exceptions does not pull in the numerical stack.
"""

from cellpipe.core.exceptions import (
    CellpipeCoreError,
    ConfigurationError,
    DataUnavailable,
    DegenerateFeature,
    ExportError,
    IncompleteMapping,
    InsufficientData,
    StageDependencyError,
)

__all__ = [
    "CellpipeCoreError",
    "ConfigurationError",
    "DataUnavailable",
    "DegenerateFeature",
    "ExportError",
    "IncompleteMapping",
    "InsufficientData",
    "StageDependencyError",
]
