"""
cellpipe: an ordered single-cell RNA-seq analysis pipeline.

The public surface is the Dataset record, the stage objects and the
Pipeline orchestrator that threads a Dataset through them.
"""

from cellpipe.version import __version__


def run_pipeline(*args, **kwargs):
    """Lazy wrapper to avoid importing scanpy at package import time."""
    from cellpipe.core.pipeline import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = ["__version__", "run_pipeline"]
