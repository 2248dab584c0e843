"""
Snapshot storage backends.

Backends persist the final Dataset of a run and read it back for
inspection or re-plotting.
"""

from .base import BaseBackend
from .h5ad_backend import H5ADBackend

__all__ = ["BaseBackend", "H5ADBackend"]
