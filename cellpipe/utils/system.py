"""
Session and environment reporting.

Collects interpreter, platform and library versions so every snapshot
can be traced back to the software that produced it.
"""

import platform
import sys
from importlib import metadata
from typing import Dict

# Libraries whose versions affect numerical results
TRACKED_PACKAGES = (
    "cellpipe",
    "scanpy",
    "anndata",
    "numpy",
    "scipy",
    "pandas",
    "scikit-learn",
    "umap-learn",
    "leidenalg",
    "igraph",
    "plotly",
    "kaleido",
)

_PLATFORM = platform.system()


def get_platform() -> str:
    """
    Get the platform string.

    Returns:
        str: Platform string - 'Darwin', 'Linux', or 'Windows'
    """
    return _PLATFORM


def get_package_versions() -> Dict[str, str]:
    """Versions of the tracked packages; 'not installed' when missing."""
    versions = {}
    for package in TRACKED_PACKAGES:
        try:
            versions[package] = metadata.version(package)
        except metadata.PackageNotFoundError:
            versions[package] = "not installed"
    return versions


def session_info() -> Dict[str, object]:
    """
    Build a session report similar to R's ``sessionInfo()``.

    Returns:
        dict: python version, platform details and package versions
    """
    return {
        "python": sys.version.split()[0],
        "implementation": platform.python_implementation(),
        "platform": get_platform(),
        "platform_release": platform.release(),
        "machine": platform.machine(),
        "packages": get_package_versions(),
    }
