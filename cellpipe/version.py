"""Version information for cellpipe."""

__version__ = "0.3.0"
