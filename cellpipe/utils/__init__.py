"""
Utilities module for cellpipe.

This module contains:
- Logging configuration
- Atomic file writes
- Session/environment reporting
"""

from .logger import get_logger

__all__ = ["get_logger"]
