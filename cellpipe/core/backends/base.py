"""
Base backend implementation with common functionality.

This module provides the BaseBackend class that implements the path
handling and logging shared by every snapshot backend. Subclasses need
only implement the storage-specific ``load`` and ``save`` methods.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class BaseBackend(ABC):
    """
    Base implementation of a snapshot backend.

    Relative paths are resolved against ``base_path`` when it is set.
    """

    format_name = "unknown"

    def __init__(self, base_path: Optional[Union[str, Path]] = None):
        """
        Initialize the base backend.

        Args:
            base_path: Optional base path for all operations
        """
        self.base_path = Path(base_path) if base_path else None
        self.logger = logger

    @abstractmethod
    def load(self, path: Union[str, Path], **kwargs) -> Any:
        """Load a snapshot from ``path``."""

    @abstractmethod
    def save(self, data: Any, path: Union[str, Path], **kwargs) -> Path:
        """Persist ``data`` to ``path`` and return the resolved path."""

    def _resolve_path(self, path: Union[str, Path]) -> Path:
        """
        Resolve a path relative to base_path if set.

        Args:
            path: Path to resolve

        Returns:
            Path: Resolved absolute path
        """
        path = Path(path)

        if self.base_path and not path.is_absolute():
            return self.base_path / path

        return path.resolve()

    def supports_format(self, format_name: str) -> bool:
        return format_name.lower() == self.format_name

    def get_storage_info(self) -> Dict[str, Any]:
        return {
            "backend_type": self.__class__.__name__,
            "base_path": str(self.base_path) if self.base_path else None,
            "format": self.format_name,
        }

    def _log_operation(self, operation: str, path: Union[str, Path], **kwargs) -> None:
        """
        Log a backend operation for debugging/auditing.

        Args:
            operation: Operation name
            path: Path involved in operation
            **kwargs: Additional operation details
        """
        details = ", ".join(f"{k}={v}" for k, v in kwargs.items())
        self.logger.debug(f"{operation}: {path} ({details})")
