"""
Logging configuration for cellpipe.

This module sets up consistent logging across the pipeline stages and
services, making it easier to follow a run and debug failing stages.
"""

import logging
import os
import sys


def _default_level() -> int:
    """Resolve the default level from CELLPIPE_LOG_LEVEL (falls back to INFO)."""
    name = os.environ.get("CELLPIPE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(name: str, level: int = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Direct usage: No RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: CELLPIPE_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(level if level is not None else _default_level())

        root_logger = logging.getLogger()
        has_rich_handler = False

        try:
            from rich.logging import RichHandler

            has_rich_handler = any(
                isinstance(handler, RichHandler) for handler in root_logger.handlers
            )
        except ImportError:
            pass

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            # root's basicConfig handler would print the same record twice
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def set_level(level: str) -> None:
    """
    Change the level of every cellpipe logger created so far.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR)
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name == "cellpipe" or name.startswith("cellpipe."):
            logging.getLogger(name).setLevel(numeric)


def attach_to_root() -> None:
    """
    Route cellpipe loggers created before a root RichHandler existed to root.

    Module-level loggers get their own stdout handler at import time; once
    the CLI installs its handler on the root logger, those handlers would
    print every record twice.
    """
    for name in list(logging.root.manager.loggerDict):
        if name == "cellpipe" or name.startswith("cellpipe."):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
            logger.propagate = True
