"""
Unit tests for logger setup and session reporting.
"""

import importlib
import logging

import pytest
from rich.logging import RichHandler

from cellpipe.utils.logger import attach_to_root, get_logger, set_level
from cellpipe.utils.system import TRACKED_PACKAGES, get_package_versions, session_info


@pytest.fixture
def fresh_logger_name(request):
    name = f"cellpipe.tests.{request.node.name}"
    yield name
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


@pytest.mark.unit
class TestLogger:
    """Test suite for logger configuration."""

    def test_direct_usage_gets_own_handler(self, fresh_logger_name):
        logger = get_logger(fresh_logger_name)

        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_handler_added_once(self, fresh_logger_name):
        get_logger(fresh_logger_name)
        logger = get_logger(fresh_logger_name)
        assert len(logger.handlers) == 1

    def test_propagates_under_rich_root(self, fresh_logger_name):
        root = logging.getLogger()
        handler = RichHandler()
        root.addHandler(handler)
        try:
            logger = get_logger(fresh_logger_name)
            assert logger.handlers == []
        finally:
            root.removeHandler(handler)

    def test_attach_to_root(self, fresh_logger_name):
        logger = get_logger(fresh_logger_name)

        attach_to_root()

        assert logger.handlers == []
        assert logger.propagate is True

    @pytest.mark.parametrize(
        "module",
        [
            "cellpipe.config.pipeline_config",
            "cellpipe.core.pipeline",
            "cellpipe.core.exporter",
            "cellpipe.tools.marker_service",
        ],
    )
    def test_module_loggers_follow_set_level(self, module):
        loaded = importlib.import_module(module)
        logger = loaded.logger
        assert logger.name == module
        assert loaded.get_logger is get_logger

        set_level("error")
        try:
            assert logger.level == logging.ERROR
            assert not logger.isEnabledFor(logging.INFO)
        finally:
            set_level("INFO")
        assert logger.level == logging.INFO

    def test_set_level(self, fresh_logger_name):
        logger = get_logger(fresh_logger_name)
        set_level("warning")
        try:
            assert logger.level == logging.WARNING
        finally:
            set_level("INFO")


@pytest.mark.unit
class TestSessionInfo:
    """Test suite for the session report."""

    def test_keys(self):
        info = session_info()
        assert set(info) == {
            "python",
            "implementation",
            "platform",
            "platform_release",
            "machine",
            "packages",
        }

    def test_package_versions(self):
        versions = get_package_versions()
        assert set(versions) == set(TRACKED_PACKAGES)
        assert versions["numpy"] != "not installed"

    def test_missing_package(self, mocker):
        mocker.patch("cellpipe.utils.system.TRACKED_PACKAGES", ("not-a-real-package-xyz",))
        assert get_package_versions() == {"not-a-real-package-xyz": "not installed"}
