"""
Unit tests for environment-driven settings.
"""

from pathlib import Path

import pytest

from cellpipe.config.settings import Settings, get_settings


@pytest.fixture(autouse=True)
def restore_settings():
    yield
    get_settings(reload=True)


@pytest.mark.unit
class TestSettings:
    """Test suite for Settings."""

    def test_defaults(self, monkeypatch):
        for var in (
            "CELLPIPE_DATA_DIR",
            "CELLPIPE_OUTPUT_DIR",
            "CELLPIPE_LOG_LEVEL",
            "CELLPIPE_HTTP_TIMEOUT",
            "CELLPIPE_SSL_VERIFY",
        ):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setattr("cellpipe.config.settings.load_dotenv", lambda: None)

        settings = Settings()

        assert settings.DATA_DIR == Path("data")
        assert settings.OUTPUT_DIR == Path("output")
        assert settings.LOG_LEVEL == "INFO"
        assert settings.HTTP_TIMEOUT == 60.0
        assert settings.SSL_VERIFY is True

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CELLPIPE_DATA_DIR", str(tmp_path / "cache"))
        monkeypatch.setenv("CELLPIPE_LOG_LEVEL", "debug")
        monkeypatch.setenv("CELLPIPE_HTTP_TIMEOUT", "2.5")

        settings = get_settings(reload=True)

        assert settings.DATA_DIR == tmp_path / "cache"
        assert settings.LOG_LEVEL == "DEBUG"
        assert settings.HTTP_TIMEOUT == 2.5

    @pytest.mark.parametrize(
        "value,expected", [("true", True), ("1", True), ("no", False), ("false", False)]
    )
    def test_ssl_verify_parsing(self, monkeypatch, value, expected):
        monkeypatch.setenv("CELLPIPE_SSL_VERIFY", value)
        assert Settings().SSL_VERIFY is expected

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
        assert get_settings(reload=True) is get_settings()

    def test_get_all_settings(self):
        values = Settings().get_all_settings()
        assert {"DATA_DIR", "OUTPUT_DIR", "LOG_LEVEL", "HTTP_TIMEOUT"} <= set(values)
        assert Settings().get_setting("MISSING", 3) == 3
