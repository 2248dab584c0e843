"""
Application settings and configuration.

Non-scientific settings (directories, log level, HTTP behaviour) come from
the environment, optionally through a ``.env`` file. Scientific parameters
never live here; they belong to the pipeline configuration file.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

_TRUE_VALUES = ("1", "true", "yes", "on")


class Settings:
    """
    Application settings with environment variable support.

    Values are read once at construction; call ``get_settings(reload=True)``
    after changing the environment.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        self.BASE_DIR = Path(__file__).resolve().parent.parent

        # Directories
        self.DATA_DIR = Path(os.environ.get("CELLPIPE_DATA_DIR", "data")).expanduser()
        self.OUTPUT_DIR = Path(
            os.environ.get("CELLPIPE_OUTPUT_DIR", "output")
        ).expanduser()

        # Logging settings
        self.LOG_LEVEL = os.environ.get("CELLPIPE_LOG_LEVEL", "INFO").upper()

        # Download settings
        self.HTTP_TIMEOUT = float(os.environ.get("CELLPIPE_HTTP_TIMEOUT", "60"))
        self.SSL_VERIFY = (
            os.environ.get("CELLPIPE_SSL_VERIFY", "true").lower() in _TRUE_VALUES
        )
        self.DOWNLOAD_CHUNK_SIZE = 1024 * 1024

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All upper-case settings
        """
        return {
            attr: getattr(self, attr)
            for attr in dir(self)
            if attr.isupper() and not attr.startswith("_")
        }

    def get_setting(self, name: str, default: Any = None) -> Any:
        return getattr(self, name, default)


settings = Settings()


def get_settings(reload: bool = False) -> Settings:
    """
    Get the application settings.

    Args:
        reload: Re-read the environment

    Returns:
        Settings: Application settings
    """
    global settings
    if reload:
        settings = Settings()
    return settings
