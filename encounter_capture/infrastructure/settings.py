"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - The remote API token is never exposed through settings attributes
    - Defaults are provided for development convenience
"""

import os
from typing import Optional

from encounter_capture.infrastructure.config_manager import (
    ConfigManager,
    RemoteConfig,
    StoreConfig,
    SyncConfig,
)

# Application metadata
APP_NAME = "Encounter-Capture"
APP_VERSION = "1.0.0"

DEFAULT_SESSION_ROUTE = "/dashboard"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Configuration sections are loaded lazily on first access so that
    importing this module never fails on an incomplete environment.
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("EC_APP_NAME", APP_NAME)
        self.log_level = os.getenv("EC_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("EC_LOG_JSON", "false").lower() == "true"
        self.dashboard_route = os.getenv("EC_DASHBOARD_ROUTE", DEFAULT_SESSION_ROUTE)

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def store_config(self) -> StoreConfig:
        return self.config_manager.get_store_config()

    @property
    def remote_config(self) -> RemoteConfig:
        return self.config_manager.get_remote_config()

    @property
    def sync_config(self) -> SyncConfig:
        return self.config_manager.get_sync_config()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        return self.store_config.db_path or ":memory:"

    def reload(self) -> None:
        """Drop cached configuration so the next access re-reads the environment."""
        self._config_manager = None


# Global settings instance
settings = Settings()
