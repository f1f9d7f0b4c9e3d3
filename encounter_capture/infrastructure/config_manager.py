"""Configuration Manager for Secure Settings Handling.

This module provides a configuration manager for the local store, the remote
encounter service and the sync policy. Credentials (the API token) are held
as SecretStr so they never appear in logs or error messages.

Security Impact:
    - API tokens are never logged or exposed in error messages
    - Supports environment variables, a .env file, or a JSON config file
    - Validates configuration before use

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_ENV_PATH = Path(__file__).parent.parent.parent / ".env"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, cast):
    value = os.getenv(name)
    return cast(value) if value not in (None, "") else None


class StoreConfig(BaseModel):
    """Local durability layer configuration.

    Parameters:
        db_path: Path to the DuckDB file, or ':memory:'
        encryption_enabled: Encrypt envelope bodies at rest
    """

    db_path: str = Field(default="encounters.duckdb", description="Path to DuckDB database file")
    encryption_enabled: bool = Field(default=False, description="Encrypt envelope bodies at rest")

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Validate the database directory exists (the file may not yet)."""
        if v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


class RemoteConfig(BaseModel):
    """Remote encounter service configuration.

    Parameters:
        base_url: Base URL of the encounter API (e.g. https://ehr.example.com/api/v1)
        api_token: Bearer token for the API (SecretStr - never logged)
        timeout_seconds: Per-request timeout; a timeout counts as unavailability
    """

    base_url: str = Field(default="http://localhost:3000/api/v1", description="Encounter API base URL")
    api_token: Optional[SecretStr] = Field(None, description="Bearer token (secret)")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Remote base URL must be http(s): {v}")
        return v.rstrip("/")


class SyncConfig(BaseModel):
    """Sync policy configuration.

    Parameters:
        navigate_delay_ms: Confirmation delay before navigating away after submit
        start_online: Initial connectivity assumption for the monitor
        failure_threshold_percent: Replay circuit breaker threshold
        window_size: Replay circuit breaker sliding window
        min_results_before_check: Results recorded before the threshold applies
    """

    navigate_delay_ms: int = Field(default=1500, ge=0)
    start_online: bool = True
    failure_threshold_percent: float = Field(default=50.0, gt=0, le=100)
    window_size: int = Field(default=20, gt=0)
    min_results_before_check: int = Field(default=3, gt=0)

    @model_validator(mode="after")
    def check_window(self) -> "SyncConfig":
        if self.min_results_before_check > self.window_size:
            raise ValueError("min_results_before_check cannot exceed window_size")
        return self


class ConfigManager:
    """Configuration manager for store, remote and sync settings.

    Example Usage:
        ```python
        # Load from environment variables (and .env if present)
        config = ConfigManager.from_environment()
        store_config = config.get_store_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        remote_config = config.get_remote_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional "store",
                "remote", "sync" and "logging" sections
        """
        self._config_data = config_data
        self._store_config: Optional[StoreConfig] = None
        self._remote_config: Optional[RemoteConfig] = None
        self._sync_config: Optional[SyncConfig] = None

    @classmethod
    def from_environment(cls, env_path: Optional[Path] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - EC_DB_PATH: Path to the DuckDB file
            - EC_ENCRYPTION_ENABLED: Encrypt envelope bodies (true/false)
            - EC_REMOTE_BASE_URL: Encounter API base URL
            - EC_REMOTE_API_TOKEN: Bearer token (secret)
            - EC_REMOTE_TIMEOUT: Request timeout in seconds
            - EC_NAVIGATE_DELAY_MS: Delay before navigating away after submit
            - EC_START_ONLINE: Initial connectivity assumption (true/false)
            - EC_CB_THRESHOLD: Replay circuit breaker failure threshold (percent)
            - EC_CB_WINDOW: Replay circuit breaker window size
            - EC_CB_MIN_RESULTS: Results before the threshold applies
            - EC_LOG_LEVEL: Logging level
            - EC_LOG_JSON: Emit JSON logs (true/false)

        Returns:
            ConfigManager instance

        Security Impact:
            - Credentials are read from environment (never logged)
            - A .env file in the project root is loaded if present
        """
        env_file = env_path or DEFAULT_ENV_PATH
        if env_file.exists():
            load_dotenv(env_file)
            logger.debug(f"Loaded environment variables from {env_file}")

        store: Dict[str, Any] = {"encryption_enabled": _env_bool("EC_ENCRYPTION_ENABLED", False)}
        if os.getenv("EC_DB_PATH"):
            store["db_path"] = os.getenv("EC_DB_PATH")

        remote: Dict[str, Any] = {"api_token": os.getenv("EC_REMOTE_API_TOKEN")}
        if os.getenv("EC_REMOTE_BASE_URL"):
            remote["base_url"] = os.getenv("EC_REMOTE_BASE_URL")
        if _env_number("EC_REMOTE_TIMEOUT", float) is not None:
            remote["timeout_seconds"] = _env_number("EC_REMOTE_TIMEOUT", float)

        sync: Dict[str, Any] = {"start_online": _env_bool("EC_START_ONLINE", True)}
        for env_name, key, cast in (
            ("EC_NAVIGATE_DELAY_MS", "navigate_delay_ms", int),
            ("EC_CB_THRESHOLD", "failure_threshold_percent", float),
            ("EC_CB_WINDOW", "window_size", int),
            ("EC_CB_MIN_RESULTS", "min_results_before_check", int),
        ):
            value = _env_number(env_name, cast)
            if value is not None:
                sync[key] = value

        config_data = {
            "store": store,
            "remote": remote,
            "sync": sync,
            "logging": {
                "level": os.getenv("EC_LOG_LEVEL", "INFO"),
                "json": _env_bool("EC_LOG_JSON", False),
            },
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # Files holding an API token should not be group/world readable
        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}") from e

        return cls(config_data)

    def get_store_config(self) -> StoreConfig:
        if self._store_config is None:
            self._store_config = StoreConfig(**self._config_data.get("store", {}))
        return self._store_config

    def get_remote_config(self) -> RemoteConfig:
        """Get remote service configuration.

        Security Impact:
            - The API token is wrapped in SecretStr before validation
        """
        if self._remote_config is None:
            remote_data = dict(self._config_data.get("remote", {}))
            if remote_data.get("api_token"):
                remote_data["api_token"] = SecretStr(remote_data["api_token"])
            else:
                remote_data.pop("api_token", None)
            self._remote_config = RemoteConfig(**remote_data)
        return self._remote_config

    def get_sync_config(self) -> SyncConfig:
        if self._sync_config is None:
            self._sync_config = SyncConfig(**self._config_data.get("sync", {}))
        return self._sync_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "remote.base_url")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

