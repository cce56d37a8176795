"""Centralized configuration management for the OMERO web client.

This module provides application-level configuration from environment variables.

Features:
- Environment variable support via .env files
- Fallback priority: environment → .env → hardcoded defaults
- Type-safe configuration using Pydantic
- Singleton pattern for global access

Usage:
    from utils import get_config

    sender = RequestSender(timeout=get_config().omero.request_timeout)
"""

from __future__ import annotations

import threading
import tomllib
from logging import getLogger
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent


def _read_pyproject() -> dict:
    """Read pyproject.toml and extract the project name and version."""
    pyproject_path = PROJECT_ROOT / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            project = tomllib.load(f).get("project", {})
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.debug("Could not read pyproject.toml: %s", e)
        return {"name": "omero-web-client", "version": "?.?.?"}

    return {
        "name": project.get("name", "omero-web-client"),
        "version": project.get("version", "?.?.?"),
    }


# Read project metadata once at module load
_PROJECT_METADATA = _read_pyproject()


class OmeroConfig(BaseSettings):
    """Settings of the connection to OMERO.web servers."""

    request_timeout: float = Field(
        default=20.0,
        description="Timeout in seconds applied to every HTTP request",
        gt=0,
    )
    ping_interval: float = Field(
        default=60.0,
        description="Seconds between two keep-alive pings of an authenticated session",
        gt=0,
    )
    ping_max_attempts: int = Field(
        default=3,
        description="Ping attempts per interval before trying to log in again",
        ge=1,
    )
    expected_api_version: str = Field(
        default="0",
        description="Version of the JSON API to use when the server publishes it",
    )

    # Entity caches
    entity_ids_cache_size: int = Field(
        default=10000,
        description="Maximum number of cached child-list queries per entity kind",
        ge=1,
    )
    entities_cache_size: int = Field(
        default=1000,
        description="Maximum number of cached entities per entity kind",
        ge=1,
    )

    # Thumbnails and metadata
    thumbnail_size: int = Field(
        default=256,
        description="Default size in pixels of requested thumbnails",
        ge=1,
    )
    thumbnail_cache_dir: str = Field(
        default="omero/thumbnails",
        description="Directory for the thumbnail disk cache (relative to user_data_dir)",
    )
    metadata_cache_size: int = Field(
        default=50,
        description="Maximum number of cached image metadata documents",
        ge=1,
    )

    max_pixel_connections: int = Field(
        default=5,
        description="Maximum number of simultaneous pixel connections per backend",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="OMERO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def thumbnail_cache_dir_path(self) -> Path:
        """Resolved thumbnail cache directory path."""
        path = Path(self.thumbnail_cache_dir)
        if path.is_absolute():
            return path
        return get_config().app.user_data_dir / self.thumbnail_cache_dir

    @field_validator("expected_api_version")
    @classmethod
    def validate_expected_api_version(cls, v: str) -> str:
        """Reject blank API versions."""
        if not v.strip():
            raise ValueError("expected_api_version cannot be empty")
        return v.strip()


class AppConfig(BaseSettings):
    """Application-wide configuration."""

    name: str = Field(
        default_factory=lambda: _PROJECT_METADATA["name"],
        description="Application name (from pyproject.toml)",
    )
    version: str = Field(
        default_factory=lambda: _PROJECT_METADATA["version"],
        description="Application version (from pyproject.toml)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Logging level",
    )
    log_retention_count: int = Field(
        default=7,
        description="Number of log files kept in the logs directory",
        ge=1,
    )

    data_dir: Path = Field(
        default_factory=lambda: PROJECT_ROOT / "data",
        description="Directory for writable files (caches, logs)",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @property
    def user_data_dir(self) -> Path:
        """Get user data directory for writable files.

        Returns:
            Path to directory for caches, logs, and other writable data.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir

    @property
    def user_agent(self) -> str:
        """HTTP User-Agent header sent with every request."""
        return f"{self.name}/{self.version}"


class Config:
    """Main configuration container."""

    def __init__(self) -> None:
        """Initialize configuration from environment and defaults."""
        self.app = AppConfig()
        self.omero = OmeroConfig()

    def reload(self) -> None:
        """Reload configuration from environment variables."""
        self.__init__()

    def __repr__(self) -> str:
        """String representation of config."""
        return f"Config(\n  app={self.app},\n  omero={self.omero}\n)"


# Global configuration instance (singleton)
_config_instance: Config | None = None
_config_lock = threading.Lock()


def get_config(config: Config | None = None) -> Config:
    """Get the global configuration instance (lazy initialization).

    Args:
        config: Optional config instance to use instead of singleton.
                If provided, it replaces the singleton.

    Returns:
        Global Config instance
    """
    global _config_instance  # noqa: PLW0603

    if config is not None:
        with _config_lock:
            _config_instance = config
        return _config_instance

    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = Config()

    assert _config_instance is not None
    return _config_instance


def reload_config() -> Config:
    """Reload configuration from environment.

    Returns:
        Reloaded Config instance
    """
    global _config_instance  # noqa: PLW0603
    with _config_lock:
        _config_instance = Config()
    return _config_instance


def reset_config() -> None:
    """Reset the global config instance.

    Primarily for testing.
    """
    global _config_instance  # noqa: PLW0603
    with _config_lock:
        _config_instance = None
