"""Settings management using Pydantic for type validation and configuration."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CALSYNC_"


class LoggingSettings(BaseModel):
    """Console logging configuration."""

    console_level: str = Field(
        default="INFO", description="Console log level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )
    console_colors: bool = Field(default=True, description="Enable colored console output")
    third_party_level: str = Field(
        default="WARNING", description="Level for aiohttp, httpx, asyncio and aiosqlite loggers"
    )


class CalSyncSettings(BaseSettings):
    """Application settings with environment, YAML file and explicit argument sources.

    Precedence, highest first: constructor arguments, ``CALSYNC_*`` environment
    variables, the YAML file named by ``config_file``, field defaults.
    """

    app_name: str = Field(default="CalSync", description="Name sent in the User-Agent header")
    config_file: Optional[Path] = Field(default=None, description="Optional YAML config file")

    # Storage
    database_file: Path = Field(
        default=Path("data/calsync.db"), description="Path to SQLite database file"
    )

    # Web server
    host: str = Field(default="127.0.0.1", description="Address the HTTP server binds to")
    port: int = Field(default=8080, description="Port the HTTP server listens on")
    public_url: Optional[str] = Field(
        default=None, description="External base URL used when building feed links"
    )
    api_token: Optional[str] = Field(
        default=None, description="Bearer token required on /api routes when set"
    )

    # Network and Retry Settings
    request_timeout: int = Field(default=30, description="HTTP request timeout in seconds")
    max_retries: int = Field(default=3, description="Maximum retry attempts")
    retry_backoff_factor: float = Field(default=1.5, description="Exponential backoff factor")
    allow_private_urls: bool = Field(
        default=False, description="Allow subscriptions to private or loopback hosts"
    )

    # Sync
    sync_batch_size: int = Field(default=3, ge=1, description="Subscriptions synced concurrently")
    sync_interval_seconds: int = Field(default=300, description="Background sync interval")
    sync_timeout_seconds: float = Field(default=60.0, description="Per-subscription fetch limit")
    fetch_cache_ttl: int = Field(default=900, description="Seconds a fetched body is reused")
    scheduler_enabled: bool = Field(default=True, description="Run background sync in serve")

    # Feed rendering
    feed_max_age: int = Field(default=300, description="Cache-Control max-age for feeds")
    calendar_name: str = Field(default="My Calendar", description="X-WR-CALNAME of feeds")
    prodid: str = Field(default="-//CalSync//Calendar Feed 1.0//EN", description="PRODID")
    uid_domain: str = Field(default="calsync.local", description="Domain of derived UIDs")
    default_event_color: Optional[str] = Field(
        default="#3b82f6", description="Color assigned to imported events"
    )
    floating_timezone: Optional[str] = Field(
        default=None, description="IANA zone for date-times without a zone (host zone if unset)"
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    _explicit_args: set = PrivateAttr(default_factory=set)

    def __init__(self, **kwargs: Any) -> None:
        env_vars_set = {
            key[len(ENV_PREFIX) :].lower().split("__")[0]
            for key in os.environ
            if key.upper().startswith(ENV_PREFIX)
        }

        super().__init__(**kwargs)

        self._explicit_args = set(kwargs.keys()) | env_vars_set
        self._load_yaml_config()

    def _load_yaml_config(self) -> None:
        """Fill fields not set explicitly or through the environment from YAML."""
        if self.config_file is None:
            return

        config_file = Path(self.config_file)
        if not config_file.exists():
            logging.warning(f"Config file {config_file} not found, using defaults")
            return

        with config_file.open(encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        if not isinstance(config_data, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")

        for key, value in _flatten_sections(config_data).items():
            if key in self._explicit_args or key not in type(self).model_fields:
                continue
            if key == "logging" and isinstance(value, dict):
                value = self.logging.model_copy(update=value)
            setattr(self, key, value)


def _flatten_sections(config_data: dict[str, Any]) -> dict[str, Any]:
    """Allow grouping keys under ``server:``, ``sync:``, ``feed:`` and ``network:``."""
    flat: dict[str, Any] = {}
    for key, value in config_data.items():
        if key in ("server", "sync", "feed", "network", "storage") and isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def load_settings(config_file: Optional[Path] = None, **overrides: Any) -> CalSyncSettings:
    """Build settings, optionally from a YAML file.

    Args:
        config_file: YAML file path; falls back to ``CALSYNC_CONFIG_FILE``
        **overrides: Explicit values taking precedence over every other source

    Returns:
        Validated settings
    """
    if config_file is not None:
        overrides["config_file"] = config_file
    return CalSyncSettings(**overrides)
