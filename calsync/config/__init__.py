"""Configuration management."""

from .settings import CalSyncSettings, LoggingSettings, load_settings

__all__ = ["CalSyncSettings", "LoggingSettings", "load_settings"]
