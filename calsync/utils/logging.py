"""Console logging setup with colorized levels and quiet third-party loggers."""

import logging
import os
import sys
from typing import Any, Optional

from colorlog import ColoredFormatter

LOG_FORMAT = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}

THIRD_PARTY_LOGGERS = (
    "aiohttp.access",
    "aiohttp.server",
    "aiohttp.web",
    "httpx",
    "httpcore",
    "asyncio",
    "aiosqlite",
)


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    value = logging.getLevelName(name.upper())
    return value if isinstance(value, int) else default


def setup_logging(settings: Any = None, level_name: Optional[str] = None) -> logging.Logger:
    """Configure the root logger for console output.

    ``CALSYNC_LOG_LEVEL`` overrides the configured level, and ``CALSYNC_DEBUG``
    set to a truthy value forces DEBUG.

    Args:
        settings: Application settings with a ``logging`` section, optional
        level_name: Explicit level, takes precedence over settings

    Returns:
        The ``calsync`` package logger
    """
    logging_settings = getattr(settings, "logging", None)
    configured = level_name or getattr(logging_settings, "console_level", None)

    env_level = os.environ.get("CALSYNC_LOG_LEVEL")
    if env_level:
        configured = env_level
    if os.environ.get("CALSYNC_DEBUG", "").strip().lower() in ("1", "true", "yes", "on"):
        configured = "DEBUG"

    level = _level(configured, logging.INFO)
    use_colors = getattr(logging_settings, "console_colors", True) and sys.stderr.isatty()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicate output when called more than once
    if not any(getattr(handler, "_calsync_console", False) for handler in root.handlers):
        handler = logging.StreamHandler(stream=sys.stderr)
        if use_colors:
            handler.setFormatter(
                ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT, log_colors=LOG_COLORS)
            )
        else:
            handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
        handler._calsync_console = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    third_party_level = _level(
        getattr(logging_settings, "third_party_level", None), logging.WARNING
    )
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(max(third_party_level, level))

    logger = logging.getLogger("calsync")
    logger.setLevel(level)
    logger.debug("Logging configured at %s", logging.getLevelName(level))
    return logger
