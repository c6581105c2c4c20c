"""iCalendar parsing, serialization and fetching."""

from .exceptions import (
    ICSAuthError,
    ICSError,
    ICSFetchError,
    ICSNetworkError,
    ICSParseError,
    ICSTimeoutError,
)
from .fetcher import ICSFetcher, normalize_calendar_url
from .models import ICSParseResult, ICSResponse, ParsedEvent
from .parser import ICSParser
from .serializer import ICSSerializer, derive_uid, escape_text

__all__ = [
    "ICSAuthError",
    "ICSError",
    "ICSFetchError",
    "ICSFetcher",
    "ICSNetworkError",
    "ICSParseError",
    "ICSParseResult",
    "ICSParser",
    "ICSResponse",
    "ICSSerializer",
    "ICSTimeoutError",
    "ParsedEvent",
    "derive_uid",
    "escape_text",
    "normalize_calendar_url",
]
