"""Data models for iCalendar parsing and fetching."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class ParsedEvent(BaseModel):
    """A single VEVENT extracted from an iCalendar document.

    All instants are timezone-aware UTC. For all-day events ``end`` is the last
    millisecond of the final inclusive day.
    """

    uid: str
    title: str = "Untitled Event"
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    rrule: Optional[str] = None
    all_day: bool = False


class ICSParseResult(BaseModel):
    """Result of parsing an iCalendar document."""

    success: bool = True
    events: list[ParsedEvent] = Field(default_factory=list)
    calendar_name: Optional[str] = None
    event_count: int = 0
    skipped_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class ICSResponse(BaseModel):
    """Response from a calendar fetch or HEAD request."""

    success: bool
    content: Optional[str] = None
    status_code: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    fetch_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # HTTP caching support
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    cache_control: Optional[str] = None

    @property
    def is_not_modified(self) -> bool:
        """Check if response indicates content not modified (304)."""
        return self.status_code == 304
