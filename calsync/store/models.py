"""Data models for persisted events, subscriptions and feed tokens."""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_SYNC_INTERVAL_MINUTES = 60


class StoredEvent(BaseModel):
    """An event row owned by a user.

    ``source_calendar_id`` and ``source_event_uid`` are set only for events
    mirrored from a subscription.
    """

    id: str
    owner_user_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    rrule: Optional[str] = None
    color: Optional[str] = None
    source_calendar_id: Optional[str] = None
    source_event_uid: Optional[str] = None
    content_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_imported(self) -> bool:
        """Check if event is mirrored from a subscription."""
        return self.source_calendar_id is not None


class Subscription(BaseModel):
    """A remote calendar a user mirrors into their own calendar."""

    id: str
    owner_user_id: str
    name: str
    url: str
    color: Optional[str] = None
    sync_enabled: bool = True
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    last_sync_at: Optional[datetime] = None
    last_etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def has_validators(self) -> bool:
        """Check if a previous sync stored HTTP cache validators."""
        return bool(self.last_etag or self.last_modified)

    def is_due(self, now: datetime) -> bool:
        """Check whether the per-subscription sync interval has elapsed."""
        if self.last_sync_at is None:
            return True
        return now >= self.last_sync_at + timedelta(minutes=self.sync_interval_minutes)


class FeedToken(BaseModel):
    """Secret granting read access to one user's published feed.

    Only the SHA-256 digest and an 8-character prefix are stored; ``token``
    carries the secret solely on the instance returned when it is issued.
    """

    id: str
    owner_user_id: str
    name: str
    token_hash: str = Field(..., repr=False)
    token_prefix: str
    token: Optional[str] = Field(default=None, repr=False)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def token_preview(self) -> str:
        """Redacted form of the token for listings and logs."""
        return f"{self.token_prefix}..."

    def is_usable(self, now: datetime) -> bool:
        """Check that the token is active and not expired at ``now``."""
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now


class ImportResult(BaseModel):
    """Outcome of a file import."""

    imported: int = 0
    skipped: int = 0
