"""Data models for subscription sync results."""

from typing import Optional

from pydantic import BaseModel


class FetchedCalendar(BaseModel):
    """A downloaded calendar body with its HTTP validators."""

    content: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class ReconcileResult(BaseModel):
    """Counts from reconciling one feed against the stored mirror."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    total: int = 0


class SyncResult(BaseModel):
    """Outcome of one subscription sync attempt."""

    subscription_id: str
    success: bool
    skipped: bool = False
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    total: int = 0
    error: Optional[str] = None

    @classmethod
    def from_reconcile(cls, subscription_id: str, result: ReconcileResult) -> "SyncResult":
        return cls(subscription_id=subscription_id, success=True, **result.model_dump())
