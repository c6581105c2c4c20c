"""Sync-specific exceptions."""

from typing import Optional


class SyncError(Exception):
    """Base exception for subscription sync failures."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subscription_id = subscription_id


class SyncTimeoutError(SyncError):
    """Raised when fetching a subscription exceeds the per-sync time limit."""
