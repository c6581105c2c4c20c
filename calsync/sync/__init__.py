"""Subscription mirroring: change detection, fetching and reconciliation."""

from .change_detector import ChangeDetector, ChangeStatus, resolve_change
from .exceptions import SyncError, SyncTimeoutError
from .fetch_cache import FetchCache
from .models import FetchedCalendar, ReconcileResult, SyncResult
from .orchestrator import SyncOrchestrator
from .reconciler import ReconciliationEngine, content_fingerprint
from .scheduler import SyncScheduler

__all__ = [
    "ChangeDetector",
    "ChangeStatus",
    "FetchCache",
    "FetchedCalendar",
    "ReconcileResult",
    "ReconciliationEngine",
    "SyncError",
    "SyncOrchestrator",
    "SyncResult",
    "SyncScheduler",
    "SyncTimeoutError",
    "content_fingerprint",
    "resolve_change",
]
