"""Persistent storage for events, subscriptions and feed tokens."""

from .database import DatabaseManager
from .exceptions import DuplicateSubscriptionError, NotFoundError, StoreError
from .models import FeedToken, ImportResult, StoredEvent, Subscription
from .repositories import EventRepository, FeedTokenRepository, SubscriptionRepository

__all__ = [
    "DatabaseManager",
    "DuplicateSubscriptionError",
    "EventRepository",
    "FeedToken",
    "FeedTokenRepository",
    "ImportResult",
    "NotFoundError",
    "StoreError",
    "StoredEvent",
    "Subscription",
    "SubscriptionRepository",
]
