"""Reconcile a freshly fetched feed against the stored mirror of a subscription."""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..ics.exceptions import ICSParseError
from ..ics.models import ParsedEvent
from ..ics.parser import ICSParser
from ..store.models import StoredEvent, Subscription
from ..store.repositories import EventRepository, new_id
from .models import ReconcileResult

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 16


def content_fingerprint(event: ParsedEvent) -> str:
    """Hash the user-visible fields of an event.

    Args:
        event: Parsed event

    Returns:
        First 16 hex digits of a SHA-256 digest
    """
    payload = {
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start": event.start.astimezone(timezone.utc).isoformat(timespec="milliseconds"),
        "end": event.end.astimezone(timezone.utc).isoformat(timespec="milliseconds"),
        "rrule": event.rrule,
        "all_day": event.all_day,
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:FINGERPRINT_LENGTH]


class ReconciliationEngine:
    """Makes the stored mirror of one subscription equal the parsed feed."""

    def __init__(
        self,
        events: EventRepository,
        parser: ICSParser,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.events = events
        self.parser = parser
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def reconcile(self, subscription: Subscription, content: str) -> ReconcileResult:
        """Apply a feed body to the subscription's stored events.

        New UIDs are inserted, UIDs with a different fingerprint are updated,
        identical ones are left alone and stored UIDs missing from the feed
        are deleted. Duplicate UIDs inside the feed collapse to the last one.

        Args:
            subscription: Subscription owning the events
            content: iCalendar document text

        Returns:
            Counts of inserted, updated, unchanged and deleted events

        Raises:
            ICSParseError: Content is not an iCalendar document
        """
        if "BEGIN:VCALENDAR" not in content.upper():
            raise ICSParseError("Response is not an iCalendar document")

        parsed = self.parser.parse(content)
        fresh: dict[str, ParsedEvent] = {}
        for event in parsed.events:
            fresh[event.uid] = event

        stored = await self.events.get_source_fingerprints(
            subscription.id, subscription.owner_user_id
        )

        now = self.clock()
        result = ReconcileResult(total=len(fresh))
        to_write: list[StoredEvent] = []

        for uid, event in fresh.items():
            fingerprint = content_fingerprint(event)
            if uid not in stored:
                result.inserted += 1
            elif stored[uid] != fingerprint:
                result.updated += 1
            else:
                result.unchanged += 1
                continue

            to_write.append(
                StoredEvent(
                    id=new_id(),
                    owner_user_id=subscription.owner_user_id,
                    title=event.title,
                    description=event.description,
                    location=event.location,
                    start=event.start,
                    end=event.end,
                    all_day=event.all_day,
                    rrule=event.rrule,
                    color=subscription.color,
                    source_calendar_id=subscription.id,
                    source_event_uid=uid,
                    content_hash=fingerprint,
                    created_at=now,
                    updated_at=now,
                )
            )

        await self.events.upsert_for_subscription(to_write)

        stale = [uid for uid in stored if uid not in fresh]
        result.deleted = await self.events.delete_by_uids(
            subscription.id, subscription.owner_user_id, stale
        )

        logger.info(
            "Reconciled subscription %s: %d inserted, %d updated, %d unchanged, %d deleted",
            subscription.id,
            result.inserted,
            result.updated,
            result.unchanged,
            result.deleted,
        )
        return result
