"""Integration tests for calsync.sync.reconciler against a temporary database."""

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest
import pytest_asyncio

from calsync.ics.exceptions import ICSParseError
from calsync.ics.models import ParsedEvent
from calsync.ics.parser import ICSParser
from calsync.store.models import StoredEvent, Subscription
from calsync.store.repositories import EventRepository, SubscriptionRepository, new_id
from calsync.sync.reconciler import ReconciliationEngine, content_fingerprint

pytestmark = pytest.mark.integration

START = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def vevent(uid: str, summary: str, hour: int = 10) -> list:
    return [
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        f"DTSTART:20250115T{hour:02d}0000Z",
        f"DTEND:20250115T{hour + 1:02d}0000Z",
    ]


@pytest.fixture
def engine(
    event_repository: EventRepository, parser: ICSParser, fixed_clock: Callable[[], datetime]
) -> ReconciliationEngine:
    return ReconciliationEngine(event_repository, parser, clock=fixed_clock)


@pytest_asyncio.fixture
async def subscription(subscription_repository: SubscriptionRepository) -> Subscription:
    return await subscription_repository.create(
        "alice", "Team", "https://cal.example.com/team.ics", color="#00aa00"
    )


class TestContentFingerprint:
    def base(self, **overrides) -> ParsedEvent:
        values = {
            "uid": "u1",
            "title": "Standup",
            "start": START,
            "end": START + timedelta(hours=1),
        }
        values.update(overrides)
        return ParsedEvent(**values)

    def test_content_fingerprint_when_same_fields_then_equal(self) -> None:
        assert content_fingerprint(self.base()) == content_fingerprint(self.base())
        assert len(content_fingerprint(self.base())) == 16

    def test_content_fingerprint_when_uid_differs_then_equal(self) -> None:
        assert content_fingerprint(self.base()) == content_fingerprint(self.base(uid="u2"))

    @pytest.mark.parametrize(
        "override",
        [
            {"title": "Retro"},
            {"description": "notes"},
            {"location": "Room 1"},
            {"rrule": "FREQ=DAILY"},
            {"all_day": True},
            {"end": START + timedelta(hours=2)},
        ],
    )
    def test_content_fingerprint_when_visible_field_differs_then_changes(
        self, override: dict
    ) -> None:
        assert content_fingerprint(self.base()) != content_fingerprint(self.base(**override))


class TestReconciliationEngine:
    """Tests for diffing a feed against the stored mirror."""

    @pytest.mark.asyncio
    async def test_reconcile_when_first_sync_then_all_inserted(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        content = make_calendar(vevent("a", "Standup"), vevent("b", "Review", hour=14))

        result = await engine.reconcile(subscription, content)

        assert (result.inserted, result.updated, result.unchanged, result.deleted) == (2, 0, 0, 0)
        assert result.total == 2
        stored = await event_repository.list_by_subscription(subscription.id, "alice")
        assert {event.source_event_uid for event in stored} == {"a", "b"}
        assert all(event.color == "#00aa00" for event in stored)

    @pytest.mark.asyncio
    async def test_reconcile_when_same_feed_twice_then_idempotent(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        content = make_calendar(vevent("a", "Standup"), vevent("b", "Review", hour=14))
        await engine.reconcile(subscription, content)
        before = await event_repository.list_by_subscription(subscription.id, "alice")

        result = await engine.reconcile(subscription, content)

        assert (result.inserted, result.updated, result.unchanged, result.deleted) == (0, 0, 2, 0)
        after = await event_repository.list_by_subscription(subscription.id, "alice")
        assert [event.model_dump() for event in after] == [event.model_dump() for event in before]

    @pytest.mark.asyncio
    async def test_reconcile_when_event_changed_then_updated_with_same_id(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        await engine.reconcile(subscription, make_calendar(vevent("a", "Standup")))
        [original] = await event_repository.list_by_subscription(subscription.id, "alice")

        result = await engine.reconcile(subscription, make_calendar(vevent("a", "Standup v2")))

        assert result.updated == 1
        [changed] = await event_repository.list_by_subscription(subscription.id, "alice")
        assert changed.id == original.id
        assert changed.title == "Standup v2"

    @pytest.mark.asyncio
    async def test_reconcile_when_event_removed_upstream_then_deleted(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        await engine.reconcile(
            subscription, make_calendar(vevent("a", "Standup"), vevent("b", "Review", hour=14))
        )

        result = await engine.reconcile(subscription, make_calendar(vevent("a", "Standup")))

        assert result.deleted == 1
        stored = await event_repository.list_by_subscription(subscription.id, "alice")
        assert [event.source_event_uid for event in stored] == ["a"]

    @pytest.mark.asyncio
    async def test_reconcile_when_feed_empty_then_mirror_cleared(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        await engine.reconcile(subscription, make_calendar(vevent("a", "Standup")))

        result = await engine.reconcile(subscription, make_calendar())

        assert result.deleted == 1
        assert result.total == 0
        assert await event_repository.list_by_subscription(subscription.id, "alice") == []

    @pytest.mark.asyncio
    async def test_reconcile_when_deleting_then_other_events_untouched(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        subscription_repository: SubscriptionRepository,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        other = await subscription_repository.create("alice", "Other", "https://b.example/o.ics")
        await engine.reconcile(other, make_calendar(vevent("a", "Other feed")))
        await event_repository.create(
            StoredEvent(
                id=new_id(),
                owner_user_id="alice",
                title="Own event",
                start=START,
                end=START + timedelta(hours=1),
            )
        )
        await engine.reconcile(subscription, make_calendar(vevent("a", "Standup")))

        await engine.reconcile(subscription, make_calendar())

        titles = sorted(event.title for event in await event_repository.list_for_export("alice"))
        assert titles == ["Other feed", "Own event"]

    @pytest.mark.asyncio
    async def test_reconcile_when_duplicate_uids_then_last_wins(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        content = make_calendar(vevent("a", "First copy"), vevent("a", "Second copy"))

        result = await engine.reconcile(subscription, content)

        assert result.inserted == 1
        [stored] = await event_repository.list_by_subscription(subscription.id, "alice")
        assert stored.title == "Second copy"

    @pytest.mark.asyncio
    async def test_reconcile_when_not_icalendar_then_raises_and_keeps_events(
        self,
        engine: ReconciliationEngine,
        subscription: Subscription,
        event_repository: EventRepository,
        make_calendar,
    ) -> None:
        await engine.reconcile(subscription, make_calendar(vevent("a", "Standup")))

        with pytest.raises(ICSParseError):
            await engine.reconcile(subscription, "<html>Service unavailable</html>")

        assert len(await event_repository.list_by_subscription(subscription.id, "alice")) == 1
