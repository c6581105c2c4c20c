"""Shared fixtures: lightweight settings, temp-file databases and calendar builders."""

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest
import pytest_asyncio

from calsync.ics.parser import ICSParser
from calsync.ics.serializer import ICSSerializer
from calsync.store.database import DatabaseManager
from calsync.store.repositories import (
    EventRepository,
    FeedTokenRepository,
    SubscriptionRepository,
)

FIXED_NOW = datetime(2025, 1, 20, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests touching SQLite or aiohttp")


@pytest.fixture
def test_settings(tmp_path: Path) -> SimpleNamespace:
    """Deterministic settings without file or environment lookups."""
    return SimpleNamespace(
        app_name="CalSync-Test",
        database_file=tmp_path / "calsync-test.db",
        host="127.0.0.1",
        port=0,
        public_url="https://cal.example.org",
        api_token=None,
        request_timeout=5,
        max_retries=0,
        retry_backoff_factor=0.0,
        allow_private_urls=False,
        sync_batch_size=3,
        sync_interval_seconds=300,
        sync_timeout_seconds=5.0,
        fetch_cache_ttl=900,
        scheduler_enabled=False,
        feed_max_age=300,
        calendar_name="Test Calendar",
        prodid="-//CalSync//Test//EN",
        uid_domain="calsync.test",
        default_event_color="#3b82f6",
        floating_timezone="UTC",
        logging=SimpleNamespace(
            console_level="DEBUG", console_colors=False, third_party_level="WARNING"
        ),
    )


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def parser() -> ICSParser:
    return ICSParser(floating_timezone="UTC")


@pytest.fixture
def serializer() -> ICSSerializer:
    return ICSSerializer(
        prodid="-//CalSync//Test//EN", uid_domain="calsync.test", calendar_name="Test Calendar"
    )


@pytest.fixture
def make_calendar() -> Callable[..., str]:
    """Build an iCalendar document from VEVENT property lists."""

    def _make(*events: list, calendar_name: str = "Remote") -> str:
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "PRODID:-//Remote//Test//EN",
            f"X-WR-CALNAME:{calendar_name}",
        ]
        for properties in events:
            lines.append("BEGIN:VEVENT")
            lines.extend(properties)
            lines.append("END:VEVENT")
        lines.append("END:VCALENDAR")
        return "\r\n".join(lines) + "\r\n"

    return _make


@pytest_asyncio.fixture
async def database(test_settings: SimpleNamespace) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(test_settings.database_file)
    await manager.initialize()
    yield manager


@pytest.fixture
def event_repository(database: DatabaseManager) -> EventRepository:
    return EventRepository(database)


@pytest.fixture
def subscription_repository(database: DatabaseManager) -> SubscriptionRepository:
    return SubscriptionRepository(database)


@pytest.fixture
def feed_token_repository(database: DatabaseManager) -> FeedTokenRepository:
    return FeedTokenRepository(database)
