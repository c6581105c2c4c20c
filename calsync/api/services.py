"""Wiring of repositories, fetcher, sync and feed services."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from ..feed.service import FeedService
from ..ics.fetcher import ICSFetcher
from ..ics.parser import ICSParser
from ..ics.serializer import ICSSerializer
from ..store.database import DatabaseManager
from ..store.repositories import EventRepository, FeedTokenRepository, SubscriptionRepository
from ..sync.fetch_cache import FetchCache
from ..sync.orchestrator import SyncOrchestrator
from ..sync.reconciler import ReconciliationEngine
from ..sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Long-lived collaborators shared by the HTTP routes, CLI and scheduler."""

    settings: Any
    database: DatabaseManager
    events: EventRepository
    subscriptions: SubscriptionRepository
    feed_tokens: FeedTokenRepository
    fetcher: ICSFetcher
    orchestrator: SyncOrchestrator
    feed_service: FeedService
    scheduler: SyncScheduler

    async def close(self) -> None:
        await self.fetcher.close()


def build_services(
    settings: Any,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AppServices:
    """Create every service from settings.

    Args:
        settings: Application settings
        transport: Optional httpx transport for the calendar fetcher
        clock: Optional UTC clock shared by sync and feed services

    Returns:
        Wired services
    """
    database = DatabaseManager(settings.database_file)
    events = EventRepository(database)
    subscriptions = SubscriptionRepository(database)
    feed_tokens = FeedTokenRepository(database)

    parser = ICSParser(floating_timezone=settings.floating_timezone)
    serializer = ICSSerializer(
        prodid=settings.prodid,
        uid_domain=settings.uid_domain,
        calendar_name=settings.calendar_name,
    )
    fetcher = ICSFetcher(settings, transport=transport)

    orchestrator = SyncOrchestrator(
        settings,
        subscriptions,
        ReconciliationEngine(events, parser, clock=clock),
        fetcher,
        fetch_cache=FetchCache(ttl=settings.fetch_cache_ttl),
        clock=clock,
    )
    feed_service = FeedService(settings, events, feed_tokens, serializer, parser, clock=clock)

    logger.debug("Services wired for database %s", settings.database_file)
    return AppServices(
        settings=settings,
        database=database,
        events=events,
        subscriptions=subscriptions,
        feed_tokens=feed_tokens,
        fetcher=fetcher,
        orchestrator=orchestrator,
        feed_service=feed_service,
        scheduler=SyncScheduler(orchestrator, settings.sync_interval_seconds),
    )
