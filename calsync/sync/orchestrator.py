"""Drives subscription syncs: change check, fetch, reconcile, metadata."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..ics.exceptions import ICSFetchError
from ..ics.fetcher import ICSFetcher, normalize_calendar_url
from ..store.exceptions import NotFoundError
from ..store.models import Subscription
from ..store.repositories import SubscriptionRepository
from .change_detector import ChangeDetector, ChangeStatus, resolve_change
from .exceptions import SyncTimeoutError
from .fetch_cache import FetchCache
from .models import FetchedCalendar, SyncResult
from .reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Syncs one or many subscriptions with bounded parallelism.

    Subscriptions are processed in fixed-size batches; a failure in one
    subscription is reported in its own :class:`SyncResult` and never aborts
    its siblings.
    """

    def __init__(
        self,
        settings: Any,
        subscriptions: SubscriptionRepository,
        reconciler: ReconciliationEngine,
        fetcher: ICSFetcher,
        fetch_cache: Optional[FetchCache] = None,
        change_detector: Optional[ChangeDetector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize orchestrator.

        Args:
            settings: Application settings (batch size, timeouts, cache TTL)
            subscriptions: Subscription repository
            reconciler: Reconciliation engine writing events
            fetcher: HTTP fetcher
            fetch_cache: Shared URL cache, created from settings if omitted
            change_detector: HEAD-based change detector, created if omitted
            clock: Returns the current UTC time, injectable for tests
        """
        self.settings = settings
        self.subscriptions = subscriptions
        self.reconciler = reconciler
        self.fetcher = fetcher
        self.fetch_cache = (
            fetch_cache if fetch_cache is not None else FetchCache(ttl=settings.fetch_cache_ttl)
        )
        self.change_detector = (
            change_detector if change_detector is not None else ChangeDetector(fetcher)
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def sync_subscription(self, subscription: Subscription) -> SyncResult:
        """Sync one subscription; never raises.

        Args:
            subscription: Subscription to sync

        Returns:
            Result describing counts or the captured error
        """
        attempted_at = self.clock()

        try:
            status = await self.change_detector.check(subscription)
            if not resolve_change(status) and subscription.last_sync_at is not None:
                logger.debug(f"Subscription {subscription.id} unchanged, skipping fetch")
                await self.subscriptions.update_sync_metadata(subscription.id, attempted_at)
                return SyncResult(subscription_id=subscription.id, success=True, skipped=True)

            fetched = await self._fetch_with_timeout(subscription, status)
            if fetched is None:
                await self.subscriptions.update_sync_metadata(subscription.id, attempted_at)
                return SyncResult(subscription_id=subscription.id, success=True, skipped=True)

            reconciled = await self.reconciler.reconcile(subscription, fetched.content)
            await self.subscriptions.update_sync_metadata(
                subscription.id,
                attempted_at,
                etag=fetched.etag,
                last_modified=fetched.last_modified,
            )
            return SyncResult.from_reconcile(subscription.id, reconciled)

        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(f"Sync failed for subscription {subscription.id}: {message}")
            try:
                await self.subscriptions.update_sync_metadata(
                    subscription.id, attempted_at, error=message
                )
            except Exception:
                logger.exception(f"Failed to record sync error for {subscription.id}")
            return SyncResult(subscription_id=subscription.id, success=False, error=message)

    async def sync_all(self, owner_user_id: Optional[str] = None) -> list[SyncResult]:
        """Sync every enabled subscription of one user, or of all users.

        Args:
            owner_user_id: Restrict to one user; None syncs everyone

        Returns:
            One result per subscription, in listing order
        """
        subscriptions = await self.subscriptions.list_enabled(owner_user_id)
        return await self._sync_batches(subscriptions)

    async def sync_due(self, owner_user_id: Optional[str] = None) -> list[SyncResult]:
        """Sync the enabled subscriptions whose own interval has elapsed.

        Args:
            owner_user_id: Restrict to one user; None syncs everyone

        Returns:
            One result per due subscription
        """
        subscriptions = await self.subscriptions.list_due_for_sync(self.clock(), owner_user_id)
        return await self._sync_batches(subscriptions)

    async def _sync_batches(self, subscriptions: list[Subscription]) -> list[SyncResult]:
        batch_size = max(1, int(self.settings.sync_batch_size))
        results: list[SyncResult] = []

        for offset in range(0, len(subscriptions), batch_size):
            batch = subscriptions[offset : offset + batch_size]
            batch_results = await asyncio.gather(
                *(self.sync_subscription(subscription) for subscription in batch)
            )
            results.extend(batch_results)

        failed = sum(1 for result in results if not result.success)
        logger.info(
            "Synced %d subscriptions (%d failed, %d skipped)",
            len(results),
            failed,
            sum(1 for result in results if result.skipped),
        )
        return results

    async def sync_by_id(self, subscription_id: str, owner_user_id: str) -> SyncResult:
        """Sync one subscription owned by ``owner_user_id``.

        Raises:
            NotFoundError: Subscription does not exist for this user
        """
        subscription = await self.subscriptions.get(subscription_id, owner_user_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return await self.sync_subscription(subscription)

    async def _fetch_with_timeout(
        self, subscription: Subscription, status: ChangeStatus
    ) -> Optional[FetchedCalendar]:
        timeout = self.settings.sync_timeout_seconds
        try:
            return await asyncio.wait_for(self._fetch(subscription, status), timeout=timeout)
        except asyncio.TimeoutError:
            raise SyncTimeoutError(f"Sync timed out after {timeout}s", subscription.id)

    async def _fetch(
        self, subscription: Subscription, status: ChangeStatus
    ) -> Optional[FetchedCalendar]:
        """Get the feed body, from the shared cache when fresh.

        Returns:
            The body, or None when a conditional GET answered 304
        """
        url = normalize_calendar_url(subscription.url)

        cached = self.fetch_cache.get(url)
        if cached is not None:
            return cached

        conditional_headers = None
        if status is ChangeStatus.INDETERMINATE and subscription.last_sync_at is not None:
            conditional_headers = self.fetcher.get_conditional_headers(
                subscription.last_etag, subscription.last_modified
            )

        response = await self.fetcher.fetch(url, conditional_headers)
        if response.is_not_modified:
            logger.debug(f"Conditional GET for {subscription.id} returned 304")
            return None
        if not response.success or response.content is None:
            raise ICSFetchError(
                response.error_message or "Failed to fetch calendar", response.status_code
            )

        fetched = FetchedCalendar(
            content=response.content,
            etag=response.etag,
            last_modified=response.last_modified,
        )
        self.fetch_cache.put(url, fetched)
        return fetched
