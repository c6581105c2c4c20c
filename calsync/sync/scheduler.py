"""Background loop that periodically syncs subscriptions that are due."""

import asyncio
import logging
from typing import Optional

from .models import SyncResult
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``sync_due`` on a fixed interval, never overlapping runs.

    The interval is only the polling period; each subscription is fetched
    no more often than its own ``sync_interval_minutes``.
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_seconds: float):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> Optional[list[SyncResult]]:
        """Sync every user's due subscriptions unless a run is already in progress.

        Returns:
            Results of the run, or None if it was skipped
        """
        if self._lock.locked():
            logger.info("Previous sync run still in progress, skipping this cycle")
            return None

        async with self._lock:
            return await self.orchestrator.sync_due()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sync immediately, then every interval until ``stop_event`` is set.

        Args:
            stop_event: Event to signal shutdown
        """
        logger.info("Sync scheduler starting with interval %d seconds", self.interval_seconds)

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled sync run failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

        logger.info("Sync scheduler stopped")
