"""Short-lived cache of downloaded calendar bodies keyed by URL."""

import logging
import time
from typing import Callable, Optional

from cachetools import TTLCache

from ..ics.fetcher import normalize_calendar_url
from .models import FetchedCalendar

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_MAXSIZE = 512


class FetchCache:
    """URL to body cache shared by every sync in the process.

    Several users subscribing to the same URL within the TTL share one
    download. Concurrent writers for the same URL simply overwrite each other.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        maxsize: int = DEFAULT_MAXSIZE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize cache.

        Args:
            ttl: Seconds an entry stays fresh
            maxsize: Maximum number of cached URLs
            timer: Clock returning seconds, injectable for tests
        """
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def get(self, url: str) -> Optional[FetchedCalendar]:
        """Return the cached body for ``url`` if still fresh."""
        entry = self._cache.get(normalize_calendar_url(url))
        if entry is not None:
            logger.debug(f"Fetch cache hit for {url}")
        return entry

    def put(self, url: str, body: FetchedCalendar) -> None:
        self._cache[normalize_calendar_url(url)] = body

    def invalidate(self, url: str) -> None:
        self._cache.pop(normalize_calendar_url(url), None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
