"""Cheap pre-fetch check deciding whether a subscription needs a full sync."""

import logging
from enum import Enum
from typing import Optional

import httpx

from ..ics.exceptions import ICSError
from ..ics.fetcher import ICSFetcher
from ..store.models import Subscription

logger = logging.getLogger(__name__)


class ChangeStatus(str, Enum):
    """Result of comparing remote validators against the stored ones."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    INDETERMINATE = "indeterminate"


def resolve_change(status: ChangeStatus) -> bool:
    """Decide whether to fetch. Only a confirmed UNCHANGED skips the download."""
    return status is not ChangeStatus.UNCHANGED


def _compare(stored: Optional[str], remote: Optional[str]) -> Optional[bool]:
    """Return True if differing, False if equal, None if not comparable."""
    if not stored or not remote:
        return None
    return stored.strip() != remote.strip()


class ChangeDetector:
    """Probes a subscription URL with a conditional HEAD request."""

    def __init__(self, fetcher: ICSFetcher):
        self.fetcher = fetcher

    async def check(self, subscription: Subscription) -> ChangeStatus:
        """Classify the remote calendar relative to the last successful sync.

        Args:
            subscription: Subscription with its stored validators

        Returns:
            CHANGED when never synced or a validator differs, UNCHANGED on 304
            or matching validators, INDETERMINATE when the HEAD request fails or the
            server returns nothing comparable
        """
        if not subscription.has_validators:
            logger.debug(f"Subscription {subscription.id} has no validators, treating as changed")
            return ChangeStatus.CHANGED

        headers = self.fetcher.get_conditional_headers(
            subscription.last_etag, subscription.last_modified
        )

        try:
            response = await self.fetcher.fetch_headers(subscription.url, headers)
        except (httpx.HTTPError, ICSError) as e:
            logger.debug(f"HEAD request failed for subscription {subscription.id}: {e}")
            return ChangeStatus.INDETERMINATE

        if response.status_code == 304:
            return ChangeStatus.UNCHANGED

        if not 200 <= response.status_code < 300:
            logger.debug(
                f"HEAD request for subscription {subscription.id} returned {response.status_code}"
            )
            return ChangeStatus.INDETERMINATE

        comparisons = [
            _compare(subscription.last_etag, response.headers.get("etag")),
            _compare(subscription.last_modified, response.headers.get("last-modified")),
        ]
        comparable = [differs for differs in comparisons if differs is not None]

        if not comparable:
            return ChangeStatus.INDETERMINATE
        if any(comparable):
            return ChangeStatus.CHANGED
        return ChangeStatus.UNCHANGED
