"""HTTP cache validators for published feeds."""

import logging
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
LAST_MODIFIED_FLOOR = timedelta(days=1)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _epoch_ms(value: datetime) -> int:
    return (value - _EPOCH) // timedelta(milliseconds=1)


def fnv1a_32(data: bytes) -> int:
    """32-bit FNV-1a hash."""
    value = FNV_OFFSET_BASIS
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def compute_etag(events: Iterable[Any]) -> str:
    """Fingerprint an event set independent of its order.

    Each event contributes ``id:start_ms:end_ms:title``; the parts are sorted
    before hashing.

    Args:
        events: Events with ``id``, ``start``, ``end`` and ``title``

    Returns:
        Quoted lowercase hex string suitable for an ``ETag`` header
    """
    parts = sorted(
        f"{event.id}:{_epoch_ms(event.start)}:{_epoch_ms(event.end)}:{event.title}"
        for event in events
    )
    return f'"{fnv1a_32("|".join(parts).encode("utf-8")):08x}"'


def compute_last_modified(events: Iterable[Any], now: Optional[datetime] = None) -> datetime:
    """Approximate a Last-Modified instant for an event set.

    The latest start or end instant, but never earlier than one day before
    ``now``; ``now`` itself for an empty set. Truncated to whole seconds.
    """
    now = now or datetime.now(timezone.utc)
    instants = [instant for event in events for instant in (event.start, event.end)]

    if instants:
        value = max(max(instants), now - LAST_MODIFIED_FLOOR)
    else:
        value = now
    return value.astimezone(timezone.utc).replace(microsecond=0)


def format_http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: str) -> Optional[datetime]:
    """Parse an HTTP-date header, returning None when malformed."""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _etag_matches(etag: str, if_none_match: str) -> bool:
    candidates = [candidate.strip() for candidate in if_none_match.split(",")]
    for candidate in candidates:
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def is_not_modified(
    etag: str,
    last_modified: datetime,
    if_none_match: Optional[str] = None,
    if_modified_since: Optional[str] = None,
) -> bool:
    """Check whether a conditional request can be answered with 304.

    Args:
        etag: Current ETag (quoted)
        last_modified: Current Last-Modified instant
        if_none_match: Request ``If-None-Match`` header
        if_modified_since: Request ``If-Modified-Since`` header

    Returns:
        True when the etag matches or the client copy is at least as new
    """
    if if_none_match and _etag_matches(etag, if_none_match):
        return True

    if if_modified_since:
        since = parse_http_date(if_modified_since)
        if since is not None and since >= last_modified.replace(microsecond=0):
            return True

    return False
