"""Feed publishing plus file export and import."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel

from ..ics.parser import ICSParser
from ..ics.serializer import ICSSerializer
from ..store.models import ImportResult
from ..store.repositories import EventRepository, FeedTokenRepository
from .cache import compute_etag, compute_last_modified, is_not_modified

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r"[^A-Za-z0-9]+")


def feed_filename(calendar_name: str) -> str:
    """Build a safe ``.ics`` filename from a calendar name."""
    stem = _FILENAME_RE.sub("-", calendar_name).strip("-").lower()
    return f"{stem or 'calendar'}.ics"


class FeedResponse(BaseModel):
    """What the feed endpoint should send back."""

    not_modified: bool
    etag: str
    last_modified: datetime
    filename: str
    body: Optional[str] = None


class FeedService:
    """Publishes a user's events as iCalendar and moves events in and out of files."""

    def __init__(
        self,
        settings: Any,
        events: EventRepository,
        tokens: FeedTokenRepository,
        serializer: ICSSerializer,
        parser: ICSParser,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.events = events
        self.tokens = tokens
        self.serializer = serializer
        self.parser = parser
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def render_feed(
        self,
        token: str,
        if_none_match: Optional[str] = None,
        if_modified_since: Optional[str] = None,
    ) -> Optional[FeedResponse]:
        """Resolve a feed token and produce the response for it.

        A full render records exactly one access on the token; a 304 records
        none.

        Args:
            token: Feed token from the URL
            if_none_match: Request ``If-None-Match`` header
            if_modified_since: Request ``If-Modified-Since`` header

        Returns:
            Feed response, or None if the token is unknown, revoked or expired
        """
        now = self.clock()
        feed_token = await self.tokens.get_by_token(token, now)
        if feed_token is None:
            return None

        events = await self.events.list_for_export(feed_token.owner_user_id)
        etag = compute_etag(events)
        last_modified = compute_last_modified(events, now)
        filename = feed_filename(self.settings.calendar_name)

        if is_not_modified(etag, last_modified, if_none_match, if_modified_since):
            logger.debug(f"Feed {feed_token.token_preview} not modified")
            return FeedResponse(
                not_modified=True, etag=etag, last_modified=last_modified, filename=filename
            )

        body = self.serializer.serialize(events, self.settings.calendar_name)
        await self.tokens.record_access(feed_token.id, now)
        logger.info(f"Served feed {feed_token.token_preview} with {len(events)} events")

        return FeedResponse(
            not_modified=False,
            etag=etag,
            last_modified=last_modified,
            filename=filename,
            body=body,
        )

    async def export_calendar(
        self,
        owner_user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> str:
        """Render the user's events starting within ``[start, end]``."""
        events = await self.events.list_for_export(owner_user_id, start, end)
        logger.info(f"Exporting {len(events)} events for user {owner_user_id}")
        return self.serializer.serialize(events, self.settings.calendar_name)

    async def import_calendar(self, owner_user_id: str, content: str) -> ImportResult:
        """Parse an uploaded document and add its events as user-owned events."""
        parsed = self.parser.parse(content)
        result = await self.events.import_batch(
            owner_user_id, parsed.events, color=self.settings.default_event_color
        )
        result.skipped += parsed.skipped_count
        return result
