"""Repositories for events, subscriptions and feed tokens."""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import aiosqlite

from ..ics.models import ParsedEvent
from .database import DatabaseManager, from_db_time, to_db_time
from .exceptions import DuplicateSubscriptionError
from .models import (
    DEFAULT_SYNC_INTERVAL_MINUTES,
    FeedToken,
    ImportResult,
    StoredEvent,
    Subscription,
)

logger = logging.getLogger(__name__)

FEED_TOKEN_BYTES = 24  # 32 URL-safe characters
FEED_TOKEN_PREFIX_LENGTH = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_feed_token(token: str) -> str:
    """SHA-256 hex digest under which a feed token is stored and looked up."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_id() -> str:
    """Generate an opaque record id."""
    return uuid.uuid4().hex


def _row_to_event(row: aiosqlite.Row) -> StoredEvent:
    return StoredEvent(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=from_db_time(row["start_time"]),
        end=from_db_time(row["end_time"]),
        all_day=bool(row["all_day"]),
        rrule=row["rrule"],
        color=row["color"],
        source_calendar_id=row["source_calendar_id"],
        source_event_uid=row["source_event_uid"],
        content_hash=row["content_hash"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        name=row["name"],
        url=row["url"],
        color=row["color"],
        sync_enabled=bool(row["sync_enabled"]),
        sync_interval_minutes=row["sync_interval_minutes"],
        last_sync_at=from_db_time(row["last_sync_at"]),
        last_etag=row["last_etag"],
        last_modified=row["last_modified"],
        last_sync_error=row["last_sync_error"],
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_feed_token(row: aiosqlite.Row) -> FeedToken:
    return FeedToken(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        name=row["name"],
        token_hash=row["token_hash"],
        token_prefix=row["token_prefix"],
        is_active=bool(row["is_active"]),
        expires_at=from_db_time(row["expires_at"]),
        access_count=row["access_count"],
        last_accessed_at=from_db_time(row["last_accessed_at"]),
        created_at=from_db_time(row["created_at"]),
    )


class EventRepository:
    """Event storage keyed by id, with a secondary key for mirrored events."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def list_for_export(
        self,
        owner_user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[StoredEvent]:
        """List a user's events whose start lies within ``[start, end]``.

        Args:
            owner_user_id: Owner whose events are listed
            start: Inclusive lower bound on event start, unbounded if None
            end: Inclusive upper bound on event start, unbounded if None

        Returns:
            Events ordered by start time
        """
        query = "SELECT * FROM events WHERE owner_user_id = ?"
        params: list[Any] = [owner_user_id]
        if start is not None:
            query += " AND start_time >= ?"
            params.append(to_db_time(start))
        if end is not None:
            query += " AND start_time <= ?"
            params.append(to_db_time(end))
        query += " ORDER BY start_time ASC, id ASC"

        async with self.database.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        return [_row_to_event(row) for row in rows]

    async def list_by_subscription(
        self, subscription_id: str, owner_user_id: str
    ) -> list[StoredEvent]:
        """List events mirrored from one subscription."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                SELECT * FROM events
                WHERE source_calendar_id = ? AND owner_user_id = ?
                ORDER BY start_time ASC, id ASC
                """,
                (subscription_id, owner_user_id),
            )
            rows = await cursor.fetchall()

        return [_row_to_event(row) for row in rows]

    async def get_source_fingerprints(
        self, subscription_id: str, owner_user_id: str
    ) -> dict[str, Optional[str]]:
        """Map each mirrored source UID to its stored content fingerprint."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                SELECT source_event_uid, content_hash FROM events
                WHERE source_calendar_id = ? AND owner_user_id = ?
                """,
                (subscription_id, owner_user_id),
            )
            rows = await cursor.fetchall()

        return {row["source_event_uid"]: row["content_hash"] for row in rows}

    async def upsert_for_subscription(self, events: Iterable[StoredEvent]) -> int:
        """Insert or update mirrored events keyed on (subscription, uid, owner).

        Existing rows keep their id and ``created_at``.

        Args:
            events: Events carrying ``source_calendar_id`` and ``source_event_uid``

        Returns:
            Number of rows written
        """
        rows = [
            (
                event.id,
                event.owner_user_id,
                event.title,
                event.description,
                event.location,
                to_db_time(event.start),
                to_db_time(event.end),
                int(event.all_day),
                event.rrule,
                event.color,
                event.source_calendar_id,
                event.source_event_uid,
                event.content_hash,
                to_db_time(event.created_at),
                to_db_time(event.updated_at),
            )
            for event in events
        ]
        if not rows:
            return 0

        async with self.database.connection() as db:
            await db.executemany(
                """
                INSERT INTO events (
                    id, owner_user_id, title, description, location,
                    start_time, end_time, all_day, rrule, color,
                    source_calendar_id, source_event_uid, content_hash,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (source_calendar_id, source_event_uid, owner_user_id)
                WHERE source_calendar_id IS NOT NULL
                DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    location = excluded.location,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    all_day = excluded.all_day,
                    rrule = excluded.rrule,
                    color = excluded.color,
                    content_hash = excluded.content_hash,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
            await db.commit()

        logger.debug(f"Upserted {len(rows)} mirrored events")
        return len(rows)

    async def delete_by_uids(
        self, subscription_id: str, owner_user_id: str, uids: Iterable[str]
    ) -> int:
        """Delete mirrored events of one subscription by source UID."""
        unique_uids = sorted(set(uids))
        if not unique_uids:
            return 0

        deleted = 0
        async with self.database.connection() as db:
            for uid in unique_uids:
                cursor = await db.execute(
                    """
                    DELETE FROM events
                    WHERE source_calendar_id = ? AND owner_user_id = ? AND source_event_uid = ?
                    """,
                    (subscription_id, owner_user_id, uid),
                )
                deleted += cursor.rowcount
            await db.commit()

        return deleted

    async def delete_by_subscription(self, subscription_id: str, owner_user_id: str) -> int:
        """Delete every event mirrored from a subscription."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                "DELETE FROM events WHERE source_calendar_id = ? AND owner_user_id = ?",
                (subscription_id, owner_user_id),
            )
            await db.commit()
            return cursor.rowcount

    async def import_batch(
        self,
        owner_user_id: str,
        events: Iterable[ParsedEvent],
        color: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ImportResult:
        """Insert uploaded events as user-owned events.

        An event whose title, start and end match one of the user's own
        events (or an earlier event in the same batch) is skipped.

        Args:
            owner_user_id: Importing user
            events: Parsed events from the uploaded document
            color: Color applied to new events
            now: Timestamp for ``created_at``/``updated_at``

        Returns:
            Counts of imported and skipped events
        """
        timestamp = to_db_time(now or _utcnow())
        result = ImportResult()

        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                SELECT title, start_time, end_time FROM events
                WHERE owner_user_id = ? AND source_calendar_id IS NULL
                """,
                (owner_user_id,),
            )
            seen: set[tuple[str, str, str]] = {
                (row["title"], row["start_time"], row["end_time"])
                for row in await cursor.fetchall()
            }

            rows = []
            for event in events:
                key = (event.title, to_db_time(event.start), to_db_time(event.end))
                if key in seen:
                    result.skipped += 1
                    continue
                seen.add(key)
                rows.append(
                    (
                        new_id(),
                        owner_user_id,
                        event.title,
                        event.description,
                        event.location,
                        key[1],
                        key[2],
                        int(event.all_day),
                        event.rrule,
                        color,
                        timestamp,
                        timestamp,
                    )
                )

            if rows:
                await db.executemany(
                    """
                    INSERT INTO events (
                        id, owner_user_id, title, description, location,
                        start_time, end_time, all_day, rrule, color,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.commit()
            result.imported = len(rows)

        logger.info(
            f"Imported {result.imported} events for user {owner_user_id} "
            f"({result.skipped} duplicates skipped)"
        )
        return result

    async def create(self, event: StoredEvent) -> StoredEvent:
        """Insert a single user-owned event."""
        async with self.database.connection() as db:
            await db.execute(
                """
                INSERT INTO events (
                    id, owner_user_id, title, description, location,
                    start_time, end_time, all_day, rrule, color,
                    source_calendar_id, source_event_uid, content_hash,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.owner_user_id,
                    event.title,
                    event.description,
                    event.location,
                    to_db_time(event.start),
                    to_db_time(event.end),
                    int(event.all_day),
                    event.rrule,
                    event.color,
                    event.source_calendar_id,
                    event.source_event_uid,
                    event.content_hash,
                    to_db_time(event.created_at or _utcnow()),
                    to_db_time(event.updated_at or _utcnow()),
                ),
            )
            await db.commit()
        return event


class SubscriptionRepository:
    """CRUD and sync metadata for calendar subscriptions."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def create(
        self,
        owner_user_id: str,
        name: str,
        url: str,
        color: Optional[str] = None,
        sync_enabled: bool = True,
        sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES,
    ) -> Subscription:
        """Create a subscription.

        Raises:
            DuplicateSubscriptionError: The user already subscribes to ``url``
        """
        subscription = Subscription(
            id=new_id(),
            owner_user_id=owner_user_id,
            name=name,
            url=url,
            color=color,
            sync_enabled=sync_enabled,
            sync_interval_minutes=sync_interval_minutes,
            created_at=_utcnow(),
        )

        async with self.database.connection() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO subscriptions (
                        id, owner_user_id, name, url, color, sync_enabled,
                        sync_interval_minutes, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        subscription.id,
                        owner_user_id,
                        name,
                        url,
                        color,
                        int(sync_enabled),
                        sync_interval_minutes,
                        to_db_time(subscription.created_at),
                    ),
                )
                await db.commit()
            except aiosqlite.IntegrityError:
                raise DuplicateSubscriptionError(url)

        logger.info(f"Created subscription {subscription.id} ({name}) for user {owner_user_id}")
        return subscription

    async def get(
        self, subscription_id: str, owner_user_id: Optional[str] = None
    ) -> Optional[Subscription]:
        """Fetch one subscription, optionally restricted to an owner."""
        query = "SELECT * FROM subscriptions WHERE id = ?"
        params: list[Any] = [subscription_id]
        if owner_user_id is not None:
            query += " AND owner_user_id = ?"
            params.append(owner_user_id)

        async with self.database.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()

        return _row_to_subscription(row) if row else None

    async def list_for_owner(self, owner_user_id: str) -> list[Subscription]:
        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM subscriptions WHERE owner_user_id = ? ORDER BY created_at, id",
                (owner_user_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def list_enabled(self, owner_user_id: Optional[str] = None) -> list[Subscription]:
        """List sync-enabled subscriptions for one user, or for everyone."""
        query = "SELECT * FROM subscriptions WHERE sync_enabled = 1"
        params: list[Any] = []
        if owner_user_id is not None:
            query += " AND owner_user_id = ?"
            params.append(owner_user_id)
        query += " ORDER BY created_at, id"

        async with self.database.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def list_due_for_sync(
        self, now: datetime, owner_user_id: Optional[str] = None
    ) -> list[Subscription]:
        """List enabled subscriptions whose own sync interval has elapsed.

        Never-synced subscriptions are always due.

        Args:
            now: Current UTC time
            owner_user_id: Restrict to one user; None lists everyone's

        Returns:
            Due subscriptions, in creation order
        """
        subscriptions = await self.list_enabled(owner_user_id)
        return [subscription for subscription in subscriptions if subscription.is_due(now)]

    async def update(
        self,
        subscription_id: str,
        owner_user_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
        sync_enabled: Optional[bool] = None,
        sync_interval_minutes: Optional[int] = None,
    ) -> Optional[Subscription]:
        """Update user-editable fields; None leaves a field untouched."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                """
                UPDATE subscriptions SET
                    name = COALESCE(?, name),
                    color = COALESCE(?, color),
                    sync_enabled = COALESCE(?, sync_enabled),
                    sync_interval_minutes = COALESCE(?, sync_interval_minutes)
                WHERE id = ? AND owner_user_id = ?
                """,
                (
                    name,
                    color,
                    None if sync_enabled is None else int(sync_enabled),
                    sync_interval_minutes,
                    subscription_id,
                    owner_user_id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None

        return await self.get(subscription_id, owner_user_id)

    async def update_sync_metadata(
        self,
        subscription_id: str,
        synced_at: datetime,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a sync attempt.

        ``last_sync_at`` and ``last_sync_error`` are always overwritten.
        Validators are replaced only by non-empty values.
        """
        async with self.database.connection() as db:
            await db.execute(
                """
                UPDATE subscriptions SET
                    last_sync_at = ?,
                    last_etag = COALESCE(?, last_etag),
                    last_modified = COALESCE(?, last_modified),
                    last_sync_error = ?
                WHERE id = ?
                """,
                (
                    to_db_time(synced_at),
                    etag or None,
                    last_modified or None,
                    error,
                    subscription_id,
                ),
            )
            await db.commit()

    async def delete(self, subscription_id: str, owner_user_id: str) -> bool:
        """Delete a subscription together with every event mirrored from it."""
        async with self.database.connection() as db:
            events_cursor = await db.execute(
                "DELETE FROM events WHERE source_calendar_id = ? AND owner_user_id = ?",
                (subscription_id, owner_user_id),
            )
            cursor = await db.execute(
                "DELETE FROM subscriptions WHERE id = ? AND owner_user_id = ?",
                (subscription_id, owner_user_id),
            )
            await db.commit()

        if cursor.rowcount:
            logger.info(
                f"Deleted subscription {subscription_id} and "
                f"{events_cursor.rowcount} mirrored events"
            )
        return bool(cursor.rowcount)


class FeedTokenRepository:
    """Issues and resolves feed access tokens."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def create(
        self, owner_user_id: str, name: str, expires_at: Optional[datetime] = None
    ) -> FeedToken:
        """Issue a token. The returned instance is the only one carrying the secret."""
        token = secrets.token_urlsafe(FEED_TOKEN_BYTES)
        feed_token = FeedToken(
            id=new_id(),
            owner_user_id=owner_user_id,
            name=name,
            token=token,
            token_hash=hash_feed_token(token),
            token_prefix=token[:FEED_TOKEN_PREFIX_LENGTH],
            expires_at=expires_at,
            created_at=_utcnow(),
        )

        async with self.database.connection() as db:
            await db.execute(
                """
                INSERT INTO feed_tokens (
                    id, owner_user_id, name, token_hash, token_prefix,
                    is_active, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    feed_token.id,
                    owner_user_id,
                    name,
                    feed_token.token_hash,
                    feed_token.token_prefix,
                    to_db_time(expires_at),
                    to_db_time(feed_token.created_at),
                ),
            )
            await db.commit()

        logger.info(f"Created feed token {feed_token.token_preview} for user {owner_user_id}")
        return feed_token

    async def get_by_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[FeedToken]:
        """Resolve a usable token.

        The secret is looked up by its SHA-256 digest, never by its plaintext,
        and the stored digest is confirmed with a constant-time comparison.

        Returns:
            The token record, or None when unknown, revoked or expired
        """
        digest = hash_feed_token(token)
        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM feed_tokens WHERE token_hash = ?", (digest,)
            )
            row = await cursor.fetchone()

        if row is None or not hmac.compare_digest(row["token_hash"], digest):
            return None

        feed_token = _row_to_feed_token(row)
        if not feed_token.is_usable(now or _utcnow()):
            logger.debug(f"Feed token {feed_token.token_preview} is revoked or expired")
            return None
        return feed_token

    async def record_access(self, token_id: str, now: Optional[datetime] = None) -> None:
        async with self.database.connection() as db:
            await db.execute(
                """
                UPDATE feed_tokens
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE id = ?
                """,
                (to_db_time(now or _utcnow()), token_id),
            )
            await db.commit()

    async def list_for_owner(self, owner_user_id: str) -> list[FeedToken]:
        async with self.database.connection() as db:
            cursor = await db.execute(
                "SELECT * FROM feed_tokens WHERE owner_user_id = ? ORDER BY created_at, id",
                (owner_user_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_feed_token(row) for row in rows]

    async def revoke(self, token_id: str, owner_user_id: str) -> bool:
        """Deactivate a token; the record is kept for auditing."""
        async with self.database.connection() as db:
            cursor = await db.execute(
                "UPDATE feed_tokens SET is_active = 0 WHERE id = ? AND owner_user_id = ?",
                (token_id, owner_user_id),
            )
            await db.commit()
        return bool(cursor.rowcount)

    async def delete(self, token_id: str, owner_user_id: str) -> bool:
        async with self.database.connection() as db:
            cursor = await db.execute(
                "DELETE FROM feed_tokens WHERE id = ? AND owner_user_id = ?",
                (token_id, owner_user_id),
            )
            await db.commit()
        return bool(cursor.rowcount)
