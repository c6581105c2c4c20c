"""SQLite database management for events, subscriptions and feed tokens."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiosqlite

from .exceptions import StoreError

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        color TEXT,
        sync_enabled INTEGER NOT NULL DEFAULT 1,
        sync_interval_minutes INTEGER NOT NULL DEFAULT 60,
        last_sync_at TEXT,
        last_etag TEXT,
        last_modified TEXT,
        last_sync_error TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (owner_user_id, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        location TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        all_day INTEGER NOT NULL DEFAULT 0,
        rrule TEXT,
        color TEXT,
        source_calendar_id TEXT REFERENCES subscriptions(id) ON DELETE CASCADE,
        source_event_uid TEXT,
        content_hash TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_events_source_key
    ON events(source_calendar_id, source_event_uid, owner_user_id)
    WHERE source_calendar_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_events_owner_start
    ON events(owner_user_id, start_time)
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_tokens (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        token_prefix TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT,
        access_count INTEGER NOT NULL DEFAULT 0,
        last_accessed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_feed_tokens_owner
    ON feed_tokens(owner_user_id)
    """,
)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant as a sortable UTC ISO string with millisecond precision."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO string back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DatabaseManager:
    """Owns the SQLite file and hands out configured connections."""

    def __init__(self, database_path: Union[Path, str]):
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.info(f"Database manager initialized (lazy): {database_path}")

    async def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        await self._ensure_initialized()

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        # Use a lock to prevent concurrent initialization
        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            if self._initialized:
                return

            try:
                async with aiosqlite.connect(str(self.database_path)) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.execute("PRAGMA synchronous=NORMAL")
                    await db.execute("PRAGMA foreign_keys=ON")
                    for statement in SCHEMA_STATEMENTS:
                        await db.execute(statement)
                    await db.commit()
            except aiosqlite.Error as e:
                logger.exception("Failed to initialize database")
                raise StoreError(f"Database initialization failed: {e}")

            self._initialized = True
            logger.info("Database schema initialized successfully")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign keys enabled and row access by name."""
        await self._ensure_initialized()
        async with aiosqlite.connect(str(self.database_path)) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            yield db
