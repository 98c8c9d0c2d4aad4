#!/usr/bin/env python3
"""
Database models and operations for Pulse RSS.

All SQL runs on a single sqlite3 connection owned by DatabaseQueue. Callers
never touch the connection directly: they enqueue a named operation with
``await db.execute("operation_name", **params)`` and the worker task runs the
matching method, so writes are serialized without extra locking.

Every path that deletes items writes a tombstone for each deleted
(feed_id, guid) first, in the same transaction, so a later fetch cannot
resurrect the item.
"""

from os import path, access, R_OK
from dataclasses import dataclass
from datetime import datetime, timedelta
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Sequence

from config import config, get_logger
from telemetry import trace_span
from errors import FeedError, StorageError, FeedNotFoundError, ItemNotFoundError
from entries import FeedEntry, derive_guid, derive_published_at
from backoff import next_refresh_at
from utils import blank, utcnow, to_epoch, from_epoch

logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024
UNTITLED_ITEM = "(untitled)"
MISSING_LINK = "#"


@dataclass
class CacheMeta:
    """HTTP validators and streak read before a conditional fetch."""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    unchanged_count: int = 0


@dataclass
class RefreshMeta:
    """Bookkeeping written at the end of every refresh attempt."""
    last_checked_at: Optional[datetime] = None
    next_refresh_at: Optional[datetime] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_error: Optional[str] = None
    unchanged_count: int = 0


@dataclass
class FeedRecord:
    id: int
    url: str
    title: str
    original_title: str
    custom_title: Optional[str]
    sort_order: int
    created_at: Optional[datetime]
    item_count: int = 0
    unread_count: int = 0
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    unchanged_count: int = 0
    next_refresh_at: Optional[datetime] = None


@dataclass
class ItemRecord:
    id: int
    feed_id: int
    guid: str
    title: str
    link: str
    summary: Optional[str]
    content: Optional[str]
    published_at: Optional[datetime]
    read_at: Optional[datetime]
    created_at: Optional[datetime]

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


_FEED_COLUMNS = """
    f.id, f.url, COALESCE(f.custom_title, f.title) AS display_title, f.title, f.custom_title,
    f.sort_order, f.created_at, f.etag, f.last_modified, f.last_refreshed_at, f.last_error,
    f.unchanged_count, f.next_refresh_at,
    (SELECT COUNT(*) FROM items i WHERE i.feed_id = f.id) AS item_count,
    (SELECT COUNT(*) FROM items i WHERE i.feed_id = f.id AND i.read_at IS NULL) AS unread_count
"""

_ITEM_COLUMNS = "id, feed_id, guid, title, link, summary, content, published_at, read_at, created_at"

# Newest first; items without a published time rank by when we first saw them
_ITEM_RECENCY = "COALESCE(published_at, created_at) DESC, id DESC"


def _feed_from_row(row) -> FeedRecord:
    return FeedRecord(
        id=row['id'],
        url=row['url'],
        title=row['display_title'],
        original_title=row['title'],
        custom_title=row['custom_title'],
        sort_order=row['sort_order'],
        created_at=from_epoch(row['created_at']),
        item_count=row['item_count'],
        unread_count=row['unread_count'],
        etag=row['etag'],
        last_modified=row['last_modified'],
        last_refreshed_at=from_epoch(row['last_refreshed_at']),
        last_error=row['last_error'],
        unchanged_count=row['unchanged_count'] or 0,
        next_refresh_at=from_epoch(row['next_refresh_at']),
    )


def _item_from_row(row) -> ItemRecord:
    return ItemRecord(
        id=row['id'],
        feed_id=row['feed_id'],
        guid=row['guid'],
        title=row['title'],
        link=row['link'],
        summary=row['summary'],
        content=row['content'],
        published_at=from_epoch(row['published_at']),
        read_at=from_epoch(row['read_at']),
        created_at=from_epoch(row['created_at']),
    )


def _null_if_blank(value: Optional[str]) -> Optional[str]:
    return None if blank(value) else value


def initialize_database(conn) -> None:
    """Create the schema on a new database or migrate an existing one."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by older versions up to the current schema."""
    cursor = conn.cursor()
    try:
        # Migration 1: manual feed ordering
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'sort_order' not in columns:
            logger.info("Adding sort_order column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN sort_order INTEGER NOT NULL DEFAULT 0")

        # Feeds without a position get one, alphabetically by display title
        cursor.execute("""
            WITH ranked AS (
                SELECT id,
                       ROW_NUMBER() OVER (ORDER BY COALESCE(custom_title, title) COLLATE NOCASE, id) AS position
                FROM feeds
            )
            UPDATE feeds
            SET sort_order = (SELECT position FROM ranked WHERE ranked.id = feeds.id)
            WHERE sort_order <= 0
        """)
        if cursor.rowcount > 0:
            logger.info(f"Migration: backfilled sort_order for {cursor.rowcount} feeds")

        # Migration 2: tombstones table
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='tombstones'")
        if cursor.fetchone() is None:
            logger.info("Creating tombstones table")
            cursor.execute("""
                CREATE TABLE tombstones (
                    feed_id INTEGER NOT NULL,
                    guid TEXT NOT NULL,
                    deleted_at INTEGER NOT NULL,
                    PRIMARY KEY (feed_id, guid),
                    FOREIGN KEY(feed_id) REFERENCES feeds(id) ON DELETE CASCADE
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tombstones_deleted_at ON tombstones(deleted_at)")

        conn.commit()
    except Error:
        conn.rollback()
        logger.exception("Error running migrations")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    if file_size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure serialized access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, initialize the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path, timeout=5.0)
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA busy_timeout = 5000")
        self.conn.execute("PRAGMA journal_mode = WAL")
        try:
            initialize_database(self.conn)
        except Exception:
            self.conn.close()
            self.conn = None
            raise

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any callers still waiting so they do not hang
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": StorageError("database worker stopped")})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        raise StorageError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    if not isinstance(e, FeedError):
                        logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "feed.id": params.get("feed_id"),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Run a named database operation on the worker and return its result.

        Raises:
            FeedError: Domain errors raised by the operation, unchanged
            StorageError: Any sqlite3 failure, chained to the original error
        """
        if not self.running:
            raise StorageError("database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
        finally:
            self.events.pop(operation_id, None)

        if "error" in result:
            error = result["error"]
            if isinstance(error, FeedError):
                raise error
            if isinstance(error, Error):
                raise StorageError(f"{operation_name}: {error}") from error
            raise error

        return result["result"]

    # Feed Management Operations
    def get_feed_url(self, feed_id: int) -> str:
        row = self.conn.execute("SELECT url FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        if row is None:
            raise FeedNotFoundError(feed_id)
        return row['url']

    def get_cache_meta(self, feed_id: int) -> CacheMeta:
        """Load the validators and unchanged streak for a conditional fetch."""
        row = self.conn.execute(
            "SELECT etag, last_modified, unchanged_count FROM feeds WHERE id = ?",
            (feed_id,),
        ).fetchone()
        if row is None:
            raise FeedNotFoundError(feed_id)
        return CacheMeta(
            etag=(row['etag'] or "").strip() or None,
            last_modified=(row['last_modified'] or "").strip() or None,
            unchanged_count=max(row['unchanged_count'] or 0, 0),
        )

    def upsert_feed(self, url: str, title: str) -> int:
        """Insert a feed at the end of the list, or update its feed-supplied title.

        The user's custom title is never touched here.
        """
        now = to_epoch(utcnow())
        self.conn.execute(
            """
            INSERT INTO feeds (url, title, sort_order, created_at)
            VALUES (?, ?, COALESCE((SELECT MAX(sort_order) + 1 FROM feeds), 1), ?)
            ON CONFLICT(url) DO UPDATE SET title = excluded.title
            """,
            (url, title, now),
        )
        self.conn.commit()
        row = self.conn.execute("SELECT id FROM feeds WHERE url = ?", (url,)).fetchone()
        return row['id']

    def update_feed_title(self, feed_id: int, title: Optional[str]) -> bool:
        """Set the user's custom title. A blank title reverts to the feed's own."""
        cursor = self.conn.execute(
            "UPDATE feeds SET custom_title = ? WHERE id = ?",
            (_null_if_blank(title.strip() if title else title), feed_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed; its items and tombstones go with it."""
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        self.conn.commit()
        if cursor.rowcount > 0:
            logger.info(f"Deleted feed {feed_id}")
        return cursor.rowcount > 0

    def update_feed_order(self, ordered_feed_ids: Sequence[int]) -> List[int]:
        """Apply a manual ordering.

        Requested ids come first, in the given order; unknown and duplicate ids
        are ignored; feeds not mentioned keep their relative order after them.

        Returns:
            The final ordering of feed ids
        """
        with self.conn:
            existing_ids = [
                row['id'] for row in self.conn.execute("SELECT id FROM feeds ORDER BY sort_order ASC, id ASC")
            ]
            existing = set(existing_ids)
            final_order: List[int] = []
            seen: Set[int] = set()
            for feed_id in ordered_feed_ids:
                if feed_id in existing and feed_id not in seen:
                    seen.add(feed_id)
                    final_order.append(feed_id)
            final_order.extend(feed_id for feed_id in existing_ids if feed_id not in seen)

            self.conn.executemany(
                "UPDATE feeds SET sort_order = ? WHERE id = ?",
                [(position, feed_id) for position, feed_id in enumerate(final_order, start=1)],
            )
        return final_order

    def get_feed(self, feed_id: int) -> FeedRecord:
        row = self.conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds f WHERE f.id = ?", (feed_id,)).fetchone()
        if row is None:
            raise FeedNotFoundError(feed_id)
        return _feed_from_row(row)

    def list_feeds(self) -> List[FeedRecord]:
        """List feeds in display order with item and unread counts."""
        rows = self.conn.execute(
            f"""
            SELECT {_FEED_COLUMNS}
            FROM feeds f
            ORDER BY f.sort_order ASC, display_title COLLATE NOCASE, f.id ASC
            """
        ).fetchall()
        return [_feed_from_row(row) for row in rows]

    # Refresh Scheduling Operations
    def save_refresh_meta(self, feed_id: int, meta: RefreshMeta) -> None:
        """Write the scheduling fields of one refresh attempt in a single UPDATE.

        Blank validators keep the stored ones, a blank error clears last_error,
        and a missing check or next-refresh time is filled in.
        """
        if meta.last_checked_at is None:
            meta.last_checked_at = utcnow()
        if meta.unchanged_count < 0:
            meta.unchanged_count = 0
        if meta.next_refresh_at is None:
            meta.next_refresh_at = next_refresh_at(meta.last_checked_at, meta.unchanged_count)

        cursor = self.conn.execute(
            """
            UPDATE feeds
            SET etag = COALESCE(?, etag),
                last_modified = COALESCE(?, last_modified),
                last_refreshed_at = ?,
                last_error = ?,
                unchanged_count = ?,
                next_refresh_at = ?
            WHERE id = ?
            """,
            (
                _null_if_blank(meta.etag),
                _null_if_blank(meta.last_modified),
                to_epoch(meta.last_checked_at),
                _null_if_blank(meta.last_error),
                meta.unchanged_count,
                to_epoch(meta.next_refresh_at),
                feed_id,
            ),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise FeedNotFoundError(feed_id)

    def list_due_feeds(self, now: Optional[datetime] = None, limit: int = 5) -> List[int]:
        """Feeds never scheduled or due at ``now``, never-scheduled first."""
        now = now or utcnow()
        rows = self.conn.execute(
            """
            SELECT id
            FROM feeds
            WHERE next_refresh_at IS NULL OR next_refresh_at <= ?
            ORDER BY next_refresh_at IS NOT NULL, next_refresh_at ASC, id ASC
            LIMIT ?
            """,
            (to_epoch(now), limit),
        ).fetchall()
        return [row['id'] for row in rows]

    # Item Management Operations
    def upsert_items(self, feed_id: int, entries: Sequence[FeedEntry]) -> int:
        """Insert entries not already stored or tombstoned, in list order.

        Returns:
            Number of newly inserted items. Rows inserted before a failing row
            are committed before the error propagates.
        """
        now = to_epoch(utcnow())
        inserted = 0
        try:
            for index, entry in enumerate(entries):
                guid = derive_guid(feed_id, index, entry)
                cursor = self.conn.execute(
                    """
                    INSERT OR IGNORE INTO items
                        (feed_id, guid, title, link, summary, content, published_at, created_at)
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM tombstones WHERE feed_id = ? AND guid = ?
                    )
                    """,
                    (
                        feed_id,
                        guid,
                        (entry.title or "").strip() or UNTITLED_ITEM,
                        (entry.link or "").strip() or MISSING_LINK,
                        (entry.summary or "").strip(),
                        (entry.content or "").strip(),
                        to_epoch(derive_published_at(entry)),
                        now,
                        feed_id,
                        guid,
                    ),
                )
                if cursor.rowcount > 0:
                    inserted += cursor.rowcount
        finally:
            self.conn.commit()
        return inserted

    def enforce_item_limit(self, feed_id: int, max_items: Optional[int] = None) -> int:
        """Tombstone and delete everything beyond the newest ``max_items`` items.

        Returns:
            Number of items deleted
        """
        max_items = config.MAX_ITEMS_PER_FEED if max_items is None else max_items
        now = to_epoch(utcnow())
        beyond_limit = f"""
            feed_id = ?
            AND id NOT IN (
                SELECT id FROM items
                WHERE feed_id = ?
                ORDER BY {_ITEM_RECENCY}
                LIMIT ?
            )
        """
        with self.conn:
            self.conn.execute(
                f"INSERT OR IGNORE INTO tombstones (feed_id, guid, deleted_at) "
                f"SELECT feed_id, guid, ? FROM items WHERE {beyond_limit}",
                (now, feed_id, feed_id, max_items),
            )
            cursor = self.conn.execute(
                f"DELETE FROM items WHERE {beyond_limit}",
                (feed_id, feed_id, max_items),
            )
        deleted = cursor.rowcount
        if deleted > 0:
            logger.info("Pruned %d old items for feed_id=%d (kept %d)", deleted, feed_id, max_items)
        return deleted

    def sweep_read_items(self, feed_id: int) -> int:
        """Tombstone and delete every read item of one feed."""
        now = to_epoch(utcnow())
        with self.conn:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO tombstones (feed_id, guid, deleted_at)
                SELECT feed_id, guid, ? FROM items
                WHERE feed_id = ? AND read_at IS NOT NULL
                """,
                (now, feed_id),
            )
            cursor = self.conn.execute(
                "DELETE FROM items WHERE feed_id = ? AND read_at IS NOT NULL",
                (feed_id,),
            )
        if cursor.rowcount > 0:
            logger.info(f"Swept {cursor.rowcount} read items from feed {feed_id}")
        return cursor.rowcount

    def cleanup_read_items(self, retention_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Tombstone and delete items read longer than the retention window ago."""
        retention_minutes = config.READ_RETENTION_MINUTES if retention_minutes is None else retention_minutes
        now = now or utcnow()
        cutoff = to_epoch(now - timedelta(minutes=retention_minutes))
        with self.conn:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO tombstones (feed_id, guid, deleted_at)
                SELECT feed_id, guid, ? FROM items
                WHERE read_at IS NOT NULL AND read_at <= ?
                """,
                (to_epoch(now), cutoff),
            )
            cursor = self.conn.execute(
                "DELETE FROM items WHERE read_at IS NOT NULL AND read_at <= ?",
                (cutoff,),
            )
        if cursor.rowcount > 0:
            logger.info(f"Cleaned up {cursor.rowcount} read items older than {retention_minutes} minutes")
        return cursor.rowcount

    def prune_tombstones(self, retention_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Forget tombstones older than the retention window.

        A feed that re-serves one of these GUIDs afterwards will have it
        inserted again.
        """
        retention_days = config.TOMBSTONE_RETENTION_DAYS if retention_days is None else retention_days
        cutoff = to_epoch((now or utcnow()) - timedelta(days=retention_days))
        cursor = self.conn.execute("DELETE FROM tombstones WHERE deleted_at <= ?", (cutoff,))
        self.conn.commit()
        if cursor.rowcount > 0:
            logger.info(f"Pruned {cursor.rowcount} tombstones older than {retention_days} days")
        return cursor.rowcount

    def is_tombstoned(self, feed_id: int, guid: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM tombstones WHERE feed_id = ? AND guid = ?", (feed_id, guid)
        ).fetchone()
        return row is not None

    def list_tombstone_guids(self, feed_id: int) -> Set[str]:
        rows = self.conn.execute("SELECT guid FROM tombstones WHERE feed_id = ?", (feed_id,)).fetchall()
        return {row['guid'] for row in rows}

    def list_items(self, feed_id: int) -> List[ItemRecord]:
        rows = self.conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE feed_id = ? ORDER BY {_ITEM_RECENCY}",
            (feed_id,),
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def list_items_after(self, feed_id: int, after_id: int) -> List[ItemRecord]:
        """Items of a feed stored after ``after_id``, for incremental UI updates."""
        rows = self.conn.execute(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE feed_id = ? AND id > ? ORDER BY {_ITEM_RECENCY}",
            (feed_id, after_id),
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def count_items_after(self, feed_id: int, after_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM items WHERE feed_id = ? AND id > ?", (feed_id, after_id)
        ).fetchone()
        return row[0]

    def count_items(self, feed_id: Optional[int] = None) -> int:
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM items").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM items WHERE feed_id = ?", (feed_id,)).fetchone()
        return row[0]

    def get_item(self, item_id: int) -> ItemRecord:
        row = self.conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ItemNotFoundError(item_id)
        return _item_from_row(row)

    def toggle_read(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """Flip an item between read and unread.

        Returns:
            True if the item is now read
        """
        row = self.conn.execute("SELECT read_at FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ItemNotFoundError(item_id)
        if row['read_at'] is not None:
            self.conn.execute("UPDATE items SET read_at = NULL WHERE id = ?", (item_id,))
            self.conn.commit()
            return False
        self.conn.execute("UPDATE items SET read_at = ? WHERE id = ?", (to_epoch(now or utcnow()), item_id))
        self.conn.commit()
        return True

    def mark_all_read(self, feed_id: int, now: Optional[datetime] = None) -> int:
        cursor = self.conn.execute(
            "UPDATE items SET read_at = ? WHERE feed_id = ? AND read_at IS NULL",
            (to_epoch(now or utcnow()), feed_id),
        )
        self.conn.commit()
        return cursor.rowcount
