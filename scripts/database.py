"""
SQL store for channels, uploads playlists, items and quota counters.

Backends, picked by the database_backend setting (channels.yaml or env):
- "turso" (default): libsql, either a remote libsql:// / https:// database
  authenticated with TURSO_AUTH_TOKEN, or a local file: path
- "postgres": psycopg, connecting to POSTGRES_URL

Both backends sit behind ResilientConnection, which retries lock contention
and dropped connections with exponential backoff. Statements are written once
with ? placeholders; the PostgreSQL wrapper converts them.

Write operations commit by default. Pass commit=False to batch several writes
into one transaction on the same connection.
"""

import os
import threading
import time
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from config import get_config
from logger import get_logger
from models import (
    Channel,
    Item,
    LiveBroadcastContent,
    Playlist,
    ProcessingStatus,
    QuotaUsage,
    format_timestamp,
    parse_timestamp,
)

log = get_logger("database")


# ============================================================================
# CONNECTIONS
# ============================================================================

# Transient failures seen from Turso, local SQLite files and PostgreSQL
TRANSIENT_ERROR_PATTERNS = (
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "connection reset",
    "connection refused",
    "connection timed out",
    "could not connect to server",
    "server closed the connection",
    "ssl connection has been closed",
    "temporary failure",
    "too many requests",
    "too many connections",
    "sqlite_busy",
    "database is locked",
    "stream not found",
    "stream already in use",
)

# Hrana stream errors leave the libsql connection unusable
STALE_STREAM_PATTERNS = ("stream not found", "stream already in use")


def _message_matches(error: Exception, patterns: Iterable[str]) -> bool:
    message = str(error).lower()
    return any(pattern in message for pattern in patterns)


def is_retryable_error(error: Exception) -> bool:
    """True for lock contention, gateway errors and dropped connections."""
    return _message_matches(error, TRANSIENT_ERROR_PATTERNS)


def needs_connection_refresh(error: Exception) -> bool:
    return _message_matches(error, STALE_STREAM_PATTERNS)


def backoff_delays():
    """Yield the sleep before each retry: db_base_delay * db_exponential_base**n, capped at db_max_delay."""
    cfg = get_config()
    for attempt in range(cfg.db_max_retries):
        yield min(cfg.db_base_delay * (cfg.db_exponential_base ** attempt), cfg.db_max_delay)


def open_libsql(url: str, auth_token: Optional[str] = None):
    """Open a remote Turso database or a local file through libsql."""
    import libsql

    if url.startswith(("libsql://", "https://")):
        return libsql.connect(database=url, auth_token=auth_token)
    if url.startswith("file:"):
        os.makedirs(os.path.dirname(url[len("file:"):]) or ".", exist_ok=True)
    return libsql.connect(database=url)


class ResilientConnection:
    """
    Connection wrapper whose statements and commits survive transient errors.

    A failed call is retried after each delay from backoff_delays(); when the
    error means the connection itself is gone, a fresh one is opened first.
    A lost connection that still held uncommitted writes cannot be repaired
    by replaying one statement, so in that case the error is raised after
    reconnecting and the caller redoes the whole unit (see run_transaction).
    Anything else is delegated to the wrapped connection.
    """

    backend = "database"

    def __init__(self, conn=None):
        self._lock = threading.Lock()
        self._pending_writes = False
        self._conn = conn if conn is not None else self._connect()

    def _connect(self):
        raise NotImplementedError

    def _prepare(self, sql: str) -> str:
        return sql

    def _should_reconnect(self, error: Exception) -> bool:
        return needs_connection_refresh(error)

    def _after_fatal_error(self) -> None:
        pass

    def _executemany(self, conn, sql: str, parameters_list: list):
        return conn.executemany(sql, parameters_list)

    def _reconnect(self) -> None:
        log.info(f"Reopening {self.backend} connection")
        try:
            fresh = self._connect()
        except Exception as e:
            log.warning(f"Reconnection failed: {e}")
            return
        with self._lock:
            self._conn = fresh
            self._pending_writes = False

    def _call(self, label: str, operation: Callable, writes: bool = False):
        delays = backoff_delays()
        attempt = 1
        while True:
            try:
                with self._lock:
                    result = operation(self._conn)
                if writes:
                    self._pending_writes = True
                return result
            except Exception as e:
                if not is_retryable_error(e):
                    log.error(f"Non-retryable {self.backend} error: {e}")
                    self._after_fatal_error()
                    raise
                if self._pending_writes and self._should_reconnect(e):
                    log.error(f"{self.backend} connection lost during {label} "
                              f"with uncommitted writes, transaction abandoned: {e}")
                    self._reconnect()
                    raise
                delay = next(delays, None)
                if delay is None:
                    log.error(f"{self.backend} {label} failed after {attempt} attempt(s): {e}")
                    raise
                log.warning(f"{self.backend} {label} failed (attempt {attempt}), "
                            f"retrying in {delay:.1f}s: {e}")
                time.sleep(delay)
                if self._should_reconnect(e):
                    self._reconnect()
                attempt += 1

    def execute(self, sql: str, parameters: tuple = None):
        sql = self._prepare(sql)
        writes = not sql.lstrip().upper().startswith("SELECT")
        if parameters:
            return self._call("execute", lambda conn: conn.execute(sql, parameters), writes)
        return self._call("execute", lambda conn: conn.execute(sql), writes)

    def executemany(self, sql: str, parameters_list: list):
        sql = self._prepare(sql)
        return self._call("executemany", lambda conn: self._executemany(conn, sql, parameters_list), True)

    def commit(self):
        result = self._call("commit", lambda conn: conn.commit())
        self._pending_writes = False
        return result

    def rollback(self):
        self._pending_writes = False
        try:
            self._conn.rollback()
        except Exception as e:
            log.warning(f"Rollback failed: {e}")

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __getattr__(self, name):
        return getattr(self._conn, name)


class TursoConnection(ResilientConnection):
    """
    libsql connection (or any sqlite3-compatible one, as in tests).

    Reopens from the stored URL after Hrana stream errors. A wrapper built
    without a URL keeps retrying on the same connection.
    """

    backend = "Turso"

    def __init__(self, conn, url: str = None, auth_token: str = None):
        self._url = url
        self._auth_token = auth_token
        super().__init__(conn)

    def _connect(self):
        if not self._url:
            raise RuntimeError("no database URL stored")
        return open_libsql(self._url, self._auth_token)


class PostgresConnection(ResilientConnection):
    """psycopg connection; statements keep SQLite's ? placeholders and are converted here."""

    backend = "PostgreSQL"

    def __init__(self, conn_string: str):
        self._conn_string = conn_string
        super().__init__()

    def _connect(self):
        import psycopg

        log.debug("Opening PostgreSQL connection")
        return psycopg.connect(self._conn_string, autocommit=False)

    def _prepare(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def _executemany(self, conn, sql: str, parameters_list: list):
        # psycopg 3 connections only batch through a cursor
        with conn.cursor() as cursor:
            cursor.executemany(sql, parameters_list)
            return cursor.rowcount

    def _should_reconnect(self, error: Exception) -> bool:
        return True

    def _after_fatal_error(self) -> None:
        # Otherwise every later statement fails with "current transaction is aborted"
        self.rollback()


def get_database_backend() -> str:
    return get_config().database_backend.lower()


def get_connection() -> ResilientConnection:
    """
    Open a new wrapped connection to the configured backend.

    Every call opens a new connection, so callers that need their own
    transactional scope (quota increments, page checkpoints) simply call this
    again instead of sharing the job's connection.
    """
    cfg = get_config()

    if get_database_backend() == "postgres":
        if not cfg.postgres_url:
            raise ValueError("POSTGRES_URL environment variable required for postgres backend")
        log.debug(f"Connecting to PostgreSQL: {cfg.postgres_url[:30]}...")
        return PostgresConnection(cfg.postgres_url)

    url = cfg.database_url
    log.debug(f"Connecting to database: {url[:30]}...")
    return TursoConnection(open_libsql(url, cfg.database_auth_token), url=url, auth_token=cfg.database_auth_token)


def close_quietly(conn) -> None:
    """Close a connection, logging instead of raising if the close itself fails."""
    try:
        conn.close()
    except Exception as e:
        log.debug(f"Error closing connection: {e}")


def run_transaction(work: Callable, connection_factory: Callable = None, description: str = "transaction"):
    """
    Run work(conn) on a fresh connection and commit it as one unit.

    A transient failure anywhere in the unit (including a connection lost
    mid-transaction) rolls back, closes the connection and runs the whole
    unit again on a new one, after each delay from backoff_delays().

    Returns:
        Whatever work returned

    Raises:
        The last error, once retries run out or for a non-transient failure
    """
    connection_factory = connection_factory or get_connection
    delays = backoff_delays()
    attempt = 1
    while True:
        conn = connection_factory()
        try:
            result = work(conn)
            conn.commit()
            return result
        except Exception as e:
            conn.rollback()
            delay = next(delays, None) if is_retryable_error(e) else None
            if delay is None:
                raise
            log.warning(f"{description} failed (attempt {attempt}), "
                        f"redoing it on a new connection in {delay:.1f}s: {e}")
            time.sleep(delay)
            attempt += 1
        finally:
            close_quietly(conn)


# ============================================================================
# SCHEMA
# ============================================================================

def init_database(conn) -> None:
    """Initialize database schema. The DDL is valid for both SQLite/Turso and PostgreSQL."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS channels (
            channel_id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            handle TEXT UNIQUE,
            updated_at TEXT
        )
    """)

    # Uploads playlist per channel, carrying the resumable sync state
    conn.execute("""
        CREATE TABLE IF NOT EXISTS playlists (
            playlist_id TEXT PRIMARY KEY,
            channel_id TEXT NOT NULL REFERENCES channels(channel_id),
            title TEXT NOT NULL,
            processed_at TEXT,
            last_page_token TEXT,
            updated_at TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS items (
            video_id TEXT PRIMARY KEY,
            playlist_id TEXT NOT NULL REFERENCES playlists(playlist_id),
            title TEXT NOT NULL,
            description TEXT,
            kind TEXT NOT NULL,
            video_published_at TEXT NOT NULL,
            live_broadcast_content TEXT NOT NULL,
            scheduled_start_time TEXT,
            thumbnail_url TEXT,
            status TEXT NOT NULL DEFAULT 'NEW',
            first_seen_at TEXT,
            updated_at TEXT
        )
    """)

    # Quota tracking, one row per quota day (persists across runs)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS quota_usage (
            usage_date TEXT PRIMARY KEY,
            quota_used BIGINT NOT NULL DEFAULT 0,
            request_count BIGINT NOT NULL DEFAULT 0,
            last_updated TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS quota_operations (
            usage_date TEXT,
            operation TEXT,
            quota_used BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (usage_date, operation)
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_playlists_channel ON playlists(channel_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_items_playlist ON items(playlist_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_items_published ON items(video_published_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_items_playlist_published ON items(playlist_id, video_published_at)")

    conn.commit()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


# ============================================================================
# CHANNELS
# ============================================================================

def _row_to_channel(row) -> Channel:
    return Channel(channel_id=row[0], title=row[1], handle=row[2])


def get_channel(conn, channel_id: str) -> Optional[Channel]:
    """Find a channel by its YouTube channel ID."""
    row = conn.execute("""
        SELECT channel_id, title, handle FROM channels WHERE channel_id = ?
    """, (channel_id,)).fetchone()
    return _row_to_channel(row) if row else None


def get_channels(conn, channel_ids: Optional[Iterable[str]] = None) -> list[Channel]:
    """Get all channels, or only those with the given IDs."""
    if channel_ids is None:
        rows = conn.execute("""
            SELECT channel_id, title, handle FROM channels ORDER BY channel_id
        """).fetchall()
        return [_row_to_channel(row) for row in rows]

    ids = list(dict.fromkeys(channel_ids))
    if not ids:
        return []
    rows = conn.execute(f"""
        SELECT channel_id, title, handle FROM channels
        WHERE channel_id IN ({_placeholders(len(ids))})
        ORDER BY channel_id
    """, tuple(ids)).fetchall()
    return [_row_to_channel(row) for row in rows]


def save_channel(conn, channel: Channel, commit: bool = True) -> Channel:
    """Insert or update a channel."""
    conn.execute("""
        INSERT INTO channels (channel_id, title, handle, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(channel_id) DO UPDATE SET
            title = excluded.title,
            handle = COALESCE(excluded.handle, channels.handle),
            updated_at = excluded.updated_at
    """, (channel.channel_id, channel.title, channel.handle, _now()))
    if commit:
        conn.commit()
    return channel


# ============================================================================
# PLAYLISTS
# ============================================================================

def _row_to_playlist(row) -> Playlist:
    return Playlist(
        playlist_id=row[0],
        channel_id=row[1],
        title=row[2],
        processed_at=parse_timestamp(row[3]),
        last_page_token=row[4],
    )


def get_playlist(conn, playlist_id: str) -> Optional[Playlist]:
    """Find a playlist by its YouTube playlist ID."""
    row = conn.execute("""
        SELECT playlist_id, channel_id, title, processed_at, last_page_token
        FROM playlists WHERE playlist_id = ?
    """, (playlist_id,)).fetchone()
    return _row_to_playlist(row) if row else None


def get_playlists_for_channel(conn, channel_id: str) -> list[Playlist]:
    rows = conn.execute("""
        SELECT playlist_id, channel_id, title, processed_at, last_page_token
        FROM playlists WHERE channel_id = ? ORDER BY playlist_id
    """, (channel_id,)).fetchall()
    return [_row_to_playlist(row) for row in rows]


def save_playlist(conn, playlist: Playlist, commit: bool = True) -> Playlist:
    """Insert or update a playlist including its sync watermark and page cursor."""
    conn.execute("""
        INSERT INTO playlists (playlist_id, channel_id, title, processed_at, last_page_token, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(playlist_id) DO UPDATE SET
            title = excluded.title,
            processed_at = excluded.processed_at,
            last_page_token = excluded.last_page_token,
            updated_at = excluded.updated_at
    """, (
        playlist.playlist_id,
        playlist.channel_id,
        playlist.title,
        format_timestamp(playlist.processed_at),
        playlist.last_page_token,
        _now(),
    ))
    if commit:
        conn.commit()
    return playlist


def reset_playlist_sync(conn, playlist_id: str) -> bool:
    """
    Clear a playlist's watermark and cursor so the next run resyncs from scratch.

    Returns False if the playlist does not exist.
    """
    playlist = get_playlist(conn, playlist_id)
    if playlist is None:
        return False
    playlist.processed_at = None
    playlist.last_page_token = None
    save_playlist(conn, playlist)
    log.info(f"Reset sync state for playlist {playlist_id}")
    return True


# ============================================================================
# ITEMS
# ============================================================================

ITEM_COLUMNS = """
    video_id, playlist_id, title, description, kind, video_published_at,
    live_broadcast_content, scheduled_start_time, thumbnail_url, status
"""


def _row_to_item(row) -> Item:
    return Item(
        video_id=row[0],
        playlist_id=row[1],
        title=row[2],
        description=row[3],
        kind=row[4],
        video_published_at=parse_timestamp(row[5]),
        live_broadcast_content=LiveBroadcastContent(row[6]),
        scheduled_start_time=parse_timestamp(row[7]),
        thumbnail_url=row[8],
        status=ProcessingStatus(row[9]),
    )


def _item_params(item: Item, now: str) -> tuple:
    return (
        item.video_id,
        item.playlist_id,
        item.title,
        item.description,
        item.kind,
        format_timestamp(item.video_published_at),
        item.live_broadcast_content.value,
        format_timestamp(item.scheduled_start_time),
        item.thumbnail_url,
        item.status.value,
        now,
        now,
    )


UPSERT_ITEM_SQL = """
    INSERT INTO items (
        video_id, playlist_id, title, description, kind, video_published_at,
        live_broadcast_content, scheduled_start_time, thumbnail_url, status,
        first_seen_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(video_id) DO UPDATE SET
        title = excluded.title,
        description = excluded.description,
        live_broadcast_content = excluded.live_broadcast_content,
        scheduled_start_time = excluded.scheduled_start_time,
        thumbnail_url = excluded.thumbnail_url,
        updated_at = excluded.updated_at
"""


def get_item(conn, video_id: str) -> Optional[Item]:
    """Find an item by its YouTube video ID."""
    row = conn.execute(f"""
        SELECT {ITEM_COLUMNS} FROM items WHERE video_id = ?
    """, (video_id,)).fetchone()
    return _row_to_item(row) if row else None


def get_items_by_video_ids(conn, video_ids: Iterable[str]) -> dict[str, Item]:
    """Find all stored items among the given video IDs, keyed by video ID."""
    ids = list(dict.fromkeys(video_ids))
    if not ids:
        return {}
    rows = conn.execute(f"""
        SELECT {ITEM_COLUMNS} FROM items
        WHERE video_id IN ({_placeholders(len(ids))})
    """, tuple(ids)).fetchall()
    return {row[0]: _row_to_item(row) for row in rows}


def get_items_for_playlist(conn, playlist_id: str) -> list[Item]:
    """Get a playlist's items, newest first."""
    rows = conn.execute(f"""
        SELECT {ITEM_COLUMNS} FROM items
        WHERE playlist_id = ?
        ORDER BY video_published_at DESC
    """, (playlist_id,)).fetchall()
    return [_row_to_item(row) for row in rows]


def save_item(conn, item: Item, commit: bool = True) -> Item:
    """Insert an item or update its mutable fields."""
    conn.execute(UPSERT_ITEM_SQL, _item_params(item, _now()))
    if commit:
        conn.commit()
    return item


def save_items(conn, items: list[Item], commit: bool = True) -> int:
    """Insert or update multiple items in a single batch operation."""
    if not items:
        return 0
    now = _now()
    conn.executemany(UPSERT_ITEM_SQL, [_item_params(item, now) for item in items])
    if commit:
        conn.commit()
    return len(items)


def count_items(conn, playlist_id: Optional[str] = None) -> int:
    if playlist_id is None:
        row = conn.execute("SELECT COUNT(*) FROM items").fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM items WHERE playlist_id = ?", (playlist_id,)).fetchone()
    return int(row[0]) if row else 0


# ============================================================================
# QUOTA TRACKING - Persist across runs
# ============================================================================

def _quota_operations(conn, date_str: str) -> dict:
    rows = conn.execute("""
        SELECT operation, quota_used FROM quota_operations WHERE usage_date = ?
    """, (date_str,)).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def _row_to_quota_usage(conn, row) -> QuotaUsage:
    return QuotaUsage(
        usage_date=date.fromisoformat(row[0]),
        quota_used=int(row[1]),
        request_count=int(row[2]),
        operations=_quota_operations(conn, row[0]),
        last_updated=parse_timestamp(row[3]),
    )


def get_quota_usage(conn, usage_date: date) -> Optional[QuotaUsage]:
    """
    Get quota usage for a specific quota day.

    Returns:
        QuotaUsage, or None if nothing was recorded that day
    """
    row = conn.execute("""
        SELECT usage_date, quota_used, request_count, last_updated
        FROM quota_usage WHERE usage_date = ?
    """, (usage_date.isoformat(),)).fetchone()
    return _row_to_quota_usage(conn, row) if row else None


def increment_quota_usage(conn, usage_date: date, cost: int, operation: str, commit: bool = True) -> None:
    """
    Atomically add cost to a day's usage, creating the day's row if absent.

    The increment happens inside the UPSERT, so concurrent writers from other
    processes cannot lose updates.
    """
    date_str = usage_date.isoformat()
    now = _now()
    conn.execute("""
        INSERT INTO quota_usage (usage_date, quota_used, request_count, last_updated)
        VALUES (?, ?, 1, ?)
        ON CONFLICT(usage_date) DO UPDATE SET
            quota_used = quota_usage.quota_used + excluded.quota_used,
            request_count = quota_usage.request_count + 1,
            last_updated = excluded.last_updated
    """, (date_str, cost, now))
    conn.execute("""
        INSERT INTO quota_operations (usage_date, operation, quota_used)
        VALUES (?, ?, ?)
        ON CONFLICT(usage_date, operation) DO UPDATE SET
            quota_used = quota_operations.quota_used + excluded.quota_used
    """, (date_str, operation, cost))
    if commit:
        conn.commit()


def reset_quota_usage(conn, usage_date: date) -> None:
    """Reset a day's usage to zero. Use if quota tracking was corrupted."""
    date_str = usage_date.isoformat()
    conn.execute("DELETE FROM quota_operations WHERE usage_date = ?", (date_str,))
    conn.execute("DELETE FROM quota_usage WHERE usage_date = ?", (date_str,))
    conn.commit()


def get_quota_usage_history(
    conn,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> list[QuotaUsage]:
    """Get recorded quota days, newest first, optionally bounded by a date range."""
    if start_date is None and end_date is None:
        rows = conn.execute("""
            SELECT usage_date, quota_used, request_count, last_updated
            FROM quota_usage ORDER BY usage_date DESC
        """).fetchall()
    else:
        start = (start_date or date(1970, 1, 1)).isoformat()
        end = (end_date or date.today()).isoformat()
        rows = conn.execute("""
            SELECT usage_date, quota_used, request_count, last_updated
            FROM quota_usage
            WHERE usage_date >= ? AND usage_date <= ?
            ORDER BY usage_date DESC
        """, (start, end)).fetchall()
    return [_row_to_quota_usage(conn, row) for row in rows]
