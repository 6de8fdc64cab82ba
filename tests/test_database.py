"""
Tests for the SQL store: schema, upserts and quota rows.
"""

import sqlite3
from datetime import date
from unittest.mock import MagicMock

import pytest

import database
from api_payloads import utc
from database import (
    PostgresConnection,
    TursoConnection,
    backoff_delays,
    count_items,
    get_channel,
    get_channels,
    get_item,
    get_items_by_video_ids,
    get_items_for_playlist,
    get_playlist,
    get_playlists_for_channel,
    get_quota_usage,
    increment_quota_usage,
    init_database,
    is_retryable_error,
    reset_playlist_sync,
    reset_quota_usage,
    run_transaction,
    save_channel,
    save_item,
    save_items,
    save_playlist,
)
from models import Channel, LiveBroadcastContent, ProcessingStatus


class TestSchema:
    def test_init_is_idempotent(self, conn) -> None:
        init_database(conn)
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()}
        assert {"channels", "playlists", "items", "quota_usage", "quota_operations"} <= tables


class TestChannels:
    def test_save_and_get(self, conn) -> None:
        save_channel(conn, Channel(channel_id="UC1", title="One", handle="@one"))
        assert get_channel(conn, "UC1") == Channel(channel_id="UC1", title="One", handle="@one")
        assert get_channel(conn, "UC_missing") is None

    def test_update_keeps_handle(self, conn) -> None:
        save_channel(conn, Channel(channel_id="UC1", title="One", handle="@one"))
        save_channel(conn, Channel(channel_id="UC1", title="Renamed"))

        stored = get_channel(conn, "UC1")
        assert stored.title == "Renamed"
        assert stored.handle == "@one"

    def test_handles_are_unique(self, conn) -> None:
        save_channel(conn, Channel(channel_id="UC1", title="One", handle="@same"))
        with pytest.raises(sqlite3.IntegrityError):
            save_channel(conn, Channel(channel_id="UC2", title="Two", handle="@same"))

    def test_get_channels_filtered(self, conn) -> None:
        for n in (3, 1, 2):
            save_channel(conn, Channel(channel_id=f"UC{n}", title=str(n)))

        assert [c.channel_id for c in get_channels(conn)] == ["UC1", "UC2", "UC3"]
        assert [c.channel_id for c in get_channels(conn, ["UC3", "UC1", "UC9"])] == ["UC1", "UC3"]
        assert get_channels(conn, []) == []


class TestPlaylists:
    def test_round_trip_of_sync_state(self, conn, playlist) -> None:
        playlist.processed_at = utc("2024-01-01T12:00:00Z")
        playlist.last_page_token = "CAUQAA"
        save_playlist(conn, playlist)

        stored = get_playlist(conn, playlist.playlist_id)
        assert stored.processed_at == utc("2024-01-01T12:00:00Z")
        assert stored.last_page_token == "CAUQAA"
        assert get_playlists_for_channel(conn, playlist.channel_id) == [stored]

    def test_reset_sync(self, conn, playlist) -> None:
        playlist.processed_at = utc("2024-01-01T12:00:00Z")
        playlist.last_page_token = "CAUQAA"
        save_playlist(conn, playlist)

        assert reset_playlist_sync(conn, playlist.playlist_id) is True
        stored = get_playlist(conn, playlist.playlist_id)
        assert stored.processed_at is None
        assert stored.last_page_token is None

    def test_reset_unknown_playlist(self, conn) -> None:
        assert reset_playlist_sync(conn, "UU_missing") is False


class TestItems:
    def test_round_trip(self, conn, playlist, make_item) -> None:
        item = make_item(
            "v1", playlist.playlist_id,
            live_broadcast_content=LiveBroadcastContent.UPCOMING,
            scheduled_start_time=utc("2024-02-01T00:00:00Z"),
            thumbnail_url="https://i.ytimg.com/vi/v1/hqdefault.jpg",
        )

        assert get_item(conn, "v1") == item

    def test_upsert_keeps_status_and_playlist(self, conn, playlist, make_item) -> None:
        item = make_item("v1", playlist.playlist_id, status=ProcessingStatus.DOWNLOADED)
        item.title = "Renamed"
        item.status = ProcessingStatus.NEW
        item.playlist_id = "UU_other"
        save_item(conn, item)

        stored = get_item(conn, "v1")
        assert stored.title == "Renamed"
        assert stored.status == ProcessingStatus.DOWNLOADED
        assert stored.playlist_id == playlist.playlist_id

    def test_batch_save_and_lookup(self, conn, playlist, make_item) -> None:
        items = [make_item(f"v{n}", playlist.playlist_id, published_at=f"2024-01-0{n}T00:00:00Z") for n in (1, 2, 3)]

        assert save_items(conn, items) == 3
        assert save_items(conn, []) == 0
        assert count_items(conn) == 3
        assert count_items(conn, playlist.playlist_id) == 3
        assert set(get_items_by_video_ids(conn, ["v1", "v3", "v9"])) == {"v1", "v3"}
        assert get_items_by_video_ids(conn, []) == {}
        assert [i.video_id for i in get_items_for_playlist(conn, playlist.playlist_id)] == ["v3", "v2", "v1"]


class TestQuotaRows:
    def test_increment_creates_then_adds(self, conn) -> None:
        day = date(2024, 3, 1)
        increment_quota_usage(conn, day, 1, "channels.list")
        increment_quota_usage(conn, day, 2, "videos.list")
        increment_quota_usage(conn, day, 1, "videos.list")

        usage = get_quota_usage(conn, day)
        assert usage.quota_used == 4
        assert usage.request_count == 3
        assert usage.operations == {"channels.list": 1, "videos.list": 3}
        assert usage.last_updated is not None

    def test_days_are_independent(self, conn) -> None:
        increment_quota_usage(conn, date(2024, 3, 1), 5, "videos.list")

        assert get_quota_usage(conn, date(2024, 3, 2)) is None

    def test_reset(self, conn) -> None:
        day = date(2024, 3, 1)
        increment_quota_usage(conn, day, 5, "videos.list")
        reset_quota_usage(conn, day)

        assert get_quota_usage(conn, day) is None

    def test_concurrent_connections_add_up(self, conn, connection_factory) -> None:
        day = date(2024, 3, 1)
        first, second = connection_factory(), connection_factory()
        try:
            increment_quota_usage(first, day, 1, "videos.list")
            increment_quota_usage(second, day, 1, "videos.list")
        finally:
            first.close()
            second.close()

        assert get_quota_usage(conn, day).quota_used == 2


class TestRetryHelpers:
    @pytest.mark.parametrize("message, expected", [
        ("database is locked", True),
        ("502 Bad Gateway", True),
        ("stream not found", True),
        ("UNIQUE constraint failed: channels.handle", False),
    ])
    def test_is_retryable_error(self, message, expected) -> None:
        assert is_retryable_error(Exception(message)) is expected

    def test_locked_database_is_retried(self, test_config) -> None:
        test_config.db_max_retries = 2

        class FlakyConnection:
            calls = 0

            def execute(self, sql, parameters=None):
                FlakyConnection.calls += 1
                if FlakyConnection.calls < 3:
                    raise sqlite3.OperationalError("database is locked")
                return "ok"

        assert TursoConnection(FlakyConnection()).execute("SELECT 1") == "ok"
        assert FlakyConnection.calls == 3

    def test_retries_exhausted_reraises(self, test_config) -> None:
        test_config.db_max_retries = 1
        inner = MagicMock()
        inner.execute.side_effect = sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            TursoConnection(inner).execute("SELECT 1")

        assert inner.execute.call_count == 2

    def test_non_retryable_error_raised_at_once(self, test_config) -> None:
        test_config.db_max_retries = 3
        inner = MagicMock()
        inner.execute.side_effect = sqlite3.IntegrityError("UNIQUE constraint failed: channels.handle")

        with pytest.raises(sqlite3.IntegrityError):
            TursoConnection(inner).execute("INSERT INTO channels VALUES (?)", ("UC1",))

        assert inner.execute.call_count == 1

    def test_stream_error_reopens_connection(self, test_config, monkeypatch) -> None:
        test_config.db_max_retries = 1
        stale, fresh = MagicMock(), MagicMock()
        stale.execute.side_effect = ValueError("Hrana: stream not found")
        fresh.execute.return_value = "ok"
        opened = []

        def fake_open(url, auth_token=None):
            opened.append((url, auth_token))
            return fresh

        monkeypatch.setattr(database, "open_libsql", fake_open)
        wrapper = TursoConnection(stale, url="libsql://example.turso.io", auth_token="secret")

        assert wrapper.execute("SELECT 1") == "ok"
        assert opened == [("libsql://example.turso.io", "secret")]

    def test_backoff_is_capped(self, test_config) -> None:
        test_config.db_max_retries = 4
        test_config.db_base_delay = 1.0
        test_config.db_exponential_base = 2.0
        test_config.db_max_delay = 5.0

        assert list(backoff_delays()) == [1.0, 2.0, 4.0, 5.0]

    def test_lost_connection_with_uncommitted_writes_is_not_replayed(self, test_config, monkeypatch) -> None:
        test_config.db_max_retries = 2
        stale, fresh = MagicMock(), MagicMock()
        stale.execute.side_effect = [None, ValueError("Hrana: stream not found")]
        monkeypatch.setattr(database, "open_libsql", lambda url, auth_token=None: fresh)
        wrapper = TursoConnection(stale, url="libsql://example.turso.io")

        wrapper.execute("INSERT INTO channels (channel_id, title) VALUES (?, ?)", ("UC1", "One"))
        with pytest.raises(ValueError):
            wrapper.execute("INSERT INTO playlists (playlist_id) VALUES (?)", ("UU1",))

        assert not fresh.execute.called
        assert wrapper._conn is fresh

    def test_lost_connection_before_any_write_is_retried(self, test_config, monkeypatch) -> None:
        test_config.db_max_retries = 1
        stale, fresh = MagicMock(), MagicMock()
        stale.execute.side_effect = ValueError("Hrana: stream not found")
        fresh.execute.return_value = "rows"
        monkeypatch.setattr(database, "open_libsql", lambda url, auth_token=None: fresh)

        wrapper = TursoConnection(stale, url="libsql://example.turso.io")

        assert wrapper.execute("SELECT 1") == "rows"


class TestPostgresBatch:
    class FakePostgres(PostgresConnection):
        def __init__(self, driver_conn):
            self._driver_conn = driver_conn
            super().__init__("postgresql://localhost/test")

        def _connect(self):
            return self._driver_conn

    def test_save_items_goes_through_a_cursor(self, playlist, make_item) -> None:
        # psycopg 3 connections have execute() and cursor() but no executemany()
        driver = MagicMock(spec=["execute", "cursor", "commit", "rollback", "close"])
        cursor = driver.cursor.return_value.__enter__.return_value
        item = make_item("v1", playlist.playlist_id)

        assert save_items(self.FakePostgres(driver), [item]) == 1

        sql, rows = cursor.executemany.call_args.args
        assert "?" not in sql
        assert "%s" in sql
        assert len(rows) == 1
        driver.commit.assert_called_once()


class TestRunTransaction:
    def test_commits_work(self, conn, connection_factory) -> None:
        run_transaction(lambda c: save_channel(c, Channel(channel_id="UC1", title="One"), commit=False),
                        connection_factory)

        assert get_channel(conn, "UC1").title == "One"

    def test_transient_failure_redoes_whole_unit(self, test_config, conn, connection_factory) -> None:
        test_config.db_max_retries = 2
        attempts = []

        def work(c):
            attempts.append(c)
            save_channel(c, Channel(channel_id="UC1", title="One"), commit=False)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("database is locked")
            save_channel(c, Channel(channel_id="UC2", title="Two"), commit=False)

        run_transaction(work, connection_factory)

        assert len(attempts) == 2
        assert attempts[0] is not attempts[1]
        assert {c.channel_id for c in get_channels(conn)} == {"UC1", "UC2"}

    def test_non_transient_failure_is_not_retried(self, test_config, conn, connection_factory) -> None:
        test_config.db_max_retries = 3
        attempts = []

        def work(c):
            attempts.append(c)
            save_channel(c, Channel(channel_id="UC1", title="One"), commit=False)
            raise sqlite3.IntegrityError("CHECK constraint failed")

        with pytest.raises(sqlite3.IntegrityError):
            run_transaction(work, connection_factory)

        assert len(attempts) == 1
        assert get_channel(conn, "UC1") is None
