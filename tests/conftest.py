"""
Pytest configuration and fixtures for the ingestion pipeline tests.

Every test gets its own SQLite file wrapped in TursoConnection, a config with
retries disabled, and a MagicMock standing in for the googleapiclient service.
"""

import sqlite3
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from config import Config, set_config
from database import TursoConnection, init_database, save_channel, save_item, save_playlist
from models import Channel, Item, LiveBroadcastContent, Playlist
from quota import QuotaTracker
from youtube_api import YouTubeClient


@pytest.fixture(autouse=True)
def test_config(tmp_path):
    """Config with retries and backoff disabled so failures surface immediately."""
    cfg = Config(
        youtube_api_key="test-key",
        log_dir=str(tmp_path / "logs"),
        api_max_retries=0,
        api_base_delay=0.0,
        api_max_delay=0.0,
        db_max_retries=0,
        db_base_delay=0.0,
        db_max_delay=0.0,
        quota_limit=10000,
        quota_safety_threshold=0,
        request_delay_ms=0,
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def connection_factory(tmp_path):
    """Callable returning a new connection to the test database file."""
    db_path = str(tmp_path / "test.db")

    def factory():
        return TursoConnection(sqlite3.connect(db_path))

    return factory


@pytest.fixture
def conn(connection_factory):
    """Main connection with the schema created."""
    connection = connection_factory()
    init_database(connection)
    yield connection
    connection.close()


@pytest.fixture
def quota(conn, connection_factory):
    return QuotaTracker(connection_factory=connection_factory)


@pytest.fixture
def service():
    """Mock googleapiclient YouTube resource."""
    return MagicMock()


@pytest.fixture
def client(service):
    return YouTubeClient(api_key="test-key", service=service)


@pytest.fixture
def channel(conn):
    """A stored channel with its uploads playlist not yet created."""
    stored = Channel(channel_id="UC_test_channel_000000001", title="Test Channel")
    save_channel(conn, stored)
    return stored


@pytest.fixture
def playlist(conn, channel):
    stored = Playlist(
        playlist_id="UU_test_channel_000000001",
        title="Uploads from Test Channel",
        channel_id=channel.channel_id,
    )
    save_playlist(conn, stored)
    return stored


@pytest.fixture
def make_item(conn):
    """Store an item and return it."""
    def _make(video_id, playlist_id, published_at="2023-01-01T00:00:00Z", **overrides):
        fields = dict(
            video_id=video_id,
            title=f"Title {video_id}",
            description=f"Description {video_id}",
            kind="youtube#video",
            video_published_at=datetime.fromisoformat(published_at.replace("Z", "+00:00")),
            live_broadcast_content=LiveBroadcastContent.NONE,
            playlist_id=playlist_id,
        )
        fields.update(overrides)
        item = Item(**fields)
        save_item(conn, item)
        return item

    return _make

