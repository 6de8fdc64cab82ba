"""
Durable per-page progress for the uploads playlist sync.

Each page's new items and the playlist's resume cursor are written together
on a dedicated connection, so they commit (or roll back) independently of
whatever the caller's connection is doing.
"""

from typing import Callable, Optional

from database import get_connection, run_transaction, save_items, save_playlist
from logger import get_logger
from models import Item, Playlist

log = get_logger("checkpoint")


class CheckpointWriter:
    """Persists one page of progress in its own transaction."""

    def __init__(self, connection_factory: Optional[Callable] = None):
        self._connection_factory = connection_factory or get_connection

    def save_page_progress(self, playlist: Playlist, new_items: list[Item], next_page_token: Optional[str]) -> None:
        """
        Save new items and set the playlist's resume cursor, atomically.

        The items and the cursor are one unit of work: a transient store failure
        redoes both on a new connection, never just the statement that failed.

        Args:
            playlist: Playlist being synced; its last_page_token is updated in place
            new_items: Items created from this page (may be empty)
            next_page_token: Token to resume from, or None when the pass is ending

        Raises:
            Whatever the store raised; nothing from this call is committed in that case.
        """
        previous_token = playlist.last_page_token

        def write_page(conn):
            if new_items:
                save_items(conn, new_items, commit=False)
            playlist.last_page_token = next_page_token
            save_playlist(conn, playlist, commit=False)

        try:
            run_transaction(write_page, self._connection_factory,
                            f"checkpoint for playlist {playlist.playlist_id}")
        except Exception as e:
            log.error(f"Checkpoint failed for playlist {playlist.playlist_id}: {e}")
            playlist.last_page_token = previous_token
            raise

        log.debug(f"Checkpoint: {len(new_items)} items saved, next token={next_page_token}")
