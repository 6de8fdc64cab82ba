"""
Per-channel sync of a YouTube channel's uploads playlist.

Processing one channel runs through these phases:
1. Resolve the channel's uploads playlist (one channels.list call), refreshing
   the stored channel title and creating the playlist record on first sight.
2. Work out the effective cutoff from the stored watermark and the caller's
   requested cutoff.
3. Page through playlistItems.list newest first, resuming from the stored
   cursor, until a page runs out or an entry at/before the cutoff shows up.
4. For each page, create the new videos and refresh the known ones, then
   checkpoint the page's items together with the next cursor.
5. When the pass completes, advance the watermark and clear the cursor.

An exception anywhere skips step 5, so the next run resumes from the last
checkpointed cursor.
"""

from datetime import datetime
from typing import Optional

from checkpoint import CheckpointWriter
from database import get_items_by_video_ids, get_playlist, save_channel, save_playlist
from logger import LogContext, get_logger, set_page_context
from models import Channel, Item, Playlist, PlaylistProcessingResult
from quota import QuotaExhaustedError, QuotaTracker
from video_fetch import VideoDetailFetcher, parse_api_timestamp
from youtube_api import RequestBudget, YouTubeClient, YouTubeRequestError, response_items

log = get_logger("channel_processor")


def effective_cutoff(
    stored: Optional[datetime],
    requested: Optional[datetime],
    force: bool = False,
) -> Optional[datetime]:
    """
    The publish timestamp at or before which entries count as already ingested.

    The requested cutoff replaces the stored watermark when forced, when there
    is no watermark yet, or when it is strictly newer than the watermark.
    """
    if requested is None:
        return stored
    if force or stored is None or requested > stored:
        return requested
    return stored


def is_at_or_before_cutoff(published_at: datetime, cutoff: Optional[datetime]) -> bool:
    """
    Stop signal for enumeration.

    Uploads are listed newest first, so the first entry that is not strictly
    newer than the cutoff marks the end of what this pass needs to look at.
    """
    return cutoff is not None and not published_at > cutoff


class ChannelProcessor:
    """Runs one channel's uploads playlist through a sync pass."""

    def __init__(
        self,
        conn,
        quota: QuotaTracker,
        video_fetcher: VideoDetailFetcher = None,
        checkpoint_writer: CheckpointWriter = None,
    ):
        self.conn = conn
        self.quota = quota
        self.video_fetcher = video_fetcher or VideoDetailFetcher(conn, quota)
        self.checkpoint_writer = checkpoint_writer or CheckpointWriter()

    def prepare_channel_and_playlist(
        self,
        channel: Channel,
        client: YouTubeClient,
        budget: RequestBudget,
    ) -> Playlist:
        """
        Fetch the channel's details and return its (possibly new) uploads playlist.

        The channel title update and the playlist creation are independent upserts.

        Raises:
            YouTubeRequestError: If the response lacks the uploads playlist id or title
        """
        response = client.fetch_channel_details(channel.channel_id, budget)
        items = response_items(response)
        details = items[0] if items and isinstance(items[0], dict) else {}
        uploads_id = ((details.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
        title = (details.get("snippet") or {}).get("title")

        if not uploads_id or title is None:
            raise YouTubeRequestError(
                f"Could not parse 'uploads' or 'title' from channels.list response for {channel.channel_id}"
            )

        if title.strip() and title != channel.title:
            log.info(f"Channel title changed: '{channel.title}' -> '{title}'")
            channel.title = title
            save_channel(self.conn, channel)

        playlist = get_playlist(self.conn, uploads_id)
        if playlist is None:
            playlist = Playlist(
                playlist_id=uploads_id,
                title=f"Uploads from {channel.title}",
                channel_id=channel.channel_id,
            )
            save_playlist(self.conn, playlist)
            log.info(f"Created uploads playlist {uploads_id}")

        return playlist

    def process_single_channel(
        self,
        channel: Channel,
        client: YouTubeClient,
        delay_ms: int,
        quota_limit: int,
        quota_threshold: int,
        request_cutoff: Optional[datetime] = None,
        force_cutoff: bool = False,
    ) -> PlaylistProcessingResult:
        """
        Sync one channel's uploads playlist.

        Args:
            channel: Stored channel to process
            client: API client (carries the key and the cancel signal)
            delay_ms: Pacing delay before each request
            quota_limit: Daily quota limit for the gate
            quota_threshold: Safety threshold for the gate
            request_cutoff: Optional publish-time cutoff requested by the caller
            force_cutoff: Use request_cutoff even if it is older than the stored watermark

        Returns:
            Counts of new and updated items for this pass

        Raises:
            QuotaExhaustedError: Quota ran out; this page's new items are checkpointed first
            YouTubeAuthError: The API key was rejected
            YouTubeRequestError: A request failed or returned an unusable payload
        """
        budget = RequestBudget(self.quota, delay_ms, quota_limit, quota_threshold)

        with LogContext(log, f"process channel {channel.channel_id}"):
            playlist = self.prepare_channel_and_playlist(channel, client, budget)
            return self._process_playlist(playlist, client, budget, request_cutoff, force_cutoff)

    def _process_playlist(
        self,
        playlist: Playlist,
        client: YouTubeClient,
        budget: RequestBudget,
        request_cutoff: Optional[datetime],
        force_cutoff: bool,
    ) -> PlaylistProcessingResult:
        cutoff = effective_cutoff(playlist.processed_at, request_cutoff, force_cutoff)
        if cutoff != playlist.processed_at:
            log.info(f"Overriding last processed time with requested cutoff: {cutoff}")
        log.info(f"Last processed at: {playlist.processed_at or 'Never'}. "
                 f"Using effective cutoff: {cutoff or 'None'}")

        result = PlaylistProcessingResult()
        newest_published_at = None
        next_page_token = playlist.last_page_token
        stop_fetching = False
        page_number = 0
        if next_page_token:
            log.info(f"Resuming from checkpoint token: {next_page_token}")

        while True:
            page_number += 1
            set_page_context(page_number)
            response = client.fetch_playlist_items_page(playlist.playlist_id, next_page_token, budget)
            next_page_token = response.get("nextPageToken")

            entries = response.get("items")
            if not isinstance(entries, list):
                log.warning(f"No items found in API response for playlist {playlist.playlist_id}")
                break

            new_seeds = {}
            page_ids = []
            for entry in entries:
                snippet = (entry.get("snippet") if isinstance(entry, dict) else None) or {}
                video_id = ((snippet.get("resourceId") or {}).get("videoId") or "").strip()
                if not video_id:
                    # Deleted or private videos come back without an id
                    continue
                published_at = parse_api_timestamp(snippet.get("publishedAt"), "publishedAt")
                if newest_published_at is None:
                    newest_published_at = published_at
                if is_at_or_before_cutoff(published_at, cutoff):
                    log.info(f"Reached video published at {published_at}, "
                             f"which is not newer than cutoff {cutoff}. Stopping.")
                    stop_fetching = True
                    break
                if video_id not in new_seeds:
                    new_seeds[video_id] = snippet
                    page_ids.append(video_id)

            # One lookup per page splits known videos from new ones
            known = get_items_by_video_ids(self.conn, page_ids)
            existing_items = [known[video_id] for video_id in page_ids if video_id in known]
            for video_id in known:
                new_seeds.pop(video_id, None)

            log.debug(f"Page: {len(new_seeds)} new, {len(existing_items)} existing")
            self._resolve_page(playlist, client, budget, result, new_seeds, existing_items,
                               None if stop_fetching else next_page_token)

            if stop_fetching or not next_page_token:
                break

        set_page_context(None)
        if next_page_token is None or stop_fetching:
            self._finalize(playlist, result, newest_published_at)

        return result

    def _resolve_page(
        self,
        playlist: Playlist,
        client: YouTubeClient,
        budget: RequestBudget,
        result: PlaylistProcessingResult,
        new_seeds: dict,
        existing_items: list[Item],
        checkpoint_token: Optional[str],
    ) -> None:
        """Create and refresh the page's videos, then checkpoint it."""
        created = []
        try:
            built = self.video_fetcher.fetch_and_create(
                client, new_seeds, budget.delay_ms, budget.quota_limit, budget.quota_threshold)

            for item in built:
                try:
                    item.playlist_id = playlist.playlist_id
                    result.record_new(item)
                    created.append(item)
                except Exception as e:
                    log.error(f"Failed to apply new item {getattr(item, 'video_id', None)}: {e}")

            result.updated_items += self.video_fetcher.update_existing(
                client, existing_items, budget.delay_ms, budget.quota_limit, budget.quota_threshold)

            self.checkpoint_writer.save_page_progress(playlist, created, checkpoint_token)
        except QuotaExhaustedError:
            if created:
                log.warning(f"Quota exceeded during playlist processing. "
                            f"Saving {len(created)} new items before stopping.")
                # Cursor stays put so this page is fetched again next run
                self.checkpoint_writer.save_page_progress(playlist, created, playlist.last_page_token)
            raise

    def _finalize(
        self,
        playlist: Playlist,
        result: PlaylistProcessingResult,
        newest_published_at: Optional[datetime],
    ) -> None:
        """Advance the watermark (if anything new was found) and clear the cursor."""
        if result.new_items > 0 and newest_published_at is not None:
            if playlist.processed_at is not None and newest_published_at < playlist.processed_at:
                log.warning(f"Newest timestamp {newest_published_at} is older than stored "
                            f"watermark {playlist.processed_at}, keeping the stored value")
            else:
                log.info(f"Found {result.new_items} new video(s) for playlist {playlist.playlist_id}. "
                         f"Updating processed_at to {newest_published_at}.")
                playlist.processed_at = newest_published_at
        else:
            log.info(f"No new videos found for playlist {playlist.playlist_id}.")

        playlist.last_page_token = None
        save_playlist(self.conn, playlist)
