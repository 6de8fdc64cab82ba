"""
Video detail fetching for newly discovered and already-known uploads.

New videos are turned into Item records from a videos.list detail call plus
the publish timestamp of the playlist entry that surfaced them. Known videos
are diffed field by field against a fresh detail call and only changed
records are written back.
"""

from typing import Optional

from database import save_item
from logger import get_logger
from models import Item, LiveBroadcastContent, parse_timestamp
from quota import QuotaTracker
from youtube_api import RequestBudget, YouTubeClient, YouTubeRequestError, response_items

log = get_logger("video_fetch")

VIDEO_BATCH_SIZE = 50
THUMBNAIL_PREFERENCE = ("maxres", "standard", "high", "medium", "default")


def select_thumbnail_url(thumbnails) -> Optional[str]:
    """Pick the best available thumbnail URL (maxres > standard > high > medium > default)."""
    if not isinstance(thumbnails, dict):
        return None
    for size in THUMBNAIL_PREFERENCE:
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return None


def parse_api_timestamp(value, field_name: str):
    """Parse an API timestamp, treating malformed values as a bad response."""
    try:
        parsed = parse_timestamp(value)
    except (TypeError, ValueError) as e:
        raise YouTubeRequestError(f"Unparseable {field_name}: {value!r}") from e
    if parsed is None:
        raise YouTubeRequestError(f"Missing {field_name}")
    return parsed


def _scheduled_start(video: dict):
    """The scheduled start time if the payload carries a non-null one, else None."""
    details = video.get("liveStreamingDetails") or {}
    raw = details.get("scheduledStartTime")
    if raw is None:
        return None
    return parse_api_timestamp(raw, "liveStreamingDetails.scheduledStartTime")


def _batches(video_ids: list[str]):
    for i in range(0, len(video_ids), VIDEO_BATCH_SIZE):
        yield video_ids[i:i + VIDEO_BATCH_SIZE]


class VideoDetailFetcher:
    """Builds new Item records and refreshes existing ones from videos.list."""

    def __init__(self, conn, quota: QuotaTracker):
        self.conn = conn
        self.quota = quota

    def fetch_and_create(
        self,
        client: YouTubeClient,
        seeds: dict,
        delay_ms: int,
        quota_limit: int,
        quota_threshold: int,
    ) -> list[Item]:
        """
        Build Item records for new videos.

        Args:
            client: API client (carries the key and the cancel signal)
            seeds: video id -> playlist item snippet; its publishedAt becomes
                   the item's publish timestamp
            delay_ms: Pacing delay before each request
            quota_limit: Daily quota limit for the gate
            quota_threshold: Safety threshold for the gate

        Returns:
            Unsaved items, one per video returned by the API that is in seeds
        """
        if not seeds:
            return []

        budget = RequestBudget(self.quota, delay_ms, quota_limit, quota_threshold)
        created = []

        for batch in _batches(list(seeds)):
            response = client.fetch_videos(batch, budget)
            for video in response_items(response):
                video_id = video.get("id") if isinstance(video, dict) else None
                seed = seeds.get(video_id) if video_id else None
                if seed is None:
                    log.debug(f"Ignoring video not requested: {video_id}")
                    continue
                created.append(self._build_item(video, seed))

        log.debug(f"Built {len(created)} items from {len(seeds)} new video IDs")
        return created

    def _build_item(self, video: dict, seed: dict) -> Item:
        snippet = video.get("snippet") or {}
        return Item(
            video_id=video["id"],
            title=snippet.get("title") or "",
            description=snippet.get("description"),
            kind=video.get("kind") or "youtube#video",
            video_published_at=parse_api_timestamp(seed.get("publishedAt"), "publishedAt"),
            live_broadcast_content=LiveBroadcastContent.parse(snippet.get("liveBroadcastContent")),
            scheduled_start_time=_scheduled_start(video),
            thumbnail_url=select_thumbnail_url(snippet.get("thumbnails")),
        )

    def update_existing(
        self,
        client: YouTubeClient,
        items: list[Item],
        delay_ms: int,
        quota_limit: int,
        quota_threshold: int,
    ) -> int:
        """
        Refresh stored items from the API and persist the ones that changed.

        Returns:
            Number of items whose stored record was modified
        """
        if not items:
            return 0

        budget = RequestBudget(self.quota, delay_ms, quota_limit, quota_threshold)
        by_id = {item.video_id: item for item in items}
        updated = 0

        for batch in _batches(list(by_id)):
            response = client.fetch_videos(batch, budget)
            for video in response_items(response):
                video_id = video.get("id") if isinstance(video, dict) else None
                item = by_id.get(video_id) if video_id else None
                if item is None:
                    continue
                if self._apply_changes(item, video):
                    save_item(self.conn, item)
                    updated += 1

        if updated:
            log.debug(f"Updated {updated}/{len(items)} existing items")
        return updated

    def _apply_changes(self, item: Item, video: dict) -> bool:
        """Copy changed fields from the payload onto the item. Returns True if anything changed."""
        snippet = video.get("snippet") or {}
        changed = False

        if snippet.get("title") is not None and snippet["title"] != item.title:
            item.title = snippet["title"]
            changed = True

        if "description" in snippet and snippet["description"] != item.description:
            item.description = snippet["description"]
            changed = True

        if "liveBroadcastContent" in snippet:
            live = LiveBroadcastContent.parse(snippet["liveBroadcastContent"])
            if live != item.live_broadcast_content:
                log.debug(f"{item.video_id}: {item.live_broadcast_content.value} -> {live.value}")
                item.live_broadcast_content = live
                changed = True

        scheduled = _scheduled_start(video)
        if scheduled is not None and scheduled != item.scheduled_start_time:
            item.scheduled_start_time = scheduled
            changed = True

        return changed
