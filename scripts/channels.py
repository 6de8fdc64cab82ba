"""
Channel catalog helpers.

- Register channels from their YouTube URLs (@handle or /channel/UC... forms)
- Seed channel IDs listed in the config file
- Classify video URLs as new and/or undownloaded against the store
"""

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from database import get_channel, get_items_by_video_ids, save_channel
from logger import get_logger
from models import Channel, ProcessingStatus
from quota import QuotaTracker
from youtube_api import RequestBudget, YouTubeClient, YouTubeRequestError, response_items

log = get_logger("channels")

CHANNEL_ID_PATTERN = re.compile(r"youtube\.com/channel/(UC[\w-]{22})")
DOWNLOADED_STATUSES = (ProcessingStatus.DOWNLOADED, ProcessingStatus.MANUALLY_DOWNLOADED)


def parse_channel_handle(url: str) -> Optional[str]:
    """
    Extract the handle from a channel URL.

    https://www.youtube.com/@handle/videos -> "handle"
    """
    if not url or not url.strip():
        return None
    at_index = url.rfind("@")
    if at_index == -1 or at_index == len(url) - 1:
        return None
    handle = url[at_index + 1:].split("/")[0].split("?")[0].strip()
    return handle or None


def parse_video_id(url: str) -> Optional[str]:
    """
    Extract the video ID from a YouTube video URL.

    Uses the ``v`` query parameter when present, otherwise the last path
    segment of youtube.com / youtu.be URLs (shorts, embeds, short links).
    """
    if not url or not url.strip():
        return None
    parsed = urlparse(url.strip())

    video_id = (parse_qs(parsed.query).get("v") or [""])[0].strip()
    if video_id:
        return video_id

    host = (parsed.hostname or "").lower()
    if host in ("youtube.com", "youtu.be") or host.endswith(".youtube.com") or host.endswith(".youtu.be"):
        segments = [segment for segment in parsed.path.split("/") if segment]
        return segments[-1] if segments else None
    return None


def ensure_channels(conn, channel_ids: list[str]) -> int:
    """
    Create placeholder records for configured channel IDs that are not stored yet.

    The title is filled in from the API on the channel's first sync.

    Returns:
        Number of channels created
    """
    created = 0
    for channel_id in channel_ids:
        if get_channel(conn, channel_id) is None:
            save_channel(conn, Channel(channel_id=channel_id, title=""))
            log.info(f"Registered channel from config: {channel_id}")
            created += 1
    return created


def add_channels_by_url(
    conn,
    client: YouTubeClient,
    quota: QuotaTracker,
    urls: list[str],
    delay_ms: int,
    quota_limit: int,
    quota_threshold: int,
) -> dict:
    """
    Look up channels by URL and save them.

    Returns:
        Dict with 'added' (saved Channel records) and 'failed' ({url, reason} dicts)

    Raises:
        QuotaExhaustedError, YouTubeAuthError: Propagated, since no further URL could succeed
    """
    budget = RequestBudget(quota, delay_ms, quota_limit, quota_threshold)
    added = []
    failed = []

    for url in urls:
        channel_id_match = CHANNEL_ID_PATTERN.search(url or "")
        handle = None if channel_id_match else parse_channel_handle(url)
        if not channel_id_match and not handle:
            log.warning(f"Could not parse a valid channel handle from URL: {url}")
            failed.append({"url": url, "reason": "Could not parse a valid channel handle from URL."})
            continue

        try:
            if channel_id_match:
                response = client.fetch_channel_details(channel_id_match.group(1), budget)
            else:
                response = client.resolve_handle(handle, budget)
        except YouTubeRequestError as e:
            log.warning(f"Channel lookup failed for {url}: {e}")
            failed.append({"url": url, "reason": str(e)})
            continue

        items = response_items(response)
        details = items[0] if items and isinstance(items[0], dict) else {}
        snippet = details.get("snippet") or {}
        channel_id = details.get("id")
        title = snippet.get("title")
        if not channel_id or title is None:
            log.warning(f"Could not fetch channel info from YouTube API for {url}")
            failed.append({"url": url, "reason": f"Could not fetch channel info from YouTube API for: {url}"})
            continue

        channel = Channel(
            channel_id=channel_id,
            title=title,
            handle=snippet.get("customUrl") or (f"@{handle}" if handle else None),
        )
        save_channel(conn, channel)
        log.info(f"Saved channel {channel.channel_id} ({channel.title})")
        added.append(channel)

    return {"added": added, "failed": failed}


def verify_new_items(conn, urls: list[str]) -> dict:
    """
    Split video URLs into 'new' and 'undownloaded' lists.

    - Unknown videos are both new and undownloaded.
    - Known videos are new if their status is NEW and they are processable.
    - Known videos are undownloaded unless marked downloaded (automatically or manually).

    URLs without a recognizable video ID are skipped with a warning.
    """
    new_urls = []
    undownloaded_urls = []
    if not urls:
        return {"new": new_urls, "undownloaded": undownloaded_urls}

    url_ids = []
    for url in urls:
        video_id = parse_video_id(url)
        if video_id:
            url_ids.append((url, video_id))
        else:
            log.warning(f"Could not parse video ID from URL: {url}")

    known = get_items_by_video_ids(conn, [video_id for _, video_id in url_ids])

    for url, video_id in url_ids:
        item = known.get(video_id)
        if item is None:
            new_urls.append(url)
            undownloaded_urls.append(url)
            continue
        if item.status == ProcessingStatus.NEW and item.is_processable():
            new_urls.append(url)
        if item.status not in DOWNLOADED_STATUSES:
            undownloaded_urls.append(url)

    return {"new": new_urls, "undownloaded": undownloaded_urls}
