"""
Domain records for the uploads ingestion pipeline.

Channel owns one uploads Playlist; a Playlist owns its Items. The resumable
state of a sync pass (processed_at watermark and last_page_token cursor) lives
on the Playlist record so nothing has to be kept in memory between runs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


class InvalidDataError(ValueError):
    """Raised when upstream data holds a value the pipeline does not know how to store."""
    pass


class LiveBroadcastContent(str, Enum):
    """Live-broadcast state of a video. NONE is a standard upload."""
    NONE = "NONE"
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "LiveBroadcastContent":
        """
        Map the API's liveBroadcastContent value onto the enum.

        A missing value means a standard video. Anything else that is not one
        of the three known states is a data error and is not masked.
        """
        value = "NONE" if raw is None else str(raw).upper()
        try:
            return cls(value)
        except ValueError:
            raise InvalidDataError(f"Unknown liveBroadcastContent value: {raw!r}") from None


class ProcessingStatus(str, Enum):
    """Download lifecycle of an item. Ingestion only ever writes NEW."""
    NEW = "NEW"
    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    DOWNLOADED = "DOWNLOADED"
    MANUALLY_DOWNLOADED = "MANUALLY_DOWNLOADED"
    WATCHED = "WATCHED"
    FAILED = "FAILED"
    IGNORE = "IGNORE"
    DELETED = "DELETED"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp from the API (or the store) into an aware datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as ISO-8601 UTC text for storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class Channel:
    channel_id: str
    title: str
    handle: Optional[str] = None


@dataclass
class Playlist:
    playlist_id: str
    title: str
    channel_id: str
    processed_at: Optional[datetime] = None
    last_page_token: Optional[str] = None


@dataclass
class Item:
    video_id: str
    title: str
    description: Optional[str]
    kind: str
    video_published_at: datetime
    live_broadcast_content: LiveBroadcastContent = LiveBroadcastContent.NONE
    scheduled_start_time: Optional[datetime] = None
    thumbnail_url: Optional[str] = None
    playlist_id: Optional[str] = None
    status: ProcessingStatus = ProcessingStatus.NEW

    def is_processable(self, now: Optional[datetime] = None) -> bool:
        """
        A standard video, or a live/upcoming item whose scheduled start has passed.
        """
        if self.live_broadcast_content == LiveBroadcastContent.NONE:
            return True
        now = now or datetime.now(timezone.utc)
        return self.scheduled_start_time is not None and self.scheduled_start_time < now


@dataclass
class QuotaUsage:
    usage_date: date
    quota_used: int = 0
    request_count: int = 0
    operations: dict = field(default_factory=dict)
    last_updated: Optional[datetime] = None


@dataclass
class PlaylistProcessingResult:
    """Counters collected while processing one channel's uploads playlist."""
    new_items: int = 0
    updated_items: int = 0
    standard_videos: int = 0
    upcoming_videos: int = 0
    live_videos: int = 0

    def record_new(self, item: Item) -> None:
        self.new_items += 1
        if item.live_broadcast_content == LiveBroadcastContent.NONE:
            self.standard_videos += 1
        elif item.live_broadcast_content == LiveBroadcastContent.UPCOMING:
            self.upcoming_videos += 1
        elif item.live_broadcast_content == LiveBroadcastContent.LIVE:
            self.live_videos += 1

    def live_broadcast_breakdown(self) -> dict:
        return {
            LiveBroadcastContent.NONE.value: self.standard_videos,
            LiveBroadcastContent.UPCOMING.value: self.upcoming_videos,
            LiveBroadcastContent.LIVE.value: self.live_videos,
        }


@dataclass
class ChannelFailure:
    channel_id: str
    channel_title: str
    error_type: str
    reason: str

    def to_dict(self) -> dict:
        return {
            "channelId": self.channel_id,
            "channelTitle": self.channel_title,
            "errorType": self.error_type,
            "reason": self.reason,
        }


@dataclass
class JobResult:
    """Aggregated outcome of one ingestion job run."""
    processed_channels: int = 0
    new_items: int = 0
    updated_items: int = 0
    standard_videos: int = 0
    upcoming_videos: int = 0
    live_videos: int = 0
    failures: list[ChannelFailure] = field(default_factory=list)
    stopped_reason: Optional[str] = None

    def add(self, result: PlaylistProcessingResult) -> None:
        self.processed_channels += 1
        self.new_items += result.new_items
        self.updated_items += result.updated_items
        self.standard_videos += result.standard_videos
        self.upcoming_videos += result.upcoming_videos
        self.live_videos += result.live_videos

    def to_dict(self) -> dict:
        return {
            "processedChannels": self.processed_channels,
            "newItems": self.new_items,
            "updatedItemsCount": self.updated_items,
            "standardVideoCount": self.standard_videos,
            "upcomingVideoCount": self.upcoming_videos,
            "liveVideoCount": self.live_videos,
            "failures": [failure.to_dict() for failure in self.failures],
            "stoppedReason": self.stopped_reason,
        }
