#!/usr/bin/env python3
"""
YouTube Channel Uploads Ingestion

Incrementally syncs the uploads playlists of the configured channels into
Turso/SQLite (or PostgreSQL) under a daily API quota budget.
Features:
- Watermark + page cursor per playlist, so interrupted runs resume where they stopped
- Quota gate before every API call, persisted across runs
- Per-page checkpoints that survive quota exhaustion and crashes
- Graceful shutdown on SIGINT/SIGTERM
- Detailed DEBUG logging for development

Usage:
    python fetch.py
    python fetch.py --config config/channels.yaml
    python fetch.py --channel UC_x5XG1OV2P6uZZ5FSM9Ttw --published-after 2024-01-01T00:00:00Z
    python fetch.py --add-channel https://www.youtube.com/@GoogleDevelopers
    python fetch.py --usage
"""

import argparse
import os
import signal
import sys
import threading
import time
from datetime import datetime, timedelta
from typing import Optional

from config import Config, get_config
from logger import setup_logging, get_logger, set_channel_context, clear_channel_context
from database import get_connection, get_channels, init_database, reset_playlist_sync
from models import ChannelFailure, InvalidDataError, JobResult, parse_timestamp
from quota import QuotaExhaustedError, QuotaTracker
from youtube_api import RequestCancelledError, YouTubeAuthError, YouTubeClient, YouTubeRequestError
from channel_processor import ChannelProcessor
from channels import add_channels_by_url, ensure_channels, verify_new_items

log = get_logger("fetch")

DEFAULT_DELAY_MS = 100


def resolve_delay_ms(delay_ms: Optional[int]) -> int:
    """Inter-request delay to use; missing or negative values fall back to 100ms."""
    if delay_ms is None or delay_ms < 0:
        log.warning(f"Invalid request delay {delay_ms!r}, using default of {DEFAULT_DELAY_MS}ms")
        return DEFAULT_DELAY_MS
    return delay_ms


def classify_error(error: Exception) -> str:
    """Machine-readable failure reason for the job summary."""
    if isinstance(error, RequestCancelledError):
        return "cancelled"
    if isinstance(error, YouTubeAuthError):
        return "auth"
    if isinstance(error, YouTubeRequestError):
        return "request"
    if isinstance(error, InvalidDataError):
        return "invalid_data"
    return "unexpected"


def run_ingestion_job(
    conn,
    client: YouTubeClient,
    quota: QuotaTracker,
    settings: Config,
    channel_ids: Optional[list[str]] = None,
    published_after: Optional[datetime] = None,
    force_published_after: bool = False,
    cancel_event: Optional[threading.Event] = None,
    processor: Optional[ChannelProcessor] = None,
) -> JobResult:
    """
    Process channels one after another and aggregate the results.

    Quota exhaustion stops the whole job. Any other failure is recorded
    against the channel and the job moves on. A set cancel event stops the
    job before the next channel starts.

    Args:
        conn: Database connection for the job
        client: API client (carries the key and the cancel signal)
        quota: Quota tracker gating every API call
        settings: Config supplying quota limit, safety threshold and request delay
        channel_ids: Only process these stored channels (default: all stored channels)
        published_after: Requested publish-time cutoff
        force_published_after: Apply published_after even if older than the stored watermark
        cancel_event: Shutdown signal (default: the client's)
        processor: ChannelProcessor to use (default: one built on conn and quota)

    Returns:
        JobResult with counts, per-channel failures and the reason the job stopped early (if any)
    """
    cancel_event = cancel_event or client.cancel_event
    processor = processor or ChannelProcessor(conn, quota)
    delay_ms = resolve_delay_ms(settings.request_delay_ms)
    quota_limit = settings.quota_limit
    quota_threshold = settings.quota_safety_threshold

    channels = get_channels(conn, channel_ids)
    if channel_ids is not None:
        missing = set(channel_ids) - {channel.channel_id for channel in channels}
        for channel_id in sorted(missing):
            log.warning(f"Channel not found in database, skipping: {channel_id}")

    log.info(f"Processing {len(channels)} channel(s) "
             f"(quota limit={quota_limit}, threshold={quota_threshold}, delay={delay_ms}ms)")

    result = JobResult()

    for channel in channels:
        if cancel_event.is_set():
            log.warning("Cancellation requested, stopping before next channel")
            result.stopped_reason = "cancelled"
            break

        set_channel_context(channel.channel_id)
        channel_start_time = time.time()
        try:
            log.info(f"Processing: {channel.title or channel.channel_id}")
            channel_result = processor.process_single_channel(
                channel,
                client,
                delay_ms,
                quota_limit,
                quota_threshold,
                request_cutoff=published_after,
                force_cutoff=force_published_after,
            )
            result.add(channel_result)
            elapsed = time.time() - channel_start_time
            log.info(f"✓ Done in {elapsed:.0f}s: {channel_result.new_items} new, "
                     f"{channel_result.updated_items} updated")

        except QuotaExhaustedError as e:
            log.error(f"✗ Quota exhausted: {e}")
            conn.rollback()
            result.stopped_reason = "quota_exhausted"
            break

        except Exception as e:
            error_type = classify_error(e)
            if error_type == "unexpected":
                log.exception(f"✗ Failed: {e}")
            else:
                log.error(f"✗ Failed ({error_type}): {e}")
            conn.rollback()
            result.failures.append(ChannelFailure(
                channel_id=channel.channel_id,
                channel_title=channel.title,
                error_type=error_type,
                reason=str(e),
            ))

        finally:
            clear_channel_context()

    if result.stopped_reason is None and cancel_event.is_set():
        result.stopped_reason = "cancelled"

    return result


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """Set the cancel event on SIGINT/SIGTERM so the current delay ends and the job winds down."""
    def handle_signal(signum, frame):
        log.warning(f"Received signal {signum}, finishing current channel and stopping")
        cancel_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def _run_name(args) -> str:
    """Log file prefix for the selected mode."""
    if args.usage:
        return "usage"
    if args.add_channel:
        return "add_channel"
    if args.verify:
        return "verify"
    if args.reset_playlist:
        return "reset"
    if args.init_only:
        return "init"
    return "ingest"


def _parse_cutoff(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value} (expected ISO-8601, e.g. 2024-01-01T00:00:00Z)")


def log_usage_history(quota: QuotaTracker, days: int = 30) -> None:
    end_date = quota.today()
    history = quota.get_usage_history(end_date - timedelta(days=days - 1), end_date)
    log.info(f"Quota usage, last {days} days:")
    if not history:
        log.info("  (no usage recorded)")
    for usage in history:
        log.info(f"  {usage.usage_date}: {usage.quota_used} units, {usage.request_count} requests")
        for op, cost in sorted(usage.operations.items(), key=lambda x: -x[1]):
            log.debug(f"    {op}: {cost} units")


def write_github_outputs(result: JobResult) -> None:
    github_output = os.environ.get("GITHUB_OUTPUT")
    if github_output:
        with open(github_output, "a") as f:
            f.write(f"channels={result.processed_channels}\n")
            f.write(f"videos_new={result.new_items}\n")
            f.write(f"videos_updated={result.updated_items}\n")
            f.write(f"failures={len(result.failures)}\n")
            f.write(f"stopped_reason={result.stopped_reason or ''}\n")


def main():
    parser = argparse.ArgumentParser(
        description="Sync YouTube channel uploads into Turso/SQLite",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--config",
        help="Path to channels config YAML file (default: config/channels.yaml)"
    )
    parser.add_argument(
        "--channel", "-c",
        action="append",
        help="Only process this channel ID (repeatable)"
    )
    parser.add_argument(
        "--published-after",
        type=_parse_cutoff,
        help="Only ingest videos published after this time, if newer than the stored watermark"
    )
    parser.add_argument(
        "--force-published-after",
        action="store_true",
        help="Use --published-after even if it is older than the stored watermark"
    )
    parser.add_argument(
        "--delay-ms",
        type=int,
        default=None,
        help="Delay before each API request in milliseconds (default: from config)"
    )
    parser.add_argument(
        "--quota-limit",
        type=int,
        default=None,
        help="Daily API quota limit (default: from config)"
    )
    parser.add_argument(
        "--add-channel",
        action="append",
        metavar="URL",
        help="Add a channel by URL, e.g. https://www.youtube.com/@handle (repeatable)"
    )
    parser.add_argument(
        "--reset-playlist",
        metavar="PLAYLIST_ID",
        help="Clear a playlist's watermark and cursor so the next run resyncs it"
    )
    parser.add_argument(
        "--verify",
        action="append",
        metavar="URL",
        help="Report whether a video URL is new and/or undownloaded (repeatable)"
    )
    parser.add_argument(
        "--usage",
        action="store_true",
        help="Show quota usage history and exit"
    )
    parser.add_argument(
        "--init-only",
        action="store_true",
        help="Initialize the database schema and exit"
    )

    args = parser.parse_args()

    if args.force_published_after and args.published_after is None:
        parser.error("--force-published-after requires --published-after")

    cfg = get_config(args.config, reload=args.config is not None)
    if args.delay_ms is not None:
        cfg.request_delay_ms = args.delay_ms
    if args.quota_limit is not None:
        cfg.quota_limit = args.quota_limit

    setup_logging(run_name=_run_name(args))

    log.info("="*60)
    log.info("YouTube Uploads Ingestion Starting")
    log.info("="*60)
    log.debug(f"Arguments: {vars(args)}")
    log.debug(f"Config file: {cfg._config_file}")

    start_time = time.time()

    # Initialize database
    log.info("Connecting to database...")
    conn = get_connection()
    init_database(conn)
    log.info("Database initialized")

    if args.init_only:
        return

    quota = QuotaTracker(daily_limit=cfg.quota_limit)

    if args.usage:
        log_usage_history(quota)
        quota.log_summary(cfg.quota_limit)
        return

    if args.reset_playlist:
        if not reset_playlist_sync(conn, args.reset_playlist):
            log.error(f"Playlist not found: {args.reset_playlist}")
            sys.exit(1)
        return

    if args.verify:
        verification = verify_new_items(conn, args.verify)
        log.info(f"New: {len(verification['new'])}, undownloaded: {len(verification['undownloaded'])}")
        for url in verification["new"]:
            log.info(f"  new: {url}")
        for url in verification["undownloaded"]:
            log.info(f"  undownloaded: {url}")
        return

    if not cfg.youtube_api_key:
        log.error("YOUTUBE_API_KEY environment variable is required")
        sys.exit(1)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)
    client = YouTubeClient(api_key=cfg.youtube_api_key, cancel_event=cancel_event)
    delay_ms = resolve_delay_ms(cfg.request_delay_ms)

    if args.add_channel:
        added = add_channels_by_url(conn, client, quota, args.add_channel,
                                    delay_ms, cfg.quota_limit, cfg.quota_safety_threshold)
        for channel in added["added"]:
            log.info(f"Added channel {channel.channel_id}: {channel.title}")
        for failure in added["failed"]:
            log.warning(f"Could not add {failure['url']}: {failure['reason']}")
        return

    ensure_channels(conn, args.channel or cfg.channels)

    result = run_ingestion_job(
        conn,
        client,
        quota,
        cfg,
        channel_ids=args.channel,
        published_after=args.published_after,
        force_published_after=args.force_published_after,
        cancel_event=cancel_event,
    )

    # Summary
    elapsed = time.time() - start_time

    log.info("="*60)
    log.info("INGESTION SUMMARY")
    log.info("="*60)
    log.info(f"Runtime: {elapsed/60:.1f} minutes")
    log.info(f"Channels processed: {result.processed_channels}")
    log.info(f"New videos: {result.new_items} (standard {result.standard_videos}, "
             f"upcoming {result.upcoming_videos}, live {result.live_videos})")
    log.info(f"Updated videos: {result.updated_items}")
    log.info(f"Failures: {len(result.failures)}")
    for failure in result.failures:
        log.info(f"  {failure.channel_id} ({failure.channel_title}): [{failure.error_type}] {failure.reason}")
    if result.stopped_reason:
        log.warning(f"Stopped early: {result.stopped_reason}")

    quota.log_summary(cfg.quota_limit)

    write_github_outputs(result)


if __name__ == "__main__":
    main()
