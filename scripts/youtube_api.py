"""
YouTube API client module.
Handles all interactions with the YouTube Data API v3.

Features:
- Quota gate on every request attempt (check, pace, record, then call)
- Retry with exponential backoff for transient errors
- Interruptible pacing delay between requests
- Translation of transport errors into a small exception hierarchy
"""

import os
import ssl
import threading
import time
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional

import httplib2
import requests
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import get_config
from logger import get_logger
from quota import QuotaExhaustedError, QuotaTracker

log = get_logger("youtube_api")

AUTH_ERROR_MARKER = "API key not valid"


class YouTubeApiError(Exception):
    """Base class for failures talking to the YouTube Data API."""
    pass


class YouTubeAuthError(YouTubeApiError):
    """The API rejected the key (HTTP 400, "API key not valid")."""
    pass


class YouTubeRequestError(YouTubeApiError):
    """A request failed, returned an unusable response, or could not be parsed."""
    pass


class RequestCancelledError(YouTubeRequestError):
    """The pacing delay was interrupted because the job is shutting down."""
    pass


def _error_text(error: HttpError) -> str:
    content = getattr(error, "content", b"") or b""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    return f"{error} {content}"


def is_auth_error(error: Exception) -> bool:
    """Check whether an HttpError is the API's invalid-key response."""
    if not isinstance(error, HttpError):
        return False
    status_code = error.resp.status if hasattr(error, 'resp') else None
    return status_code == 400 and AUTH_ERROR_MARKER in _error_text(error)


def response_items(response) -> list:
    """The response's items list, or [] when missing or not a list."""
    if not isinstance(response, dict):
        return []
    items = response.get("items")
    return items if isinstance(items, list) else []


# ============================================================================
# RETRY LOGIC WITH EXPONENTIAL BACKOFF
# ============================================================================

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def _backoff_wait(owner, delay: float) -> None:
    """Sleep before a retry; a client's cancel event cuts the wait short."""
    cancel_event = getattr(owner, "cancel_event", None)
    if cancel_event is None:
        time.sleep(delay)
    elif cancel_event.wait(delay):
        raise RequestCancelledError(f"Request cancelled during {delay:.1f}s retry backoff")


def retry_with_backoff(
    max_retries: int = None,
    base_delay: float = None,
    max_delay: float = None,
    exponential_base: float = 2.0,
):
    """
    Decorator for retrying functions with exponential backoff.

    Retries on:
    - HTTP 429 (rate limit)
    - HTTP 5xx (server errors)
    - Connection errors

    Quota and cancellation errors pass straight through. Unset limits are
    read from config on every call. When decorating a method of an object
    with a cancel_event, the wait between attempts ends as soon as the event
    is set and RequestCancelledError is raised.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            cfg = get_config()
            _max_retries = max_retries if max_retries is not None else cfg.api_max_retries
            _base_delay = base_delay if base_delay is not None else cfg.api_base_delay
            _max_delay = max_delay if max_delay is not None else cfg.api_max_delay

            last_exception = None

            for attempt in range(_max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except (QuotaExhaustedError, YouTubeApiError):
                    raise

                except HttpError as e:
                    status_code = e.resp.status if hasattr(e, 'resp') else None

                    if status_code in RETRYABLE_STATUS_CODES:
                        last_exception = e
                        if attempt < _max_retries:
                            delay = min(_base_delay * (exponential_base ** attempt), _max_delay)

                            # Check for Retry-After header
                            retry_after = e.resp.get('retry-after') if hasattr(e, 'resp') else None
                            if retry_after:
                                try:
                                    delay = max(delay, float(retry_after))
                                except ValueError:
                                    pass

                            log.warning(f"HTTP {status_code} error, retrying in {delay:.1f}s "
                                       f"(attempt {attempt + 1}/{_max_retries + 1}): {e}")
                            _backoff_wait(args[0] if args else None, delay)
                            continue
                    else:
                        # Non-retryable HTTP error
                        log.error(f"Non-retryable HTTP error {status_code}: {e}")
                        raise

                except (requests.exceptions.ConnectionError,
                        requests.exceptions.Timeout,
                        httplib2.HttpLib2Error,
                        ConnectionResetError,
                        TimeoutError,
                        ssl.SSLError,
                        OSError) as e:
                    # OSError catches low-level network errors including SSLEOFError
                    last_exception = e
                    if attempt < _max_retries:
                        delay = min(_base_delay * (exponential_base ** attempt), _max_delay)
                        log.warning(f"Connection error, retrying in {delay:.1f}s "
                                   f"(attempt {attempt + 1}/{_max_retries + 1}): {type(e).__name__}: {e}")
                        _backoff_wait(args[0] if args else None, delay)
                        continue

                except Exception as e:
                    # Non-retryable exception
                    log.error(f"Non-retryable error in {func.__name__}: {type(e).__name__}: {e}")
                    raise

            # All retries exhausted
            log.error(f"All {_max_retries + 1} attempts failed for {func.__name__}")
            raise last_exception

        return wrapper
    return decorator


@dataclass
class RequestBudget:
    """Quota gate and pacing applied to every request attempt."""
    quota: QuotaTracker
    delay_ms: int
    quota_limit: int
    quota_threshold: int


class YouTubeClient:
    """
    Thin YouTube Data API client carrying the API key and the job's cancel signal.

    Every request runs through _call(): the quota gate is re-evaluated and one
    unit recorded for each network attempt, retries included.
    """

    def __init__(
        self,
        api_key: str = None,
        cancel_event: Optional[threading.Event] = None,
        service=None,
        timeout: float = None,
    ):
        cfg = get_config()
        self.api_key = api_key or cfg.youtube_api_key or os.environ.get("YOUTUBE_API_KEY")
        self.cancel_event = cancel_event or threading.Event()

        if service is None:
            if not self.api_key:
                raise ValueError("YOUTUBE_API_KEY not provided")
            timeout = timeout if timeout is not None else cfg.api_timeout_seconds
            service = build("youtube", "v3", developerKey=self.api_key,
                            http=httplib2.Http(timeout=timeout))
        self.youtube = service

        log.debug("YouTubeClient initialized")

    def delay_request(self, delay_ms: int) -> None:
        """
        Wait between requests, ending early if the job is cancelled.

        Raises:
            RequestCancelledError: If the cancel event is (or becomes) set
        """
        if self.cancel_event.is_set():
            raise RequestCancelledError("Request cancelled before delay")
        if delay_ms and delay_ms > 0:
            if self.cancel_event.wait(delay_ms / 1000.0):
                raise RequestCancelledError(f"Request cancelled during {delay_ms}ms delay")

    @retry_with_backoff()
    def _attempt(self, operation: str, build_request: Callable, budget: RequestBudget) -> dict:
        """One gated network attempt (internal, with retry)."""
        budget.quota.ensure_quota(budget.quota_limit, budget.quota_threshold, operation)
        self.delay_request(budget.delay_ms)
        budget.quota.record_usage(QuotaTracker.COSTS.get(operation, 1), operation)
        return build_request().execute()

    def _call(self, operation: str, build_request: Callable, budget: RequestBudget) -> dict:
        try:
            response = self._attempt(operation, build_request, budget)
        except (QuotaExhaustedError, YouTubeApiError):
            raise
        except HttpError as e:
            if is_auth_error(e):
                raise YouTubeAuthError(f"{operation} rejected: {AUTH_ERROR_MARKER}") from e
            status_code = e.resp.status if hasattr(e, 'resp') else None
            raise YouTubeRequestError(f"{operation} failed with HTTP {status_code}: {e}") from e
        except (requests.exceptions.RequestException,
                httplib2.HttpLib2Error,
                OSError,
                ValueError) as e:
            raise YouTubeRequestError(f"{operation} failed: {type(e).__name__}: {e}") from e

        if not isinstance(response, dict):
            raise YouTubeRequestError(f"{operation} returned an unexpected response: {type(response).__name__}")
        return response

    def fetch_channel_details(self, channel_id: str, budget: RequestBudget) -> dict:
        """Fetch a channel's snippet and content details (uploads playlist id)."""
        log.debug(f"Fetching channel details for: {channel_id}")
        return self._call(
            "channels.list",
            lambda: self.youtube.channels().list(part="contentDetails,snippet", id=channel_id),
            budget,
        )

    def fetch_playlist_items_page(self, playlist_id: str, page_token: Optional[str], budget: RequestBudget) -> dict:
        """Fetch one page of playlist items, newest first."""
        max_results = get_config().api_max_results_per_page
        log.debug(f"Fetching playlist page: {playlist_id} token={page_token}")
        return self._call(
            "playlistItems.list",
            lambda: self.youtube.playlistItems().list(
                part="snippet",
                playlistId=playlist_id,
                maxResults=max_results,
                pageToken=page_token,
            ),
            budget,
        )

    def fetch_videos(self, video_ids: list[str], budget: RequestBudget) -> dict:
        """Fetch snippet and live streaming details for up to 50 videos."""
        max_results = get_config().api_max_results_per_page
        log.debug(f"Fetching details for {len(video_ids)} videos")
        return self._call(
            "videos.list",
            lambda: self.youtube.videos().list(
                part="snippet,liveStreamingDetails",
                id=",".join(video_ids),
                maxResults=max_results,
            ),
            budget,
        )

    def resolve_handle(self, handle: str, budget: RequestBudget) -> dict:
        """Look up a channel by its @handle."""
        log.debug(f"Looking up handle: {handle}")
        return self._call(
            "channels.list",
            lambda: self.youtube.channels().list(part="snippet", forHandle=handle),
            budget,
        )
