"""
YouTube API quota tracking and management.

YouTube Data API v3 has a daily quota of 10,000 units (default) that resets
at midnight Pacific time. This module tracks usage and gates every API call
so a run stops cleanly before the budget is exceeded.

Quota state is persisted to the database to track usage across runs.
Every read and write uses a fresh connection so quota bookkeeping never
shares a transaction with the ingestion work itself.

Configuration is loaded from config/channels.yaml settings section or environment variables.
"""

import threading
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_config
from database import (
    close_quietly,
    get_connection as get_db_connection,
    get_quota_usage,
    get_quota_usage_history,
    increment_quota_usage,
    reset_quota_usage,
    run_transaction,
)
from logger import get_logger
from models import QuotaUsage

log = get_logger("quota")


class QuotaExhaustedError(Exception):
    """Raised when API quota is exhausted or insufficient for operation."""
    pass


def get_current_quota_date(timezone_name: str, now: Optional[datetime] = None) -> date:
    """
    Get the calendar date of the quota day in the given timezone.

    Args:
        timezone_name: IANA zone in which the upstream quota resets
        now: Aware datetime to evaluate instead of the current time
    """
    zone = ZoneInfo(timezone_name)
    if now is None:
        return datetime.now(zone).date()
    return now.astimezone(zone).date()


class QuotaTracker:
    """
    Track YouTube API quota usage across runs.

    The running total lives only in the database. record_usage() is
    serialized in-process by a lock and across processes by an atomic
    increment-or-create statement, so concurrent recorders never lose units.
    """

    # API operation costs (units)
    # See: https://developers.google.com/youtube/v3/determine_quota_cost
    COSTS = {
        'channels.list': 1,
        'playlistItems.list': 1,
        'videos.list': 1,
    }

    def __init__(
        self,
        connection_factory: Optional[Callable] = None,
        timezone_name: str = None,
        daily_limit: int = None,
        warn_threshold: float = None,
    ):
        """
        Initialize quota tracker.

        Args:
            connection_factory: Callable returning a new database connection (default: database.get_connection)
            timezone_name: Quota day timezone (default: from config or America/Los_Angeles)
            daily_limit: Limit used for warnings and summaries (default: from config or 10000)
            warn_threshold: Fraction of quota at which to warn (default: from config or 0.8)
        """
        cfg = get_config()
        self._connection_factory = connection_factory or get_db_connection
        self.timezone_name = timezone_name or cfg.quota_timezone
        self.daily_limit = daily_limit if daily_limit is not None else cfg.quota_limit
        self.warn_threshold = warn_threshold if warn_threshold is not None else cfg.quota_warn_threshold

        self.session_used = 0  # Just this run
        self.session_start = datetime.now()

        self._lock = threading.Lock()

        log.debug(f"Quota tracker initialized: limit={self.daily_limit}, timezone={self.timezone_name}")

    def today(self) -> date:
        """Current quota day."""
        return get_current_quota_date(self.timezone_name)

    def _read_usage(self, usage_date: date) -> Optional[QuotaUsage]:
        conn = self._connection_factory()
        try:
            return get_quota_usage(conn, usage_date)
        finally:
            close_quietly(conn)

    def used_today(self) -> int:
        """Quota units recorded today (0 when nothing has been recorded)."""
        usage = self._read_usage(self.today())
        return usage.quota_used if usage else 0

    def has_sufficient_quota(self, limit: int, safety_threshold: int) -> bool:
        """
        True iff today's usage plus the safety threshold is strictly below the limit.

        Read-only: nothing is created or recorded.
        """
        used = self.used_today()
        sufficient = used + safety_threshold < limit
        if not sufficient:
            log.warning(f"Insufficient quota: used={used}, threshold={safety_threshold}, limit={limit}")
        return sufficient

    def ensure_quota(self, limit: int, safety_threshold: int, operation: str = "operation") -> None:
        """
        Raise QuotaExhaustedError unless has_sufficient_quota() holds.

        Raises:
            QuotaExhaustedError: If insufficient quota
        """
        if not self.has_sufficient_quota(limit, safety_threshold):
            raise QuotaExhaustedError(
                f"Insufficient quota for {operation}: used {self.used_today()} of {limit} "
                f"(safety threshold {safety_threshold})"
            )

    def record_usage(self, cost: int = 1, operation: str = "api") -> int:
        """
        Atomically add cost to today's usage, creating today's record if absent.

        Args:
            cost: Quota units consumed
            operation: API operation name (e.g., 'videos.list') for the breakdown

        Returns:
            Today's total after the increment
        """
        usage_date = self.today()

        def increment(conn):
            increment_quota_usage(conn, usage_date, cost, operation, commit=False)
            return get_quota_usage(conn, usage_date)

        with self._lock:
            usage = run_transaction(increment, self._connection_factory, f"quota increment for {operation}")
            self.session_used += cost

        total = usage.quota_used if usage else cost
        log.debug(f"Quota: +{cost} for {operation} (total: {total}/{self.daily_limit})")
        self._check_thresholds(total - cost, total)
        return total

    def _check_thresholds(self, before: int, after: int):
        """Warn once when usage crosses the warning fraction of the daily limit."""
        if self.daily_limit <= 0:
            return
        warn_at = self.daily_limit * self.warn_threshold
        if before < warn_at <= after:
            log.warning(f"QUOTA WARNING: {after}/{self.daily_limit} ({after / self.daily_limit:.1%})")

    def remaining(self, limit: int = None) -> int:
        """Get remaining quota units for today."""
        limit = self.daily_limit if limit is None else limit
        return max(0, limit - self.used_today())

    def get_usage_history(self, start_date: date = None, end_date: date = None) -> list[QuotaUsage]:
        """Recorded quota days in the range, newest first."""
        conn = self._connection_factory()
        try:
            return get_quota_usage_history(conn, start_date, end_date)
        finally:
            close_quietly(conn)

    def reset(self):
        """Reset today's quota counter to 0. Use if quota tracking was corrupted."""
        usage_date = self.today()
        with self._lock:
            conn = self._connection_factory()
            try:
                reset_quota_usage(conn, usage_date)
            finally:
                close_quietly(conn)
        log.info(f"Quota reset to 0 for {usage_date}")

    def get_summary(self, limit: int = None) -> dict:
        """Get summary of quota usage for logging/reporting."""
        limit = self.daily_limit if limit is None else limit
        usage_date = self.today()
        usage = self._read_usage(usage_date)
        used = usage.quota_used if usage else 0
        return {
            'date': usage_date.isoformat(),
            'used': used,
            'remaining': max(0, limit - used),
            'limit': limit,
            'used_fraction': used / limit if limit else 0.0,
            'requests': usage.request_count if usage else 0,
            'session_used': self.session_used,
            'session_duration': str(datetime.now() - self.session_start),
            'by_operation': dict(usage.operations) if usage else {},
        }

    def log_summary(self, limit: int = None):
        """Log a summary of quota usage."""
        summary = self.get_summary(limit)
        log.info(f"Quota summary: {summary['used']}/{summary['limit']} "
                 f"({summary['used_fraction']:.1%}), session: {summary['session_used']}")
        for op, cost in sorted(summary['by_operation'].items(), key=lambda x: -x[1]):
            log.debug(f"  {op}: {cost} units")
