"""
Logging for the uploads ingestion job.

One log file per run (named after the run mode) plus a console stream. While a
channel is being synced, every line carries a short prefix naming the channel
and, inside the paging loop, the playlist page being worked on:

    12:00:01 | INFO     | [UC_x5XG1 p3] Page: 12 new, 38 existing

Levels and the log directory come from config (settings section or env).
"""

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import get_config

BASE_LOGGER_NAME = "tubehub"

FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s'
CONSOLE_FORMAT = '%(asctime)s | %(levelname)-8s | %(message)s'

# Per-thread sync position: channel being processed and current page number
_sync_position = threading.local()


def set_channel_context(channel_id: str) -> None:
    """Start prefixing this thread's log lines with the channel; resets the page."""
    _sync_position.channel = channel_id
    _sync_position.page = None


def set_page_context(page: Optional[int]) -> None:
    """Record the playlist page (1-based) the current thread is working on."""
    _sync_position.page = page


def get_channel_context() -> Optional[str]:
    return getattr(_sync_position, 'channel', None)


def get_page_context() -> Optional[int]:
    return getattr(_sync_position, 'page', None)


def clear_channel_context() -> None:
    _sync_position.channel = None
    _sync_position.page = None


def format_sync_prefix(channel_id: Optional[str], page: Optional[int] = None) -> str:
    """
    "[UC_x5XG1]" or "[UC_x5XG1 p3]"; empty when no channel is set.

    Channel IDs are cut to their first 8 characters, anything else to 10.
    """
    if not channel_id:
        return ""
    short = channel_id[:8] if channel_id.startswith('UC') else channel_id[:10]
    if page:
        return f"[{short} p{page}]"
    return f"[{short}]"


class ChannelContextFormatter(logging.Formatter):
    """Formatter that prefixes messages with the thread's channel/page position."""

    def format(self, record):
        # Several handlers format the same record; prefix it only once
        if not getattr(record, '_sync_prefixed', False):
            prefix = format_sync_prefix(get_channel_context(), get_page_context())
            if prefix:
                record.msg = f"{prefix} {record.msg}"
            record._sync_prefixed = True
        return super().format(record)


def _point_latest_log(log_file: Path, logger: logging.Logger) -> None:
    latest_log = log_file.parent / "latest.log"
    try:
        if latest_log.exists() or latest_log.is_symlink():
            latest_log.unlink()
        if os.name != 'nt':
            latest_log.symlink_to(log_file.name)
    except (OSError, NotImplementedError) as e:
        logger.debug(f"Could not create latest.log symlink: {e}")


def setup_logging(
    log_dir: Optional[str] = None,
    log_level: Optional[str] = None,
    console_level: Optional[str] = None,
    run_name: str = "ingest",
) -> logging.Logger:
    """
    Attach a per-run file handler and a console handler to the base logger.

    Args:
        log_dir: Directory for log files (default: config log_dir)
        log_level: Level of the base logger and file (default: config log_level)
        console_level: Console output level (default: config console_log_level)
        run_name: Log file prefix, e.g. "ingest" -> ingest_20240101_120000.log

    Returns:
        The configured base logger
    """
    cfg = get_config()
    log_dir = log_dir or cfg.log_dir
    log_level = (log_level or cfg.log_level).upper()
    console_level = (console_level or cfg.console_log_level).upper()

    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(BASE_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level))
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers = []

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = Path(log_dir) / f"{run_name}_{timestamp}.log"
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(ChannelContextFormatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(ChannelContextFormatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    logger.addHandler(console_handler)

    _point_latest_log(log_file, logger)

    logger.info(f"Logging initialized: file={log_file}, level={log_level}")
    logger.debug(f"Console level: {console_level}, python {sys.version.split()[0]}, cwd {os.getcwd()}")

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child of the base logger, e.g. get_logger("quota") -> tubehub.quota."""
    base_logger = logging.getLogger(BASE_LOGGER_NAME)
    if name:
        return base_logger.getChild(name)
    return base_logger


class LogContext:
    """
    Log the start and end of a block with its duration.

    The elapsed time stays available as ``elapsed`` after the block exits.
    Exceptions are logged and re-raised.
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time = None
        self.elapsed = 0.0

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.log(self.level, f"START: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = (datetime.now() - self.start_time).total_seconds()
        if exc_type:
            self.logger.error(f"FAILED: {self.operation} after {self.elapsed:.2f}s - {exc_type.__name__}: {exc_val}")
        else:
            self.logger.log(self.level, f"DONE: {self.operation} in {self.elapsed:.2f}s")
        return False
