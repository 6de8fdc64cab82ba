"""
Tests for logging setup and the channel context prefix.
"""

import logging

import pytest

from logger import (
    BASE_LOGGER_NAME,
    ChannelContextFormatter,
    LogContext,
    clear_channel_context,
    format_sync_prefix,
    get_logger,
    set_channel_context,
    set_page_context,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_context():
    yield
    clear_channel_context()


def make_record(message: str) -> logging.LogRecord:
    return logging.LogRecord("tubehub.test", logging.INFO, __file__, 1, message, None, None)


class TestChannelContextFormatter:
    def test_channel_prefix(self) -> None:
        set_channel_context("UC_x5XG1OV2P6uZZ5FSM9Ttw")
        assert ChannelContextFormatter("%(message)s").format(make_record("hello")) == "[UC_x5XG1] hello"

    def test_prefix_applied_once(self) -> None:
        set_channel_context("UC_x5XG1OV2P6uZZ5FSM9Ttw")
        formatter = ChannelContextFormatter("%(message)s")
        record = make_record("hello")
        formatter.format(record)
        assert formatter.format(record) == "[UC_x5XG1] hello"

    def test_no_context(self) -> None:
        assert ChannelContextFormatter("%(message)s").format(make_record("hello")) == "hello"

    def test_page_prefix(self) -> None:
        set_channel_context("UC_x5XG1OV2P6uZZ5FSM9Ttw")
        set_page_context(3)
        assert ChannelContextFormatter("%(message)s").format(make_record("hello")) == "[UC_x5XG1 p3] hello"

    def test_new_channel_resets_page(self) -> None:
        set_channel_context("UC_first_channel")
        set_page_context(7)
        set_channel_context("UC_second_channel")
        assert ChannelContextFormatter("%(message)s").format(make_record("hello")) == "[UC_secon] hello"


class TestFormatSyncPrefix:
    @pytest.mark.parametrize("channel_id, page, expected", [
        (None, None, ""),
        ("", 2, ""),
        ("UC_x5XG1OV2P6uZZ5FSM9Ttw", None, "[UC_x5XG1]"),
        ("UC_x5XG1OV2P6uZZ5FSM9Ttw", 12, "[UC_x5XG1 p12]"),
        ("HCabcdefghijklmnop", None, "[HCabcdefgh]"),
    ])
    def test_prefix(self, channel_id, page, expected) -> None:
        assert format_sync_prefix(channel_id, page) == expected


class TestSetupLogging:
    def test_writes_run_log(self, tmp_path) -> None:
        logger = setup_logging(log_dir=str(tmp_path), log_level="DEBUG", console_level="WARNING")
        try:
            get_logger("fetch").info("ingestion started")
            for handler in logger.handlers:
                handler.flush()

            run_logs = list(tmp_path.glob("ingest_*.log"))
            assert len(run_logs) == 1
            assert "ingestion started" in run_logs[0].read_text()
        finally:
            for handler in logger.handlers:
                handler.close()
            logger.handlers = []

    def test_run_name_sets_file_prefix(self, tmp_path) -> None:
        logger = setup_logging(log_dir=str(tmp_path), console_level="WARNING", run_name="verify")
        try:
            assert len(list(tmp_path.glob("verify_*.log"))) == 1
            assert not list(tmp_path.glob("ingest_*.log"))
        finally:
            for handler in logger.handlers:
                handler.close()
            logger.handlers = []

    def test_child_loggers(self) -> None:
        assert get_logger().name == BASE_LOGGER_NAME
        assert get_logger("quota").name == f"{BASE_LOGGER_NAME}.quota"


class TestLogContext:
    def test_failure_is_logged_and_propagated(self, caplog) -> None:
        log = get_logger("test")
        with caplog.at_level(logging.DEBUG, logger=BASE_LOGGER_NAME):
            with pytest.raises(RuntimeError):
                with LogContext(log, "process channel UC1"):
                    raise RuntimeError("boom")

        assert "FAILED: process channel UC1" in caplog.text

    def test_elapsed_recorded(self) -> None:
        with LogContext(get_logger("test"), "noop") as ctx:
            pass
        assert ctx.elapsed >= 0.0
