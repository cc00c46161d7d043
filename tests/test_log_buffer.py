"""
tests/test_log_buffer.py — In-Memory Log Tail
==============================================
"""

from __future__ import annotations

import logging

import pytest

from progression.errors import ValidationError
from progression.services.log_buffer import (
    BufferHandler,
    LogBuffer,
    LogEntry,
    get_current_level,
    install_handler,
    set_capture_level,
)


def _entry(level: str, logger: str = "progression.x", message: str = "m") -> LogEntry:
    return LogEntry(timestamp="2026-01-01T00:00:00+00:00", level=level, logger=logger,
                    message=message)


class TestLogBuffer:
    def test_capacity_bounded(self):
        buf = LogBuffer(capacity=3)
        for i in range(5):
            buf.append(_entry("INFO", message=str(i)))
        assert len(buf) == 3
        assert [e["message"] for e in buf.tail()] == ["2", "3", "4"]

    def test_level_filter(self):
        buf = LogBuffer()
        buf.append(_entry("DEBUG"))
        buf.append(_entry("WARNING"))
        buf.append(_entry("ERROR"))
        assert [e["level"] for e in buf.tail(min_level="warning")] == ["WARNING", "ERROR"]

    def test_logger_prefix_filter(self):
        buf = LogBuffer()
        buf.append(_entry("INFO", logger="progression.services.reward_service"))
        buf.append(_entry("INFO", logger="uvicorn.access"))
        assert len(buf.tail(logger_prefix="progression")) == 1

    def test_tail_count(self):
        buf = LogBuffer()
        for i in range(10):
            buf.append(_entry("INFO", message=str(i)))
        assert [e["message"] for e in buf.tail(count=2)] == ["8", "9"]

    def test_bad_level(self):
        with pytest.raises(ValidationError):
            LogBuffer().tail(min_level="LOUD")


class TestHandler:
    def test_emits_into_buffer(self):
        buf = LogBuffer()
        log = logging.getLogger("progression.test_handler")
        handler = BufferHandler(buf, level=logging.INFO)
        log.addHandler(handler)
        log.setLevel(logging.DEBUG)
        try:
            log.debug("hidden")
            log.info("awarded %d", 10)
        finally:
            log.removeHandler(handler)
        [entry] = buf.tail()
        assert entry["message"] == "awarded 10"
        assert entry["logger"] == "progression.test_handler"

    def test_install_is_idempotent_and_level_settable(self):
        first = install_handler()
        second = install_handler()
        try:
            assert first is second
            assert set_capture_level("warning") == "WARNING"
            assert get_current_level() == "WARNING"
        finally:
            logging.getLogger().removeHandler(first)

    def test_rejects_unknown_level(self):
        with pytest.raises(ValidationError):
            set_capture_level("verbose")
