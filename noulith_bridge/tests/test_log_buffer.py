"""Tests for the interaction log buffer."""

import logging
from datetime import datetime

from noulith_bridge.log_buffer import LOG_DEBUG, LOG_ERROR, LOG_INFO, InteractionLog, LogEntry


class TestLogEntry:

    def test_format(self):
        entry = LogEntry(
            timestamp=datetime(2024, 1, 2, 3, 4, 5, 678000),
            level=LOG_INFO,
            server="noulith",
            event="Connected",
            details="pid 42",
        )
        assert entry.format() == "03:04:05.678 [INFO] [noulith] Connected - pid 42"
        assert entry.format(include_timestamp=False) == "[INFO] [noulith] Connected - pid 42"


class TestInteractionLog:

    def test_bounded(self):
        log = InteractionLog("noulith", maxlen=3)
        for i in range(5):
            log.record(LOG_INFO, f"event {i}")
        assert len(log) == 3
        assert [e.event for e in log.entries()] == ["event 2", "event 3", "event 4"]

    def test_filter_by_level_and_clear(self):
        log = InteractionLog("noulith")
        log.record(LOG_INFO, "started")
        log.record(LOG_ERROR, "failed", "boom")
        assert [e.event for e in log.entries(LOG_ERROR)] == ["failed"]
        log.clear()
        assert len(log) == 0

    def test_server_output_recorded_as_debug(self):
        log = InteractionLog("noulith")
        log.server_output("warming up")
        (entry,) = log.entries()
        assert entry.level == LOG_DEBUG
        assert entry.details == "warming up"

    def test_mirrored_to_logging(self, caplog):
        log = InteractionLog("noulith")
        with caplog.at_level(logging.WARNING, logger="noulith_bridge.log_buffer"):
            log.record(LOG_ERROR, "Start failed", "spawn error")
        assert "Start failed - spawn error" in caplog.text
