# ═══════════════════════════════════════════════════════════════
# DevPoll - Logging Tests
# ═══════════════════════════════════════════════════════════════

import json
import logging
import sys
import time

from devpoll.core.logging import (
    ConsoleFormatter,
    JSONFormatter,
    audit_logger,
    get_context,
    get_logger,
    logging_context,
    performance_logger,
)


def make_record(message="polled %s", args=("sw1",), level=logging.INFO, exc_info=None):
    return logging.LogRecord("devpoll.test", level, __file__, 10, message, args, exc_info)


class TestLoggingContext:

    def test_sets_and_resets(self):
        with logging_context(cycle_id="c1", device="10.0.0.1"):
            with logging_context(operation="list"):
                assert get_context() == {"cycle_id": "c1", "device": "10.0.0.1", "operation": "list"}
            assert get_context()["operation"] is None
        assert get_context() == {"cycle_id": None, "device": None, "operation": None}


class TestFormatters:

    def test_json_formatter(self):
        record = make_record()
        record.extra_fields = {"classification": "PARSING_ERROR"}

        with logging_context(cycle_id="c1", device="sw1"):
            payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "polled sw1"
        assert payload["level"] == "INFO"
        assert payload["cycle_id"] == "c1"
        assert payload["classification"] == "PARSING_ERROR"
        assert "operation" not in payload

    def test_json_formatter_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record("failed", (), logging.ERROR, sys.exc_info())

        payload = json.loads(JSONFormatter(include_traceback=False).format(record))

        assert payload["exception"] == {"type": "ValueError", "message": "boom"}

    def test_console_formatter(self):
        record = make_record()
        record.extra_fields = {"attempts": 3}

        with logging_context(device="sw1"):
            line = ConsoleFormatter().format(record)

        assert "polled sw1" in line
        assert "device=sw1" in line
        assert "attempts=3" in line


class TestLoggers:

    def test_keyword_fields(self, caplog):
        logger = get_logger("devpoll.test.fields")
        with caplog.at_level(logging.INFO, logger="devpoll.test.fields"):
            logger.info("done", classification="GENERIC_ERROR")

        assert caplog.records[0].extra_fields == {"classification": "GENERIC_ERROR"}

    def test_audit_failure_is_a_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="devpoll.audit"):
            audit_logger.log_authentication("sw1", False, method="token", username="monitor")

        record = caplog.records[0]
        assert record.levelno == logging.WARNING
        assert record.extra_fields["username"] == "monitor"
        assert record.extra_fields["method"] == "token"

    def test_slow_measurement_warns(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="devpoll.performance"):
            with performance_logger.measure("fast"):
                pass
            with performance_logger.measure("slow", threshold_seconds=0.001):
                time.sleep(0.01)

        assert [record.levelno for record in caplog.records] == [logging.DEBUG, logging.WARNING]
        assert caplog.records[1].extra_fields["operation"] == "slow"
