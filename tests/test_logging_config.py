"""
Tests for logging configuration
Version: 1.0

stdlib service loggers and structlog loggers share one JSON pipeline.
"""

import contextvars
import json
import logging

import pytest
import structlog

from services.logging_config import (
    LogTimer,
    QUIET_LOGGERS,
    bind_sync_session,
    configure_logging,
    get_logger,
    set_trace_id,
)


@pytest.fixture
def json_logs(capsys):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    configure_logging(json_format=True, log_level="INFO")
    yield capsys
    root.handlers = saved_handlers
    root.setLevel(saved_level)
    structlog.reset_defaults()


def last_entry(capsys) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


class TestLoggingConfig:

    def test_stdlib_records_carry_sync_session(self, json_logs):
        def emit():
            bind_sync_session("sync_1718190000000_abcdef123")
            logging.getLogger("services.sync_orchestrator").warning("Batch 0 transaction failed")

        contextvars.copy_context().run(emit)
        entry = last_entry(json_logs)

        assert entry["message"] == "Batch 0 transaction failed"
        assert entry["level"] == "warning"
        assert entry["logger"] == "services.sync_orchestrator"
        assert entry["sync_session"] == "sync_1718190000000_abcdef123"
        assert "trace_id" not in entry
        assert "timestamp" in entry

    def test_log_timer_completed_with_trace_id(self, json_logs):
        def emit():
            set_trace_id("abc12345")
            with LogTimer(get_logger("emergency"), "Emergency routing", severity="critical"):
                pass

        contextvars.copy_context().run(emit)
        entry = last_entry(json_logs)

        assert entry["message"] == "Emergency routing completed"
        assert entry["trace_id"] == "abc12345"
        assert entry["severity"] == "critical"
        assert entry["duration_ms"] >= 0
        assert "sync_session" not in entry

    def test_log_timer_failure(self, json_logs):
        with pytest.raises(RuntimeError):
            with LogTimer(get_logger("emergency"), "Emergency routing"):
                raise RuntimeError("nobody on call")

        entry = last_entry(json_logs)
        assert entry["message"] == "Emergency routing failed"
        assert entry["level"] == "error"
        assert entry["error"] == "nobody on call"

    def test_library_loggers_quieted(self, json_logs):
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

        logging.getLogger("sqlalchemy.engine").info("SELECT 1")
        assert json_logs.readouterr().out == ""
