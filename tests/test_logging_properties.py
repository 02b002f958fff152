"""Property-based tests for logging functionality.

Log entries must carry a timestamp, a severity level and the event, and
every entry emitted during a sync run must carry that run's id.
"""

import json
import logging
from datetime import datetime
from io import StringIO

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from todosync.models.config import LoggingConfig
from todosync.utils.logging_config import (
    bind_sync_run,
    clear_sync_run,
    configure_from_config,
    configure_logging,
)


def capture_json_logs(level: int = logging.DEBUG) -> StringIO:
    """Route stdlib logging to a buffer and render structlog events as JSON."""
    log_buffer = StringIO()
    logging.basicConfig(format="%(message)s", level=level, stream=log_buffer, force=True)
    configure_logging(log_level=logging.getLevelName(level), json_logs=True, log_file=None)
    return log_buffer


def entries(log_buffer: StringIO) -> list[dict]:
    return [json.loads(line) for line in log_buffer.getvalue().splitlines() if line.strip()]


@given(
    log_level=st.sampled_from(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    error_message=st.text(min_size=1, max_size=200),
)
@settings(max_examples=50)
def test_error_log_format_contains_required_fields(log_level: str, error_message: str) -> None:
    """
    Property: every log entry contains timestamp, level and the message.

    Args:
        log_level: The log level to test
        error_message: The error message to log
    """
    log_buffer = capture_json_logs()
    log = structlog.stdlib.get_logger("test_logger")

    getattr(log, log_level.lower())("failed_to_push_task", error=error_message)

    (log_entry,) = entries(log_buffer)
    datetime.fromisoformat(log_entry["timestamp"].replace("Z", "+00:00"))
    assert log_entry["level"].upper() == log_level
    assert log_entry["event"] == "failed_to_push_task"
    assert log_entry["error"] == error_message


@given(
    anchor_id=st.text(alphabet="abcdef0123456789", min_size=1, max_size=12),
    list_id=st.text(min_size=1, max_size=40),
    pushed=st.integers(min_value=0, max_value=10_000),
)
@settings(max_examples=50)
def test_error_log_format_preserves_context(anchor_id: str, list_id: str, pushed: int) -> None:
    """Property: keyword context passed to a log call is preserved in the entry."""
    log_buffer = capture_json_logs()
    log = structlog.stdlib.get_logger("test_logger")

    log.error("sync_list_completed", anchor_id=anchor_id, list_id=list_id, pushed=pushed)

    (log_entry,) = entries(log_buffer)
    assert log_entry["level"] == "error"
    assert (log_entry["anchor_id"], log_entry["list_id"], log_entry["pushed"]) == (
        anchor_id,
        list_id,
        pushed,
    )


@given(reason=st.sampled_from(["startup", "auto-sync", "file-save", "manual"]))
@settings(max_examples=10)
def test_sync_run_context_is_attached_until_cleared(reason: str) -> None:
    """Property: events between bind and clear carry the run id and reason; later ones do not."""
    log_buffer = capture_json_logs()
    log = structlog.stdlib.get_logger("test_logger")

    run_id = bind_sync_run(reason)
    log.info("sync_vault_started")
    log.info("task_pushed", anchor_id="abc123")
    clear_sync_run()
    log.info("sync_notice", message="done")

    started, pushed, notice = entries(log_buffer)
    for entry in (started, pushed):
        assert entry["sync_run_id"] == run_id
        assert entry["sync_reason"] == reason
    assert "sync_run_id" not in notice
    assert "sync_reason" not in notice


def test_each_run_gets_a_fresh_id() -> None:
    first = bind_sync_run("manual")
    second = bind_sync_run("manual")
    clear_sync_run()

    assert first != second
    assert len(first) == 12


def test_logging_configuration_creates_valid_json_logs() -> None:
    log_buffer = StringIO()
    logging.basicConfig(format="%(message)s", level=logging.INFO, stream=log_buffer, force=True)

    configure_from_config(LoggingConfig(log_level="INFO", json_logs=True))

    log = structlog.stdlib.get_logger("test_logger")
    log.info("vault_scanned", task_count=42, complete=True)

    log_entry = json.loads(log_buffer.getvalue().strip())
    assert log_entry["event"] == "vault_scanned"
    assert log_entry["task_count"] == 42
    assert log_entry["complete"] is True
    assert "timestamp" in log_entry
    assert "level" in log_entry
