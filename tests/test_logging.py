"""Tests for the structured logging system and the durable audit log."""

import json
import logging
from unittest.mock import MagicMock

from sqlalchemy import select

from autopilot.db.audit_log import AuditLog
from autopilot.db.models import AuditLogEntry
from autopilot.logging.audit import audit
from autopilot.logging.config import request_id_var, run_context, setup_logging, workspace_id_var


def read_log(capsys) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_json_format(capsys):
    """Log output should be valid JSON with expected fields."""
    setup_logging(level="debug")
    logging.getLogger("test").info("test message")

    log = read_log(capsys)

    assert log["level"] == "info"
    assert log["message"] == "test message"
    assert log["logger"] == "test"
    assert "timestamp" in log
    assert "request_id" in log
    assert "workspace_id" in log


def test_context_vars_appear_in_log(capsys):
    setup_logging(level="debug")
    req_token = request_id_var.set("abc123")
    ws_token = workspace_id_var.set("ws_acme")

    try:
        logging.getLogger("test").info("queue.batch.started")
        log = read_log(capsys)

        assert log["request_id"] == "abc123"
        assert log["workspace_id"] == "ws_acme"
    finally:
        request_id_var.reset(req_token)
        workspace_id_var.reset(ws_token)


def test_extra_fields(capsys):
    setup_logging(level="debug")
    logging.getLogger("test").info("queue.item.sent", extra={"queue_id": "q-1", "latency_ms": 450})

    log = read_log(capsys)

    assert log["queue_id"] == "q-1"
    assert log["latency_ms"] == 450


def test_extra_cannot_override_reserved_fields(capsys):
    setup_logging(level="debug")
    logging.getLogger("test").info("real message", extra={"timestamp": "fake", "level": "fake"})

    log = read_log(capsys)

    assert log["timestamp"] != "fake"
    assert log["level"] == "info"


def test_exception_logging(capsys):
    """Exceptions should include type, message, and traceback."""
    setup_logging(level="debug")
    try:
        raise ValueError("something went wrong")
    except ValueError:
        logging.getLogger("test").exception("operation failed")

    log = read_log(capsys)

    assert log["level"] == "error"
    assert log["exception_type"] == "ValueError"
    assert log["exception_message"] == "something went wrong"
    assert "traceback" in log


def test_audit_info(capsys):
    setup_logging(level="debug")
    audit.info("queue.item.sent", queue_id="q-9", attempt=1)

    log = read_log(capsys)

    assert log["action"] == "queue.item.sent"
    assert log["queue_id"] == "q-9"
    assert log["attempt"] == 1


def test_audit_error(capsys):
    setup_logging(level="debug")
    audit.error("queue.item.failed", queue_id="q-9", error_type="timeout")

    log = read_log(capsys)

    assert log["level"] == "error"
    assert log["error_type"] == "timeout"


def test_default_context_values(capsys):
    setup_logging(level="debug")
    logging.getLogger("test").info("no context")

    log = read_log(capsys)

    assert log["request_id"] == "-"
    assert log["workspace_id"] == "-"
    assert log["run_id"] == "-"


def test_run_context_tags_and_resets(capsys):
    setup_logging(level="debug")
    with run_context("auto_send") as run_id:
        logging.getLogger("test").info("queue.batch.completed")
        inside = read_log(capsys)
    logging.getLogger("test").info("after")
    after = read_log(capsys)

    assert run_id.startswith("auto_send-")
    assert inside["run_id"] == run_id
    assert after["run_id"] == "-"


class TestAuditLog:
    def test_append_persists_entry(self, sessions):
        entry_id = AuditLog(sessions).append("ws_test", "msg-1", "draft-1", "sent", 0.91, {"attempt": 1}, "q-1")

        with sessions() as db:
            entry = db.get(AuditLogEntry, entry_id)
        assert entry.action == "sent"
        assert entry.confidence_score == 0.91
        assert entry.detail == {"attempt": 1}
        assert entry.queue_id == "q-1"
        assert entry.created_at is not None

    def test_detail_defaults_to_empty(self, sessions):
        entry_id = AuditLog(sessions).append("ws_test", None, None, "skipped")
        with sessions() as db:
            assert db.get(AuditLogEntry, entry_id).detail == {}

    def test_write_failure_is_swallowed(self, capsys):
        sessions = MagicMock()
        sessions.begin.side_effect = RuntimeError("database is locked")
        setup_logging(level="debug")

        assert AuditLog(sessions).append("ws_test", "msg-1", None, "failed") is None

        log = read_log(capsys)
        assert log["action"] == "audit_log.append_failed"
        assert log["log_action"] == "failed"

    def test_entries_are_append_only(self, sessions):
        audit_log = AuditLog(sessions)
        audit_log.append("ws_test", "msg-1", None, "classified")
        audit_log.append("ws_test", "msg-1", None, "classified")

        with sessions() as db:
            assert len(db.scalars(select(AuditLogEntry)).all()) == 2
