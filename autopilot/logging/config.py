"""
Structured JSON logging configuration.

Usage:
    # At process startup (once):
    from autopilot.logging.config import setup_logging
    setup_logging()

    # In any module:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("queue.item.sent", extra={"action": "queue.item.sent", "queue_id": "..."})
"""

import logging
import json
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from contextvars import ContextVar
from typing import Iterator


# Context variables: set once per request or per batch run and
# included in every log line within that scope.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
workspace_id_var: ContextVar[str] = ContextVar("workspace_id", default="-")
# Set for the duration of one scheduled batch (auto-send, sync-all).
run_id_var: ContextVar[str] = ContextVar("run_id", default="-")


class JSONFormatter(logging.Formatter):
    """Formats every log record as a single JSON line."""

    INTERNAL_FIELDS = {
        "name", "msg", "args", "created", "relativeCreated", "exc_info",
        "exc_text", "stack_info", "lineno", "funcName", "pathname",
        "filename", "module", "thread", "threadName", "process",
        "processName", "msecs", "levelname", "levelno", "message",
        "taskName",
    }

    # Extras may override context values (e.g. workspace_id) but not these.
    RESERVED_FIELDS = {"timestamp", "level", "logger", "message"}

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "workspace_id": workspace_id_var.get(),
            "run_id": run_id_var.get(),
        }

        for key, val in record.__dict__.items():
            if key not in self.INTERNAL_FIELDS and key not in self.RESERVED_FIELDS:
                log[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            log["exception_type"] = record.exc_info[0].__name__
            log["exception_message"] = str(record.exc_info[1])
            log["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


def setup_logging(level: str = "info") -> None:
    """Configure the root logger to output structured JSON to stdout."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@contextmanager
def run_context(kind: str) -> Iterator[str]:
    """
    Tag every log line emitted inside the block with a fresh run id.

    Usage:
        with run_context("auto_send") as run_id:
            worker.process_batch()
    """
    run_id = f"{kind}-{uuid.uuid4().hex[:8]}"
    token = run_id_var.set(run_id)
    try:
        yield run_id
    finally:
        run_id_var.reset(token)
