"""
Operational audit logging for automated decisions.

SECURITY: Never log message content, subjects, body text, draft text,
recipient addresses, LLM prompts, or LLM responses. Only log metadata
(ids, counts, reasons, latencies).

This is the log-stream side of auditing. The durable, queryable record of
auto-send decisions lives in the auto_send_log table (see
autopilot.db.audit_log).

Usage:
    from autopilot.logging.audit import audit
    audit.info("queue.item.sent", queue_id="...", attempt=1)
"""

import logging
from typing import Any


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self):
        self._logger = logging.getLogger("audit")

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra={"action": action, **fields})

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra={"action": action, **fields})

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra={"action": action, **fields})


audit = AuditLogger()
