"""
Append-only audit log of automated decisions (auto_send_log table).

Every queue transition, classification and draft generation appends one
entry. There is no update or delete path.

Writes happen in their own transaction and never raise: a failed write
is reported as a warning on the log stream and the primary operation
carries on.

Usage:
    audit_log = AuditLog(sessions)
    audit_log.append(workspace_id, message_id, draft_id, "sent", 0.91, {"attempt": 1})
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from autopilot.db.models import AuditLogEntry
from autopilot.logging.audit import audit

logger = logging.getLogger(__name__)


class AuditLog:
    """Best-effort writer for AuditLogEntry rows."""

    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def append(
        self,
        workspace_id: str,
        message_id: Optional[str],
        draft_id: Optional[str],
        action: str,
        confidence: Optional[float] = None,
        detail: Optional[dict[str, Any]] = None,
        queue_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Append one entry. Returns the new entry id, or None if the write failed.
        """
        entry = AuditLogEntry(
            workspace_id=workspace_id,
            message_id=message_id,
            draft_id=draft_id,
            queue_id=queue_id,
            action=action,
            confidence_score=confidence,
            detail=detail or {},
        )
        try:
            with self._sessions.begin() as db:
                db.add(entry)
                db.flush()
                entry_id = entry.id
        except Exception as e:
            audit.warning(
                "audit_log.append_failed",
                workspace_id=workspace_id,
                message_id=message_id,
                log_action=action,
                error=str(e),
            )
            return None

        audit.info(
            f"auto_send.{action}",
            workspace_id=workspace_id,
            message_id=message_id,
            draft_id=draft_id,
            queue_id=queue_id,
            confidence=confidence,
        )
        return entry_id
