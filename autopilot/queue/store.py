"""
Durable auto-send queue backed by the auto_send_queue table.

Every status change is a single conditional UPDATE:

    UPDATE auto_send_queue SET ... WHERE id = ? AND status = ? AND attempts = ?

A rowcount of 1 means this writer won. Two workers racing on the same
pending row both issue the claim; only one sees rowcount 1 and proceeds to
send. That conditional write is the only concurrency boundary, so no
in-process locks are needed.

Allowed transitions (anything else raises InvalidTransition):

    pending    -> processing | cancelled
    processing -> sent | failed | cancelled
    failed     -> pending   (retryable and attempts < max_attempts)
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from autopilot.agent.schemas import QueueStatus
from autopilot.db.models import AutoSendQueueItem, utcnow

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[QueueStatus, set[QueueStatus]] = {
    QueueStatus.PENDING: {QueueStatus.PROCESSING, QueueStatus.CANCELLED},
    QueueStatus.PROCESSING: {QueueStatus.SENT, QueueStatus.FAILED, QueueStatus.CANCELLED},
    QueueStatus.FAILED: {QueueStatus.PENDING},
    QueueStatus.SENT: set(),
    QueueStatus.CANCELLED: set(),
}

NON_TERMINAL = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class InvalidTransition(ValueError):
    """Raised when code asks for a transition the state machine forbids."""
    pass


class QueueStore:
    """Queue-item persistence with optimistic, row-level transitions."""

    def __init__(self, sessions: sessionmaker, max_attempts: int = 3):
        self._sessions = sessions
        self.max_attempts = max_attempts

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    def add(
        self,
        workspace_id: str,
        message_id: str,
        draft_id: str,
        connection_id: str,
        scheduled_send_at: datetime,
        confidence_score: Optional[float],
        delay_minutes: Optional[int] = None,
    ) -> AutoSendQueueItem:
        item = AutoSendQueueItem(
            workspace_id=workspace_id,
            message_id=message_id,
            draft_id=draft_id,
            connection_id=connection_id,
            scheduled_send_at=scheduled_send_at,
            status=QueueStatus.PENDING.value,
            attempts=0,
            confidence_score=confidence_score,
            delay_minutes=delay_minutes,
        )
        with self._sessions.begin() as db:
            db.add(item)
        return item

    def get(self, queue_id: str) -> Optional[AutoSendQueueItem]:
        with self._sessions() as db:
            return db.get(AutoSendQueueItem, queue_id)

    def find_open_for_draft(self, draft_id: str) -> Optional[AutoSendQueueItem]:
        """The non-terminal queue item for a draft, if any."""
        with self._sessions() as db:
            return db.scalars(
                select(AutoSendQueueItem)
                .where(AutoSendQueueItem.draft_id == draft_id)
                .where(AutoSendQueueItem.status.in_(NON_TERMINAL))
            ).first()

    def select_due(self, now: datetime, limit: int) -> list[AutoSendQueueItem]:
        """
        Pending items due at or before `now` with attempts left,
        oldest-due first.
        """
        with self._sessions() as db:
            return list(
                db.scalars(
                    select(AutoSendQueueItem)
                    .where(AutoSendQueueItem.status == QueueStatus.PENDING.value)
                    .where(AutoSendQueueItem.scheduled_send_at <= now)
                    .where(AutoSendQueueItem.attempts < self.max_attempts)
                    .order_by(AutoSendQueueItem.scheduled_send_at.asc())
                    .limit(limit)
                )
            )

    def select_stale_processing(self, cutoff: datetime) -> list[AutoSendQueueItem]:
        """Items claimed before `cutoff` that never reached a terminal state."""
        with self._sessions() as db:
            return list(
                db.scalars(
                    select(AutoSendQueueItem)
                    .where(AutoSendQueueItem.status == QueueStatus.PROCESSING.value)
                    .where(AutoSendQueueItem.last_attempt_at < cutoff)
                )
            )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def transition(
        self,
        queue_id: str,
        from_status: QueueStatus,
        to_status: QueueStatus,
        expected_attempts: int,
        **values: Any,
    ) -> bool:
        """
        Move one item from `from_status` to `to_status` if, and only if, it is
        still in `from_status` with `expected_attempts`.

        Returns:
            True if this call performed the transition, False if another
            writer got there first (or the row no longer matches).
        """
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransition(f"{from_status.value} -> {to_status.value} is not allowed")

        values["status"] = to_status.value
        values["updated_at"] = utcnow()

        with self._sessions.begin() as db:
            result = db.execute(
                update(AutoSendQueueItem)
                .where(AutoSendQueueItem.id == queue_id)
                .where(AutoSendQueueItem.status == from_status.value)
                .where(AutoSendQueueItem.attempts == expected_attempts)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1

        if not won:
            logger.info(
                "queue.transition.lost",
                extra={
                    "action": "queue.transition.lost",
                    "queue_id": queue_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "expected_attempts": expected_attempts,
                },
            )
        return won

    def claim(self, item: AutoSendQueueItem, now: datetime) -> bool:
        """pending -> processing. The winner of this write owns the item."""
        return self.transition(
            item.id,
            QueueStatus.PENDING,
            QueueStatus.PROCESSING,
            expected_attempts=item.attempts,
            last_attempt_at=now,
        )

    def reschedule(self, item: AutoSendQueueItem, scheduled_send_at: datetime) -> bool:
        """Move a pending item's due time forward. Status and attempts are untouched."""
        with self._sessions.begin() as db:
            result = db.execute(
                update(AutoSendQueueItem)
                .where(AutoSendQueueItem.id == item.id)
                .where(AutoSendQueueItem.status == QueueStatus.PENDING.value)
                .where(AutoSendQueueItem.attempts == item.attempts)
                .values(scheduled_send_at=scheduled_send_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def requeue_failed(self) -> int:
        """
        failed -> pending for retryable items that still have attempts left.

        Returns the number of items re-entered into the queue.
        """
        with self._sessions.begin() as db:
            result = db.execute(
                update(AutoSendQueueItem)
                .where(AutoSendQueueItem.status == QueueStatus.FAILED.value)
                .where(AutoSendQueueItem.retryable.is_(True))
                .where(AutoSendQueueItem.attempts < self.max_attempts)
                .values(status=QueueStatus.PENDING.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        if count:
            logger.info(
                "queue.requeued",
                extra={"action": "queue.requeued", "count": count},
            )
        return count
