"""
Auto-send worker.

process_batch() is called on a fixed interval by an external scheduler
(POST /api/cron/auto-send). Each call:

0. Resolves items stuck in `processing` past the stale threshold and
   re-enters retryable `failed` items into `pending`.
1. Selects due `pending` items with attempts left, oldest-due first.
2. Re-reads the workspace policy. Any blocked_reason (including a sending
   window that will not parse) -> cancelled.
3. Outside the sending window -> rescheduled to the next window start
   (stays pending, no attempt consumed).
4. Claims the item (pending -> processing). Losing the claim means another
   worker owns it; skip.
5-7. Re-checks draft, message and connection. Holds cancel the item;
   missing rows fail it permanently.
8. Sends the threaded reply through the channel.
9. Success -> sent, draft marked sent exactly once, label applied.
10. Failure -> failed with the attempt consumed; retried on a later batch
    while attempts < max.
11. Any unexpected exception is confined to that item. After the claim it
    becomes a failure; before the claim the item is cancelled so it cannot
    be reselected on every poll.

Items are processed sequentially. The claim write is the only concurrency
boundary between workers (see QueueStore.transition).
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from autopilot.agent.schemas import AuditAction, BatchResult, QueueStatus, ReplyRequest
from autopilot.channels.base import ChannelRegistry, reply_subject
from autopilot.channels.tokens import TokenProvider
from autopilot.config import settings
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import AutoSendQueueItem, ChannelConnection, Draft, Message, utcnow
from autopilot.errors import CapabilityError, NotFound, PolicyBlocked
from autopilot.logging.audit import audit
from autopilot.queue.policy import PolicyProvider
from autopilot.queue.store import QueueStore
from autopilot.queue.window import is_within_window, next_window_start, resolve_timezone, to_local, to_utc_naive

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ItemOutcome:
    status: str  # SENT | FAILED | SKIPPED
    error: Optional[str] = None


def build_reply_request(connection_id: str, message: Message, draft: Draft) -> ReplyRequest:
    """Threading metadata for replying to `message` with `draft`."""
    raw = message.raw_data or {}
    message_id_header = raw.get("messageId") or raw.get("internetMessageId")
    references = raw.get("references")
    if message_id_header:
        references = f"{references} {message_id_header}" if references else message_id_header

    return ReplyRequest(
        connection_id=connection_id,
        original_message_id=message.provider_message_id,
        thread_id=message.provider_thread_id or "",
        to=[message.sender_email],
        subject=reply_subject(message.subject),
        body=draft.body,
        in_reply_to=message_id_header,
        references=references,
    )


class AutoSendWorker:

    def __init__(
        self,
        sessions: sessionmaker,
        store: QueueStore,
        policies: PolicyProvider,
        channels: ChannelRegistry,
        tokens: TokenProvider,
        audit_log: AuditLog,
        sent_label: Optional[str] = None,
        stale_minutes: Optional[int] = None,
    ):
        self._sessions = sessions
        self._store = store
        self._policies = policies
        self._channels = channels
        self._tokens = tokens
        self._audit_log = audit_log
        self._sent_label = sent_label if sent_label is not None else settings.sent_label
        self._stale_minutes = stale_minutes or settings.processing_stale_minutes

    # =========================================================================
    # BATCH
    # =========================================================================

    def process_batch(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> BatchResult:
        """
        Process up to `limit` due items.

        Per-item failures are recorded, never raised. Only a failure to
        select the due items propagates.
        """
        start = time.monotonic()
        now = now or utcnow()
        limit = limit or settings.auto_send_batch_limit
        result = BatchResult()

        result.recovered = self._recover_stale(now)
        self._store.requeue_failed()

        items = self._store.select_due(now, limit)
        for item in items:
            result.processed += 1
            try:
                outcome = self._process_item(item, now)
            except Exception as e:
                outcome = self._handle_unexpected(item, e)

            if outcome.status == SENT:
                result.sent += 1
            elif outcome.status == FAILED:
                result.failed += 1
                result.errors.append(f"{item.id}: {outcome.error}")
            else:
                result.skipped += 1

        result.duration_ms = int((time.monotonic() - start) * 1000)
        audit.info(
            "queue.batch.completed",
            processed=result.processed,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
            recovered=result.recovered,
            duration_ms=result.duration_ms,
        )
        return result

    # =========================================================================
    # ONE ITEM
    # =========================================================================

    def _process_item(self, item: AutoSendQueueItem, now: datetime) -> ItemOutcome:
        # 2. Current policy, never a snapshot
        policy = self._policies.get_policy(item.workspace_id)
        try:
            policy.require_auto_send()
        except PolicyBlocked as e:
            reason = e.reason
            if self._store.transition(
                item.id, QueueStatus.PENDING, QueueStatus.CANCELLED, item.attempts, error_message=reason
            ):
                self._log(item, AuditAction.CANCELLED, {"reason": reason})
            return ItemOutcome(SKIPPED)

        # 3. Sending window, in the workspace's timezone
        tz = resolve_timezone(policy.timezone)
        local_now = to_local(now, tz)
        if not is_within_window(local_now, policy.time_start, policy.time_end):
            next_start = to_utc_naive(next_window_start(policy.time_start, local_now))
            if self._store.reschedule(item, next_start):
                self._log(
                    item,
                    AuditAction.RESCHEDULED,
                    {"reason": "Outside sending window", "scheduled_send_at": next_start.isoformat()},
                )
            return ItemOutcome(SKIPPED)

        # 4. Claim
        if not self._store.claim(item, now):
            return ItemOutcome(SKIPPED)

        with self._sessions() as db:
            draft = db.get(Draft, item.draft_id)
            message = db.get(Message, item.message_id)
            connection = db.get(ChannelConnection, item.connection_id)

        # 5. Draft
        if draft is None:
            return self._fail(item, "Draft not found", retryable=False)
        if draft.hold_for_review:
            reason = "Draft held for human review"
            if draft.hold_reason:
                reason = f"{reason}: {draft.hold_reason}"
            return self._cancel(item, reason)
        if draft.sent:
            return self._cancel(item, "Draft already sent")

        # 6. Message
        if message is None:
            return self._fail(item, "Message not found", retryable=False)
        if message.requires_human_review:
            reason = "Message requires human review"
            if message.human_review_reason:
                reason = f"{reason}: {message.human_review_reason}"
            return self._cancel(item, reason)

        # 7. Connection
        if connection is None:
            return self._fail(item, "Channel connection not found", retryable=False)
        if connection.status != "active":
            return self._fail(item, f"Channel connection is {connection.status}", retryable=False)

        try:
            channel = self._channels.get(connection.provider)
        except CapabilityError as e:
            return self._fail(item, str(e), retryable=False)

        # 8. Send
        request = build_reply_request(connection.id, message, draft)
        try:
            token = self._tokens.get_access_token(connection.id)
            send_result = channel.send_reply(token, request, from_address=connection.provider_account_id)
        except NotFound as e:
            return self._fail(item, str(e), retryable=False)
        except CapabilityError as e:
            return self._fail(item, str(e), retryable=True)

        if not send_result.success:
            return self._fail(item, send_result.error or "Send failed", retryable=True)

        # 9. Sent
        self._mark_sent(item, send_result.message_id, now)
        self._apply_label(channel, token, message)
        return ItemOutcome(SENT)

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def _mark_sent(self, item: AutoSendQueueItem, provider_message_id: Optional[str], now: datetime) -> None:
        attempt = item.attempts + 1

        with self._sessions.begin() as db:
            flipped = db.execute(
                update(Draft)
                .where(Draft.id == item.draft_id)
                .where(Draft.sent.is_(False))
                .values(sent=True, sent_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
        if not flipped:
            logger.error(
                "queue.draft.already_sent",
                extra={"action": "queue.draft.already_sent", "queue_id": item.id, "draft_id": item.draft_id},
            )

        self._store.transition(
            item.id,
            QueueStatus.PROCESSING,
            QueueStatus.SENT,
            item.attempts,
            attempts=attempt,
            sent_at=now,
            sent_message_id=provider_message_id,
            error_message=None,
        )
        self._log(item, AuditAction.SENT, {"attempt": attempt, "provider_message_id": provider_message_id})

    def _cancel(self, item: AutoSendQueueItem, reason: str) -> ItemOutcome:
        """processing -> cancelled. Nothing was sent and nothing will be retried."""
        self._store.transition(
            item.id, QueueStatus.PROCESSING, QueueStatus.CANCELLED, item.attempts, error_message=reason
        )
        self._log(item, AuditAction.CANCELLED, {"reason": reason})
        return ItemOutcome(SKIPPED)

    def _fail(self, item: AutoSendQueueItem, error: str, retryable: bool) -> ItemOutcome:
        """
        processing -> failed.

        A retryable failure consumes an attempt and is re-entered into
        pending by a later batch while attempts remain. A permanent failure
        does not consume an attempt and is never retried.
        """
        attempts = item.attempts + 1 if retryable else item.attempts
        retryable = retryable and attempts < self._store.max_attempts

        self._store.transition(
            item.id,
            QueueStatus.PROCESSING,
            QueueStatus.FAILED,
            item.attempts,
            attempts=attempts,
            retryable=retryable,
            error_message=error,
        )
        self._log(item, AuditAction.FAILED, {"error": error, "attempt": attempts, "will_retry": retryable})

        if not retryable:
            self._flag_for_review(item.message_id, f"Auto-send failed: {error}")
        return ItemOutcome(FAILED, error)

    def _handle_unexpected(self, item: AutoSendQueueItem, error: Exception) -> ItemOutcome:
        logger.exception(
            "queue.item.error",
            extra={"action": "queue.item.error", "queue_id": item.id, "error_type": type(error).__name__},
        )
        message = str(error) or type(error).__name__
        current = self._store.get(item.id)
        if current is not None and current.status == QueueStatus.PROCESSING.value:
            try:
                return self._fail(current, message, retryable=True)
            except Exception:
                logger.exception(
                    "queue.item.fail_record_error",
                    extra={"action": "queue.item.fail_record_error", "queue_id": item.id},
                )
        elif current is not None and current.status == QueueStatus.PENDING.value:
            # Failed before the claim. Left pending it would be reselected
            # first on every poll, so it is closed out here.
            reason = f"Unexpected error before send: {message}"
            if self._store.transition(
                current.id, QueueStatus.PENDING, QueueStatus.CANCELLED, current.attempts, error_message=reason
            ):
                self._log(current, AuditAction.CANCELLED, {"reason": reason})
        return ItemOutcome(FAILED, message)

    # =========================================================================
    # STALE RECOVERY
    # =========================================================================

    def _recover_stale(self, now: datetime) -> int:
        """
        Resolve items stuck in processing (worker died mid-item).

        If the draft is already marked sent the send completed; the item
        becomes sent. Otherwise the send may or may not have reached the
        provider, so the item fails permanently and the message is flagged
        for human review rather than risking a second delivery.
        """
        cutoff = now - timedelta(minutes=self._stale_minutes)
        recovered = 0

        for item in self._store.select_stale_processing(cutoff):
            try:
                with self._sessions() as db:
                    draft = db.get(Draft, item.draft_id)

                if draft is not None and draft.sent:
                    won = self._store.transition(
                        item.id,
                        QueueStatus.PROCESSING,
                        QueueStatus.SENT,
                        item.attempts,
                        attempts=item.attempts + 1,
                        sent_at=draft.sent_at or now,
                    )
                    if won:
                        self._log(item, AuditAction.SENT, {"recovered": True})
                else:
                    reason = "Send outcome unknown: processing timed out"
                    won = self._store.transition(
                        item.id,
                        QueueStatus.PROCESSING,
                        QueueStatus.FAILED,
                        item.attempts,
                        attempts=item.attempts + 1,
                        retryable=False,
                        error_message=reason,
                    )
                    if won:
                        self._flag_for_review(item.message_id, reason)
                        self._log(item, AuditAction.FAILED, {"error": reason, "recovered": True})
                if won:
                    recovered += 1
            except Exception:
                logger.exception(
                    "queue.stale.recover_failed",
                    extra={"action": "queue.stale.recover_failed", "queue_id": item.id},
                )

        if recovered:
            audit.warning("queue.stale.recovered", count=recovered)
        return recovered

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _flag_for_review(self, message_id: str, reason: str) -> None:
        with self._sessions.begin() as db:
            db.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(requires_human_review=True, human_review_reason=reason, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    def _apply_label(self, channel, token: str, message: Message) -> None:
        if not self._sent_label:
            return
        try:
            channel.apply_label(token, message.provider_message_id, self._sent_label)
        except Exception as e:
            logger.warning(
                "queue.label.failed",
                extra={"action": "queue.label.failed", "message_id": message.id, "error": str(e)},
            )

    def _log(self, item: AutoSendQueueItem, action: AuditAction, detail: dict) -> None:
        self._audit_log.append(
            item.workspace_id,
            item.message_id,
            item.draft_id,
            action.value,
            confidence=item.confidence_score,
            detail=detail,
            queue_id=item.id,
        )
