"""
Enqueueing drafts for automatic sending.

A draft is queued only when the workspace currently allows auto-send and
its confidence clears the workspace threshold. A draft the model did not
mark auto-sendable also needs confidence of at least 0.80. The send time
is now plus the configured delay, pushed to the next window opening when
it would land outside the sending window (evaluated in the workspace's
timezone).

The worker re-checks everything again at send time; queueing is not a
promise to send.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from autopilot.agent.schemas import AuditAction, EnqueueResult
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import utcnow
from autopilot.queue.policy import PolicyProvider
from autopilot.queue.store import QueueStore
from autopilot.queue.window import (
    fit_to_window,
    pick_delay_minutes,
    resolve_timezone,
    to_local,
    to_utc_naive,
)

logger = logging.getLogger(__name__)

# A draft the model did not mark auto-sendable needs at least this much
# confidence to be queued, whatever the workspace threshold.
UNSENDABLE_MIN_CONFIDENCE = 0.80


class AutoSendEnqueuer:

    def __init__(
        self,
        policies: PolicyProvider,
        store: QueueStore,
        audit_log: AuditLog,
        rng: Optional[random.Random] = None,
    ):
        self._policies = policies
        self._store = store
        self._audit_log = audit_log
        self._rng = rng

    def enqueue_auto_send(
        self,
        workspace_id: str,
        message_id: str,
        draft_id: str,
        connection_id: str,
        confidence: Optional[float],
        is_auto_sendable: bool = True,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Queue a draft for sending if policy and confidence allow it."""
        policy = self._policies.get_policy(workspace_id)
        if not policy.can_auto_send:
            return EnqueueResult(queued=False, reason=policy.blocked_reason)

        score = confidence if confidence is not None else 0.0
        if score < policy.confidence_threshold:
            reason = (
                f"Confidence {score:.2f} below threshold {policy.confidence_threshold:.2f}"
            )
            self._audit_log.append(
                workspace_id,
                message_id,
                draft_id,
                AuditAction.SKIPPED.value,
                confidence=confidence,
                detail={"reason": reason, "threshold": policy.confidence_threshold},
            )
            return EnqueueResult(queued=False, reason=reason)

        if not is_auto_sendable and score < UNSENDABLE_MIN_CONFIDENCE:
            reason = (
                f"Draft not marked auto-sendable and confidence {score:.2f} "
                f"below {UNSENDABLE_MIN_CONFIDENCE:.2f}"
            )
            self._audit_log.append(
                workspace_id,
                message_id,
                draft_id,
                AuditAction.SKIPPED.value,
                confidence=confidence,
                detail={"reason": reason, "is_auto_sendable": False},
            )
            return EnqueueResult(queued=False, reason=reason)

        existing = self._store.find_open_for_draft(draft_id)
        if existing is not None:
            return EnqueueResult(
                queued=False,
                queue_id=existing.id,
                scheduled_at=existing.scheduled_send_at,
                reason="Draft already queued",
            )

        now = now or utcnow()
        delay = pick_delay_minutes(policy.delay_type, policy.delay_min, policy.delay_max, self._rng)
        tz = resolve_timezone(policy.timezone)
        desired_local = to_local(now + timedelta(minutes=delay), tz)
        scheduled_local = fit_to_window(desired_local, policy.time_start, policy.time_end)
        scheduled = to_utc_naive(scheduled_local)

        item = self._store.add(
            workspace_id=workspace_id,
            message_id=message_id,
            draft_id=draft_id,
            connection_id=connection_id,
            scheduled_send_at=scheduled,
            confidence_score=confidence,
            delay_minutes=delay,
        )

        self._audit_log.append(
            workspace_id,
            message_id,
            draft_id,
            AuditAction.QUEUED.value,
            confidence=confidence,
            queue_id=item.id,
            detail={
                "delay_minutes": delay,
                "scheduled_send_at": scheduled.isoformat(),
                "moved_to_window": scheduled_local != desired_local,
            },
        )
        return EnqueueResult(queued=True, queue_id=item.id, scheduled_at=scheduled)
