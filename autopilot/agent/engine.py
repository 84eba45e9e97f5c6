"""
Autopilot engine: the orchestrator for newly ingested messages.

Ties together classification, auto-reply eligibility, draft generation and
enqueueing. Nothing is sent here; sending is the queue worker's job, and
the worker re-checks policy and holds again at send time.

The engine does NOT talk to mail providers. It receives its components
already constructed (see autopilot.services), keeping it testable with
fakes.

Usage:
    engine = AutopilotEngine(sessions, policies, classifier, checker, drafter, enqueuer, audit_log)
    result = engine.handle_new_message(message_id, workspace_id)
"""

import logging

from sqlalchemy.orm import sessionmaker

from autopilot.agent.classifier import Classifier
from autopilot.agent.drafter import DraftGenerator
from autopilot.agent.filters import EligibilityChecker
from autopilot.agent.schemas import AuditAction, HandleResult
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import Message
from autopilot.errors import NotFound
from autopilot.logging.audit import audit
from autopilot.queue.enqueue import AutoSendEnqueuer
from autopilot.queue.policy import PolicyProvider

logger = logging.getLogger(__name__)


class AutopilotEngine:
    """Runs one new message through classify -> eligibility -> draft -> enqueue."""

    def __init__(
        self,
        sessions: sessionmaker,
        policies: PolicyProvider,
        classifier: Classifier,
        checker: EligibilityChecker,
        drafter: DraftGenerator,
        enqueuer: AutoSendEnqueuer,
        audit_log: AuditLog,
    ):
        self._sessions = sessions
        self._policies = policies
        self._classifier = classifier
        self._checker = checker
        self._drafter = drafter
        self._enqueuer = enqueuer
        self._audit_log = audit_log

    def handle_new_message(self, message_id: str, workspace_id: str) -> HandleResult:
        """
        Process one newly ingested message.

        Never raises: a failure at any step is logged and reported in the
        result's reason, and later steps are skipped.
        """
        result = HandleResult(message_id=message_id)
        try:
            self._handle(message_id, workspace_id, result)
        except Exception as e:
            result.reason = f"{type(e).__name__}: {e}"
            logger.error(
                "engine.message.failed",
                extra={
                    "action": "engine.message.failed",
                    "message_id": message_id,
                    "workspace_id": workspace_id,
                    "error_type": type(e).__name__,
                    "classified": result.classified,
                    "drafted": result.drafted,
                },
            )

        audit.info(
            "engine.message.handled",
            message_id=message_id,
            workspace_id=workspace_id,
            classified=result.classified,
            drafted=result.drafted,
            queued=result.queued,
            reason=result.reason,
        )
        return result

    def handle_new_messages(self, message_ids: list[str], workspace_id: str) -> list[HandleResult]:
        return [self.handle_new_message(message_id, workspace_id) for message_id in message_ids]

    def _handle(self, message_id: str, workspace_id: str, result: HandleResult) -> None:
        classification = self._classifier.classify(message_id, workspace_id)
        result.classified = True

        # Drafts are only generated for workspaces that could send them
        policy = self._policies.get_policy(workspace_id)
        if not policy.can_auto_send:
            result.reason = policy.blocked_reason
            return

        eligibility = self._checker.check(message_id, workspace_id, policy)
        if not eligibility.eligible:
            result.reason = eligibility.reason
            self._audit_log.append(
                workspace_id,
                message_id,
                None,
                AuditAction.SKIPPED.value,
                confidence=classification.confidence_score,
                detail={"reason": eligibility.reason, **eligibility.details},
            )
            return

        with self._sessions() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFound("message", message_id)
            connection_id = message.channel_connection_id

        draft = self._drafter.draft(message_id, workspace_id, check_entitlement=False)
        result.drafted = True

        enqueued = self._enqueuer.enqueue_auto_send(
            workspace_id,
            message_id,
            draft.draft_id,
            connection_id,
            draft.confidence_score,
            is_auto_sendable=draft.is_auto_sendable,
        )
        result.queued = enqueued.queued
        result.reason = enqueued.reason
