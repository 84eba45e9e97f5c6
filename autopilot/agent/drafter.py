"""
Reply draft generation.

Builds the model context from the message plus up to N earlier messages in
the same provider thread, asks the model for a reply, and stores it as the
message's single active draft.

The model's is_auto_sendable flag is stored with the draft. The enqueuer
holds back a draft without it unless confidence is at least 0.80; the
worker's re-checks decide the rest.
"""

import logging
import math
import time
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from autopilot.agent.entitlements import AI_DRAFTS, FeatureGate
from autopilot.agent.model import ModelCapability
from autopilot.agent.prompts import THREAD_BLOCK
from autopilot.agent.schemas import AuditAction, DraftResult
from autopilot.config import settings
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import Draft, Message, utcnow
from autopilot.errors import NotFound

logger = logging.getLogger(__name__)


def _draft_confidence(raw: Optional[float]) -> float:
    if raw is None or math.isnan(raw):
        return 0.5
    return round(max(0.0, min(1.0, raw)), 2)


def _sender_label(message: Message) -> str:
    if message.sender_name and message.sender_name != message.sender_email:
        return f"{message.sender_name} <{message.sender_email}>"
    return message.sender_email or "unknown sender"


class DraftGenerator:

    def __init__(
        self,
        sessions: sessionmaker,
        model: ModelCapability,
        gate: FeatureGate,
        audit_log: AuditLog,
        thread_limit: Optional[int] = None,
        thread_excerpt_chars: Optional[int] = None,
    ):
        self._sessions = sessions
        self._model = model
        self._gate = gate
        self._audit_log = audit_log
        self._thread_limit = thread_limit if thread_limit is not None else settings.draft_thread_context_limit
        self._thread_chars = thread_excerpt_chars or settings.draft_thread_excerpt_chars

    def draft(
        self,
        message_id: str,
        workspace_id: str,
        tone: Optional[str] = None,
        max_length: Optional[int] = None,
        check_entitlement: bool = True,
    ) -> DraftResult:
        """
        Generate and store a reply draft.

        Args:
            check_entitlement: False for background pipeline runs, where the
                workspace's plan was already checked when auto-send was enabled.

        Raises:
            FeatureDenied: Workspace not entitled to AI drafts.
            NotFound: Message missing or in another workspace.
            CapabilityError: The model call failed.
        """
        if check_entitlement:
            self._gate.require(workspace_id, AI_DRAFTS)

        tone = tone or settings.draft_default_tone
        max_length = max_length or settings.draft_default_max_length
        start = time.monotonic()

        context = self._build_context(message_id, workspace_id)
        raw = self._model.generate_draft(context, tone, max_length)
        confidence = _draft_confidence(raw.confidence_score)

        with self._sessions.begin() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFound("message", message_id)

            # One active draft per message
            db.execute(
                update(Draft)
                .where(Draft.message_id == message_id)
                .where(Draft.is_active.is_(True))
                .values(is_active=False)
            )
            draft = Draft(
                workspace_id=workspace_id,
                message_id=message_id,
                body=raw.body,
                tone=tone,
                is_ai_generated=True,
                confidence_score=confidence,
                is_auto_sendable=raw.is_auto_sendable,
                is_active=True,
            )
            db.add(draft)
            message.has_draft = True
            message.updated_at = utcnow()
            db.flush()
            draft_id = draft.id

        self._audit_log.append(
            workspace_id,
            message_id,
            draft_id,
            AuditAction.DRAFTED.value,
            confidence=confidence,
            detail={
                "tone": tone,
                "is_auto_sendable": raw.is_auto_sendable,
                "model": raw.usage.model,
                "input_tokens": raw.usage.input_tokens,
                "output_tokens": raw.usage.output_tokens,
                "processing_ms": int((time.monotonic() - start) * 1000),
            },
        )

        return DraftResult(
            draft_id=draft_id,
            body=raw.body,
            tone=tone,
            confidence_score=confidence,
            is_auto_sendable=raw.is_auto_sendable,
        )

    def _build_context(self, message_id: str, workspace_id: str) -> str:
        with self._sessions() as db:
            message = db.get(Message, message_id)
            if message is None or message.workspace_id != workspace_id:
                raise NotFound("message", message_id)

            earlier: list[Message] = []
            if message.provider_thread_id and self._thread_limit > 0:
                stmt = (
                    select(Message)
                    .where(Message.workspace_id == workspace_id)
                    .where(Message.provider_thread_id == message.provider_thread_id)
                    .where(Message.id != message.id)
                )
                if message.timestamp is not None:
                    stmt = stmt.where(Message.timestamp < message.timestamp)
                earlier = list(
                    db.scalars(stmt.order_by(Message.timestamp.desc()).limit(self._thread_limit))
                )
                earlier.reverse()

            parts = [
                f"From: {_sender_label(message)}",
                f"Subject: {message.subject or ''}",
                "",
                message.body or "",
            ]
            if earlier:
                thread = "\n\n".join(
                    f"From: {_sender_label(m)}\n{(m.body or '')[: self._thread_chars]}"
                    for m in earlier
                )
                parts.insert(0, THREAD_BLOCK.format(thread=thread))

        return "\n".join(parts)
