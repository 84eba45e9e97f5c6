"""
Tests for the autopilot engine: new message -> classify -> eligibility ->
draft -> enqueue. Nothing is sent by the engine.
"""

import pytest
from sqlalchemy import select

from autopilot.agent.classifier import Classifier
from autopilot.agent.drafter import DraftGenerator
from autopilot.agent.engine import AutopilotEngine
from autopilot.agent.entitlements import FeatureGate
from autopilot.agent.filters import EligibilityChecker
from autopilot.db.models import AuditLogEntry, AutoSendQueueItem, Message
from autopilot.errors import LLMError
from autopilot.queue.enqueue import AutoSendEnqueuer
from autopilot.queue.policy import PolicyProvider
from autopilot.queue.store import QueueStore


@pytest.fixture
def engine(sessions, model, audit_log):
    policies = PolicyProvider(sessions)
    return AutopilotEngine(
        sessions,
        policies,
        Classifier(sessions, model, audit_log),
        EligibilityChecker(sessions),
        DraftGenerator(sessions, model, FeatureGate(["ws_paid_only"]), audit_log),
        AutoSendEnqueuer(policies, QueueStore(sessions), audit_log),
        audit_log,
    )


def actions(sessions) -> list[str]:
    with sessions() as db:
        return sorted(e.action for e in db.scalars(select(AuditLogEntry)))


def queue_items(sessions) -> list[AutoSendQueueItem]:
    with sessions() as db:
        return list(db.scalars(select(AutoSendQueueItem)))


class TestHandleNewMessage:
    def test_eligible_message_is_queued(self, engine, rows, sessions, channel):
        rows.policy()
        message = rows.message(rows.connection())

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.classified is True
        assert result.drafted is True
        assert result.queued is True

        items = queue_items(sessions)
        assert len(items) == 1
        assert items[0].status == "pending"
        assert items[0].connection_id == message.channel_connection_id
        assert actions(sessions) == ["classified", "drafted", "queued"]
        assert channel.sent == []

    def test_auto_send_disabled_classifies_only(self, engine, rows, sessions, model):
        rows.policy(auto_send_enabled=False)
        message = rows.message(rows.connection())

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.classified is True
        assert result.drafted is False
        assert result.reason == "Auto-send disabled"
        assert model.draft_calls == []
        assert queue_items(sessions) == []

    def test_ineligible_message_logged_as_skipped(self, engine, rows, sessions, model):
        rows.policy()
        message = rows.message(rows.connection(), sender_email="noreply@shop.test")

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.drafted is False
        assert "Excluded sender" in result.reason
        assert model.draft_calls == []
        assert actions(sessions) == ["classified", "skipped"]

    def test_low_confidence_draft_not_queued(self, engine, rows, sessions, model):
        rows.policy(auto_send_confidence_threshold=0.95)
        message = rows.message(rows.connection())

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.drafted is True
        assert result.queued is False
        assert queue_items(sessions) == []
        assert "skipped" in actions(sessions)

    def test_draft_not_auto_sendable_needs_higher_confidence(self, engine, rows, sessions, model):
        rows.policy(auto_send_confidence_threshold=0.7)
        model.draft = model.draft.model_copy(update={"confidence_score": 0.75, "is_auto_sendable": False})
        message = rows.message(rows.connection())

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.drafted is True
        assert result.queued is False
        assert "not marked auto-sendable" in result.reason
        assert queue_items(sessions) == []

    def test_model_failure_is_reported_not_raised(self, engine, rows, sessions, model):
        rows.policy()
        message = rows.message(rows.connection())
        model.error = LLMError("overloaded")

        result = engine.handle_new_message(message.id, message.workspace_id)

        assert result.classified is False
        assert "LLMError" in result.reason
        assert rows.get(Message, message.id).priority is None

    def test_batch_continues_after_failure(self, engine, rows, sessions):
        rows.policy()
        message = rows.message(rows.connection())

        results = engine.handle_new_messages(["missing", message.id], message.workspace_id)

        assert [r.classified for r in results] == [False, True]
        assert results[1].queued is True
