"""Tests for reply draft generation."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from autopilot.agent.drafter import DraftGenerator
from autopilot.agent.entitlements import FeatureGate
from autopilot.db.models import AuditLogEntry, Draft, Message
from autopilot.errors import FeatureDenied, NotFound

T0 = datetime(2026, 3, 10, 8, 0)


@pytest.fixture
def drafter(sessions, model, audit_log):
    return DraftGenerator(sessions, model, FeatureGate(), audit_log, thread_limit=2, thread_excerpt_chars=20)


class TestDraft:
    def test_draft_stored_as_active(self, drafter, rows, sessions, model):
        message = rows.message(rows.connection())

        result = drafter.draft(message.id, message.workspace_id, tone="friendly", max_length=300)

        assert result.body == model.draft.body
        assert result.tone == "friendly"
        assert result.confidence_score == 0.92
        assert result.is_auto_sendable is True

        stored = rows.get(Draft, result.draft_id)
        assert stored.is_active is True
        assert stored.sent is False
        assert stored.is_ai_generated is True
        assert rows.get(Message, message.id).has_draft is True

        assert model.draft_calls[0][1:] == ("friendly", 300)

        with sessions() as db:
            entry = db.scalars(select(AuditLogEntry)).one()
        assert entry.action == "drafted"
        assert entry.draft_id == result.draft_id

    def test_new_draft_deactivates_previous(self, drafter, rows, sessions):
        message = rows.message(rows.connection())

        first = drafter.draft(message.id, message.workspace_id)
        second = drafter.draft(message.id, message.workspace_id)

        assert rows.get(Draft, first.draft_id).is_active is False
        assert rows.get(Draft, second.draft_id).is_active is True
        with sessions() as db:
            active = db.scalars(
                select(Draft).where(Draft.message_id == message.id).where(Draft.is_active.is_(True))
            ).all()
        assert len(active) == 1

    @pytest.mark.parametrize("raw, expected", [(None, 0.5), (1.4, 1.0), (-0.2, 0.0), (0.876, 0.88)])
    def test_confidence_clamped(self, drafter, rows, model, raw, expected):
        message = rows.message(rows.connection())
        model.draft.confidence_score = raw
        assert drafter.draft(message.id, message.workspace_id).confidence_score == expected

    def test_defaults_from_settings(self, drafter, rows, model):
        message = rows.message(rows.connection())
        drafter.draft(message.id, message.workspace_id)
        assert model.draft_calls[0][1:] == ("professional", 500)


class TestThreadContext:
    def test_earlier_messages_included_oldest_first(self, drafter, rows, model):
        connection = rows.connection()
        rows.message(connection, provider_thread_id="t", timestamp=T0, body="first message in thread")
        rows.message(connection, provider_thread_id="t", timestamp=T0 + timedelta(hours=1), body="second one")
        rows.message(connection, provider_thread_id="t", timestamp=T0 + timedelta(hours=2), body="third one")
        rows.message(connection, provider_thread_id="other", timestamp=T0, body="unrelated thread")
        current = rows.message(connection, provider_thread_id="t", timestamp=T0 + timedelta(hours=3))

        drafter.draft(current.id, current.workspace_id)

        context = model.draft_calls[0][0]
        assert "EARLIER MESSAGES" in context
        assert "unrelated" not in context
        # thread_limit=2 keeps the two most recent earlier messages
        assert "first message" not in context
        assert context.index("second one") < context.index("third one")
        assert context.rstrip().endswith(current.body)

    def test_thread_excerpts_truncated(self, drafter, rows, model):
        connection = rows.connection()
        rows.message(connection, provider_thread_id="t", timestamp=T0, body="x" * 100)
        current = rows.message(connection, provider_thread_id="t", timestamp=T0 + timedelta(hours=1))

        drafter.draft(current.id, current.workspace_id)

        context = model.draft_calls[0][0]
        assert "x" * 20 in context
        assert "x" * 21 not in context

    def test_no_thread_block_for_first_message(self, drafter, rows, model):
        message = rows.message(rows.connection())
        drafter.draft(message.id, message.workspace_id)
        assert "EARLIER MESSAGES" not in model.draft_calls[0][0]


class TestGuards:
    def test_not_entitled(self, sessions, model, audit_log, rows):
        drafter = DraftGenerator(sessions, model, FeatureGate(["ws_paid"]), audit_log)
        message = rows.message(rows.connection())

        with pytest.raises(FeatureDenied):
            drafter.draft(message.id, message.workspace_id)
        assert model.draft_calls == []

    def test_background_run_skips_entitlement(self, sessions, model, audit_log, rows):
        drafter = DraftGenerator(sessions, model, FeatureGate(["ws_paid"]), audit_log)
        message = rows.message(rows.connection())

        result = drafter.draft(message.id, message.workspace_id, check_entitlement=False)

        assert result.draft_id

    def test_other_workspace_not_found(self, drafter, rows):
        message = rows.message(rows.connection())
        with pytest.raises(NotFound):
            drafter.draft(message.id, "ws_other")
