"""
Shared fixtures.

Every test gets its own in-memory SQLite database. Channel, token and
model capabilities are replaced with in-process fakes, so nothing here
touches the network.
"""

import os

os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "test-credential-secret")

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import pytest

from autopilot.agent.schemas import (
    MessagePage,
    ModelUsage,
    NormalizedMessage,
    RawClassification,
    RawDraft,
    ReplyRequest,
    SendResult,
)
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import (
    AutoSendQueueItem,
    ChannelConnection,
    Draft,
    Message,
    WorkspaceSettings,
    utcnow,
)
from autopilot.db.session import init_db, make_engine, make_session_factory
from autopilot.errors import ChannelError
from autopilot.logging.config import setup_logging

WORKSPACE = "ws_test"
ACCOUNT = "owner@acme.test"

# Tuesday noon UTC; inside a 09:00-21:00 UTC window
NOON = datetime(2026, 3, 10, 12, 0)


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sessions(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def audit_log(sessions):
    return AuditLog(sessions)


# =============================================================================
# FAKE CAPABILITIES
# =============================================================================

class FakeChannel:
    """
    In-memory channel. Raw payloads are NormalizedMessage-shaped dicts.

    send_results is consumed one per send; an Exception entry is raised.
    When it runs out, sends succeed.
    """

    def __init__(self, provider: str = "gmail"):
        self.provider = provider
        self.inbox: dict[str, dict] = {}
        self.order: list[str] = []
        self.send_results: list = []
        self.sent: list[ReplyRequest] = []
        self.labels: list[tuple[str, str]] = []
        self.fetch_errors: set[str] = set()
        self.label_error: Optional[Exception] = None

    def add(self, provider_message_id: str, **fields) -> None:
        payload = {
            "provider_message_id": provider_message_id,
            "provider_thread_id": fields.pop("thread_id", f"thread-{provider_message_id}"),
            "subject": "Question about my order",
            "body": "Hi, could you tell me when my order will ship? Thanks, Dana",
            "sender_email": "dana@customer.test",
            "sender_name": "Dana",
            "timestamp": datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc),
            "raw_data": {"messageId": f"<{provider_message_id}@mail.test>"},
        }
        payload.update(fields)
        self.inbox[provider_message_id] = payload
        self.order.insert(0, provider_message_id)

    def list_messages(self, token, max_results=50, page_token=None, query=None) -> MessagePage:
        refs = self.order[:max_results]
        more = len(self.order) > max_results
        return MessagePage(refs=refs, next_page_token="next" if more else None)

    def get_message(self, token, message_id) -> dict:
        if message_id in self.fetch_errors:
            raise ChannelError(f"fetch failed: {message_id}", status_code=500)
        return self.inbox[message_id]

    def parse_message(self, raw: dict) -> NormalizedMessage:
        return NormalizedMessage.model_validate(raw)

    def send_reply(self, token, request: ReplyRequest, from_address: str = "") -> SendResult:
        self.sent.append(request)
        if self.send_results:
            outcome = self.send_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult(success=True, message_id=f"sent-{len(self.sent)}")

    def apply_label(self, token, message_id, label) -> None:
        if self.label_error is not None:
            raise self.label_error
        self.labels.append((message_id, label))


class FakeTokens:
    def __init__(self):
        self.calls: list[str] = []

    def get_access_token(self, connection_id: str) -> str:
        self.calls.append(connection_id)
        return "access-token"

    def close(self):
        pass


class FakeModel:
    """Returns canned model output and records every call."""

    def __init__(self):
        self.classification = RawClassification(
            category="customer_inquiry",
            sentiment="neutral",
            actionability="question",
            confidence_score=0.9,
            summary="Customer asks when their order ships.",
            key_points=["order shipping date"],
            usage=ModelUsage(model="fake-model", input_tokens=120, output_tokens=40),
        )
        self.draft = RawDraft(
            body="Hi Dana, your order ships tomorrow. Best regards",
            confidence_score=0.92,
            is_auto_sendable=True,
            usage=ModelUsage(model="fake-model", input_tokens=300, output_tokens=60),
        )
        self.classify_calls: list[str] = []
        self.draft_calls: list[tuple[str, str, int]] = []
        self.error: Optional[Exception] = None

    def classify(self, excerpt: str) -> RawClassification:
        self.classify_calls.append(excerpt)
        if self.error is not None:
            raise self.error
        return self.classification

    def generate_draft(self, context: str, tone: str, max_length: int) -> RawDraft:
        self.draft_calls.append((context, tone, max_length))
        if self.error is not None:
            raise self.error
        return self.draft


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def model():
    return FakeModel()


# =============================================================================
# ROW FACTORY
# =============================================================================

class Rows:
    """Creates database rows with sensible defaults."""

    def __init__(self, sessions):
        self._sessions = sessions

    def _add(self, row):
        with self._sessions.begin() as db:
            db.add(row)
        return row

    def policy(self, workspace_id: str = WORKSPACE, **fields) -> WorkspaceSettings:
        values = dict(
            auto_send_enabled=True,
            auto_send_paused=False,
            auto_send_delay_type="exact",
            auto_send_delay_min=10,
            auto_send_delay_max=10,
            auto_send_confidence_threshold=0.85,
            auto_send_time_start="09:00",
            auto_send_time_end="21:00",
            timezone="UTC",
        )
        values.update(fields)
        return self._add(WorkspaceSettings(workspace_id=workspace_id, **values))

    def connection(self, workspace_id: str = WORKSPACE, **fields) -> ChannelConnection:
        values = dict(provider="gmail", provider_account_id=ACCOUNT, status="active")
        values.update(fields)
        return self._add(ChannelConnection(workspace_id=workspace_id, **values))

    def message(self, connection: ChannelConnection, **fields) -> Message:
        values = dict(
            provider_message_id=f"prov-{uuid4().hex[:12]}",
            provider_thread_id="thread-1",
            subject="Question about my order",
            body="Hi, could you tell me when my order will ship? Thanks, Dana",
            sender_email="dana@customer.test",
            sender_name="Dana",
            timestamp=NOON - timedelta(hours=1),
            raw_data={"messageId": "<orig-1@mail.test>"},
        )
        values.update(fields)
        return self._add(
            Message(
                workspace_id=connection.workspace_id,
                channel_connection_id=connection.id,
                **values,
            )
        )

    def draft(self, message: Message, **fields) -> Draft:
        values = dict(body="Thanks for reaching out, it ships tomorrow.", confidence_score=0.92)
        values.update(fields)
        return self._add(Draft(workspace_id=message.workspace_id, message_id=message.id, **values))

    def queue_item(self, draft: Draft, connection: ChannelConnection, **fields) -> AutoSendQueueItem:
        values = dict(
            scheduled_send_at=NOON - timedelta(minutes=5),
            status="pending",
            attempts=0,
            confidence_score=0.92,
        )
        values.update(fields)
        return self._add(
            AutoSendQueueItem(
                workspace_id=draft.workspace_id,
                message_id=draft.message_id,
                draft_id=draft.id,
                connection_id=connection.id,
                **values,
            )
        )

    def get(self, model, row_id):
        with self._sessions() as db:
            return db.get(model, row_id)


@pytest.fixture
def rows(sessions):
    return Rows(sessions)
