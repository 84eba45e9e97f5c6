"""
SQLAlchemy ORM models for the autopilot store.

Uses SQLAlchemy 2.0 style with Mapped and mapped_column. All timestamps are
naive UTC (see utcnow) so comparisons behave the same on SQLite and
Postgres.

Tables:
    workspace_settings   per-workspace auto-send policy (read-only here)
    channel_connections  one authenticated mailbox
    contacts             durable sender identities
    messages             canonical normalized messages
    message_drafts       candidate replies
    auto_send_queue      scheduled send intents
    auto_send_log        append-only audit of automated decisions
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class WorkspaceSettings(Base):
    """
    Auto-send policy for a workspace.

    Columns are nullable on purpose: unset values fall back to the defaults
    in autopilot.queue.policy, mirroring how settings rows are created
    lazily by the settings UI.
    """

    __tablename__ = "workspace_settings"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    auto_send_enabled: Mapped[Optional[bool]] = mapped_column(Boolean)
    auto_send_paused: Mapped[Optional[bool]] = mapped_column(Boolean)
    auto_send_delay_type: Mapped[Optional[str]] = mapped_column(String(16))
    auto_send_delay_min: Mapped[Optional[int]] = mapped_column(Integer)
    auto_send_delay_max: Mapped[Optional[int]] = mapped_column(Integer)
    auto_send_confidence_threshold: Mapped[Optional[float]] = mapped_column(Float)
    auto_send_time_start: Mapped[Optional[str]] = mapped_column(String(5))
    auto_send_time_end: Mapped[Optional[str]] = mapped_column(String(5))
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    daily_digest_enabled: Mapped[Optional[bool]] = mapped_column(Boolean)
    daily_digest_time: Mapped[Optional[str]] = mapped_column(String(5))

    # Auto-reply eligibility overrides
    max_replies_per_thread: Mapped[Optional[int]] = mapped_column(Integer)
    sender_cooldown_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    excluded_sender_patterns: Mapped[Optional[list]] = mapped_column(JSON)
    excluded_categories: Mapped[Optional[list]] = mapped_column(JSON)
    domain_whitelist: Mapped[Optional[list]] = mapped_column(JSON)
    domain_blacklist: Mapped[Optional[list]] = mapped_column(JSON)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ChannelConnection(Base):
    """One authenticated mailbox belonging to a workspace."""

    __tablename__ = "channel_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(16))  # "gmail" | "outlook"
    provider_account_id: Mapped[str] = mapped_column(String(320))  # mailbox address
    provider_account_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)

    # Fernet-encrypted JSON: access_token, refresh_token, expires_at
    credentials: Mapped[Optional[str]] = mapped_column(Text)

    sync_cursor: Mapped[Optional[str]] = mapped_column(String(512))
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    messages: Mapped[list["Message"]] = relationship(back_populates="connection")

    def __repr__(self):
        return f"<ChannelConnection {self.provider} {self.id} {self.status}>"


class Contact(Base):
    """A durable sender identity, keyed by (workspace, channel, address)."""

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "channel", "address", name="uq_contact_identity"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    channel: Mapped[str] = mapped_column(String(16))
    address: Mapped[str] = mapped_column(String(320))
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_contacted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Message(Base):
    """Canonical normalized message. Unique per (connection, provider message id)."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "channel_connection_id", "provider_message_id", name="uq_message_provider_id"
        ),
        Index("ix_messages_thread", "workspace_id", "provider_thread_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    channel_connection_id: Mapped[str] = mapped_column(
        ForeignKey("channel_connections.id", ondelete="CASCADE"), index=True
    )
    provider_message_id: Mapped[str] = mapped_column(String(255))
    provider_thread_id: Mapped[Optional[str]] = mapped_column(String(255))

    subject: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str] = mapped_column(Text, default="")
    body_html: Mapped[Optional[str]] = mapped_column(Text)
    snippet: Mapped[Optional[str]] = mapped_column(Text)
    sender_email: Mapped[str] = mapped_column(String(320), default="", index=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255))
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    labels: Mapped[list] = mapped_column(JSON, default=list)
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    contact_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL")
    )

    # --- Set by the classifier ---
    priority: Mapped[Optional[str]] = mapped_column(String(16), index=True)
    category: Mapped[Optional[str]] = mapped_column(String(32))
    sentiment: Mapped[Optional[str]] = mapped_column(String(16))
    actionability: Mapped[Optional[str]] = mapped_column(String(32))
    summary: Mapped[Optional[str]] = mapped_column(Text)
    summary_short: Mapped[Optional[str]] = mapped_column(String(180))
    key_points: Mapped[list] = mapped_column(JSON, default=list)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)

    # --- Handling flags ---
    has_draft: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, default=False)
    human_review_reason: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    connection: Mapped[ChannelConnection] = relationship(back_populates="messages")
    drafts: Mapped[list["Draft"]] = relationship(back_populates="message")

    def __repr__(self):
        return f"<Message {self.id} provider_id={self.provider_message_id}>"


class Draft(Base):
    """A candidate reply for one message. At most one active draft per message."""

    __tablename__ = "message_drafts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    message_id: Mapped[str] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), index=True
    )
    body: Mapped[str] = mapped_column(Text)
    tone: Mapped[str] = mapped_column(String(32), default="professional")
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, default=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    is_auto_sendable: Mapped[bool] = mapped_column(Boolean, default=False)
    hold_for_review: Mapped[bool] = mapped_column(Boolean, default=False)
    hold_reason: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Monotonic: False -> True exactly once
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    message: Mapped[Message] = relationship(back_populates="drafts")


class AutoSendQueueItem(Base):
    """
    A scheduled send intent.

    Lifecycle: pending -> processing -> sent | failed | cancelled
               failed -> pending (retry, while retryable and attempts < max)
    """

    __tablename__ = "auto_send_queue"
    __table_args__ = (
        Index("ix_auto_send_queue_due", "status", "scheduled_send_at", "attempts"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    message_id: Mapped[str] = mapped_column(String(36), index=True)
    draft_id: Mapped[str] = mapped_column(String(36), index=True)
    connection_id: Mapped[str] = mapped_column(String(36))

    scheduled_send_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    retryable: Mapped[bool] = mapped_column(Boolean, default=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    delay_minutes: Mapped[Optional[int]] = mapped_column(Integer)

    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<AutoSendQueueItem {self.id} {self.status} attempts={self.attempts}>"


class AuditLogEntry(Base):
    """Immutable record of an automated decision. Append-only."""

    __tablename__ = "auto_send_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    workspace_id: Mapped[str] = mapped_column(String(64), index=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    draft_id: Mapped[Optional[str]] = mapped_column(String(36))
    queue_id: Mapped[Optional[str]] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(32), index=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    detail: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
