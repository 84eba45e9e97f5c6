"""
Data models for the autonomous handling pipeline.

These Pydantic models define the shape of data flowing between components
and out of the HTTP layer. ORM rows live in autopilot.db.models; these are
the typed values passed across component boundaries.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NOISE = "noise"


class Category(str, Enum):
    CUSTOMER_INQUIRY = "customer_inquiry"
    CUSTOMER_COMPLAINT = "customer_complaint"
    SALES_LEAD = "sales_lead"
    CLIENT_SUPPORT = "client_support"
    BILL = "bill"
    INVOICE = "invoice"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    AUTHORIZATION_CODE = "authorization_code"
    SIGN_IN_CODE = "sign_in_code"
    SECURITY_ALERT = "security_alert"
    MARKETING = "marketing"
    JUNK_EMAIL = "junk_email"
    NEWSLETTER = "newsletter"
    INTERNAL = "internal"
    MEETING_REQUEST = "meeting_request"
    PERSONAL = "personal"
    SOCIAL = "social"
    NOTIFICATION = "notification"
    OTHER = "other"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    URGENT = "urgent"


class Actionability(str, Enum):
    QUESTION = "question"
    REQUEST = "request"
    FYI = "fyi"
    SCHEDULING_INTENT = "scheduling_intent"
    TASK = "task"
    NONE = "none"


class QueueStatus(str, Enum):
    """
    Auto-send queue item states.

    pending -> processing -> sent | failed | cancelled
    failed -> pending only while retryable and attempts < max.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AuditAction(str, Enum):
    QUEUED = "queued"
    SKIPPED = "skipped"
    RESCHEDULED = "rescheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CLASSIFIED = "classified"
    DRAFTED = "drafted"


class CamelModel(BaseModel):
    """Base for results returned over HTTP: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# CHANNEL CAPABILITY VALUES
# =============================================================================

class Recipient(BaseModel):
    email: str
    name: str = Field(default="")
    type: str = Field(default="to")  # "to" | "cc" | "bcc"


class NormalizedMessage(BaseModel):
    """A provider payload normalized into the canonical message shape."""
    provider_message_id: str
    provider_thread_id: Optional[str] = Field(default=None)
    subject: str = Field(default="")
    body: str = Field(default="")
    body_html: Optional[str] = Field(default=None)
    snippet: str = Field(default="")
    sender_email: str = Field(default="")
    sender_name: str = Field(default="")
    recipients: list[Recipient] = Field(default_factory=list)
    timestamp: Optional[datetime] = Field(default=None)
    labels: list[str] = Field(default_factory=list)
    raw_data: dict[str, Any] = Field(default_factory=dict)


class MessagePage(BaseModel):
    """One page of message references from a provider."""
    refs: list[str] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(default=None)


class ReplyRequest(BaseModel):
    """Everything a channel needs to send a threaded reply."""
    connection_id: str
    original_message_id: str
    thread_id: str = Field(default="")
    to: list[str]
    subject: str
    body: str
    in_reply_to: Optional[str] = Field(default=None)
    references: Optional[str] = Field(default=None)


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)


# =============================================================================
# MODEL CAPABILITY VALUES
# =============================================================================

class ModelUsage(BaseModel):
    """Token usage and latency reported by the model capability."""
    model: str = Field(default="")
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    latency_ms: int = Field(default=0)


class RawClassification(BaseModel):
    """Classification as returned by the model, before normalization."""
    category: Optional[str] = Field(default=None)
    priority: Optional[str] = Field(default=None)
    sentiment: Optional[str] = Field(default=None)
    actionability: Optional[str] = Field(default=None)
    confidence_score: Optional[float] = Field(default=None)
    summary: Optional[str] = Field(default=None)
    summary_short: Optional[str] = Field(default=None)
    key_points: list[str] = Field(default_factory=list)
    usage: ModelUsage = Field(default_factory=ModelUsage)


class RawDraft(BaseModel):
    """Reply draft as returned by the model."""
    body: str
    confidence_score: Optional[float] = Field(default=None)
    is_auto_sendable: bool = Field(default=False)
    usage: ModelUsage = Field(default_factory=ModelUsage)


# =============================================================================
# COMPONENT RESULTS
# =============================================================================

class ClassificationResult(CamelModel):
    priority: Priority
    category: Category
    sentiment: Sentiment
    actionability: Actionability
    confidence_score: float
    summary: Optional[str] = Field(default=None)
    summary_short: Optional[str] = Field(default=None)
    key_points: list[str] = Field(default_factory=list)


class DraftResult(CamelModel):
    draft_id: str
    body: str
    tone: str
    confidence_score: float
    is_auto_sendable: bool


class EligibilityResult(BaseModel):
    """Result of running a message through the auto-reply eligibility filters."""
    eligible: bool
    reason: str
    details: dict[str, Any] = Field(default_factory=dict)


class EnqueueResult(CamelModel):
    queued: bool
    queue_id: Optional[str] = Field(default=None)
    scheduled_at: Optional[datetime] = Field(default=None)
    reason: Optional[str] = Field(default=None)


class SyncResult(CamelModel):
    connection_id: str
    workspace_id: Optional[str] = Field(default=None)
    synced_count: int = Field(default=0)
    new_count: int = Field(default=0)
    skipped_count: int = Field(default=0)
    error_count: int = Field(default=0)
    has_more: bool = Field(default=False)
    next_page_token: Optional[str] = Field(default=None)
    new_message_ids: list[str] = Field(default_factory=list)


class BatchResult(CamelModel):
    processed: int = Field(default=0)
    sent: int = Field(default=0)
    failed: int = Field(default=0)
    skipped: int = Field(default=0)
    errors: list[str] = Field(default_factory=list)
    recovered: int = Field(default=0)
    duration_ms: int = Field(default=0)


class HandleResult(CamelModel):
    """Outcome of running one new message through classify -> draft -> enqueue."""
    message_id: str
    classified: bool = Field(default=False)
    drafted: bool = Field(default=False)
    queued: bool = Field(default=False)
    reason: Optional[str] = Field(default=None)


class ClassifyItemResult(CamelModel):
    message_id: str
    success: bool
    result: Optional[ClassificationResult] = Field(default=None)
    error: Optional[str] = Field(default=None)


class ClassifyBatchResult(CamelModel):
    successful: int = Field(default=0)
    failed: int = Field(default=0)
    results: list[ClassifyItemResult] = Field(default_factory=list)


# =============================================================================
# HTTP REQUEST BODIES
# =============================================================================

class DraftRequest(CamelModel):
    """Body of POST /api/messages/{message_id}/draft. Both fields optional."""
    tone: Optional[str] = Field(default=None)
    max_length: Optional[int] = Field(default=None, ge=50, le=4000)


class SyncRequest(CamelModel):
    """Body of POST /api/channels/{connection_id}/sync."""
    max_messages: Optional[int] = Field(default=None, ge=1, le=500)
    query: Optional[str] = Field(default=None)
    page_token: Optional[str] = Field(default=None)
    process_new: bool = Field(default=True)
