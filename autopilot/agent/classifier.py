"""
Message classification.

Sends a bounded excerpt of a stored message to the model, then normalizes
what comes back before anything is persisted:

- category / sentiment / actionability are mapped onto the fixed enums
- confidence is clamped and capped by the rules in normalize_confidence()
- priority is derived from the category table, never taken from the model

The auto-send threshold is compared against the stored confidence, so
the normalization rules are part of the send safety envelope.
"""

import logging
import math
import re
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from autopilot.agent.model import ModelCapability
from autopilot.agent.priority import priority_for
from autopilot.agent.schemas import (
    Actionability,
    AuditAction,
    Category,
    ClassificationResult,
    ClassifyBatchResult,
    ClassifyItemResult,
    Sentiment,
)
from autopilot.config import settings
from autopilot.db.audit_log import AuditLog
from autopilot.db.models import Message, utcnow
from autopilot.errors import NotFound

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.35
MAX_CONFIDENCE = 1.0
DEFAULT_CONFIDENCE = 0.5
SHORT_MESSAGE_CAP = 0.60
TEST_MESSAGE_CAP = 0.55
SUMMARY_SHORT_MAX = 180

_BARE_TEST = re.compile(r"test\s*\d*", re.IGNORECASE)

_VALID_CATEGORIES = {c.value for c in Category}

# Model variations and group names -> category. Order matters for the
# substring pass in normalize_category.
CATEGORY_ALIASES: dict[str, str] = {
    **{c.value: c.value for c in Category},
    "business/customer": "customer_inquiry",
    "business": "customer_inquiry",
    "customer": "customer_inquiry",
    "financial": "bill",
    "finance": "bill",
    "security/auth": "security_alert",
    "security": "security_alert",
    "auth": "authorization_code",
    "promotional/updates": "marketing",
    "promotional": "marketing",
    "updates": "notification",
    "promo": "marketing",
    "communication": "internal",
    "comms": "internal",
    "security_auth": "security_alert",
    "securityauth": "security_alert",
    "promo_updates": "marketing",
    "spam": "junk_email",
    "junk": "junk_email",
    "otp": "authorization_code",
    "code": "authorization_code",
    "verification": "authorization_code",
    "alert": "notification",
    "update": "notification",
    "receipt": "payment_confirmation",
    "payment": "payment_confirmation",
}


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_confidence(raw: Optional[float], subject: str, body: str) -> float:
    """
    Stored confidence for a classification.

    1. Missing or NaN -> 0.5; clamp to [0.35, 1.0].
    2. body < 50 chars and subject < 20 chars -> at most 0.60.
    3. Looks like a test message -> at most 0.55.
    4. Round to 2 decimals.
    """
    if raw is None or not isinstance(raw, (int, float)) or math.isnan(raw):
        confidence = DEFAULT_CONFIDENCE
    else:
        confidence = float(raw)
    confidence = max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))

    subject = subject or ""
    body = body or ""

    if len(body) < 50 and len(subject) < 20:
        confidence = min(confidence, SHORT_MESSAGE_CAP)

    if is_test_message(subject, body):
        confidence = min(confidence, TEST_MESSAGE_CAP)

    return round(confidence, 2)


def is_test_message(subject: str, body: str) -> bool:
    lower_subject = (subject or "").lower()
    lower_body = (body or "").lower()
    return (
        "test" in lower_subject
        or "test message" in lower_body
        or bool(_BARE_TEST.fullmatch(lower_body))
    )


def normalize_category(value: Optional[str]) -> Category:
    if not value:
        return Category.OTHER

    normalized = re.sub(r"\s+", "_", value.strip().lower())
    if normalized in _VALID_CATEGORIES:
        return Category(normalized)

    mapped = CATEGORY_ALIASES.get(normalized) or CATEGORY_ALIASES.get(normalized.replace("_", ""))
    if mapped:
        return Category(mapped)

    for key, mapped in CATEGORY_ALIASES.items():
        if key in normalized or normalized in key:
            return Category(mapped)

    logger.warning(
        "classifier.unknown_category",
        extra={"action": "classifier.unknown_category", "raw_category": value[:50]},
    )
    return Category.OTHER


def normalize_sentiment(value: Optional[str]) -> Sentiment:
    try:
        return Sentiment((value or "").strip().lower())
    except ValueError:
        return Sentiment.NEUTRAL


def normalize_actionability(value: Optional[str]) -> Actionability:
    try:
        return Actionability((value or "").strip().lower().replace(" ", "_"))
    except ValueError:
        return Actionability.NONE


def short_summary(summary: Optional[str], summary_short: Optional[str]) -> Optional[str]:
    if summary_short:
        return summary_short[:SUMMARY_SHORT_MAX]
    if not summary:
        return None
    if len(summary) <= SUMMARY_SHORT_MAX:
        return summary
    return summary[:SUMMARY_SHORT_MAX - 3] + "..."


def build_excerpt(message: Message, max_chars: int) -> str:
    """Subject, sender and body, truncated to max_chars."""
    sender = message.sender_email or ""
    if message.sender_name and message.sender_name != sender:
        sender = f"{message.sender_name} <{sender}>"
    text = f"Subject: {message.subject or ''}\nFrom: {sender}\n\n{message.body or ''}"
    return text[:max_chars]


# =============================================================================
# CLASSIFIER
# =============================================================================

class Classifier:

    def __init__(
        self,
        sessions: sessionmaker,
        model: ModelCapability,
        audit_log: AuditLog,
        excerpt_chars: Optional[int] = None,
    ):
        self._sessions = sessions
        self._model = model
        self._audit_log = audit_log
        self._excerpt_chars = excerpt_chars or settings.classify_excerpt_chars

    def classify(self, message_id: str, workspace_id: str) -> ClassificationResult:
        """
        Classify one message and persist the result on it.

        Raises:
            NotFound: Message missing or in another workspace.
            CapabilityError: The model call failed.
        """
        start = time.monotonic()

        with self._sessions() as db:
            message = db.get(Message, message_id)
            if message is None or message.workspace_id != workspace_id:
                raise NotFound("message", message_id)
            excerpt = build_excerpt(message, self._excerpt_chars)
            subject, body = message.subject or "", message.body or ""

        raw = self._model.classify(excerpt)

        category = normalize_category(raw.category)
        sentiment = normalize_sentiment(raw.sentiment)
        actionability = normalize_actionability(raw.actionability)
        result = ClassificationResult(
            priority=priority_for(category, sentiment, actionability),
            category=category,
            sentiment=sentiment,
            actionability=actionability,
            confidence_score=normalize_confidence(raw.confidence_score, subject, body),
            summary=raw.summary,
            summary_short=short_summary(raw.summary, raw.summary_short),
            key_points=raw.key_points,
        )

        with self._sessions.begin() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFound("message", message_id)
            message.priority = result.priority.value
            message.category = result.category.value
            message.sentiment = result.sentiment.value
            message.actionability = result.actionability.value
            message.confidence_score = result.confidence_score
            message.summary = result.summary
            message.summary_short = result.summary_short
            message.key_points = result.key_points
            message.updated_at = utcnow()

        processing_ms = int((time.monotonic() - start) * 1000)
        self._audit_log.append(
            workspace_id,
            message_id,
            None,
            AuditAction.CLASSIFIED.value,
            confidence=result.confidence_score,
            detail={
                "category": result.category.value,
                "priority": result.priority.value,
                "model": raw.usage.model,
                "input_tokens": raw.usage.input_tokens,
                "output_tokens": raw.usage.output_tokens,
                "processing_ms": processing_ms,
            },
        )
        return result

    def classify_batch(self, message_ids: list[str], workspace_id: str) -> ClassifyBatchResult:
        """Classify each message independently; one failure never stops the rest."""
        batch = ClassifyBatchResult()
        for message_id in message_ids[: settings.classify_batch_limit]:
            try:
                result = self.classify(message_id, workspace_id)
            except Exception as e:
                logger.warning(
                    "classifier.item.failed",
                    extra={
                        "action": "classifier.item.failed",
                        "message_id": message_id,
                        "error_type": type(e).__name__,
                    },
                )
                batch.failed += 1
                batch.results.append(
                    ClassifyItemResult(message_id=message_id, success=False, error=str(e))
                )
                continue
            batch.successful += 1
            batch.results.append(ClassifyItemResult(message_id=message_id, success=True, result=result))
        return batch

    def autoclassify_new(self, workspace_id: str, limit: int = 10) -> ClassifyBatchResult:
        """Classify the most recent messages that have no classification yet."""
        with self._sessions() as db:
            ids = list(
                db.scalars(
                    select(Message.id)
                    .where(Message.workspace_id == workspace_id)
                    .where(Message.priority.is_(None))
                    .order_by(Message.created_at.desc())
                    .limit(limit)
                )
            )
        return self.classify_batch(ids, workspace_id)
