"""
Tests for classification: normalization rules and the persisting classifier.
"""

import random

import pytest
from sqlalchemy import select

from autopilot.agent.classifier import (
    Classifier,
    build_excerpt,
    is_test_message,
    normalize_actionability,
    normalize_category,
    normalize_confidence,
    normalize_sentiment,
    short_summary,
)
from autopilot.agent.schemas import Actionability, Category, Priority, Sentiment
from autopilot.db.models import AuditLogEntry, Message
from autopilot.errors import LLMError, NotFound

LONG_BODY = "Hello team, I placed an order last week and wanted to check on the delivery date. " * 2


class TestConfidence:
    def test_clamped_to_range(self):
        rng = random.Random(3)
        for _ in range(300):
            raw = rng.uniform(-5, 5)
            value = normalize_confidence(raw, "Delivery date for order 1234", LONG_BODY)
            assert 0.35 <= value <= 1.0
            assert value == round(value, 2)

    def test_missing_or_nan_defaults(self):
        assert normalize_confidence(None, "Delivery date for order 1234", LONG_BODY) == 0.5
        assert normalize_confidence(float("nan"), "Delivery date for order 1234", LONG_BODY) == 0.5

    def test_short_message_capped(self):
        # body length 10, subject length 5
        assert normalize_confidence(0.99, "Hello", "Quick one.") == 0.6

    def test_long_subject_lifts_short_cap(self):
        assert normalize_confidence(0.99, "Delivery date for order 1234", "Quick one.") == 0.99

    @pytest.mark.parametrize(
        "subject, body",
        [
            ("Test", LONG_BODY),
            ("Delivery date for order 1234", "This is a test message " + LONG_BODY),
            ("Delivery date for order 1234 please", "test 3"),
        ],
    )
    def test_test_messages_capped(self, subject, body):
        assert normalize_confidence(0.95, subject, body) <= 0.55

    @pytest.mark.parametrize(
        "body, expected",
        [
            ("test", True),
            ("TEST 42", True),
            ("test\n", True),
            ("  test", False),
            ("test 1\n", False),
            ("testing the new form", False),
        ],
    )
    def test_bare_test_body_matches_whole_body(self, body, expected):
        assert is_test_message("Order update", body) is expected

    def test_rounded(self):
        assert normalize_confidence(0.876543, "Delivery date for order 1234", LONG_BODY) == 0.88


class TestCategory:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("customer_inquiry", Category.CUSTOMER_INQUIRY),
            ("Customer Inquiry", Category.CUSTOMER_INQUIRY),
            ("spam", Category.JUNK_EMAIL),
            ("OTP", Category.AUTHORIZATION_CODE),
            ("receipt", Category.PAYMENT_CONFIRMATION),
            ("financial", Category.BILL),
            ("Security/Auth", Category.SECURITY_ALERT),
            ("junkemail", Category.JUNK_EMAIL),
            ("weekly newsletter", Category.NEWSLETTER),
        ],
    )
    def test_aliases(self, raw, expected):
        assert normalize_category(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "xyzzy"])
    def test_unknown_is_other(self, raw):
        assert normalize_category(raw) == Category.OTHER


class TestSentimentAndActionability:
    def test_sentiment(self):
        assert normalize_sentiment("URGENT") == Sentiment.URGENT
        assert normalize_sentiment("furious") == Sentiment.NEUTRAL
        assert normalize_sentiment(None) == Sentiment.NEUTRAL

    def test_actionability(self):
        assert normalize_actionability("Scheduling Intent") == Actionability.SCHEDULING_INTENT
        assert normalize_actionability("request") == Actionability.REQUEST
        assert normalize_actionability("maybe") == Actionability.NONE


class TestSummaries:
    def test_short_summary_prefers_model_value(self):
        assert short_summary("long", "short") == "short"

    def test_derived_and_truncated(self):
        derived = short_summary("x" * 400, None)
        assert len(derived) == 180
        assert derived.endswith("...")

    def test_none_without_summary(self):
        assert short_summary(None, None) is None


class TestExcerpt:
    def test_truncated(self, rows):
        message = rows.message(rows.connection(), body="a" * 5000)
        excerpt = build_excerpt(message, 1500)
        assert len(excerpt) == 1500
        assert excerpt.startswith("Subject: Question about my order\nFrom: Dana <dana@customer.test>")


class TestClassifier:
    @pytest.fixture
    def classifier(self, sessions, model, audit_log):
        return Classifier(sessions, model, audit_log, excerpt_chars=1500)

    def test_classify_persists_normalized_result(self, classifier, rows, sessions, model):
        message = rows.message(rows.connection())
        model.classification.category = "Customer Inquiry"
        model.classification.confidence_score = 1.7

        result = classifier.classify(message.id, message.workspace_id)

        assert result.category == Category.CUSTOMER_INQUIRY
        assert result.priority == Priority.URGENT  # customer question
        assert result.confidence_score == 1.0

        stored = rows.get(Message, message.id)
        assert stored.category == "customer_inquiry"
        assert stored.priority == "urgent"
        assert stored.sentiment == "neutral"
        assert stored.actionability == "question"
        assert stored.confidence_score == 1.0
        assert stored.summary_short == "Customer asks when their order ships."
        assert stored.key_points == ["order shipping date"]

        with sessions() as db:
            entry = db.scalars(select(AuditLogEntry)).one()
        assert entry.action == "classified"
        assert entry.detail["model"] == "fake-model"
        assert entry.detail["input_tokens"] == 120

    def test_priority_comes_from_category_table(self, classifier, rows, model):
        message = rows.message(rows.connection())
        model.classification.category = "marketing"
        model.classification.priority = "urgent"

        result = classifier.classify(message.id, message.workspace_id)

        assert result.priority == Priority.NOISE

    def test_other_workspace_is_not_found(self, classifier, rows, model):
        message = rows.message(rows.connection())
        with pytest.raises(NotFound):
            classifier.classify(message.id, "ws_other")
        assert model.classify_calls == []

    def test_model_error_propagates(self, classifier, rows, model):
        message = rows.message(rows.connection())
        model.error = LLMError("overloaded", status_code=529)

        with pytest.raises(LLMError):
            classifier.classify(message.id, message.workspace_id)
        assert rows.get(Message, message.id).priority is None

    def test_batch_isolates_failures(self, classifier, rows):
        connection = rows.connection()
        ok = rows.message(connection)

        batch = classifier.classify_batch([ok.id, "missing-id"], connection.workspace_id)

        assert batch.successful == 1
        assert batch.failed == 1
        assert batch.results[1].success is False
        assert "missing-id" in batch.results[1].error

    def test_autoclassify_new_only_unclassified(self, classifier, rows, model):
        connection = rows.connection()
        rows.message(connection, priority="low", category="internal")
        fresh = rows.message(connection)

        batch = classifier.autoclassify_new(connection.workspace_id)

        assert batch.successful == 1
        assert batch.results[0].message_id == fresh.id
        assert len(model.classify_calls) == 1
