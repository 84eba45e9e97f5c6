"""Tests for deterministic priority assignment."""

import pytest

from autopilot.agent.priority import priority_for
from autopilot.agent.schemas import Actionability, Category, Priority, Sentiment


class TestFixedCategories:
    @pytest.mark.parametrize("sentiment", list(Sentiment) + [None])
    @pytest.mark.parametrize("actionability", list(Actionability) + [None])
    def test_authorization_code_always_urgent(self, sentiment, actionability):
        assert priority_for(Category.AUTHORIZATION_CODE, sentiment, actionability) == Priority.URGENT

    @pytest.mark.parametrize("sentiment", list(Sentiment))
    def test_marketing_always_noise(self, sentiment):
        assert priority_for(Category.MARKETING, sentiment, Actionability.REQUEST) == Priority.NOISE

    def test_table_values(self):
        assert priority_for(Category.SECURITY_ALERT) == Priority.HIGH
        assert priority_for(Category.INVOICE) == Priority.MEDIUM
        assert priority_for(Category.NOTIFICATION) == Priority.LOW
        assert priority_for(Category.NEWSLETTER) == Priority.NOISE

    def test_other_defaults_to_medium(self):
        assert priority_for(Category.OTHER) == Priority.MEDIUM


class TestCustomerCategories:
    def test_question_is_urgent(self):
        assert priority_for(Category.CUSTOMER_INQUIRY, Sentiment.NEUTRAL, Actionability.QUESTION) == Priority.URGENT

    def test_urgent_sentiment_is_urgent(self):
        assert priority_for(Category.CUSTOMER_COMPLAINT, Sentiment.URGENT, Actionability.FYI) == Priority.URGENT

    def test_informational_is_high(self):
        assert priority_for(Category.CUSTOMER_INQUIRY, Sentiment.POSITIVE, Actionability.FYI) == Priority.HIGH
