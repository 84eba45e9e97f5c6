"""Tests for auto-reply eligibility filters."""

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest

from autopilot.agent.filters import (
    EligibilityChecker,
    FilterConfig,
    is_calendar_message,
    is_domain_blacklisted,
    is_domain_whitelisted,
    matches_sender_pattern,
)
from autopilot.db.models import utcnow
from autopilot.errors import NotFound
from autopilot.queue.policy import WorkspacePolicy

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "reply_filters.yaml"


@pytest.fixture
def config(tmp_path) -> FilterConfig:
    yaml_content = textwrap.dedent("""\
        excluded_sender_patterns:
          - "noreply@"
          - "@bounces"
          - "ops@example.com"
        calendar_subject_prefixes:
          - "Accepted:"
          - "Invitation:"
        calendar_body_patterns:
          - "BEGIN:VCALENDAR"
    """)
    yaml_file = tmp_path / "filters.yaml"
    yaml_file.write_text(yaml_content)
    return FilterConfig.load(str(yaml_file))


@pytest.fixture
def policy() -> WorkspacePolicy:
    return WorkspacePolicy(workspace_id="ws_test", auto_send_enabled=True)


class TestSenderPatterns:
    @pytest.mark.parametrize(
        "email, expected",
        [
            ("noreply@shop.test", True),
            ("NoReply@Shop.test", True),
            ("hello@bounces.shop.test", True),
            ("ops@example.com", True),
            ("devops@example.com", False),
            ("dana@customer.test", False),
            ("", True),
        ],
    )
    def test_match_rules(self, config, email, expected):
        assert matches_sender_pattern(email, config.excluded_sender_patterns) is expected

    def test_bare_pattern_is_contains(self):
        assert matches_sender_pattern("billing@vendor.test", ["vendor.test"]) is True


class TestDomains:
    def test_blacklist_matches_subdomains(self):
        assert is_domain_blacklisted("a@mail.rival.test", ["rival.test"]) is True
        assert is_domain_blacklisted("a@notrival.test", ["rival.test"]) is False
        assert is_domain_blacklisted("a@rival.test", []) is False

    def test_empty_whitelist_allows_all(self):
        assert is_domain_whitelisted("a@anywhere.test", []) is True

    def test_whitelist_restricts(self):
        assert is_domain_whitelisted("a@partner.test", ["partner.test"]) is True
        assert is_domain_whitelisted("a@stranger.test", ["partner.test"]) is False


class TestCalendar:
    def test_subject_prefix(self, config):
        assert is_calendar_message("Accepted: Weekly sync", "", config) is True

    def test_body_pattern(self, config):
        assert is_calendar_message("Sync", "BEGIN:VCALENDAR\nVERSION:2.0", config) is True

    def test_regular_message(self, config):
        assert is_calendar_message("Re: Accepted offer", "Thanks!", config) is False


class TestConfigLoading:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FilterConfig.load(str(tmp_path / "nope.yaml"))

    def test_repo_config_loads(self):
        loaded = FilterConfig.load(str(REPO_CONFIG))
        assert "noreply@" in loaded.excluded_sender_patterns
        assert "invitation:" in loaded.calendar_subject_prefixes

    def test_empty_file_uses_defaults(self, tmp_path):
        yaml_file = tmp_path / "empty.yaml"
        yaml_file.write_text("")
        loaded = FilterConfig.load(str(yaml_file))
        assert "mailer-daemon@" in loaded.excluded_sender_patterns


class TestEligibilityChecker:
    @pytest.fixture
    def checker(self, sessions, config):
        return EligibilityChecker(sessions, config)

    def test_regular_customer_message_eligible(self, checker, rows, policy):
        message = rows.message(rows.connection())
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is True

    def test_self_reply_blocked(self, checker, rows, policy):
        message = rows.message(rows.connection(), sender_email="Owner@Acme.test")
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False
        assert "Self-reply" in result.reason

    def test_sender_pattern_blocked(self, checker, rows, policy):
        message = rows.message(rows.connection(), sender_email="noreply@shop.test")
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False
        assert "Excluded sender" in result.reason

    def test_workspace_patterns_override_config(self, checker, rows, policy):
        policy.excluded_sender_patterns = ["dana@"]
        message = rows.message(rows.connection())
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False

    def test_excluded_category(self, checker, rows, policy):
        message = rows.message(rows.connection(), category="marketing")
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False
        assert result.details["category"] == "marketing"

    def test_blacklisted_domain(self, checker, rows, policy):
        policy.domain_blacklist = ["customer.test"]
        message = rows.message(rows.connection())
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False
        assert result.reason == "Blacklisted domain"

    def test_calendar_message(self, checker, rows, policy):
        message = rows.message(rows.connection(), subject="Invitation: Kickoff @ Tue")
        result = checker.check(message.id, message.workspace_id, policy)
        assert result.eligible is False
        assert result.reason == "Calendar message"

    def test_thread_limit(self, checker, rows, policy):
        connection = rows.connection()
        earlier = rows.message(connection, provider_thread_id="thread-9")
        rows.queue_item(rows.draft(earlier), connection, status="sent", sent_at=utcnow() - timedelta(days=2))
        message = rows.message(connection, provider_thread_id="thread-9", sender_email="other@customer.test")

        result = checker.check(message.id, message.workspace_id, policy)

        assert result.eligible is False
        assert "Thread reply limit" in result.reason
        assert result.details["reply_count"] == 1

    def test_sender_cooldown(self, checker, rows, policy):
        connection = rows.connection()
        earlier = rows.message(connection, provider_thread_id="thread-a")
        rows.queue_item(rows.draft(earlier), connection, status="sent", sent_at=utcnow() - timedelta(minutes=5))
        message = rows.message(connection, provider_thread_id="thread-b")

        result = checker.check(message.id, message.workspace_id, policy)

        assert result.eligible is False
        assert "cooldown" in result.reason

    def test_cooldown_expired(self, checker, rows, policy):
        connection = rows.connection()
        earlier = rows.message(connection, provider_thread_id="thread-a")
        rows.queue_item(rows.draft(earlier), connection, status="sent", sent_at=utcnow() - timedelta(hours=3))
        message = rows.message(connection, provider_thread_id="thread-b")

        assert checker.check(message.id, message.workspace_id, policy).eligible is True

    def test_other_workspace_not_found(self, checker, rows, policy):
        message = rows.message(rows.connection())
        with pytest.raises(NotFound):
            checker.check(message.id, "ws_other", policy)
