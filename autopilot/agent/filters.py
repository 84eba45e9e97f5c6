"""
Auto-reply eligibility filters.

Decides whether a classified message may be answered automatically at
all. Runs before drafting and enqueueing; a message that fails any check
is never queued.

Checks, in order:
1. Self-reply: sender is the connected account
2. Excluded sender patterns (noreply@, mailer-daemon@, ...)
3. Domain blacklist
4. Domain whitelist (only when non-empty)
5. Excluded categories (marketing, newsletter, ...)
6. Calendar traffic (invites, accept/decline notices)
7. Thread reply limit: automated replies already sent in this thread
8. Sender cooldown: automated reply sent to this sender recently

Usage:
    from autopilot.agent.filters import FilterConfig, EligibilityChecker
    checker = EligibilityChecker(sessions, FilterConfig.load("config/reply_filters.yaml"))
    result = checker.check(message_id, workspace_id, policy)
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Iterable, Optional

import yaml
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from autopilot.agent.schemas import EligibilityResult, QueueStatus
from autopilot.db.models import AutoSendQueueItem, ChannelConnection, Message, utcnow
from autopilot.errors import NotFound
from autopilot.queue.policy import WorkspacePolicy

logger = logging.getLogger(__name__)


DEFAULT_EXCLUDED_SENDER_PATTERNS = (
    "noreply@", "no-reply@", "no_reply@", "donotreply@", "do-not-reply@",
    "do_not_reply@", "mailer-daemon@", "postmaster@", "notifications@",
    "notification@", "alert@", "alerts@", "system@", "automated@", "auto@",
    "bounce@", "bounces@", "daemon@", "mailerdaemon@", "email-notifications@",
    "news@", "newsletter@", "marketing@", "promo@", "promotions@", "updates@",
    "info@", "support@", "feedback@", "survey@",
)


class FilterConfig:
    """
    Static filter lists, loaded from YAML.

    All patterns are lowercased and stripped at load time.
    """

    def __init__(
        self,
        excluded_sender_patterns: Iterable[str] = DEFAULT_EXCLUDED_SENDER_PATTERNS,
        calendar_subject_prefixes: Iterable[str] = (),
        calendar_body_patterns: Iterable[str] = (),
    ):
        self.excluded_sender_patterns = _normalize(excluded_sender_patterns)
        self.calendar_subject_prefixes = tuple(_normalize(calendar_subject_prefixes))
        self.calendar_body_patterns = _normalize(calendar_body_patterns)

    @classmethod
    def load(cls, yaml_path: str) -> "FilterConfig":
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Reply filter config not found: {yaml_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls(
            excluded_sender_patterns=data.get("excluded_sender_patterns")
            or DEFAULT_EXCLUDED_SENDER_PATTERNS,
            calendar_subject_prefixes=data.get("calendar_subject_prefixes") or (),
            calendar_body_patterns=data.get("calendar_body_patterns") or (),
        )
        logger.info(
            "reply_filters.loaded",
            extra={
                "action": "reply_filters.loaded",
                "sender_patterns": len(config.excluded_sender_patterns),
                "calendar_subject_prefixes": len(config.calendar_subject_prefixes),
                "calendar_body_patterns": len(config.calendar_body_patterns),
            },
        )
        return config


def _normalize(values: Iterable[str]) -> list[str]:
    return [v.lower().strip() for v in values if isinstance(v, str) and v.strip()]


# =============================================================================
# PURE CHECKS
# =============================================================================

def matches_sender_pattern(email: str, patterns: Iterable[str]) -> bool:
    """
    True if the address matches any pattern. An empty address always matches.

    "x@" is a prefix match, "@x" a contains match, "a@b" an exact address,
    anything else a contains match on the whole address.
    """
    if not email:
        return True
    address = email.lower().strip()
    for raw in patterns:
        pattern = raw.lower().strip()
        if not pattern:
            continue
        if pattern.endswith("@"):
            if address.startswith(pattern):
                return True
        elif pattern.startswith("@"):
            if pattern in address:
                return True
        elif "@" in pattern:
            if address == pattern:
                return True
        elif pattern in address:
            return True
    return False


def _domain(email: str) -> str:
    return email.lower().strip().rsplit("@", 1)[-1] if "@" in email else ""


def _domain_in(email: str, domains: Iterable[str]) -> bool:
    domain = _domain(email)
    if not domain:
        return False
    for entry in domains:
        entry = entry.lower().strip()
        if domain == entry or domain.endswith("." + entry):
            return True
    return False


def is_domain_blacklisted(email: str, blacklist: list[str]) -> bool:
    return bool(blacklist) and _domain_in(email, blacklist)


def is_domain_whitelisted(email: str, whitelist: list[str]) -> bool:
    """An empty whitelist allows every domain."""
    return not whitelist or _domain_in(email, whitelist)


def is_calendar_message(subject: str, body: str, config: FilterConfig) -> bool:
    subject_lower = (subject or "").lower()
    if config.calendar_subject_prefixes and subject_lower.startswith(config.calendar_subject_prefixes):
        return True
    body_lower = (body or "").lower()
    return any(p in body_lower for p in config.calendar_body_patterns)


# =============================================================================
# CHECKER
# =============================================================================

class EligibilityChecker:
    """Runs all auto-reply checks for one stored message."""

    def __init__(self, sessions: sessionmaker, config: Optional[FilterConfig] = None):
        self._sessions = sessions
        self._config = config or FilterConfig()

    def check(self, message_id: str, workspace_id: str, policy: WorkspacePolicy) -> EligibilityResult:
        """
        Raises:
            NotFound: Message missing or in another workspace.
        """
        with self._sessions() as db:
            message = db.get(Message, message_id)
            if message is None or message.workspace_id != workspace_id:
                raise NotFound("message", message_id)
            connection = db.get(ChannelConnection, message.channel_connection_id)
            account = (connection.provider_account_id if connection else "") or ""
            sender = (message.sender_email or "").strip()
            category = message.category
            thread_id = message.provider_thread_id
            subject, body = message.subject or "", message.body or ""

        if account and sender.lower() == account.lower().strip():
            return EligibilityResult(
                eligible=False,
                reason="Self-reply: message is from our own account",
                details={"connection_id": message.channel_connection_id},
            )

        patterns = (
            policy.excluded_sender_patterns
            if policy.excluded_sender_patterns is not None
            else self._config.excluded_sender_patterns
        )
        if matches_sender_pattern(sender, patterns):
            return EligibilityResult(eligible=False, reason="Excluded sender: matches blocked sender pattern")

        if is_domain_blacklisted(sender, policy.domain_blacklist):
            return EligibilityResult(
                eligible=False, reason="Blacklisted domain", details={"domain": _domain(sender)}
            )

        if not is_domain_whitelisted(sender, policy.domain_whitelist):
            return EligibilityResult(
                eligible=False, reason="Not in domain whitelist", details={"domain": _domain(sender)}
            )

        excluded = {c.lower() for c in policy.excluded_categories}
        if category and category.lower() in excluded:
            return EligibilityResult(
                eligible=False, reason=f"Excluded category: {category}", details={"category": category}
            )

        if is_calendar_message(subject, body, self._config):
            return EligibilityResult(eligible=False, reason="Calendar message")

        if thread_id:
            replies = self._thread_reply_count(workspace_id, thread_id)
            if replies >= policy.max_replies_per_thread:
                return EligibilityResult(
                    eligible=False,
                    reason=f"Thread reply limit reached ({replies}/{policy.max_replies_per_thread})",
                    details={"thread_id": thread_id, "reply_count": replies},
                )

        if policy.sender_cooldown_minutes > 0:
            last = self._last_reply_to(workspace_id, sender, policy.sender_cooldown_minutes)
            if last is not None:
                return EligibilityResult(
                    eligible=False,
                    reason=f"Sender cooldown active (last reply: {last.isoformat()})",
                    details={"last_reply_at": last.isoformat()},
                )

        return EligibilityResult(eligible=True, reason="Passed all filters")

    def _thread_reply_count(self, workspace_id: str, thread_id: str) -> int:
        """Automated replies already sent into this provider thread."""
        with self._sessions() as db:
            return db.scalar(
                select(func.count(AutoSendQueueItem.id))
                .join(Message, Message.id == AutoSendQueueItem.message_id)
                .where(AutoSendQueueItem.workspace_id == workspace_id)
                .where(AutoSendQueueItem.status == QueueStatus.SENT.value)
                .where(Message.provider_thread_id == thread_id)
            ) or 0

    def _last_reply_to(self, workspace_id: str, sender: str, cooldown_minutes: int):
        """Most recent automated reply to `sender` inside the cooldown, or None."""
        since = utcnow() - timedelta(minutes=cooldown_minutes)
        with self._sessions() as db:
            return db.scalar(
                select(func.max(AutoSendQueueItem.sent_at))
                .join(Message, Message.id == AutoSendQueueItem.message_id)
                .where(AutoSendQueueItem.workspace_id == workspace_id)
                .where(AutoSendQueueItem.status == QueueStatus.SENT.value)
                .where(AutoSendQueueItem.sent_at >= since)
                .where(func.lower(Message.sender_email) == sender.lower())
            )
