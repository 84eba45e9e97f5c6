"""
Workspace auto-send policy.

Policy is read fresh from workspace_settings on every call. The queue worker
calls get_policy() once per item, so a user disabling or pausing auto-send
takes effect on the very next poll. Nothing here writes settings.

Usage:
    policies = PolicyProvider(sessions)
    policy = policies.get_policy("ws_123")
    if policy.can_auto_send: ...
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import sessionmaker

from autopilot.db.models import WorkspaceSettings
from autopilot.errors import PolicyBlocked
from autopilot.queue.window import parse_hhmm

logger = logging.getLogger(__name__)


DEFAULT_EXCLUDED_CATEGORIES = [
    "marketing",
    "newsletter",
    "junk_email",
    "social",
    "notification",
]


class WorkspacePolicy(BaseModel):
    """Effective auto-send policy with defaults applied."""

    workspace_id: str
    exists: bool = Field(default=True, description="False when no settings row exists")
    auto_send_enabled: bool = Field(default=False)
    auto_send_paused: bool = Field(default=False)
    delay_type: Literal["exact", "random"] = Field(default="random")
    delay_min: int = Field(default=10)
    delay_max: int = Field(default=30)
    confidence_threshold: float = Field(default=0.85)
    time_start: str = Field(default="09:00")
    time_end: str = Field(default="21:00")
    timezone: str = Field(default="UTC")
    daily_digest_enabled: bool = Field(default=False)
    daily_digest_time: str = Field(default="08:00")

    max_replies_per_thread: int = Field(default=1)
    sender_cooldown_minutes: int = Field(default=60)
    excluded_sender_patterns: Optional[list[str]] = Field(
        default=None, description="None means use the configured defaults"
    )
    excluded_categories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_CATEGORIES)
    )
    domain_whitelist: list[str] = Field(default_factory=list)
    domain_blacklist: list[str] = Field(default_factory=list)
    window_error: Optional[str] = Field(
        default=None, description="Set when time_start or time_end will not parse"
    )

    @model_validator(mode="after")
    def _check_window(self) -> "WorkspacePolicy":
        try:
            parse_hhmm(self.time_start)
            parse_hhmm(self.time_end)
        except ValueError as e:
            self.window_error = f"Invalid sending window: {e}"
        return self

    @property
    def can_auto_send(self) -> bool:
        return (
            self.exists
            and self.auto_send_enabled
            and not self.auto_send_paused
            and self.window_error is None
        )

    @property
    def blocked_reason(self) -> Optional[str]:
        """Human-readable reason auto-send is blocked, or None."""
        if not self.exists:
            return "Workspace settings not found"
        if not self.auto_send_enabled:
            return "Auto-send disabled"
        if self.auto_send_paused:
            return "Auto-send paused"
        if self.window_error:
            return self.window_error
        return None

    def require_auto_send(self) -> None:
        """Raises PolicyBlocked unless auto-send is currently allowed."""
        if not self.can_auto_send:
            raise PolicyBlocked(self.blocked_reason or "Auto-send not allowed")


def _or(value, default):
    return default if value is None else value


class PolicyProvider:
    """Reads the current policy for a workspace."""

    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    def get_policy(self, workspace_id: str) -> WorkspacePolicy:
        with self._sessions() as db:
            row = db.get(WorkspaceSettings, workspace_id)

        if row is None:
            return WorkspacePolicy(workspace_id=workspace_id, exists=False)

        delay_type = row.auto_send_delay_type if row.auto_send_delay_type in ("exact", "random") else "random"

        return WorkspacePolicy(
            workspace_id=workspace_id,
            auto_send_enabled=_or(row.auto_send_enabled, False),
            auto_send_paused=_or(row.auto_send_paused, False),
            delay_type=delay_type,
            delay_min=_or(row.auto_send_delay_min, 10),
            delay_max=_or(row.auto_send_delay_max, 30),
            confidence_threshold=_or(row.auto_send_confidence_threshold, 0.85),
            time_start=row.auto_send_time_start or "09:00",
            time_end=row.auto_send_time_end or "21:00",
            timezone=row.timezone or "UTC",
            daily_digest_enabled=_or(row.daily_digest_enabled, False),
            daily_digest_time=row.daily_digest_time or "08:00",
            max_replies_per_thread=_or(row.max_replies_per_thread, 1),
            sender_cooldown_minutes=_or(row.sender_cooldown_minutes, 60),
            excluded_sender_patterns=row.excluded_sender_patterns,
            excluded_categories=_or(row.excluded_categories, list(DEFAULT_EXCLUDED_CATEGORIES)),
            domain_whitelist=row.domain_whitelist or [],
            domain_blacklist=row.domain_blacklist or [],
        )
