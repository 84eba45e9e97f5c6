"""
Error taxonomy for the autonomous handling pipeline.

One-shot operations (classify, draft, sync setup) raise these directly.
Batch loops (queue worker, ingestion) catch them per item and record the
outcome instead of propagating.
"""

from typing import Optional


class AutopilotError(Exception):
    """Base class for all pipeline errors."""
    pass


class NotFound(AutopilotError):
    """A referenced message, draft, connection or workspace does not exist or is out of scope."""

    def __init__(self, kind: str, ref: str):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} not found: {ref}")


class FeatureDenied(AutopilotError):
    """The workspace is not entitled to the requested feature."""

    def __init__(self, workspace_id: str, feature: str):
        self.workspace_id = workspace_id
        self.feature = feature
        super().__init__(
            f"Workspace {workspace_id} is not entitled to '{feature}'. "
            f"Upgrade the plan to enable AI reply drafts."
        )


class PolicyBlocked(AutopilotError):
    """Workspace policy or a human-review hold prevents an automated action."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CapabilityError(AutopilotError):
    """An external capability (channel, model) returned an error or raised."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ChannelError(CapabilityError):
    """Mail provider API call failed."""
    pass


class LLMError(CapabilityError):
    """Raised when an LLM API call fails after all retries."""
    pass
