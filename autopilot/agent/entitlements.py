"""
Feature entitlements.

Billing lives elsewhere; this gate only answers "may this workspace use
feature X". The default gate reads the allow-list from settings, where an
empty list means every workspace is entitled.
"""

import logging
from typing import Iterable, Optional

from autopilot.errors import FeatureDenied

logger = logging.getLogger(__name__)

AI_DRAFTS = "ai_drafts"


class FeatureGate:

    def __init__(self, entitled_workspaces: Optional[Iterable[str]] = None):
        self._entitled = set(entitled_workspaces or [])

    def is_entitled(self, workspace_id: str, feature: str) -> bool:
        return not self._entitled or workspace_id in self._entitled

    def require(self, workspace_id: str, feature: str) -> None:
        """Raises FeatureDenied if the workspace may not use `feature`."""
        if not self.is_entitled(workspace_id, feature):
            logger.info(
                "entitlements.denied",
                extra={"action": "entitlements.denied", "workspace_id": workspace_id, "feature": feature},
            )
            raise FeatureDenied(workspace_id, feature)
