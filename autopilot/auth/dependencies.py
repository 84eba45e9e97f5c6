"""
FastAPI dependencies for trigger authorization and workspace scoping.

The /api routes are called by an external scheduler, not by browsers.
Authorization is a shared secret sent as 'Authorization: Bearer <secret>';
when no secret is configured (local development) the check is skipped.
"""

import hmac
import logging

from fastapi import Header, HTTPException, Request

from autopilot.config import settings
from autopilot.logging.config import workspace_id_var

logger = logging.getLogger(__name__)


def require_cron_secret(request: Request) -> None:
    """Reject the request with 401 unless it carries the configured shared secret."""
    secret = settings.cron_secret
    if not secret:
        return

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        logger.warning(
            "auth.trigger_rejected",
            extra={"action": "auth.trigger_rejected", "path": request.url.path},
        )
        raise HTTPException(status_code=401, detail="Not authenticated")


def require_workspace(x_workspace_id: str = Header(default="")) -> str:
    """Workspace scope for one-shot routes, from the X-Workspace-Id header."""
    workspace_id = x_workspace_id.strip()
    if not workspace_id:
        raise HTTPException(status_code=400, detail="X-Workspace-Id header is required")
    workspace_id_var.set(workspace_id)
    return workspace_id
