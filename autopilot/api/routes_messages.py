"""
One-shot routes.

These run a single operation for one message or connection and surface
errors directly (see the exception handlers in autopilot.main):
- POST /api/channels/{connection_id}/sync
- POST /api/messages/{message_id}/classify
- POST /api/messages/{message_id}/draft
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends

from autopilot.agent.schemas import (
    ClassificationResult,
    DraftRequest,
    DraftResult,
    SyncRequest,
    SyncResult,
)
from autopilot.auth.dependencies import require_cron_secret, require_workspace
from autopilot.logging.audit import audit
from autopilot.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"], dependencies=[Depends(require_cron_secret)])


@router.post("/channels/{connection_id}/sync", response_model=SyncResult)
def sync_connection(
    connection_id: str,
    request: Optional[SyncRequest] = Body(default=None),
    workspace_id: str = Depends(require_workspace),
    services: Services = Depends(get_services),
):
    request = request or SyncRequest()
    return services.run_ingest_sync(
        connection_id,
        workspace_id,
        max_messages=request.max_messages,
        query=request.query,
        page_token=request.page_token,
        process_new=request.process_new,
    )


@router.post("/messages/{message_id}/classify", response_model=ClassificationResult)
def classify_message(
    message_id: str,
    workspace_id: str = Depends(require_workspace),
    services: Services = Depends(get_services),
):
    result = services.classifier.classify(message_id, workspace_id)
    audit.info("message.classify.requested", message_id=message_id, priority=result.priority.value)
    return result


@router.post("/messages/{message_id}/draft", response_model=DraftResult)
def draft_message(
    message_id: str,
    request: Optional[DraftRequest] = Body(default=None),
    workspace_id: str = Depends(require_workspace),
    services: Services = Depends(get_services),
):
    """
    Generate a reply draft for a message.

    Request body (optional):
    {
        "tone": "friendly",
        "maxLength": 300
    }
    """
    request = request or DraftRequest()
    result = services.drafter.draft(
        message_id,
        workspace_id,
        tone=request.tone,
        max_length=request.max_length,
    )
    audit.info("message.draft.requested", message_id=message_id, draft_id=result.draft_id)
    return result
