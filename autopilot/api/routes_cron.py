"""
Scheduler-triggered routes.

An external scheduler calls these on a fixed interval:
- POST /api/cron/auto-send  every minute, sends due queue items
- POST /api/cron/sync       every few minutes, ingests every active connection
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from autopilot.agent.schemas import BatchResult, SyncResult
from autopilot.auth.dependencies import require_cron_secret
from autopilot.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/auto-send", response_model=BatchResult)
def auto_send(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Process one batch of due auto-send queue items."""
    return services.run_auto_send_batch(limit=limit)


@router.post("/sync", response_model=list[SyncResult])
def sync_all(
    process_new: bool = Query(default=True, alias="processNew"),
    services: Services = Depends(get_services),
):
    """Sync every active channel connection and process the new messages."""
    return services.run_ingest_sync_all(process_new=process_new)
