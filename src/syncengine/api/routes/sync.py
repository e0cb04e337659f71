"""Sync trigger, retry, cancel and status routes."""
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from syncengine.db.engine import get_engine
from syncengine.models.schemas import (
    ActionResult,
    CallerContext,
    SyncResult,
    SyncStatusSummary,
)
from syncengine.sync.service import SyncService

router = APIRouter()

_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """FastAPI dependency: one SyncService per process, so per-connection locks hold."""
    global _service
    if _service is None:
        _service = SyncService(engine=get_engine())
    return _service


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[CallerContext]:
    """Caller identity as resolved by the upstream auth layer."""
    if not x_user_id or not x_user_role:
        return None
    return CallerContext(user_id=x_user_id, role=x_user_role)


class SyncTriggerRequest(BaseModel):
    connection_id: int
    mapping_id: Optional[int] = None  # If None, syncs every active mapping
    sync_type: str = "push"


@router.post("/trigger", response_model=ActionResult[SyncResult])
async def trigger_sync(
    request: SyncTriggerRequest,
    caller: Optional[CallerContext] = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    """Run a sync now and return its counters. Waits for the run to finish."""
    return await service.trigger_manual_sync(
        caller, request.connection_id, request.mapping_id, request.sync_type
    )


@router.post("/logs/{sync_log_id}/retry", response_model=ActionResult[SyncResult])
async def retry_sync(
    sync_log_id: int,
    caller: Optional[CallerContext] = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    """Retry only the failed records of a failed or partial run."""
    return await service.retry_failed_sync(caller, sync_log_id)


@router.post("/logs/{sync_log_id}/cancel", response_model=ActionResult[None])
def cancel_sync(
    sync_log_id: int,
    caller: Optional[CallerContext] = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    return service.cancel_sync(caller, sync_log_id)


@router.get("/connections/{connection_id}/status", response_model=ActionResult[SyncStatusSummary])
def sync_status(
    connection_id: int,
    caller: Optional[CallerContext] = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    """Latest run and success rate for a connection."""
    return service.get_sync_status(caller, connection_id)
