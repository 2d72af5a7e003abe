"""Sync status and manual trigger endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from src.bridge.errors import BridgeError, CollaboratorError
from src.dependencies import BridgeService, PollingLoops
from src.models.sync import CycleResultResponse, SyncStatusResponse

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("bridge.routers.sync")


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(service: BridgeService, loops: PollingLoops) -> SyncStatusResponse:
    """Current watermark, counters and the last cycle outcome."""
    response = SyncStatusResponse.model_validate(service.status())
    response.polling_enabled = any(loop.is_running for loop in loops)
    return response


@router.post("/run", response_model=CycleResultResponse)
async def run_sync(service: BridgeService) -> CycleResultResponse:
    """Run one reconciliation cycle now, waiting for any cycle in progress."""
    try:
        result = await service.run_cycle()
    except CollaboratorError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except BridgeError as exc:
        logger.error("Manual sync failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return CycleResultResponse.model_validate(result)
