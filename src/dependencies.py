"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.bridge.sync.scheduler import PollingLoop
from src.bridge.sync.service import SyncService
from src.config import Settings, get_settings


async def get_sync_service(request: Request) -> SyncService:
    """Return the sync service built during application startup.

    The lifespan sets ``app.state.sync_service`` when credentials are configured.
    """
    service: SyncService | None = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Bridge is not configured")
    return service


async def get_polling_loops(request: Request) -> list[PollingLoop]:
    return list(getattr(request.app.state, "polling_loops", []))


# Annotated shortcuts for route signatures
BridgeService = Annotated[SyncService, Depends(get_sync_service)]
PollingLoops = Annotated[list[PollingLoop], Depends(get_polling_loops)]
AppSettings = Annotated[Settings, Depends(get_settings)]
