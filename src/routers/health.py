"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("bridge.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the process is up.

    Reports ``degraded`` when the bridge is unconfigured or the last cycle failed.
    """
    settings = get_settings()
    service = getattr(request.app.state, "sync_service", None)
    last_error = service.status().last_error if service is not None else None
    if service is None:
        status = "unconfigured"
    elif last_error:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "version": settings.app_version,
        "environment": settings.environment,
        "last_error": last_error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
