"""Diasend → Nightscout bridge — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.bridge.adapters import NightscoutAdapter, get_source_adapter
from src.bridge.config_loader import get_bridge_config
from src.bridge.profile import ProfileSynchronizer
from src.bridge.reconciler import Reconciler
from src.bridge.sync.scheduler import PollingLoop
from src.bridge.sync.service import SyncService
from src.config import Settings, get_settings
from src.routers import health, sync

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("bridge")


def build_sync_service(settings: Settings) -> SyncService:
    """Wire the adapters, reconciler and profile synchroniser together."""
    source = get_source_adapter(settings.source)(
        username=settings.diasend_username,
        password=settings.diasend_password,
        client_id=settings.diasend_client_id,
        client_secret=settings.diasend_client_secret,
        timeout_seconds=settings.http_timeout_seconds,
    )
    destination = NightscoutAdapter(
        url=settings.nightscout_url,
        api_secret=settings.nightscout_api_secret,
        timeout_seconds=settings.http_timeout_seconds,
    )
    reconciler = Reconciler(source, destination, config=get_bridge_config())
    profile_sync = ProfileSynchronizer(
        source,
        destination,
        profile_name=settings.nightscout_profile_name,
        timezone_name=settings.timezone_name,
    )
    return SyncService(reconciler, profile_sync)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting bridge v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    if not settings.is_configured:
        logger.warning("Nightscout or Diasend credentials missing; sync disabled")
        yield
        logger.info("Bridge shut down")
        return

    service = build_sync_service(settings)
    app.state.sync_service = service

    polling = get_bridge_config().polling
    loops = [
        PollingLoop("records", polling.records_interval_seconds, service.run_cycle),
        PollingLoop("pump_settings", polling.pump_settings_interval_seconds, service.sync_profile),
    ]
    app.state.polling_loops = loops
    if settings.polling_enabled:
        for loop in loops:
            loop.start()

    yield

    for loop in loops:
        await loop.stop()
    await service.aclose()
    app.state.sync_service = None
    logger.info("Bridge shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Diasend Nightscout Bridge",
        description=(
            "Polls pump and CGM data from Diasend and publishes it to Nightscout "
            "as treatments and entries."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.sync_service = None
    app.state.polling_loops = []

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
