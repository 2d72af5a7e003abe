"""Pydantic schemas for the sync endpoints."""

from __future__ import annotations

from datetime import datetime

from src.models.base import BridgeBase


class CycleResultResponse(BridgeBase):
    """Outcome of one reconciliation cycle."""

    watermark: datetime
    date_from: datetime
    date_to: datetime
    fetched: int
    rejected: int
    created_treatments: int
    created_entries: int
    deleted_treatments: int
    held_back: int
    finished_at: datetime


class SyncStatusResponse(BridgeBase):
    watermark: datetime | None = None
    running: bool = False
    polling_enabled: bool = False
    cycles_succeeded: int = 0
    cycles_failed: int = 0
    last_result: CycleResultResponse | None = None
    last_error: str | None = None
    last_run_at: datetime | None = None
    last_profile_sync_at: datetime | None = None
