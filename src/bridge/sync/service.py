"""Sync service — owns the watermark and serialises reconciliation cycles.

Both the polling loop and the manual trigger endpoint go through
``SyncService.run_cycle``; the lock guarantees cycles never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from src.bridge.profile import ProfileSynchronizer
from src.bridge.reconciler import CycleResult, Reconciler
from src.bridge.timeutils import utc_now

logger = logging.getLogger("bridge.sync.service")


@dataclass
class SyncStatus:
    """Snapshot of the service state for the status endpoint.

    Attributes:
        watermark:        Current watermark (None until initialised).
        running:          True while a cycle holds the lock.
        cycles_succeeded: Successful cycles since start.
        cycles_failed:    Failed cycles since start.
        last_result:      Result of the last successful cycle.
        last_error:       Message of the last failure, cleared on success.
        last_run_at:      UTC time the last cycle finished.
        last_profile_sync_at: UTC time of the last profile update.
    """

    watermark: datetime | None
    running: bool
    cycles_succeeded: int
    cycles_failed: int
    last_result: CycleResult | None
    last_error: str | None
    last_run_at: datetime | None
    last_profile_sync_at: datetime | None


class SyncService:
    """Stateful wrapper around a Reconciler.

    Usage::

        service = SyncService(reconciler, profile_sync)
        result = await service.run_cycle()
        service.status().watermark
    """

    def __init__(
        self,
        reconciler: Reconciler,
        profile_sync: ProfileSynchronizer | None = None,
        watermark: datetime | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._reconciler = reconciler
        self._profile_sync = profile_sync
        self._watermark = watermark
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_result: CycleResult | None = None
        self._last_error: str | None = None
        self._last_run_at: datetime | None = None
        self._last_profile_sync_at: datetime | None = None
        self._cycles_succeeded = 0
        self._cycles_failed = 0

    @property
    def watermark(self) -> datetime | None:
        return self._watermark

    async def run_cycle(self) -> CycleResult:
        """Run one reconciliation cycle, advancing the watermark on success.

        Raises:
            Whatever the reconciler raised; the watermark is left unchanged.
        """
        async with self._lock:
            try:
                if self._watermark is None:
                    self._watermark = await self._reconciler.initial_watermark()
                result = await self._reconciler.run_cycle(self._watermark)
            except Exception as exc:
                self._cycles_failed += 1
                self._last_error = f"{type(exc).__name__}: {exc}"
                self._last_run_at = self._clock()
                logger.error(
                    "Sync cycle after %s failed; watermark unchanged: %s",
                    self._watermark.isoformat() if self._watermark else "<unset>",
                    exc,
                )
                raise

            self._watermark = result.watermark
            self._last_result = result
            self._last_error = None
            self._last_run_at = self._clock()
            self._cycles_succeeded += 1
            return result

    async def sync_profile(self) -> dict[str, Any] | None:
        """Run the profile synchroniser if one is configured."""
        if self._profile_sync is None:
            logger.debug("No profile synchroniser configured")
            return None
        stored = await self._profile_sync.run()
        if stored is not None:
            self._last_profile_sync_at = self._clock()
        return stored

    async def aclose(self) -> None:
        await self._reconciler.aclose()

    def status(self) -> SyncStatus:
        return SyncStatus(
            watermark=self._watermark,
            running=self._lock.locked(),
            cycles_succeeded=self._cycles_succeeded,
            cycles_failed=self._cycles_failed,
            last_result=self._last_result,
            last_error=self._last_error,
            last_run_at=self._last_run_at,
            last_profile_sync_at=self._last_profile_sync_at,
        )
