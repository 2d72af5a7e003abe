"""Tests for the polling loop and the sync service."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.bridge.base import PumpSettings
from src.bridge.config_loader import BridgeConfig
from src.bridge.errors import SourceError
from src.bridge.profile import ProfileSynchronizer
from src.bridge.reconciler import Reconciler
from src.bridge.sync.scheduler import PollingLoop
from src.bridge.sync.service import SyncService
from src.bridge.tests.conftest import (
    TEST_NOW,
    FakeDestination,
    FakeSource,
    glucose_record,
    utc,
)


@pytest.fixture
def service(
    source: FakeSource, destination: FakeDestination, bridge_config: BridgeConfig, clock
) -> SyncService:
    reconciler = Reconciler(source, destination, config=bridge_config, clock=clock)
    profile_sync = ProfileSynchronizer(source, destination, profile_name="Diasend")
    return SyncService(reconciler, profile_sync, clock=clock)


class TestPollingLoop:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self) -> None:
        calls = 0

        async def task() -> None:
            nonlocal calls
            calls += 1

        loop = PollingLoop("test", 0.01, task)
        loop.start()
        await asyncio.sleep(0.05)
        await loop.stop()

        assert calls >= 2
        assert not loop.is_running
        assert loop.iterations == calls

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_retried(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        attempts = 0

        async def flaky() -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise SourceError("Diasend unavailable")

        loop = PollingLoop("flaky", 0.01, flaky)
        with caplog.at_level("ERROR", logger="bridge.sync.scheduler"):
            assert await loop.run_once() is False
            assert await loop.run_once() is True

        assert loop.failures == 1
        assert "run failed" in caplog.text

    @pytest.mark.asyncio
    async def test_double_start_rejected(self) -> None:
        async def task() -> None:
            return None

        loop = PollingLoop("twice", 10, task)
        loop.start()
        try:
            with pytest.raises(RuntimeError):
                loop.start()
        finally:
            await loop.stop()

    def test_interval_must_be_positive(self) -> None:
        async def task() -> None:
            return None

        with pytest.raises(ValueError):
            PollingLoop("bad", 0, task)


class TestSyncService:
    @pytest.mark.asyncio
    async def test_initialises_watermark_lazily(self, service: SyncService) -> None:
        assert service.watermark is None
        result = await service.run_cycle()
        assert result.fetched == 0
        assert service.watermark == TEST_NOW - timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_watermark_advances_on_success(
        self, service: SyncService, source: FakeSource
    ) -> None:
        source.records = [glucose_record(utc(11, 30), 110)]
        await service.run_cycle()
        status = service.status()
        assert status.watermark == utc(11, 30)
        assert status.cycles_succeeded == 1
        assert status.last_result is not None
        assert status.last_result.created_entries == 1
        assert status.last_run_at == TEST_NOW

    @pytest.mark.asyncio
    async def test_watermark_kept_on_failure(
        self, service: SyncService, source: FakeSource
    ) -> None:
        source.records = [glucose_record(utc(11, 30), 110)]
        await service.run_cycle()
        watermark = service.watermark

        source.fail = True
        with pytest.raises(SourceError):
            await service.run_cycle()

        status = service.status()
        assert status.watermark == watermark
        assert status.cycles_failed == 1
        assert status.last_error == "SourceError: Diasend unavailable"

    @pytest.mark.asyncio
    async def test_error_cleared_after_success(
        self, service: SyncService, source: FakeSource
    ) -> None:
        source.fail = True
        with pytest.raises(SourceError):
            await service.run_cycle()
        source.fail = False
        await service.run_cycle()
        assert service.status().last_error is None

    @pytest.mark.asyncio
    async def test_cycles_do_not_overlap(
        self, service: SyncService, source: FakeSource
    ) -> None:
        source.records = [glucose_record(utc(11, 30), 110)]
        await asyncio.gather(service.run_cycle(), service.run_cycle())
        # The second cycle starts after the first advanced the watermark
        assert source.calls[1][0] > source.calls[0][0]

    @pytest.mark.asyncio
    async def test_sync_profile(
        self, service: SyncService, source: FakeSource, destination: FakeDestination
    ) -> None:
        source.pump_settings = PumpSettings(basal_profile=[("00:00", 0.5)])
        await service.sync_profile()
        assert destination.profile["store"]["Diasend"]["basal"][0]["value"] == 0.5
        assert service.status().last_profile_sync_at == TEST_NOW

    @pytest.mark.asyncio
    async def test_aclose_closes_adapters(
        self, service: SyncService, source: FakeSource, destination: FakeDestination
    ) -> None:
        await service.aclose()
        assert source.closed
        assert destination.closed
