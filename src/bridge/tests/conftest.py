"""Shared fixtures, record factories and in-memory collaborators for bridge tests."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.bridge.base import (
    BasalRecord,
    BolusRecord,
    CarbRecord,
    DestinationAdapter,
    Device,
    Entry,
    EntryFilter,
    GlucoseRecord,
    PumpSettings,
    RecordFlag,
    SourceAdapter,
    Treatment,
    TreatmentFilter,
)
from src.bridge.config_loader import BridgeConfig, load_bridge_config
from src.bridge.errors import DestinationError, SourceError

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test values
TEST_NOW = datetime(2022, 8, 26, 12, 0, 0, tzinfo=timezone.utc)
TEST_DEVICE = Device(serial="1234567890", manufacturer="Ypsomed", model="mylife YpsoPump")
TEST_DEVICE_LABEL = "mylife YpsoPump (1234567890)"
TEST_CGM = Device(serial="SM12345678", manufacturer="Dexcom", model="G6")


def utc(hour: int, minute: int, second: int = 0, day: int = 26) -> datetime:
    """Aware UTC datetime on the canonical test day."""
    return datetime(2022, 8, day, hour, minute, second, tzinfo=timezone.utc)


def local(value: datetime) -> datetime:
    """Naive local time for an aware datetime, as Diasend reports it."""
    return value.astimezone().replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Raw record factories
# ---------------------------------------------------------------------------


def glucose_record(at: datetime, value: float, manual: bool = False) -> GlucoseRecord:
    flags = (RecordFlag(flag=126, description="Manual"),) if manual else ()
    return GlucoseRecord(created_at=local(at), device=TEST_CGM, flags=flags, value=value)


def bolus_record(
    at: datetime,
    total: float,
    meal: float | None = None,
    correction: float | None = None,
) -> BolusRecord:
    return BolusRecord(
        created_at=local(at),
        device=TEST_DEVICE,
        total_value=total,
        programmed_meal=meal,
        programmed_bg_correction=correction,
    )


def basal_record(at: datetime, rate: float) -> BasalRecord:
    return BasalRecord(created_at=local(at), device=TEST_DEVICE, value=rate)


def carb_record(at: datetime, value: str) -> CarbRecord:
    return CarbRecord(created_at=local(at), device=TEST_DEVICE, value=value)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeSource(SourceAdapter):
    """Serves a fixed list of raw records, filtered by the requested window."""

    SOURCE_ID = "fake"

    def __init__(self, records=None, pump_settings: PumpSettings | None = None) -> None:
        self.records = list(records or [])
        self.pump_settings = pump_settings
        self.fail = False
        self.calls: list[tuple[datetime, datetime]] = []
        self.closed = False

    async def fetch_records(self, date_from, date_to):
        self.calls.append((date_from, date_to))
        if self.fail:
            raise SourceError("Diasend unavailable")
        return [r for r in self.records if date_from <= r.created_at_utc <= date_to]

    async def fetch_pump_settings(self):
        return self.pump_settings

    async def aclose(self) -> None:
        self.closed = True


class FakeDestination(DestinationAdapter):
    """In-memory Nightscout that assigns ``_id`` values and records writes.

    Set ``fail_on`` to a set of method names to make them raise DestinationError.
    """

    def __init__(self, treatments=None, entries=None, profile: dict | None = None) -> None:
        self._next_id = 0
        self.treatments: list[Treatment] = [self._with_id(t) for t in treatments or []]
        self.entries: list[Entry] = [self._with_id(e) for e in entries or []]
        self.profile = profile if profile is not None else {"_id": "p1", "store": {}}
        self.fail_on: set[str] = set()
        self.created_treatments: list[Treatment] = []
        self.created_entries: list[Entry] = []
        self.deleted_filters: list[TreatmentFilter] = []
        self.closed = False

    def _with_id(self, record):
        if record.id is not None:
            return record
        self._next_id += 1
        return replace(record, id=f"id{self._next_id}")

    def _check(self, method: str) -> None:
        if method in self.fail_on:
            raise DestinationError(f"Nightscout {method} failed")

    @staticmethod
    def _treatment_matches(t: Treatment, filters: TreatmentFilter) -> bool:
        return (
            (filters.date_from is None or t.created_at >= filters.date_from)
            and (filters.date_to is None or t.created_at <= filters.date_to)
            and (filters.event_type is None or t.event_type == filters.event_type)
            and (filters.app is None or t.app == filters.app)
            and (filters.id is None or t.id == filters.id)
        )

    async def fetch_treatments(self, filters):
        self._check("fetch_treatments")
        found = [t for t in self.treatments if self._treatment_matches(t, filters)]
        found.sort(key=lambda t: t.created_at, reverse=True)
        return found[: filters.count] if filters.count else found

    async def create_treatments(self, treatments):
        self._check("create_treatments")
        stored = [self._with_id(t) for t in treatments]
        self.treatments.extend(stored)
        self.created_treatments.extend(stored)
        return stored

    async def delete_treatments(self, filters):
        self._check("delete_treatments")
        self.deleted_filters.append(filters)
        self.treatments = [t for t in self.treatments if not self._treatment_matches(t, filters)]

    async def fetch_entries(self, filters: EntryFilter):
        self._check("fetch_entries")
        found = [
            e
            for e in self.entries
            if (filters.date_from is None or e.date >= filters.date_from)
            and (filters.date_to is None or e.date <= filters.date_to)
            and (filters.type is None or e.type == filters.type)
        ]
        found.sort(key=lambda e: e.date, reverse=True)
        return found[: filters.count] if filters.count else found

    async def create_entries(self, entries):
        self._check("create_entries")
        stored = [self._with_id(e) for e in entries]
        self.entries.extend(stored)
        self.created_entries.extend(stored)
        return stored

    async def fetch_profile(self):
        self._check("fetch_profile")
        return self.profile

    async def update_profile(self, profile):
        self._check("update_profile")
        self.profile = profile
        return profile

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bridge_config() -> BridgeConfig:
    """Load the real bridge config for tests."""
    return load_bridge_config()


@pytest.fixture
def clock():
    """Settable clock starting at TEST_NOW."""

    class _Clock:
        def __init__(self) -> None:
            self.now = TEST_NOW

        def __call__(self) -> datetime:
            return self.now

        def advance(self, **kwargs) -> None:
            self.now += timedelta(**kwargs)

    return _Clock()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def destination() -> FakeDestination:
    return FakeDestination()


@pytest.fixture
def diasend_patient_data() -> list:
    return json.loads((FIXTURES_DIR / "diasend_patient_data.json").read_text())


@pytest.fixture
def nightscout_treatments() -> list:
    return json.loads((FIXTURES_DIR / "nightscout_treatments.json").read_text())
