"""Canonical data models for the Diasend → Nightscout bridge.

Raw records are what the source cloud reports; treatments and entries are what
the reconciler derives and publishes.  Both sides are closed unions of frozen
dataclasses, so every consumer dispatches on the concrete type instead of
probing for optional fields.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Union

from src.bridge.timeutils import as_utc, to_iso

logger = logging.getLogger("bridge.base")

#: Value written to the ``app`` field of every published record.
DEFAULT_APP = "diasend"

#: Flag description the source uses for finger-stick readings.
MANUAL_GLUCOSE_FLAG = "Manual"


# ---------------------------------------------------------------------------
# Raw source records
# ---------------------------------------------------------------------------


class RecordKind(str, Enum):
    """Discriminator of raw source records."""

    GLUCOSE = "glucose"
    INSULIN_BOLUS = "insulin_bolus"
    INSULIN_BASAL = "insulin_basal"
    CARB = "carb"


@dataclass(frozen=True)
class Device:
    """Device that produced a raw record.

    Attributes:
        serial:       Device serial number.
        manufacturer: Manufacturer name.
        model:        Model name (e.g. 'mylife YpsoPump').
    """

    serial: str
    manufacturer: str
    model: str

    @property
    def label(self) -> str:
        """Device label used in the ``device`` field of published records."""
        return f"{self.model} ({self.serial})"


@dataclass(frozen=True)
class RecordFlag:
    flag: int
    description: str


@dataclass(frozen=True, kw_only=True)
class RawRecord:
    """A telemetry event exactly as received from the source.

    Never mutated.  ``created_at`` is naive local time because the source
    drops the UTC offset; it is interpreted in the local timezone of the
    process.

    Attributes:
        created_at: Naive local timestamp of the event.
        device:     Originating device.
        flags:      Source flags attached to the record.
    """

    KIND: ClassVar[RecordKind]

    created_at: datetime
    device: Device
    flags: tuple[RecordFlag, ...] = ()

    @property
    def kind(self) -> RecordKind:
        return self.KIND

    @property
    def created_at_utc(self) -> datetime:
        return as_utc(self.created_at)


@dataclass(frozen=True, kw_only=True)
class GlucoseRecord(RawRecord):
    KIND: ClassVar[RecordKind] = RecordKind.GLUCOSE

    value: float
    unit: str = "mg/dl"

    @property
    def is_manual(self) -> bool:
        return any(f.description == MANUAL_GLUCOSE_FLAG for f in self.flags)


@dataclass(frozen=True, kw_only=True)
class BolusRecord(RawRecord):
    """Insulin bolus.

    ``programmed_meal`` being present (zero included) marks a meal bolus;
    ``total_value`` is always the delivered amount.
    """

    KIND: ClassVar[RecordKind] = RecordKind.INSULIN_BOLUS

    total_value: float
    programmed_meal: float | None = None
    programmed_bg_correction: float | None = None

    @property
    def is_meal_bolus(self) -> bool:
        return self.programmed_meal is not None


@dataclass(frozen=True, kw_only=True)
class BasalRecord(RawRecord):
    """Momentary basal rate observation in U/h."""

    KIND: ClassVar[RecordKind] = RecordKind.INSULIN_BASAL

    value: float


@dataclass(frozen=True, kw_only=True)
class CarbRecord(RawRecord):
    """Carbohydrate intake.  The source reports the amount as text."""

    KIND: ClassVar[RecordKind] = RecordKind.CARB

    value: str


AnyRawRecord = Union[GlucoseRecord, BolusRecord, BasalRecord, CarbRecord]


# ---------------------------------------------------------------------------
# Treatments
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Nightscout ``eventType`` values produced by the bridge."""

    MEAL_BOLUS = "Meal Bolus"
    CORRECTION_BOLUS = "Correction Bolus"
    CARB_CORRECTION = "Carb Correction"
    TEMP_BASAL = "Temp Basal"


@dataclass(frozen=True, kw_only=True)
class BaseTreatment:
    """Fields shared by every treatment variant.

    Attributes:
        created_at: Aware UTC timestamp of the clinical event.
        device:     Device label, e.g. 'YpsoPump (1234567890)'.
        app:        Originating application.
        notes:      Free text notes.
        id:         Destination-assigned ``_id``; only set on persisted records.
    """

    EVENT_TYPE: ClassVar[EventType]

    created_at: datetime
    device: str | None = None
    app: str = DEFAULT_APP
    notes: str | None = None
    id: str | None = None

    @property
    def event_type(self) -> EventType:
        return self.EVENT_TYPE

    @property
    def reference(self) -> str:
        """Stable diagnostic string identifying this treatment across runs."""
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class UnresolvedMealBolus(BaseTreatment):
    """Meal bolus whose carbohydrates have not been matched yet."""

    EVENT_TYPE: ClassVar[EventType] = EventType.MEAL_BOLUS

    insulin: float

    @property
    def carbs(self) -> None:
        return None

    @property
    def reference(self) -> str:
        return f"{to_iso(self.created_at)} ?g {format_number(self.insulin)}U"

    def resolve(self, carb_correction: CarbCorrection) -> ResolvedMealBolus:
        """Merge the carbs of ``carb_correction`` into this bolus."""
        return ResolvedMealBolus(
            created_at=self.created_at,
            device=self.device,
            app=self.app,
            notes=self.notes,
            id=self.id,
            insulin=self.insulin,
            carbs=carb_correction.carbs,
            carbs_reference=carb_correction.reference,
        )


@dataclass(frozen=True, kw_only=True)
class ResolvedMealBolus(BaseTreatment):
    """Meal bolus with its carbohydrates merged in.

    ``carbs_reference`` is the reference of the consumed carb correction.  It
    may be missing on records created by other tools.
    """

    EVENT_TYPE: ClassVar[EventType] = EventType.MEAL_BOLUS

    insulin: float
    carbs: float
    carbs_reference: str | None = None

    @property
    def reference(self) -> str:
        return (
            f"{to_iso(self.created_at)} {format_number(self.carbs)}g "
            f"{format_number(self.insulin)}U"
        )


@dataclass(frozen=True, kw_only=True)
class CorrectionBolus(BaseTreatment):
    EVENT_TYPE: ClassVar[EventType] = EventType.CORRECTION_BOLUS

    insulin: float

    @property
    def reference(self) -> str:
        return f"{to_iso(self.created_at)} {format_number(self.insulin)}U"


@dataclass(frozen=True, kw_only=True)
class CarbCorrection(BaseTreatment):
    """Carbohydrate intake that is not (yet) tied to a bolus."""

    EVENT_TYPE: ClassVar[EventType] = EventType.CARB_CORRECTION

    carbs: float

    @property
    def reference(self) -> str:
        return f"{to_iso(self.created_at)} {format_number(self.carbs)}g"


@dataclass(frozen=True, kw_only=True)
class TempBasal(BaseTreatment):
    """Temporary basal rate.

    The source reports no duration, so ``duration`` is a configured constant
    long enough for Nightscout to keep the event.
    """

    EVENT_TYPE: ClassVar[EventType] = EventType.TEMP_BASAL

    rate: float
    duration: int

    @property
    def reference(self) -> str:
        return (
            f"{to_iso(self.created_at)} {format_number(self.rate)}U "
            f"{self.duration}min"
        )


MealBolus = Union[UnresolvedMealBolus, ResolvedMealBolus]
Treatment = Union[
    UnresolvedMealBolus, ResolvedMealBolus, CorrectionBolus, CarbCorrection, TempBasal
]


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class BaseEntry:
    """Glucose entry shared fields.

    Attributes:
        date:   Aware UTC timestamp of the reading.
        value:  Glucose value in mg/dl.
        device: Device label.
        app:    Originating application.
        id:     Destination-assigned ``_id``.
    """

    ENTRY_TYPE: ClassVar[str]

    date: datetime
    value: float
    device: str | None = None
    app: str = DEFAULT_APP
    id: str | None = None

    @property
    def type(self) -> str:
        return self.ENTRY_TYPE


@dataclass(frozen=True, kw_only=True)
class SensorGlucose(BaseEntry):
    ENTRY_TYPE: ClassVar[str] = "sgv"

    # Diasend does not report a trend
    direction: str | None = None


@dataclass(frozen=True, kw_only=True)
class ManualGlucose(BaseEntry):
    ENTRY_TYPE: ClassVar[str] = "mbg"


Entry = Union[SensorGlucose, ManualGlucose]


# ---------------------------------------------------------------------------
# Pump settings
# ---------------------------------------------------------------------------


@dataclass
class PumpSettings:
    """Pump configuration as reported by the source.

    Schedules are lists of ``("HH:MM[:SS]", value)`` pairs in start-time order.

    Attributes:
        basal_profile:               Active basal program (U/h).
        insulin_carb_ratio_profile:  I:C ratios (g/U).
        insulin_sensitivity_profile: ISF values.
        blood_glucose_target_low:    Lower BG goal.
        blood_glucose_target_high:   Upper BG goal.
        insulin_on_board_hours:      Duration of insulin action.
        units:                       'mg/dl' or 'mmol/l'.
    """

    basal_profile: list[tuple[str, float]] = field(default_factory=list)
    insulin_carb_ratio_profile: list[tuple[str, float]] = field(default_factory=list)
    insulin_sensitivity_profile: list[tuple[str, float]] = field(default_factory=list)
    blood_glucose_target_low: float | None = None
    blood_glucose_target_high: float | None = None
    insulin_on_board_hours: float | None = None
    units: str | None = None


def format_number(value: float) -> str:
    """Render a number the way it appears in references and notes (5, 0.25)."""
    return f"{value:g}"


# ---------------------------------------------------------------------------
# Collaborator filters
# ---------------------------------------------------------------------------


@dataclass
class TreatmentFilter:
    """Query for Nightscout treatments.

    Attributes:
        date_from:  Inclusive lower bound on ``created_at``.
        date_to:    Inclusive upper bound on ``created_at``.
        event_type: Restrict to one event type.
        app:        Restrict to records created by this app.
        count:      Maximum number of records (newest first).
        id:         Restrict to a single ``_id``.
    """

    date_from: datetime | None = None
    date_to: datetime | None = None
    event_type: EventType | None = None
    app: str | None = None
    count: int | None = None
    id: str | None = None


@dataclass
class EntryFilter:
    """Query for Nightscout entries."""

    date_from: datetime | None = None
    date_to: datetime | None = None
    type: str | None = None
    count: int | None = None


# ---------------------------------------------------------------------------
# Abstract collaborators
# ---------------------------------------------------------------------------


class SourceAdapter(ABC):
    """Abstract source of raw telemetry (the Diasend cloud).

    Subclasses must implement:
        - fetch_records()

    Optional overrides (return None by default):
        - fetch_pump_settings()
    """

    #: Unique slug of the source.
    SOURCE_ID: str = "unknown"

    @abstractmethod
    async def fetch_records(self, date_from: datetime, date_to: datetime) -> list[AnyRawRecord]:
        """Fetch raw records created between ``date_from`` and ``date_to``.

        Raises:
            SourceError: On authentication, transport or payload failures.
        """

    async def fetch_pump_settings(self) -> PumpSettings | None:
        """Fetch the pump configuration if the source supports it.

        Default returns None.
        """
        return None

    async def aclose(self) -> None:
        """Release network resources."""


class DestinationAdapter(ABC):
    """Abstract destination of derived records (a Nightscout instance).

    Every method raises ``DestinationError`` on failure.
    """

    @abstractmethod
    async def fetch_treatments(self, filters: TreatmentFilter) -> list[Treatment]:
        """Return treatments matching ``filters``, newest first."""

    @abstractmethod
    async def create_treatments(self, treatments: list[Treatment]) -> list[Treatment]:
        """Store treatments and return them with their assigned ``_id``."""

    @abstractmethod
    async def delete_treatments(self, filters: TreatmentFilter) -> None:
        """Delete all treatments matching ``filters``."""

    @abstractmethod
    async def fetch_entries(self, filters: EntryFilter) -> list[Entry]:
        """Return glucose entries matching ``filters``, newest first."""

    @abstractmethod
    async def create_entries(self, entries: list[Entry]) -> list[Entry]:
        """Store glucose entries."""

    @abstractmethod
    async def fetch_profile(self) -> dict:
        """Return the active profile document."""

    @abstractmethod
    async def update_profile(self, profile: dict) -> dict:
        """Store a profile document and return the stored version."""

    async def aclose(self) -> None:
        """Release network resources."""
