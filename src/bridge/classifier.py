"""Classify raw Diasend records into Nightscout treatments and entries.

``classify`` is a pure function over a single record.  ``classify_batch``
applies it to a fetched batch and scopes ``MalformedValueError`` to the
offending record so one bad carb entry never sinks a whole cycle.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

from src.bridge.base import (
    AnyRawRecord,
    BasalRecord,
    BolusRecord,
    CarbCorrection,
    CarbRecord,
    CorrectionBolus,
    Entry,
    GlucoseRecord,
    ManualGlucose,
    RawRecord,
    SensorGlucose,
    TempBasal,
    Treatment,
    UnresolvedMealBolus,
    format_number,
)
from src.bridge.config_loader import BridgeConfig, get_bridge_config
from src.bridge.errors import MalformedValueError

logger = logging.getLogger("bridge.classifier")


@dataclass
class ClassifiedBatch:
    """Result of classifying one fetched batch.

    Attributes:
        treatments: Treatment sketches in source order.
        entries:    Glucose entries in source order.
        rejected:   Records dropped because of malformed values.
    """

    treatments: list[Treatment] = field(default_factory=list)
    entries: list[Entry] = field(default_factory=list)
    rejected: list[AnyRawRecord] = field(default_factory=list)


def parse_carbs(value: str) -> float:
    """Parse the textual carb amount reported by Diasend.

    Raises:
        MalformedValueError: If the text is not a finite, non-negative number.
    """
    try:
        carbs = float(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise MalformedValueError(f"Carb amount is not a number: {value!r}") from exc
    if not math.isfinite(carbs) or carbs < 0:
        raise MalformedValueError(f"Carb amount out of range: {value!r}")
    return carbs


class RecordClassifier:
    """Map raw records to treatment/entry sketches.

    Usage::

        classifier = RecordClassifier()
        batch = classifier.classify_batch(records)
    """

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self._config = config or get_bridge_config()

    def classify(self, record: AnyRawRecord) -> Treatment | Entry:
        """Convert one raw record.

        Raises:
            MalformedValueError: For carb records with an unparseable amount.
            TypeError:           For objects outside the raw record union.
        """
        if not isinstance(record, RawRecord):
            raise TypeError(f"Unsupported record type: {type(record).__name__}")

        app = self._config.treatments.app
        device = record.device.label
        created_at = record.created_at_utc

        if isinstance(record, GlucoseRecord):
            if record.is_manual:
                return ManualGlucose(date=created_at, value=record.value, device=device, app=app)
            return SensorGlucose(date=created_at, value=record.value, device=device, app=app)

        if isinstance(record, BasalRecord):
            return TempBasal(
                created_at=created_at,
                device=device,
                app=app,
                rate=record.value,
                duration=self._config.treatments.temp_basal_duration_minutes,
            )

        if isinstance(record, CarbRecord):
            try:
                carbs = parse_carbs(record.value)
            except MalformedValueError as exc:
                exc.record = record
                raise
            return CarbCorrection(created_at=created_at, device=device, app=app, carbs=carbs)

        if isinstance(record, BolusRecord):
            if record.is_meal_bolus:
                notes = None
                if record.programmed_bg_correction:
                    notes = f"Correction: {format_number(record.programmed_bg_correction)}"
                # Carbs arrive as a separate record and are merged later
                return UnresolvedMealBolus(
                    created_at=created_at,
                    device=device,
                    app=app,
                    notes=notes,
                    insulin=record.total_value,
                )
            return CorrectionBolus(
                created_at=created_at, device=device, app=app, insulin=record.total_value
            )

        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    def classify_batch(self, records: list[AnyRawRecord]) -> ClassifiedBatch:
        """Classify a batch, dropping records with malformed values."""
        batch = ClassifiedBatch()
        for record in records:
            try:
                result = self.classify(record)
            except MalformedValueError as exc:
                logger.warning(
                    "Dropping %s record from %s: %s",
                    record.kind.value,
                    record.created_at.isoformat(),
                    exc,
                )
                batch.rejected.append(record)
                continue

            if isinstance(result, (SensorGlucose, ManualGlucose)):
                batch.entries.append(result)
            else:
                batch.treatments.append(result)

        logger.debug(
            "Classified %d records → %d treatments, %d entries, %d rejected",
            len(records),
            len(batch.treatments),
            len(batch.entries),
            len(batch.rejected),
        )
        return batch


def classify(record: AnyRawRecord, config: BridgeConfig | None = None) -> Treatment | Entry:
    """Module-level shortcut for ``RecordClassifier(config).classify(record)``."""
    return RecordClassifier(config).classify(record)
