"""Deduplication of derived records against what Nightscout already stores.

Fetch windows of consecutive cycles overlap, so the same raw record is often
derived more than once.  A freshly derived record and its persisted copy never
compare equal structurally (the destination adds ``_id``, offsets and default
nulls), so equality is evaluated on a per-variant subset of fields.

Matching keys:
    - all treatments:   created_at, device, app, notes
    - Meal Bolus:       + carbs, insulin
    - Correction Bolus: + insulin
    - Carb Correction:  + carbs
    - Temp Basal:       + rate, duration
    - entries:          type, date, value, device
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from src.bridge.base import BaseEntry, BaseTreatment, Entry, EventType, Treatment
from src.bridge.errors import AmbiguousComparisonError

logger = logging.getLogger("bridge.sync.dedup")

BASE_MATCHING_KEYS: tuple[str, ...] = ("created_at", "device", "app", "notes")

MATCHING_KEYS: dict[EventType, tuple[str, ...]] = {
    EventType.MEAL_BOLUS: BASE_MATCHING_KEYS + ("carbs", "insulin"),
    EventType.CORRECTION_BOLUS: BASE_MATCHING_KEYS + ("insulin",),
    EventType.CARB_CORRECTION: BASE_MATCHING_KEYS + ("carbs",),
    EventType.TEMP_BASAL: BASE_MATCHING_KEYS + ("rate", "duration"),
}

ENTRY_MATCHING_KEYS: tuple[str, ...] = ("type", "date", "value", "device")


def is_subset_equal(a: Any, b: Any, keys: Iterable[str]) -> bool:
    """Return True if ``a`` and ``b`` agree on every attribute in ``keys``.

    Missing attributes compare as None.
    """
    return all(getattr(a, key, None) == getattr(b, key, None) for key in keys)


def matching_keys(treatment: Treatment) -> tuple[str, ...]:
    """Return the comparison keys for a treatment's variant.

    Raises:
        AmbiguousComparisonError: If the object is not a known treatment variant.
    """
    if not isinstance(treatment, BaseTreatment):
        raise AmbiguousComparisonError(
            f"Cannot compare non-treatment object of type {type(treatment).__name__}"
        )
    keys = MATCHING_KEYS.get(getattr(treatment, "EVENT_TYPE", None))
    if keys is None:
        raise AmbiguousComparisonError(
            f"No matching keys defined for {type(treatment).__name__}"
        )
    return keys


def is_treatment_equal(a: Treatment, b: Treatment) -> bool:
    """Field-subset equality of two treatments.

    Treatments of different event types never match.  Both operands must be
    known variants; anything else is a defect and fails fast.

    Raises:
        AmbiguousComparisonError: If either operand has no key table.
    """
    keys_a = matching_keys(a)
    keys_b = matching_keys(b)
    if a.event_type != b.event_type:
        return False
    if keys_a != keys_b:
        raise AmbiguousComparisonError(
            f"{type(a).__name__} and {type(b).__name__} share event type "
            f"{a.event_type.value!r} but define different keys"
        )
    return is_subset_equal(a, b, keys_a)


def deduplicate(candidates: list[Treatment], existing: list[Treatment]) -> list[Treatment]:
    """Drop candidates that are already stored at the destination.

    Idempotent: ``deduplicate(deduplicate(x, y), y) == deduplicate(x, y)``.

    Args:
        candidates: Newly derived treatments.
        existing:   Treatments fetched from Nightscout for the same window.

    Returns:
        The surviving candidates, in input order.
    """
    survivors = [
        candidate
        for candidate in candidates
        if not any(is_treatment_equal(candidate, stored) for stored in existing)
    ]
    dropped = len(candidates) - len(survivors)
    if dropped:
        logger.debug("Dedup: dropped %d of %d treatments", dropped, len(candidates))
    return survivors


def deduplicate_entries(candidates: list[Entry], existing: list[Entry]) -> list[Entry]:
    """Drop glucose entries already stored at the destination."""
    survivors = []
    for candidate in candidates:
        if not isinstance(candidate, BaseEntry):
            raise AmbiguousComparisonError(
                f"Cannot compare non-entry object of type {type(candidate).__name__}"
            )
        if any(is_subset_equal(candidate, stored, ENTRY_MATCHING_KEYS) for stored in existing):
            continue
        survivors.append(candidate)
    dropped = len(candidates) - len(survivors)
    if dropped:
        logger.debug("Dedup: dropped %d of %d entries", dropped, len(candidates))
    return survivors


class InMemoryDedupCache:
    """Set of treatment references already handled in one sync session.

    Not a replacement for ``deduplicate`` against the destination — that is
    the authoritative mechanism.  The reconciler uses it to track which carb
    corrections have been claimed by a meal bolus within a cycle.

    Usage::

        cache = InMemoryDedupCache(existing_references)
        if cache.is_seen(carb.reference):
            ...  # already merged into a meal bolus
    """

    def __init__(self, keys: Iterable[str] = ()) -> None:
        self._seen: set[str] = set(keys)

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
