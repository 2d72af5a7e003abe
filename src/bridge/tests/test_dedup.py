"""Tests for treatment and entry deduplication."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from src.bridge.base import (
    CarbCorrection,
    CorrectionBolus,
    ManualGlucose,
    ResolvedMealBolus,
    SensorGlucose,
    TempBasal,
    UnresolvedMealBolus,
)
from src.bridge.errors import AmbiguousComparisonError
from src.bridge.sync.dedup import (
    InMemoryDedupCache,
    deduplicate,
    deduplicate_entries,
    is_treatment_equal,
)
from src.bridge.tests.conftest import TEST_DEVICE_LABEL, utc


def sample_treatments() -> list:
    return [
        ResolvedMealBolus(created_at=utc(16, 20, 27), device=TEST_DEVICE_LABEL, insulin=0.7, carbs=35),
        UnresolvedMealBolus(created_at=utc(17, 5), device=TEST_DEVICE_LABEL, insulin=1.5),
        CorrectionBolus(created_at=utc(18, 42, 11), device=TEST_DEVICE_LABEL, insulin=0.2),
        CarbCorrection(created_at=utc(11, 50, 40), device=TEST_DEVICE_LABEL, carbs=5),
        TempBasal(created_at=utc(22, 0), device=TEST_DEVICE_LABEL, rate=0.25, duration=360),
    ]


class TestTreatmentEquality:
    def test_ignores_destination_id(self) -> None:
        fresh = CorrectionBolus(created_at=utc(18, 42, 11), device=TEST_DEVICE_LABEL, insulin=0.2)
        stored = CorrectionBolus(
            created_at=utc(18, 42, 11), device=TEST_DEVICE_LABEL, insulin=0.2, id="abc123"
        )
        assert is_treatment_equal(fresh, stored)

    def test_different_event_types_never_match(self) -> None:
        bolus = CorrectionBolus(created_at=utc(12, 0), insulin=5)
        carb = CarbCorrection(created_at=utc(12, 0), carbs=5)
        assert not is_treatment_equal(bolus, carb)

    def test_unresolved_and_resolved_meal_bolus_differ_on_carbs(self) -> None:
        unresolved = UnresolvedMealBolus(created_at=utc(12, 0), insulin=1)
        resolved = ResolvedMealBolus(created_at=utc(12, 0), insulin=1, carbs=20)
        assert not is_treatment_equal(unresolved, resolved)

    def test_carbs_reference_is_not_a_key(self) -> None:
        a = ResolvedMealBolus(created_at=utc(12, 0), insulin=1, carbs=20, carbs_reference="x")
        b = ResolvedMealBolus(created_at=utc(12, 0), insulin=1, carbs=20)
        assert is_treatment_equal(a, b)

    def test_notes_are_compared(self) -> None:
        a = UnresolvedMealBolus(created_at=utc(12, 0), insulin=1, notes="Correction: 0.5")
        b = UnresolvedMealBolus(created_at=utc(12, 0), insulin=1)
        assert not is_treatment_equal(a, b)

    def test_temp_basal_compares_rate(self) -> None:
        a = TempBasal(created_at=utc(12, 0), rate=0.25, duration=360)
        b = TempBasal(created_at=utc(12, 0), rate=0.3, duration=360)
        assert not is_treatment_equal(a, b)

    def test_unknown_variant_fails_fast(self) -> None:
        @dataclass
        class NotATreatment:
            created_at: object = None

        with pytest.raises(AmbiguousComparisonError):
            is_treatment_equal(NotATreatment(), CarbCorrection(created_at=utc(1, 0), carbs=1))


class TestDeduplicate:
    def test_removes_persisted_copy_with_extra_fields(self) -> None:
        candidate = CarbCorrection(created_at=utc(11, 50, 40), device=TEST_DEVICE_LABEL, carbs=5)
        stored = CarbCorrection(
            created_at=utc(11, 50, 40), device=TEST_DEVICE_LABEL, carbs=5, id="6308f1c2"
        )
        assert deduplicate([candidate], [stored]) == []

    def test_self_dedup_is_empty(self) -> None:
        treatments = sample_treatments()
        assert deduplicate(treatments, treatments) == []

    def test_idempotent(self) -> None:
        candidates = sample_treatments()
        existing = candidates[1:3]
        once = deduplicate(candidates, existing)
        assert deduplicate(once, existing) == once
        assert len(once) == 3

    def test_keeps_input_order(self) -> None:
        candidates = sample_treatments()
        assert deduplicate(candidates, []) == candidates


class TestDeduplicateEntries:
    def test_drops_same_reading(self) -> None:
        fresh = SensorGlucose(date=utc(16, 15), value=142, device="G6 (SM12345678)")
        stored = SensorGlucose(date=utc(16, 15), value=142, device="G6 (SM12345678)", id="e1")
        assert deduplicate_entries([fresh], [stored]) == []

    def test_sgv_and_mbg_never_match(self) -> None:
        sgv = SensorGlucose(date=utc(16, 15), value=142)
        mbg = ManualGlucose(date=utc(16, 15), value=142)
        assert deduplicate_entries([sgv], [mbg]) == [sgv]

    def test_rejects_non_entries(self) -> None:
        with pytest.raises(AmbiguousComparisonError):
            deduplicate_entries([CarbCorrection(created_at=utc(1, 0), carbs=1)], [])  # type: ignore[list-item]


class TestInMemoryDedupCache:
    def test_mark_and_check(self) -> None:
        cache = InMemoryDedupCache(["a"])
        assert cache.is_seen("a")
        assert not cache.is_seen("b")
        cache.mark_seen("b")
        assert cache.is_seen("b")
        assert len(cache) == 2
        cache.clear()
        assert len(cache) == 0
