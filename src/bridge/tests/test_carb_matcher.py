"""Tests for meal bolus / carb correction matching."""

from __future__ import annotations

from datetime import datetime

import pytest

from src.bridge.base import CarbCorrection, ResolvedMealBolus, UnresolvedMealBolus
from src.bridge.carb_matcher import CarbMatcher
from src.bridge.classifier import RecordClassifier
from src.bridge.config_loader import BridgeConfig
from src.bridge.tests.conftest import TEST_DEVICE_LABEL, bolus_record, carb_record, utc


@pytest.fixture
def matcher(bridge_config: BridgeConfig) -> CarbMatcher:
    return CarbMatcher(bridge_config)


def meal_bolus(at: datetime, insulin: float = 1.0) -> UnresolvedMealBolus:
    return UnresolvedMealBolus(created_at=at, device=TEST_DEVICE_LABEL, insulin=insulin)


def carbs(at: datetime, grams: float) -> CarbCorrection:
    return CarbCorrection(created_at=at, device=TEST_DEVICE_LABEL, carbs=grams)


class TestMergeWithinThreshold:
    def test_single_pair_merges(self, matcher: CarbMatcher) -> None:
        bolus = meal_bolus(utc(11, 30))
        carb = carbs(utc(11, 25), 30)
        result = matcher.merge([bolus], [carb])

        assert len(result.meal_boli) == 1
        merged = result.meal_boli[0]
        assert isinstance(merged, ResolvedMealBolus)
        assert merged.carbs == 30
        assert merged.insulin == 1.0
        assert merged.carbs_reference == "2022-08-26T11:25:00.000Z 30g"
        assert result.consumed == [carb]

    def test_carb_after_bolus_also_matches(self, matcher: CarbMatcher) -> None:
        result = matcher.merge([meal_bolus(utc(11, 30))], [carbs(utc(11, 39, 59), 12)])
        assert result.resolved[0].carbs == 12

    def test_exact_threshold_is_inclusive(self, matcher: CarbMatcher) -> None:
        result = matcher.merge([meal_bolus(utc(11, 30))], [carbs(utc(11, 40), 12)])
        assert len(result.resolved) == 1

    def test_resolve_keeps_notes(self) -> None:
        bolus = UnresolvedMealBolus(
            created_at=utc(9, 28, 55), insulin=0.3, notes="Correction: -0.1"
        )
        resolved = bolus.resolve(carbs(utc(9, 28, 50), 5))
        assert resolved.notes == "Correction: -0.1"
        assert resolved.reference == "2022-08-26T09:28:55.000Z 5g 0.3U"


class TestMergeOutsideThreshold:
    def test_distant_carb_leaves_both_unchanged(self, matcher: CarbMatcher) -> None:
        bolus = meal_bolus(utc(11, 30))
        carb = carbs(utc(11, 40, 1), 20)
        result = matcher.merge([bolus], [carb])

        assert result.meal_boli == [bolus]
        assert result.meal_boli[0].carbs is None
        assert result.consumed == []
        assert result.unmatched == [bolus]

    def test_unmatched_bolus_is_logged(
        self, matcher: CarbMatcher, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level("WARNING", logger="bridge.carb_matcher"):
            matcher.merge([meal_bolus(utc(11, 30))], [])
        assert "retrying next cycle" in caplog.text


class TestNearestCandidateWins:
    def test_closer_carb_selected(self, matcher: CarbMatcher) -> None:
        near = carbs(utc(11, 31), 10)
        far = carbs(utc(11, 25), 40)
        result = matcher.merge([meal_bolus(utc(11, 30))], [far, near])
        assert result.resolved[0].carbs == 10
        assert result.consumed == [near]

    def test_equal_distance_prefers_earlier_carb(self, matcher: CarbMatcher) -> None:
        before = carbs(utc(11, 28), 15)
        after = carbs(utc(11, 32), 25)
        result = matcher.merge([meal_bolus(utc(11, 30))], [after, before])
        assert result.resolved[0].carbs == 15

    def test_carb_consumed_at_most_once(self, matcher: CarbMatcher) -> None:
        first = meal_bolus(utc(11, 30), insulin=1.0)
        second = meal_bolus(utc(11, 33), insulin=2.0)
        carb = carbs(utc(11, 32), 20)
        result = matcher.merge([first, second], [carb])

        # The second bolus is 1 minute away, the first 2 minutes
        assert isinstance(result.meal_boli[0], UnresolvedMealBolus)
        assert isinstance(result.meal_boli[1], ResolvedMealBolus)
        assert result.consumed == [carb]

    def test_global_assignment_gives_each_bolus_a_carb(self, matcher: CarbMatcher) -> None:
        first = meal_bolus(utc(11, 30), insulin=1.0)
        second = meal_bolus(utc(11, 36), insulin=2.0)
        shared = carbs(utc(11, 34), 20)
        only_first = carbs(utc(11, 27), 10)
        result = matcher.merge([first, second], [only_first, shared])

        assert [b.carbs for b in result.meal_boli] == [10, 20]
        assert len(result.consumed) == 2

    def test_output_preserves_bolus_order(self, matcher: CarbMatcher) -> None:
        late = meal_bolus(utc(15, 0), insulin=3.0)
        early = meal_bolus(utc(8, 0), insulin=1.0)
        result = matcher.merge([late, early], [carbs(utc(8, 1), 30)])
        assert [b.insulin for b in result.meal_boli] == [3.0, 1.0]

    def test_resolved_bolus_passes_through(self, matcher: CarbMatcher) -> None:
        resolved = ResolvedMealBolus(created_at=utc(11, 30), insulin=1.0, carbs=20)
        carb = carbs(utc(11, 31), 10)
        result = matcher.merge([resolved], [carb])
        assert result.meal_boli == [resolved]
        assert result.consumed == []

    def test_candidates_for_sorted_nearest_first(self, matcher: CarbMatcher) -> None:
        bolus = meal_bolus(utc(11, 30))
        pool = [carbs(utc(11, 21), 1), carbs(utc(11, 35), 2), carbs(utc(11, 29), 3)]
        assert [c.carbs for c in matcher.candidates_for(bolus, pool)] == [3, 2, 1]


class TestMergeScenario:
    def test_two_carbs_one_bolus(
        self, matcher: CarbMatcher, bridge_config: BridgeConfig
    ) -> None:
        """10 g at 13:28:00, 5 g at 13:28:55, bolus at 13:28:58 → bolus takes 5 g."""
        classifier = RecordClassifier(bridge_config)
        batch = classifier.classify_batch(
            [
                carb_record(utc(11, 28, 0), "10"),
                carb_record(utc(11, 28, 55), "5"),
                bolus_record(utc(11, 28, 58), 0.1, meal=0.1),
            ]
        )
        carb_candidates = [t for t in batch.treatments if isinstance(t, CarbCorrection)]
        boli = [t for t in batch.treatments if isinstance(t, UnresolvedMealBolus)]
        assert len(carb_candidates) == 2

        result = matcher.merge(boli, carb_candidates)
        survivors = [c for c in carb_candidates if c not in result.consumed]

        assert len(result.resolved) == 1
        assert result.resolved[0].insulin == 0.1
        assert result.resolved[0].carbs == 5
        assert [c.carbs for c in survivors] == [10]
