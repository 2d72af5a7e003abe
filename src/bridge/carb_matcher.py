"""Carb matcher — pair meal boli with the carb corrections that belong to them.

Diasend reports a meal bolus as two records: the insulin delivery and, a few
seconds to minutes earlier or later, the carbohydrate entry.  The matcher
pairs them by time proximity and merges the carbs into the bolus.

Matching is time-windowed, not exact: a carb correction qualifies for a bolus
when their timestamps differ by at most the configured threshold, in either
order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.bridge.base import (
    CarbCorrection,
    MealBolus,
    ResolvedMealBolus,
    UnresolvedMealBolus,
)
from src.bridge.config_loader import BridgeConfig, get_bridge_config
from src.bridge.timeutils import abs_diff

logger = logging.getLogger("bridge.carb_matcher")


@dataclass
class MergeResult:
    """Outcome of one merge pass.

    Attributes:
        meal_boli: All input boli in input order; matched ones are resolved.
        consumed:  Carb corrections merged into a bolus.  These must not be
                   published on their own; persisted ones must be deleted.
    """

    meal_boli: list[MealBolus] = field(default_factory=list)
    consumed: list[CarbCorrection] = field(default_factory=list)

    @property
    def unmatched(self) -> list[UnresolvedMealBolus]:
        return [b for b in self.meal_boli if isinstance(b, UnresolvedMealBolus)]

    @property
    def resolved(self) -> list[ResolvedMealBolus]:
        return [b for b in self.meal_boli if isinstance(b, ResolvedMealBolus)]


def _is_within_threshold(
    bolus: MealBolus, carb_correction: CarbCorrection, threshold: timedelta
) -> bool:
    return abs_diff(bolus.created_at, carb_correction.created_at) <= threshold


class CarbMatcher:
    """Merge carb corrections into nearby meal boli.

    Uses ``BridgeConfig.matching.threshold``.

    Usage::

        matcher = CarbMatcher()
        result = matcher.merge(meal_boli, carb_corrections)
        for bolus in result.unmatched:
            ...  # retried next cycle
    """

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self._config = config or get_bridge_config()

    @property
    def threshold(self) -> timedelta:
        return self._config.matching.threshold

    def candidates_for(
        self, bolus: MealBolus, carb_corrections: list[CarbCorrection]
    ) -> list[CarbCorrection]:
        """Return the carb corrections within the threshold, nearest first."""
        within = [
            c for c in carb_corrections if _is_within_threshold(bolus, c, self.threshold)
        ]
        # sorted() is stable, so input order breaks remaining ties
        return sorted(
            within,
            key=lambda c: (abs_diff(bolus.created_at, c.created_at), c.created_at),
        )

    def merge(
        self, meal_boli: list[MealBolus], carb_corrections: list[CarbCorrection]
    ) -> MergeResult:
        """Resolve unresolved meal boli against the candidate carb corrections.

        Algorithm:
            1. Collect every (bolus, carb) pair within the threshold.
            2. Order pairs by |Δt|, then carb timestamp (earlier carbs win
               exact ties), then bolus and carb input order.
            3. Claim pairs greedily; a carb correction is consumed by at most
               one bolus and a bolus takes at most one carb correction.

        Already-resolved boli pass through unchanged.

        Args:
            meal_boli:        Meal bolus sketches of the current batch.
            carb_corrections: Candidate pool, new and persisted.

        Returns:
            MergeResult with boli in input order and the consumed carbs.
        """
        pairs: list[tuple[timedelta, datetime, int, int]] = []
        for b_idx, bolus in enumerate(meal_boli):
            if not isinstance(bolus, UnresolvedMealBolus):
                continue
            for c_idx, carb in enumerate(carb_corrections):
                if _is_within_threshold(bolus, carb, self.threshold):
                    delta = abs_diff(bolus.created_at, carb.created_at)
                    pairs.append((delta, carb.created_at, b_idx, c_idx))

        pairs.sort()

        assigned: dict[int, int] = {}
        used_carbs: set[int] = set()
        for _, _, b_idx, c_idx in pairs:
            if b_idx in assigned or c_idx in used_carbs:
                continue
            assigned[b_idx] = c_idx
            used_carbs.add(c_idx)

        result = MergeResult()
        for b_idx, bolus in enumerate(meal_boli):
            if b_idx in assigned:
                carb = carb_corrections[assigned[b_idx]]
                result.meal_boli.append(bolus.resolve(carb))  # type: ignore[union-attr]
                result.consumed.append(carb)
            else:
                if isinstance(bolus, UnresolvedMealBolus):
                    logger.warning(
                        "No carb correction within %s of meal bolus %s; retrying next cycle",
                        self.threshold,
                        bolus.reference,
                    )
                result.meal_boli.append(bolus)

        logger.debug(
            "CarbMatcher: %d boli, %d candidates → %d merged",
            len(meal_boli),
            len(carb_corrections),
            len(result.consumed),
        )
        return result
