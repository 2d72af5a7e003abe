"""Reconciler — one polling cycle from raw Diasend records to Nightscout writes.

Cycle:
    1. Fetch raw records after the watermark
    2. Classify them into treatment and entry sketches
    3. Read the Nightscout snapshot for the affected window (before any write)
    4. Merge meal boli with carb corrections, new and persisted
    5. Hold back young unmatched meal boli
    6. Deduplicate against the snapshot
    7. Publish: create entries/treatments, delete consumed carb corrections
    8. Advance the watermark

A cycle either completes or raises; the caller keeps the old watermark on
failure, so the next poll re-fetches the same window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.bridge.base import (
    CarbCorrection,
    DestinationAdapter,
    Entry,
    EntryFilter,
    EventType,
    MealBolus,
    ResolvedMealBolus,
    SourceAdapter,
    Treatment,
    TreatmentFilter,
    UnresolvedMealBolus,
)
from src.bridge.carb_matcher import CarbMatcher
from src.bridge.classifier import ClassifiedBatch, RecordClassifier
from src.bridge.config_loader import BridgeConfig, get_bridge_config
from src.bridge.sync.dedup import (
    BASE_MATCHING_KEYS,
    InMemoryDedupCache,
    deduplicate,
    deduplicate_entries,
    is_subset_equal,
    is_treatment_equal,
)
from src.bridge.timeutils import utc_now

logger = logging.getLogger("bridge.reconciler")

#: Identity of a meal bolus independent of its merge state.
MEAL_BOLUS_IDENTITY_KEYS: tuple[str, ...] = BASE_MATCHING_KEYS + ("insulin",)

_ONE_SECOND = timedelta(seconds=1)


@dataclass
class PublishPlan:
    """Side effects decided for one cycle.

    Attributes:
        treatments: Treatments to create, deduplicated.
        entries:    Entries to create, deduplicated.
        deletions:  Persisted carb corrections to delete by ``_id``.
        held_back:  Unmatched meal boli withheld until carbs can arrive.
    """

    treatments: list[Treatment] = field(default_factory=list)
    entries: list[Entry] = field(default_factory=list)
    deletions: list[CarbCorrection] = field(default_factory=list)
    held_back: list[UnresolvedMealBolus] = field(default_factory=list)


@dataclass
class CycleResult:
    """Outcome of one successful cycle.

    Attributes:
        watermark:           Watermark to use for the next cycle.
        date_from:           Lower bound of the fetch window.
        date_to:             Upper bound of the fetch window.
        fetched:             Raw records received from the source.
        rejected:            Records dropped as malformed.
        created_treatments:  Treatments written to Nightscout.
        created_entries:     Entries written to Nightscout.
        deleted_treatments:  Carb corrections deleted after merging.
        held_back:           Meal boli withheld for a later cycle.
        finished_at:         UTC completion time.
    """

    watermark: datetime
    date_from: datetime
    date_to: datetime
    fetched: int = 0
    rejected: int = 0
    created_treatments: int = 0
    created_entries: int = 0
    deleted_treatments: int = 0
    held_back: int = 0
    finished_at: datetime = field(default_factory=utc_now)


class Reconciler:
    """Run reconciliation cycles between a source and a destination.

    Usage::

        reconciler = Reconciler(DiasendAdapter(...), NightscoutAdapter(...))
        watermark = await reconciler.initial_watermark()
        result = await reconciler.run_cycle(watermark)
        watermark = result.watermark
    """

    def __init__(
        self,
        source: SourceAdapter,
        destination: DestinationAdapter,
        config: BridgeConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._destination = destination
        self._config = config or get_bridge_config()
        self._clock = clock or utc_now
        self._classifier = RecordClassifier(self._config)
        self._matcher = CarbMatcher(self._config)

    @property
    def app(self) -> str:
        return self._config.treatments.app

    async def aclose(self) -> None:
        await self._source.aclose()
        await self._destination.aclose()

    # ------------------------------------------------------------------
    # Watermark bootstrap
    # ------------------------------------------------------------------

    async def initial_watermark(self) -> datetime:
        """Derive a start watermark from what Nightscout already has.

        Looks up the newest bridge treatment of each event type and the newest
        sensor glucose entry, and returns the earliest of those dates, so no
        stream is skipped.  Never looks back further than ``max_lookback_hours``.
        """
        now = self._clock()
        floor = now - self._config.polling.max_lookback

        lookups = [
            self._destination.fetch_treatments(
                TreatmentFilter(event_type=event_type, app=self.app, count=1)
            )
            for event_type in EventType
        ]
        treatment_results = await asyncio.gather(*lookups)
        entries = await self._destination.fetch_entries(EntryFilter(type="sgv", count=1))

        latest: list[datetime] = [found[0].created_at for found in treatment_results if found]
        if entries:
            latest.append(entries[0].date)

        if not latest:
            logger.info("No previous bridge data in Nightscout; starting at %s", floor)
            return floor

        watermark = max(min(latest), floor)
        logger.info("Initial watermark: %s", watermark.isoformat())
        return watermark

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, watermark: datetime) -> CycleResult:
        """Run one full cycle starting after ``watermark``.

        Raises:
            SourceError:              If fetching raw records fails.
            DestinationError:         If reading or writing Nightscout fails.
            AmbiguousComparisonError: If deduplication meets an unknown variant.
        """
        now = self._clock()
        date_from = watermark + _ONE_SECOND
        records = await self._source.fetch_records(date_from, now)

        if not records:
            logger.info("No new records between %s and %s", date_from, now)
            return CycleResult(watermark=watermark, date_from=date_from, date_to=now)

        batch = self._classifier.classify_batch(records)
        existing_treatments, existing_entries = await self._fetch_snapshot(batch, now)
        plan = self.plan(batch, existing_treatments, existing_entries, now)
        await self._publish(plan)

        new_watermark = max(record.created_at_utc for record in records)
        if plan.held_back:
            hold = min(bolus.created_at for bolus in plan.held_back) - _ONE_SECOND
            new_watermark = max(watermark, min(new_watermark, hold))

        result = CycleResult(
            watermark=new_watermark,
            date_from=date_from,
            date_to=now,
            fetched=len(records),
            rejected=len(batch.rejected),
            created_treatments=len(plan.treatments),
            created_entries=len(plan.entries),
            deleted_treatments=len(plan.deletions),
            held_back=len(plan.held_back),
        )
        logger.info(
            "Cycle %s → %s: %d records, %d treatments, %d entries created, "
            "%d deleted, %d held back",
            date_from.isoformat(),
            now.isoformat(),
            result.fetched,
            result.created_treatments,
            result.created_entries,
            result.deleted_treatments,
            result.held_back,
        )
        return result

    def plan(
        self,
        batch: ClassifiedBatch,
        existing_treatments: list[Treatment],
        existing_entries: list[Entry],
        now: datetime,
    ) -> PublishPlan:
        """Decide creations and deletions for a classified batch.

        Pure with respect to the collaborators; ``run_cycle`` performs the I/O.
        """
        meal_boli = [t for t in batch.treatments if isinstance(t, UnresolvedMealBolus)]
        new_carbs = [t for t in batch.treatments if isinstance(t, CarbCorrection)]
        others = [
            t
            for t in batch.treatments
            if not isinstance(t, (UnresolvedMealBolus, CarbCorrection))
        ]

        existing_boli = [
            t for t in existing_treatments if isinstance(t, (UnresolvedMealBolus, ResolvedMealBolus))
        ]
        existing_carbs = [t for t in existing_treatments if isinstance(t, CarbCorrection)]
        claimed = InMemoryDedupCache(
            b.carbs_reference
            for b in existing_boli
            if isinstance(b, ResolvedMealBolus) and b.carbs_reference
        )

        # Boli already published keep their published state
        settled: list[MealBolus] = []
        pending: list[UnresolvedMealBolus] = []
        for bolus in meal_boli:
            published = self._find_published(bolus, existing_boli)
            if published is None:
                pending.append(bolus)
            elif isinstance(published, ResolvedMealBolus):
                settled.append(_adopt_carbs(bolus, published))
            else:
                settled.append(bolus)

        deletions = [c for c in existing_carbs if claimed.is_seen(c.reference) and c.id]
        available = [c for c in existing_carbs if not claimed.is_seen(c.reference)]

        pool: list[CarbCorrection] = list(available)
        fresh_carbs: list[CarbCorrection] = []
        for carb in new_carbs:
            if claimed.is_seen(carb.reference):
                continue
            if any(is_treatment_equal(carb, stored) for stored in available):
                # The persisted copy is already in the pool and carries the _id
                continue
            pool.append(carb)
            fresh_carbs.append(carb)

        merged = self._matcher.merge(pending, pool)
        consumed_ids = {id(c) for c in merged.consumed}
        deletions.extend(c for c in merged.consumed if c.id)

        cutoff = now - self._config.matching.unmatched_bolus_max_wait
        held_back = [b for b in merged.unmatched if b.created_at > cutoff]
        held_ids = {id(b) for b in held_back}
        for bolus in merged.unmatched:
            if id(bolus) not in held_ids:
                logger.warning(
                    "Publishing meal bolus %s without carbs after waiting %s",
                    bolus.reference,
                    self._config.matching.unmatched_bolus_max_wait,
                )

        candidates: list[Treatment] = [
            *others,
            *settled,
            *(b for b in merged.meal_boli if id(b) not in held_ids),
            *(c for c in fresh_carbs if id(c) not in consumed_ids),
        ]
        candidates.sort(key=lambda t: t.created_at)

        return PublishPlan(
            treatments=deduplicate(candidates, existing_treatments),
            entries=deduplicate_entries(batch.entries, existing_entries),
            deletions=deletions,
            held_back=held_back,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find_published(
        bolus: UnresolvedMealBolus, existing_boli: list[MealBolus]
    ) -> MealBolus | None:
        for stored in existing_boli:
            if is_subset_equal(bolus, stored, MEAL_BOLUS_IDENTITY_KEYS):
                return stored
        return None

    async def _fetch_snapshot(
        self, batch: ClassifiedBatch, now: datetime
    ) -> tuple[list[Treatment], list[Entry]]:
        """Read existing treatments and entries covering the batch, concurrently."""

        async def _treatments() -> list[Treatment]:
            if not batch.treatments:
                return []
            earliest = min(t.created_at for t in batch.treatments)
            return await self._destination.fetch_treatments(
                TreatmentFilter(
                    date_from=earliest - self._matcher.threshold,
                    date_to=now,
                    app=self.app,
                )
            )

        async def _entries() -> list[Entry]:
            if not batch.entries:
                return []
            earliest = min(e.date for e in batch.entries)
            return await self._destination.fetch_entries(
                EntryFilter(date_from=earliest, date_to=now)
            )

        treatments, entries = await asyncio.gather(_treatments(), _entries())
        return treatments, entries

    async def _publish(self, plan: PublishPlan) -> None:
        """Apply the plan; every started write runs to completion before failing."""
        operations = []
        if plan.entries:
            operations.append(self._destination.create_entries(plan.entries))
        if plan.treatments:
            operations.append(self._destination.create_treatments(plan.treatments))
        for carb in plan.deletions:
            logger.info("Deleting carb correction %s merged into a meal bolus", carb.reference)
            operations.append(self._destination.delete_treatments(TreatmentFilter(id=carb.id)))

        if not operations:
            return

        results = await asyncio.gather(*operations, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error("%d of %d publish operations failed", len(errors), len(operations))
            raise errors[0]


def _adopt_carbs(bolus: UnresolvedMealBolus, published: ResolvedMealBolus) -> ResolvedMealBolus:
    return ResolvedMealBolus(
        created_at=bolus.created_at,
        device=bolus.device,
        app=bolus.app,
        notes=bolus.notes,
        insulin=bolus.insulin,
        carbs=published.carbs,
        carbs_reference=published.carbs_reference,
    )
