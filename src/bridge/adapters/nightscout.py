"""Nightscout REST API v1 adapter.

Environment variables (via ``src.config.Settings``):
    NIGHTSCOUT_URL        — base URL of the instance, e.g. https://my.ns.example
    NIGHTSCOUT_API_SECRET — API secret; sent SHA-1 hashed in the ``api-secret`` header

Endpoints used:
    /api/v1/treatments  — GET (find filters), POST (list), DELETE (find filters)
    /api/v1/entries     — GET (find filters), POST (list)
    /api/v1/profile     — GET (list, newest first), PUT
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

import httpx

from src.bridge.base import (
    CarbCorrection,
    CorrectionBolus,
    DestinationAdapter,
    Entry,
    EntryFilter,
    EventType,
    ManualGlucose,
    ResolvedMealBolus,
    SensorGlucose,
    TempBasal,
    Treatment,
    TreatmentFilter,
    UnresolvedMealBolus,
)
from src.bridge.errors import DestinationError
from src.bridge.timeutils import from_epoch_ms, parse_iso, to_epoch_ms, to_iso

logger = logging.getLogger("bridge.adapters.nightscout")

# Nightscout returns 10 entries / 100 treatments unless told otherwise
_DEFAULT_QUERY_COUNT = 10000

_KNOWN_EVENT_TYPES = frozenset(e.value for e in EventType)


def hash_api_secret(secret: str) -> str:
    """Return the SHA-1 hex digest Nightscout expects in ``api-secret``."""
    return hashlib.sha1(secret.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def treatment_to_wire(treatment: Treatment) -> dict[str, Any]:
    """Serialise a treatment to the Nightscout JSON document."""
    doc: dict[str, Any] = {
        "eventType": treatment.event_type.value,
        "created_at": to_iso(treatment.created_at),
        "app": treatment.app,
    }
    if treatment.device is not None:
        doc["device"] = treatment.device
    if treatment.notes is not None:
        doc["notes"] = treatment.notes
    if treatment.id is not None:
        doc["_id"] = treatment.id

    if isinstance(treatment, ResolvedMealBolus):
        doc["insulin"] = treatment.insulin
        doc["carbs"] = treatment.carbs
        if treatment.carbs_reference is not None:
            doc["carbsReference"] = treatment.carbs_reference
    elif isinstance(treatment, (UnresolvedMealBolus, CorrectionBolus)):
        doc["insulin"] = treatment.insulin
    elif isinstance(treatment, CarbCorrection):
        doc["carbs"] = treatment.carbs
    elif isinstance(treatment, TempBasal):
        doc["absolute"] = treatment.rate
        doc["rate"] = treatment.rate
        doc["duration"] = treatment.duration
    else:
        raise TypeError(f"Unsupported treatment type: {type(treatment).__name__}")
    return doc


def treatment_from_wire(doc: dict[str, Any]) -> Treatment | None:
    """Parse a Nightscout treatment document.

    Returns None for event types the bridge does not produce.

    Raises:
        DestinationError: If a known event type lacks a required field.
    """
    event_type = doc.get("eventType")
    if event_type not in _KNOWN_EVENT_TYPES:
        logger.debug("Nightscout: skipping treatment with eventType %r", event_type)
        return None

    try:
        common: dict[str, Any] = {
            "created_at": parse_iso(doc["created_at"]),
            "device": doc.get("device"),
            "app": doc.get("app") or "",
            "notes": doc.get("notes"),
            "id": doc.get("_id"),
        }
        if event_type == EventType.MEAL_BOLUS.value:
            if doc.get("carbs") is None:
                return UnresolvedMealBolus(insulin=float(doc["insulin"]), **common)
            return ResolvedMealBolus(
                insulin=float(doc["insulin"]),
                carbs=float(doc["carbs"]),
                carbs_reference=doc.get("carbsReference"),
                **common,
            )
        if event_type == EventType.CORRECTION_BOLUS.value:
            return CorrectionBolus(insulin=float(doc["insulin"]), **common)
        if event_type == EventType.CARB_CORRECTION.value:
            return CarbCorrection(carbs=float(doc["carbs"]), **common)
        if event_type == EventType.TEMP_BASAL.value:
            rate = doc.get("absolute", doc.get("rate"))
            return TempBasal(rate=float(rate), duration=int(doc["duration"]), **common)
    except (KeyError, TypeError, ValueError) as exc:
        raise DestinationError(f"Malformed Nightscout {event_type!r} treatment: {exc}") from exc
    return None


def entry_to_wire(entry: Entry) -> dict[str, Any]:
    """Serialise a glucose entry to the Nightscout JSON document."""
    doc: dict[str, Any] = {
        "type": entry.type,
        entry.type: entry.value,
        "date": to_epoch_ms(entry.date),
        "dateString": to_iso(entry.date),
        "app": entry.app,
    }
    if entry.device is not None:
        doc["device"] = entry.device
    if isinstance(entry, SensorGlucose) and entry.direction is not None:
        doc["direction"] = entry.direction
    return doc


def entry_from_wire(doc: dict[str, Any]) -> Entry | None:
    """Parse a Nightscout entry document; None for calibration and other types."""
    entry_type = doc.get("type")
    if entry_type not in ("sgv", "mbg"):
        logger.debug("Nightscout: skipping entry with type %r", entry_type)
        return None
    try:
        if doc.get("date") is not None:
            date = from_epoch_ms(doc["date"])
        else:
            date = parse_iso(doc["dateString"])
        common: dict[str, Any] = {
            "date": date,
            "value": float(doc[entry_type]),
            "device": doc.get("device"),
            "app": doc.get("app") or "",
            "id": doc.get("_id"),
        }
    except (KeyError, TypeError, ValueError) as exc:
        raise DestinationError(f"Malformed Nightscout {entry_type} entry: {exc}") from exc

    if entry_type == "sgv":
        return SensorGlucose(direction=doc.get("direction"), **common)
    return ManualGlucose(**common)


def treatment_query(filters: TreatmentFilter) -> dict[str, Any]:
    """Translate a TreatmentFilter into Nightscout ``find`` query parameters."""
    params: dict[str, Any] = {}
    if filters.date_from is not None:
        params["find[created_at][$gte]"] = to_iso(filters.date_from)
    if filters.date_to is not None:
        params["find[created_at][$lte]"] = to_iso(filters.date_to)
    if filters.event_type is not None:
        params["find[eventType]"] = filters.event_type.value
    if filters.app is not None:
        params["find[app]"] = filters.app
    if filters.id is not None:
        params["find[_id]"] = filters.id
    params["count"] = filters.count if filters.count is not None else _DEFAULT_QUERY_COUNT
    return params


def entry_query(filters: EntryFilter) -> dict[str, Any]:
    """Translate an EntryFilter into Nightscout ``find`` query parameters."""
    params: dict[str, Any] = {}
    if filters.date_from is not None:
        params["find[dateString][$gte]"] = to_iso(filters.date_from)
    if filters.date_to is not None:
        params["find[dateString][$lte]"] = to_iso(filters.date_to)
    if filters.type is not None:
        params["find[type]"] = filters.type
    params["count"] = filters.count if filters.count is not None else _DEFAULT_QUERY_COUNT
    return params


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class NightscoutAdapter(DestinationAdapter):
    """Nightscout destination adapter.

    Usage::

        adapter = NightscoutAdapter(url="https://my.ns.example", api_secret="...")
        treatments = await adapter.fetch_treatments(TreatmentFilter(app="diasend"))
        await adapter.aclose()
    """

    def __init__(
        self,
        url: str,
        api_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the Nightscout adapter.

        Args:
            url:             Base URL of the Nightscout instance.
            api_secret:      Plain API secret (hashed before sending).
            http_client:     Optional pre-configured httpx client (for testing).
            timeout_seconds: Request timeout when the adapter owns the client.
        """
        if not url:
            raise ValueError("Nightscout URL must be configured")
        self._base_url = url.rstrip("/") + "/api/v1"
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {
            "api-secret": hash_api_secret(api_secret),
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # Treatments
    # ------------------------------------------------------------------

    async def fetch_treatments(self, filters: TreatmentFilter) -> list[Treatment]:
        docs = await self._request("GET", "/treatments", params=treatment_query(filters))
        treatments = [t for t in (treatment_from_wire(d) for d in docs or []) if t is not None]
        logger.debug("Nightscout: fetched %d treatments", len(treatments))
        return treatments

    async def create_treatments(self, treatments: list[Treatment]) -> list[Treatment]:
        if not treatments:
            return []
        docs = await self._request(
            "POST", "/treatments/", json=[treatment_to_wire(t) for t in treatments]
        )
        logger.info("Nightscout: created %d treatments", len(treatments))
        return [t for t in (treatment_from_wire(d) for d in _as_list(docs)) if t is not None]

    async def delete_treatments(self, filters: TreatmentFilter) -> None:
        params = treatment_query(filters)
        # The count guard only applies to reads
        params.pop("count", None)
        if not params:
            raise ValueError("Refusing to delete treatments without a filter")
        await self._request("DELETE", "/treatments/", params=params)
        logger.info("Nightscout: deleted treatments matching %s", params)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def fetch_entries(self, filters: EntryFilter) -> list[Entry]:
        docs = await self._request("GET", "/entries", params=entry_query(filters))
        entries = [e for e in (entry_from_wire(d) for d in docs or []) if e is not None]
        logger.debug("Nightscout: fetched %d entries", len(entries))
        return entries

    async def create_entries(self, entries: list[Entry]) -> list[Entry]:
        if not entries:
            return []
        docs = await self._request("POST", "/entries/", json=[entry_to_wire(e) for e in entries])
        logger.info("Nightscout: created %d entries", len(entries))
        return [e for e in (entry_from_wire(d) for d in _as_list(docs)) if e is not None]

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def fetch_profile(self) -> dict:
        docs = await self._request("GET", "/profile")
        if not docs:
            raise DestinationError("Nightscout has no profile document")
        return docs[0]

    async def update_profile(self, profile: dict) -> dict:
        doc = await self._request("PUT", "/profile", json=profile)
        logger.info("Nightscout: updated profile %s", profile.get("_id", "<new>"))
        return doc if isinstance(doc, dict) else profile

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request to the API and return the decoded JSON body.

        Raises:
            DestinationError: On non-2xx responses, transport errors or invalid JSON.
        """
        url = f"{self._base_url}{path}"
        try:
            response = await self._http_client.request(
                method, url, headers=self._headers, **kwargs
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise DestinationError(
                f"Nightscout returned status {exc.response.status_code} for {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DestinationError(f"Nightscout {method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise DestinationError(f"Nightscout returned invalid JSON for {method} {path}") from exc


def _as_list(docs: Any) -> list[dict]:
    if docs is None:
        return []
    return docs if isinstance(docs, list) else [docs]
