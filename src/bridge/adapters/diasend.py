"""Diasend API adapter.

Authenticates with the OAuth2 password grant of the Diasend mobile app and
fetches CGM/pump patient data.

Environment variables (via ``src.config.Settings``):
    DIASEND_USERNAME      — account e-mail
    DIASEND_PASSWORD      — account password
    DIASEND_CLIENT_ID     — OAuth2 client ID of the mobile app
    DIASEND_CLIENT_SECRET — OAuth2 client secret of the mobile app

API base: https://api.diasend.com/1

Endpoints used:
    /oauth2/token   — access token (password grant)
    /patient/data   — records per device between two local timestamps
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from src.bridge.base import (
    AnyRawRecord,
    BasalRecord,
    BolusRecord,
    CarbRecord,
    Device,
    GlucoseRecord,
    RecordFlag,
    SourceAdapter,
)
from src.bridge.errors import SourceError
from src.bridge.timeutils import SOURCE_DATETIME_FORMAT, to_local_naive, utc_now

logger = logging.getLogger("bridge.adapters.diasend")

_DIASEND_API_BASE = "https://api.diasend.com/1"
_DIASEND_SCOPE = "PATIENT DIASEND_MOBILE_DEVICE_DATA_RW"
_USER_AGENT = "diasend/1.13.0 (iPhone; iOS 15.5; Scale/3.00)"


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------


@dataclass
class AccessToken:
    """OAuth2 token returned by Diasend.

    Attributes:
        access_token: Bearer token for API calls.
        expires_at:   UTC datetime when the token expires.
        token_type:   Token type, typically "Bearer".
    """

    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"


class TokenCache:
    """Single-slot access token cache with an explicit TTL margin.

    The clock is injected so expiry can be tested without sleeping.

    Args:
        clock:          Returns the current aware UTC datetime.
        buffer_seconds: Treat tokens as expired this long before their expiry.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        buffer_seconds: int = 60,
    ) -> None:
        self._clock = clock
        self._buffer = timedelta(seconds=buffer_seconds)
        self._token: AccessToken | None = None

    def get(self) -> AccessToken | None:
        """Return the cached token, or None if absent or about to expire."""
        if self._token is None:
            return None
        if self._token.expires_at - self._buffer <= self._clock():
            logger.debug("Diasend token expired at %s", self._token.expires_at)
            self._token = None
            return None
        return self._token

    def put(self, access_token: str, expires_in: float, token_type: str = "Bearer") -> AccessToken:
        """Store a token valid for ``expires_in`` seconds from now."""
        self._token = AccessToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            token_type=token_type,
        )
        return self._token

    def clear(self) -> None:
        self._token = None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class DiasendAdapter(SourceAdapter):
    """Diasend patient data adapter.

    Pump settings are only published on the Diasend website, so
    ``fetch_pump_settings`` keeps the default (unsupported) behaviour.
    """

    SOURCE_ID = "diasend"

    def __init__(
        self,
        username: str,
        password: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        token_cache: TokenCache | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the Diasend adapter.

        Args:
            username:        Diasend account e-mail.
            password:        Diasend account password.
            client_id:       OAuth2 client ID.
            client_secret:   OAuth2 client secret.
            http_client:     Optional pre-configured httpx client (for testing).
            token_cache:     Optional token cache (for testing with a fake clock).
            timeout_seconds: Request timeout when the adapter owns the client.
        """
        if not username or not password:
            raise ValueError("Diasend username and password must be configured")
        self._username = username
        self._password = password
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            base_url=_DIASEND_API_BASE,
            headers={"User-Agent": _USER_AGENT},
            timeout=timeout_seconds,
        )
        self._tokens = token_cache or TokenCache()

    # ------------------------------------------------------------------
    # SourceAdapter interface
    # ------------------------------------------------------------------

    async def fetch_records(self, date_from: datetime, date_to: datetime) -> list[AnyRawRecord]:
        """Fetch all patient records between two timestamps.

        Diasend expects local timestamps without offset, so both bounds are
        converted to naive local time.

        Raises:
            SourceError: On authentication, transport or payload failures.
        """
        token = await self.get_access_token()
        params = {
            "type": "cgm",
            "date_from": to_local_naive(date_from).strftime(SOURCE_DATETIME_FORMAT),
            "date_to": to_local_naive(date_to).strftime(SOURCE_DATETIME_FORMAT),
            "unit": "mg_dl",
        }
        logger.debug("Diasend: fetching records %s → %s", params["date_from"], params["date_to"])
        payload = await self._request(
            "GET",
            "/patient/data",
            params=params,
            headers={"Authorization": f"{token.token_type} {token.access_token}"},
        )
        records = parse_patient_data(payload)
        logger.info("Diasend: fetched %d records", len(records))
        return records

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self, allow_cache: bool = True) -> AccessToken:
        """Return a valid access token, requesting a new one when needed."""
        if allow_cache:
            cached = self._tokens.get()
            if cached is not None:
                return cached

        logger.info("Diasend: requesting access token for %s", self._username)
        data = await self._request(
            "POST",
            "/oauth2/token",
            data={
                "grant_type": "password",
                "username": self._username,
                "password": self._password,
                "scope": _DIASEND_SCOPE,
            },
            auth=(self._client_id, self._client_secret),
        )
        try:
            return self._tokens.put(
                access_token=data["access_token"],
                expires_in=float(data.get("expires_in", 3600)),
                token_type=data.get("token_type", "Bearer"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SourceError(f"Unexpected Diasend token response: {exc}") from exc

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            SourceError: On non-2xx responses, transport errors or invalid JSON.
        """
        kwargs["headers"] = {"User-Agent": _USER_AGENT, **kwargs.get("headers", {})}
        try:
            response = await self._http_client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (401, 403):
                self._tokens.clear()
            raise SourceError(
                f"Diasend returned status {exc.response.status_code} for {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceError(f"Diasend request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise SourceError(f"Diasend returned invalid JSON for {url}") from exc


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def _parse_device(raw: dict) -> Device:
    return Device(
        serial=str(raw.get("serial", "")),
        manufacturer=str(raw.get("manufacturer", "")),
        model=str(raw.get("model", "")),
    )


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def parse_record(raw: dict, device: Device) -> AnyRawRecord | None:
    """Convert one Diasend record dict into a raw record.

    Returns None for record types the bridge does not handle.

    Raises:
        SourceError: If a required field is missing or has the wrong type.
    """
    record_type = raw.get("type")
    try:
        created_at = datetime.fromisoformat(raw["created_at"])
        flags = tuple(
            RecordFlag(flag=int(f.get("flag", 0)), description=str(f.get("description", "")))
            for f in raw.get("flags") or []
        )
        if record_type == "glucose":
            return GlucoseRecord(
                created_at=created_at,
                device=device,
                flags=flags,
                value=float(raw["value"]),
                unit=raw.get("unit", "mg/dl"),
            )
        if record_type == "insulin_bolus":
            return BolusRecord(
                created_at=created_at,
                device=device,
                flags=flags,
                total_value=float(raw["total_value"]),
                programmed_meal=_optional_float(raw.get("programmed_meal")),
                programmed_bg_correction=_optional_float(raw.get("programmed_bg_correction")),
            )
        if record_type == "insulin_basal":
            return BasalRecord(
                created_at=created_at, device=device, flags=flags, value=float(raw["value"])
            )
        if record_type == "carb":
            # Kept as text; the classifier validates it per record
            return CarbRecord(
                created_at=created_at, device=device, flags=flags, value=str(raw["value"])
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"Malformed Diasend {record_type} record: {exc}") from exc

    logger.debug("Diasend: ignoring unsupported record type %r", record_type)
    return None


def parse_patient_data(payload: Any) -> list[AnyRawRecord]:
    """Flatten the per-device Diasend response into a list of raw records.

    Raises:
        SourceError: If the payload does not have the expected shape.
    """
    if not isinstance(payload, list):
        raise SourceError(f"Expected a list of devices from Diasend, got {type(payload).__name__}")

    records: list[AnyRawRecord] = []
    for device_block in payload:
        device = _parse_device(device_block.get("device") or {})
        for raw in device_block.get("data") or []:
            record = parse_record(raw, device)
            if record is not None:
                records.append(record)
    return records
