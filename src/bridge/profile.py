"""Pump settings → Nightscout profile synchronisation.

Nightscout profiles hold schedules as lists of
``{"time": "HH:MM", "timeAsSeconds": int, "value": float}``.  Only the basal
schedule of the configured profile is replaced; ratios, sensitivities and
targets edited in Nightscout are left alone.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from src.bridge.base import DestinationAdapter, PumpSettings, SourceAdapter

logger = logging.getLogger("bridge.profile")


def _time_as_seconds(time_of_day: str) -> int:
    """Convert 'HH:MM' or 'HH:MM:SS' to seconds after midnight.

    Raises:
        ValueError: If the string is not a valid time of day.
    """
    parts = [int(p) for p in time_of_day.split(":")]
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {time_of_day!r}")
    hours, minutes = parts[0], parts[1]
    seconds = parts[2] if len(parts) == 3 else 0
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        raise ValueError(f"Invalid time of day: {time_of_day!r}")
    return hours * 3600 + minutes * 60 + seconds


def _schedule(entries: list[tuple[str, float]]) -> list[dict[str, Any]]:
    schedule = []
    for time_of_day, value in entries:
        seconds = _time_as_seconds(time_of_day)
        schedule.append(
            {
                "time": f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}",
                "timeAsSeconds": seconds,
                "value": value,
            }
        )
    return sorted(schedule, key=lambda s: s["timeAsSeconds"])


def _flat(value: float) -> list[dict[str, Any]]:
    return [{"time": "00:00", "timeAsSeconds": 0, "value": value}]


def pump_settings_to_profile_config(
    settings: PumpSettings, timezone_name: str | None = None
) -> dict[str, Any]:
    """Build a Nightscout profile store entry from pump settings.

    Fields the pump does not report are omitted.
    """
    config: dict[str, Any] = {
        "basal": _schedule(settings.basal_profile),
        "carbratio": _schedule(settings.insulin_carb_ratio_profile),
        "sens": _schedule(settings.insulin_sensitivity_profile),
    }
    if settings.blood_glucose_target_low is not None:
        config["target_low"] = _flat(settings.blood_glucose_target_low)
    if settings.blood_glucose_target_high is not None:
        config["target_high"] = _flat(settings.blood_glucose_target_high)
    if settings.insulin_on_board_hours is not None:
        config["dia"] = settings.insulin_on_board_hours
    if settings.units is not None:
        config["units"] = settings.units
    if timezone_name:
        config["timezone"] = timezone_name
    return config


def update_profile_with_pump_settings(
    profile: dict[str, Any],
    settings: PumpSettings,
    profile_name: str,
    timezone_name: str | None = None,
) -> dict[str, Any]:
    """Return a copy of ``profile`` with the pump's basal schedule applied.

    An existing ``store[profile_name]`` keeps every field except ``basal``.
    A missing one is created from the full pump settings.
    """
    updated = copy.deepcopy(profile)
    config = pump_settings_to_profile_config(settings, timezone_name)
    store = updated.setdefault("store", {})

    if profile_name in store:
        store[profile_name] = {**store[profile_name], "basal": config["basal"]}
    else:
        logger.info("Profile %r not in Nightscout store; creating it", profile_name)
        store[profile_name] = config
    return updated


class ProfileSynchronizer:
    """Copy the pump's basal program into a Nightscout profile.

    Usage::

        sync = ProfileSynchronizer(source, destination, profile_name="Diasend")
        await sync.run()
    """

    def __init__(
        self,
        source: SourceAdapter,
        destination: DestinationAdapter,
        profile_name: str,
        timezone_name: str | None = None,
    ) -> None:
        self._source = source
        self._destination = destination
        self._profile_name = profile_name
        self._timezone_name = timezone_name

    async def run(self) -> dict[str, Any] | None:
        """Fetch pump settings and store them; None if the source has none.

        Raises:
            SourceError:      If fetching pump settings fails.
            DestinationError: If reading or writing the profile fails.
        """
        settings = await self._source.fetch_pump_settings()
        if settings is None:
            logger.info(
                "Source %s does not provide pump settings; skipping profile sync",
                self._source.SOURCE_ID,
            )
            return None

        profile = await self._destination.fetch_profile()
        updated = update_profile_with_pump_settings(
            profile, settings, self._profile_name, self._timezone_name
        )
        stored = await self._destination.update_profile(updated)
        logger.info(
            "Updated basal schedule of profile %r (%d entries)",
            self._profile_name,
            len(settings.basal_profile),
        )
        return stored
