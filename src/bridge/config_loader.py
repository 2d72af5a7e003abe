"""Load, validate, and hot-reload the bridge tuning configuration.

The config lives in ``bridge_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_bridge_config()`` to re-read from
disk after an update — no restart required.

Usage::

    from src.bridge.config_loader import get_bridge_config

    config = get_bridge_config()
    config.matching.threshold            # timedelta(minutes=10)
    config.treatments.temp_basal_duration_minutes  # 360
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

logger = logging.getLogger("bridge.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "bridge_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TreatmentConfig:
    """Settings applied when deriving treatments."""

    app: str
    temp_basal_duration_minutes: int


@dataclass
class MatchingConfig:
    """Settings for pairing meal boli with carb corrections."""

    bolus_carb_threshold_minutes: float
    unmatched_bolus_max_wait_minutes: float

    @property
    def threshold(self) -> timedelta:
        return timedelta(minutes=self.bolus_carb_threshold_minutes)

    @property
    def unmatched_bolus_max_wait(self) -> timedelta:
        return timedelta(minutes=self.unmatched_bolus_max_wait_minutes)


@dataclass
class PollingConfig:
    """Polling cadence and fetch window limits."""

    records_interval_seconds: int
    pump_settings_interval_seconds: int
    max_lookback_hours: int

    @property
    def max_lookback(self) -> timedelta:
        return timedelta(hours=self.max_lookback_hours)


@dataclass
class BridgeConfig:
    """Complete, validated bridge configuration.

    Attributes:
        version:    Config schema version string.
        treatments: Treatment derivation settings.
        matching:   Bolus/carb matching settings.
        polling:    Polling cadence settings.
    """

    version: str
    treatments: TreatmentConfig
    matching: MatchingConfig
    polling: PollingConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when bridge_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Bridge config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> BridgeConfig:
    """Validate the raw YAML dict and construct a BridgeConfig.

    Applies defaults for missing keys and collects every problem before
    raising, so a broken file reports all of its errors at once.

    Raises:
        ConfigValidationError: If a value has the wrong type or range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str, minimum: float = 0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{path}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Treatments ──
    tr_raw = raw.get("treatments") or {}
    app = tr_raw.get("app", "diasend")
    if not isinstance(app, str) or not app:
        errors.append(f"treatments.app must be a non-empty string, got {app!r}")
        app = "diasend"
    treatments = TreatmentConfig(
        app=app,
        temp_basal_duration_minutes=int(
            _number(tr_raw, "temp_basal_duration_minutes", 360, "treatments", minimum=1)
        ),
    )

    # ── Matching ──
    m_raw = raw.get("matching") or {}
    matching = MatchingConfig(
        bolus_carb_threshold_minutes=_number(
            m_raw, "bolus_carb_threshold_minutes", 10, "matching"
        ),
        unmatched_bolus_max_wait_minutes=_number(
            m_raw, "unmatched_bolus_max_wait_minutes", 30, "matching"
        ),
    )

    # ── Polling ──
    p_raw = raw.get("polling") or {}
    polling = PollingConfig(
        records_interval_seconds=int(
            _number(p_raw, "records_interval_seconds", 300, "polling", minimum=1)
        ),
        pump_settings_interval_seconds=int(
            _number(p_raw, "pump_settings_interval_seconds", 43200, "polling", minimum=1)
        ),
        max_lookback_hours=int(_number(p_raw, "max_lookback_hours", 24, "polling", minimum=1)),
    )

    if matching.unmatched_bolus_max_wait_minutes < matching.bolus_carb_threshold_minutes:
        logger.warning(
            "unmatched_bolus_max_wait_minutes (%s) is shorter than the matching "
            "threshold (%s); late carbs will rarely be merged",
            matching.unmatched_bolus_max_wait_minutes,
            matching.bolus_carb_threshold_minutes,
        )

    if errors:
        raise ConfigValidationError(
            f"bridge_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return BridgeConfig(
        version=version,
        treatments=treatments,
        matching=matching,
        polling=polling,
        _raw=raw,
    )


def load_bridge_config(path: Path | None = None) -> BridgeConfig:
    """Load and validate the bridge config from disk.

    Args:
        path: Override path to YAML. Uses the bundled bridge_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded bridge config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: BridgeConfig | None = None
_config_lock = threading.Lock()


def get_bridge_config() -> BridgeConfig:
    """Return the global BridgeConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_bridge_config()
    return _config


def reload_bridge_config(path: Path | None = None) -> BridgeConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_bridge_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded bridge config: %s → %s", old_version, new_config.version)
    return new_config
