"""Diasend → Nightscout bridge.

This package pulls pump and CGM records from Diasend, classifies them into
Nightscout treatments and entries, merges meal boli with their carbs, and
publishes the result without duplicates.

Subpackages:
    adapters/ — Diasend (source) and Nightscout (destination) HTTP adapters
    sync/     — Deduplication, polling loops, sync service

Core modules:
    base          — Raw record, treatment and entry models; adapter ABCs
    classifier    — Raw record → treatment/entry sketch
    carb_matcher  — Meal bolus / carb correction pairing
    reconciler    — One polling cycle end to end
    profile       — Pump settings → Nightscout profile
    config_loader — Load/validate/hot-reload bridge_config.yaml
"""

from src.bridge.base import (
    DestinationAdapter,
    Entry,
    PumpSettings,
    SourceAdapter,
    Treatment,
)
from src.bridge.config_loader import BridgeConfig, get_bridge_config

__all__ = [
    "SourceAdapter",
    "DestinationAdapter",
    "Treatment",
    "Entry",
    "PumpSettings",
    "BridgeConfig",
    "get_bridge_config",
]
