"""Collaborator adapters for the bridge.

Available adapters:
    DiasendAdapter    — Diasend patient data API (OAuth2 password grant), source
    NightscoutAdapter — Nightscout REST API v1 (hashed API secret), destination
"""

from src.bridge.adapters.diasend import DiasendAdapter
from src.bridge.adapters.nightscout import NightscoutAdapter

__all__ = [
    "DiasendAdapter",
    "NightscoutAdapter",
]

# Registry: source_id → adapter class
SOURCE_REGISTRY: dict[str, type] = {
    "diasend": DiasendAdapter,
}


def get_source_adapter(source_id: str) -> "type":
    """Return the source adapter class for a given slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in SOURCE_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(SOURCE_REGISTRY)}"
        )
    return SOURCE_REGISTRY[source_id]
