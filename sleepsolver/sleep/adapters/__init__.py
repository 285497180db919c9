"""Sample providers for the SleepSolver pipeline.

Each provider implements the SampleProvider ABC and handles:
- Read authorization for sleep and temperature streams
- Anchored (cursor-driven) sample queries, one page at a time
- Physiological averages over a time window

Available providers:
    HealthBridgeProvider — HealthKit data relayed by the companion app's REST bridge
"""

from sleepsolver.sleep.adapters.health_bridge import HealthBridgeProvider

__all__ = ["HealthBridgeProvider"]

# Registry: provider_id → provider class
PROVIDER_REGISTRY: dict[str, type] = {
    "health_bridge": HealthBridgeProvider,
}


def get_provider(provider_id: str) -> "type":
    """Return the provider class for a given id.

    Raises:
        KeyError: If the provider_id is not registered.
    """
    if provider_id not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for '{provider_id}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[provider_id]
