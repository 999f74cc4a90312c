"""Provider adapters for PulseBridge.

Each adapter implements the WearableAdapter ABC and owns:
- The provider's field-path → unified metric mapping table
- Normalizing one provider record into UnifiedMetric / Workout rows
- For pull providers, fetching records through a ProviderClient

Available adapters:
    WhoopAdapter — Whoop API v2 (OAuth2, webhooks + windowed pull)
    TerraAdapter — Terra aggregator (signed push webhooks)
"""

from src.wearables.adapters.terra import TerraAdapter
from src.wearables.adapters.whoop import WhoopAdapter

__all__ = [
    "TerraAdapter",
    "WhoopAdapter",
]
