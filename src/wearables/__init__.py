"""PulseBridge wearable ingestion pipeline.

This package handles provider webhooks, windowed provider syncs,
normalization into the unified metric schema, idempotent upserts and
source-priority resolution.

Subpackages:
    adapters/ — Provider adapters and mapping tables (Whoop, Terra)
    sync/     — Deduplicator/Upserter, sync orchestrator, scheduled sync

Core modules:
    base          — WearableAdapter ABC and canonical data models
    client        — Paginated provider REST client
    tokens        — Token store with compare-and-swap refresh
    signature     — Webhook HMAC verification
    events        — Webhook event router
    normalizer    — Table-driven normalization and unit conversion
    priority      — Source priority resolution
    config_loader — Load/validate/hot-reload source_policy.yaml
    store         — Postgres persistence
"""

from src.wearables.base import (
    NormalizedRecord,
    OAuthToken,
    OAuthTokens,
    UnifiedMetric,
    WearableAdapter,
    WebhookEvent,
    Workout,
)
from src.wearables.config_loader import SourcePolicyConfig, get_source_policy_config

__all__ = [
    "WearableAdapter",
    "UnifiedMetric",
    "Workout",
    "NormalizedRecord",
    "OAuthToken",
    "OAuthTokens",
    "WebhookEvent",
    "SourcePolicyConfig",
    "get_source_policy_config",
]
