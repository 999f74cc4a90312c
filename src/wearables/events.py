"""Webhook event routing.

Turns an authenticated, user-resolved provider event into storage changes:

    <type>.updated  → fresh token → fetch record → normalize → upsert
    <type>.deleted  → delete rows derived from the record (no fetch)
    anything else   → logged and acknowledged

Pushed payloads (Terra) skip the fetch and go straight to normalize → upsert.
The HTTP layer owns signature checks, user mapping and the always-200
policy; exceptions raised here propagate to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable
from uuid import UUID

from src.wearables.base import NormalizedRecord, WearableAdapter, WebhookEvent
from src.wearables.client import ProviderClient
from src.wearables.errors import NormalizationError, UnknownProviderUser
from src.wearables.normalizer import record_external_id_prefix, workout_external_id
from src.wearables.store import IngestStore
from src.wearables.sync.dedup import Upserter
from src.wearables.tokens import TokenStore

logger = logging.getLogger("pulsebridge.wearables.events")


@dataclass
class EventOutcome:
    """What handling one event did."""

    status: str  # processed | deleted | ignored | not_found
    metrics_written: int = 0
    workouts_written: int = 0
    rows_deleted: int = 0


class EventRouter:
    """Dispatch provider events to fetch/normalize/upsert or delete.

    Args:
        store:          IngestStore for writes and deletes.
        token_store:    Source of valid access tokens.
        adapters:       Provider slug → adapter.
        client_factory: Builds a ProviderClient from an access token.
    """

    def __init__(
        self,
        store: IngestStore,
        token_store: TokenStore,
        adapters: dict[str, WearableAdapter],
        client_factory: Callable[[str], ProviderClient],
    ) -> None:
        self._store = store
        self._tokens = token_store
        self._adapters = adapters
        self._client_factory = client_factory
        self._upserter = Upserter(store)

    async def resolve_user(self, provider: str, provider_user_id: str) -> UUID:
        """Map a provider user id to the internal user.

        Raises:
            UnknownProviderUser: No mapping exists.
        """
        user_id = await self._store.resolve_provider_user(provider, provider_user_id)
        if user_id is None:
            raise UnknownProviderUser(provider, provider_user_id)
        return user_id

    async def handle(self, event: WebhookEvent, user_id: UUID) -> EventOutcome:
        """Apply one pull-provider webhook event for an already-resolved user."""
        adapter = self._adapters.get(event.provider)
        record_type, action = event.record_type, event.action

        if adapter is None or record_type not in adapter.RECORD_TYPES or action not in ("updated", "deleted"):
            logger.info("Ignoring unsupported %s event type %r", event.provider, event.event_type)
            return EventOutcome(status="ignored")

        if action == "deleted":
            return await self._delete(event, user_id)

        access_token = await self._tokens.get_valid_access_token(user_id, event.provider)
        client = self._client_factory(access_token)
        record = await adapter.fetch_record(client, record_type, event.record_id)
        if record is None:
            return EventOutcome(status="not_found")

        normalized = adapter.normalize(user_id, record_type, record)
        outcome = await self._write([normalized])
        logger.info(
            "Processed %s %s for user %s: %d metrics, %d workouts",
            event.event_type,
            event.record_id,
            user_id,
            outcome.metrics_written,
            outcome.workouts_written,
        )
        return outcome

    async def handle_push(
        self,
        provider: str,
        user_id: UUID,
        record_type: str,
        records: Iterable[dict],
        source: str | None = None,
    ) -> EventOutcome:
        """Normalize and upsert records a provider pushed in full.

        Malformed items are skipped; the rest of the batch is still written.
        """
        adapter = self._adapters.get(provider)
        if adapter is None or record_type not in adapter.RECORD_TYPES:
            logger.info("Ignoring unsupported %s push type %r", provider, record_type)
            return EventOutcome(status="ignored")

        normalized: list[NormalizedRecord] = []
        for item in records:
            try:
                normalized.append(adapter.normalize(user_id, record_type, item, source=source))
            except (NormalizationError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed %s %s item: %s", provider, record_type, exc)

        outcome = await self._write(normalized)
        logger.info(
            "Ingested %s %s push for user %s: %d metrics, %d workouts",
            provider,
            record_type,
            user_id,
            outcome.metrics_written,
            outcome.workouts_written,
        )
        return outcome

    async def _write(self, normalized: list[NormalizedRecord]) -> EventOutcome:
        metrics = [m for n in normalized for m in n.metrics]
        workouts = [n.workout for n in normalized if n.workout is not None]
        return EventOutcome(
            status="processed",
            metrics_written=await self._upserter.upsert_metrics(metrics),
            workouts_written=await self._upserter.upsert_workouts(workouts),
        )

    async def _delete(self, event: WebhookEvent, user_id: UUID) -> EventOutcome:
        prefix = record_external_id_prefix(event.provider, event.record_type, event.record_id)
        deleted = await self._upserter.delete_by_external_id(user_id, prefix)
        if event.record_type == "workout":
            deleted += await self._store.delete_workout(
                user_id, workout_external_id(event.provider, event.record_id)
            )
        return EventOutcome(status="deleted", rows_deleted=deleted)
