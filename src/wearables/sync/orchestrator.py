"""Pull a user's recent history from a provider and write it in one pass.

Workflow for ``SyncOrchestrator.sync_user_data``:
1. Make sure the token is fresh (TokenStore)
2. For each record type in order (cycle, recovery, sleep, workout):
   fetch the window, normalize every record
3. Add per-day workout aggregates
4. Collapse and upsert metrics, then workouts
5. Stamp ``last_sync_at`` on the token, whatever happened in 2–4

A failing record type is logged and skipped; a malformed record is logged
and skipped.  Neither aborts the sync.  Authorization is the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Callable
from uuid import UUID

import httpx

from src.wearables.base import OAuthToken, UnifiedMetric, WearableAdapter, Workout, utc_now
from src.wearables.client import ProviderClient
from src.wearables.errors import IngestError, NormalizationError
from src.wearables.normalizer import Normalizer
from src.wearables.store import IngestStore
from src.wearables.sync.dedup import Upserter
from src.wearables.tokens import TokenStore

logger = logging.getLogger("pulsebridge.wearables.sync.orchestrator")

ClientFactory = Callable[..., ProviderClient]


@dataclass
class SyncResult:
    """Result of one user's sync.

    Attributes:
        user_id:         Internal user UUID.
        provider:        Provider slug.
        metrics_count:   Metric rows written after dedup.
        workouts_count:  Workout rows written after dedup.
        failed_types:    Record types whose fetch failed.
        records_skipped: Malformed records skipped during normalization.
        synced_at:       UTC timestamp stamped on the token.
    """

    user_id: UUID
    provider: str
    metrics_count: int = 0
    workouts_count: int = 0
    failed_types: list[str] = field(default_factory=list)
    records_skipped: int = 0
    synced_at: datetime | None = None

    @property
    def status(self) -> str:
        if self.failed_types and not (self.metrics_count or self.workouts_count):
            return "error"
        if self.failed_types or self.records_skipped:
            return "partial"
        return "success"


class SyncOrchestrator:
    """Run a windowed pull sync for one provider.

    Usage::

        orchestrator = SyncOrchestrator(store, token_store, WhoopAdapter(), client_factory)
        result = await orchestrator.sync_user(user_id, days_back=28)
    """

    def __init__(
        self,
        store: IngestStore,
        token_store: TokenStore,
        adapter: WearableAdapter,
        client_factory: ClientFactory,
        normalizer: Normalizer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._tokens = token_store
        self._adapter = adapter
        self._client_factory = client_factory
        self._normalizer = normalizer or Normalizer()
        self._upserter = Upserter(store)
        self._clock = clock

    @property
    def provider(self) -> str:
        return self._adapter.SOURCE_ID

    async def sync_user(self, user_id: UUID, days_back: int, max_pages: int | None = None) -> SyncResult:
        """Load the user's token and sync it.

        Raises:
            TokenNotFoundError:      The user has not connected this provider.
            ReauthorizationRequired: The token could not be refreshed.
        """
        token = await self._tokens.get_valid_token(user_id, self.provider)
        return await self.sync_user_data(token, days_back, max_pages=max_pages)

    async def sync_user_data(
        self, token: OAuthToken, days_back: int, max_pages: int | None = None
    ) -> SyncResult:
        """Fetch ``[today - days_back, now]`` for every record type and upsert it.

        Args:
            token:     The user's stored token (refreshed here if needed).
            days_back: Whole UTC days to look back from today.
            max_pages: Page ceiling per record type (client default if None).

        Returns:
            SyncResult with post-dedup counts.
        """
        fresh = await self._tokens.ensure_fresh(token)
        result = SyncResult(user_id=fresh.user_id, provider=self.provider)

        now = self._clock()
        start = datetime.combine(now.date() - timedelta(days=days_back), time.min, tzinfo=now.tzinfo)
        logger.info(
            "Syncing %s for user %s from %s to %s",
            self.provider,
            fresh.user_id,
            start.isoformat(),
            now.isoformat(),
        )

        try:
            client = self._client_factory(fresh.access_token, max_pages=max_pages)
            metrics: list[UnifiedMetric] = []
            workouts: list[Workout] = []

            for record_type in self._adapter.RECORD_TYPES:
                try:
                    records = await self._adapter.fetch_window(client, record_type, start, now)
                except (IngestError, httpx.HTTPError, ValueError) as exc:
                    logger.warning(
                        "Sync of %s %s for user %s failed: %s",
                        self.provider,
                        record_type,
                        fresh.user_id,
                        exc,
                    )
                    result.failed_types.append(record_type)
                    continue

                for record in records:
                    try:
                        normalized = self._adapter.normalize(fresh.user_id, record_type, record)
                    except (NormalizationError, KeyError, TypeError, ValueError) as exc:
                        logger.warning("Skipping malformed %s %s record: %s", self.provider, record_type, exc)
                        result.records_skipped += 1
                        continue
                    metrics.extend(normalized.metrics)
                    if normalized.workout is not None:
                        workouts.append(normalized.workout)

            metrics.extend(self._normalizer.workout_aggregates(workouts, provider=self.provider))

            result.metrics_count = await self._upserter.upsert_metrics(metrics)
            result.workouts_count = await self._upserter.upsert_workouts(workouts)
        finally:
            result.synced_at = self._clock()
            await self._store.mark_synced(fresh.id, result.synced_at)

        logger.info(
            "Sync complete: %s/%s → %d metrics, %d workouts, status=%s",
            fresh.user_id,
            self.provider,
            result.metrics_count,
            result.workouts_count,
            result.status,
        )
        return result
