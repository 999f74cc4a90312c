"""Scheduled sync across every connected user.

Triggered by cron (``POST /api/v1/sync/whoop/scheduled``).  Loads every
active token for a provider, skips users synced within the provider's
interval, and runs the orchestrator over a short window for the rest.
Webhooks keep data current; this sweep catches deliveries that were
missed or dead-lettered.

Sync intervals:
    Whoop: hourly (window: last 2 days, 5 pages per record type)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from uuid import UUID

import httpx

from src.wearables.base import OAuthToken, utc_now
from src.wearables.errors import IngestError
from src.wearables.store import IngestStore
from src.wearables.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("pulsebridge.wearables.sync.scheduler")

# Minimum seconds between scheduled syncs per provider
SYNC_INTERVALS: dict[str, int] = {
    "whoop": 3600,
}


@dataclass
class ScheduledSyncOutcome:
    """Result of one user's scheduled sync.

    Attributes:
        user_id:        Internal user UUID.
        status:         'success', 'partial', 'error' or 'skipped'.
        metrics_count:  Metric rows written.
        workouts_count: Workout rows written.
        error:          Error message if status == 'error'.
    """

    user_id: UUID
    status: str
    metrics_count: int = 0
    workouts_count: int = 0
    error: str | None = None


class ScheduledSync:
    """Run the orchestrator for every due user of one provider.

    Users are processed with at most ``max_concurrent`` syncs in flight;
    each sync is itself sequential.
    """

    def __init__(
        self,
        store: IngestStore,
        orchestrator: SyncOrchestrator,
        days_back: int = 2,
        max_pages: int = 5,
        max_concurrent: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the sweep.

        Args:
            store:          IngestStore to list tokens from.
            orchestrator:   Orchestrator bound to the provider's adapter.
            days_back:      Window passed to each sync.
            max_pages:      Page ceiling per record type.
            max_concurrent: Maximum number of simultaneous user syncs.
            clock:          Returns the current UTC time.
        """
        self._store = store
        self._orchestrator = orchestrator
        self._days_back = days_back
        self._max_pages = max_pages
        self._max_concurrent = max_concurrent
        self._clock = clock

    @property
    def provider(self) -> str:
        return self._orchestrator.provider

    def get_interval(self, provider: str) -> int:
        return SYNC_INTERVALS.get(provider, 3600)

    def should_sync(self, provider: str, last_sync_at: datetime | None) -> bool:
        """Return True if a user is due for a sync.

        Args:
            provider:     Provider slug.
            last_sync_at: UTC datetime of last sync (None = never).
        """
        if last_sync_at is None:
            return True
        elapsed = (self._clock() - last_sync_at).total_seconds()
        return elapsed >= self.get_interval(provider)

    async def run(self, force: bool = False) -> list[ScheduledSyncOutcome]:
        """Sync every due user.

        Args:
            force: Ignore ``last_sync_at`` and sync everyone.

        Returns:
            One outcome per active token, including skipped ones.
        """
        tokens = await self._store.list_active_tokens(self.provider)
        if not tokens:
            logger.info("ScheduledSync: no active %s tokens", self.provider)
            return []

        outcomes: list[ScheduledSyncOutcome] = []
        due: list[OAuthToken] = []
        for token in tokens:
            if force or self.should_sync(self.provider, token.last_sync_at):
                due.append(token)
            else:
                outcomes.append(ScheduledSyncOutcome(user_id=token.user_id, status="skipped"))

        logger.info("ScheduledSync: %d of %d %s users due", len(due), len(tokens), self.provider)
        semaphore = asyncio.Semaphore(self._max_concurrent)
        results = await asyncio.gather(
            *(self._run_one(token, semaphore) for token in due),
            return_exceptions=True,
        )

        for token, r in zip(due, results):
            if isinstance(r, BaseException):
                logger.error("Scheduled sync for %s failed with exception: %r", token.user_id, r)
                outcomes.append(ScheduledSyncOutcome(user_id=token.user_id, status="error", error=str(r)))
            else:
                outcomes.append(r)

        logger.info(
            "ScheduledSync: %d synced, %d errors",
            sum(1 for o in outcomes if o.status in ("success", "partial")),
            sum(1 for o in outcomes if o.status == "error"),
        )
        return outcomes

    async def _run_one(self, token: OAuthToken, semaphore: asyncio.Semaphore) -> ScheduledSyncOutcome:
        async with semaphore:
            try:
                result = await self._orchestrator.sync_user_data(
                    token, self._days_back, max_pages=self._max_pages
                )
            except (IngestError, httpx.HTTPError) as exc:
                logger.warning("Scheduled sync for %s/%s failed: %s", token.user_id, self.provider, exc)
                return ScheduledSyncOutcome(user_id=token.user_id, status="error", error=str(exc))
        return ScheduledSyncOutcome(
            user_id=token.user_id,
            status=result.status,
            metrics_count=result.metrics_count,
            workouts_count=result.workouts_count,
        )
