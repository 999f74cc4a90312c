"""Tests for the scheduled sync sweep."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from src.wearables.base import OAuthToken
from src.wearables.errors import ReauthorizationRequired
from src.wearables.sync.orchestrator import SyncResult
from src.wearables.sync.scheduler import ScheduledSync
from src.wearables.tests.conftest import TEST_USER_ID
from src.wearables.tests.fakes import FakeClock, FakeIngestStore


class RecordingOrchestrator:
    """Stands in for SyncOrchestrator and records which tokens it synced."""

    provider = "whoop"

    def __init__(self, failures: dict | None = None, delay: bool = False) -> None:
        self.synced: list[OAuthToken] = []
        self.kwargs: list[dict] = []
        self._failures = failures or {}
        self._delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def sync_user_data(self, token: OAuthToken, days_back: int, max_pages: int | None = None) -> SyncResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(0)
                await asyncio.sleep(0)
            self.synced.append(token)
            self.kwargs.append({"days_back": days_back, "max_pages": max_pages})
            failure = self._failures.get(token.user_id)
            if failure is not None:
                raise failure
            return SyncResult(user_id=token.user_id, provider="whoop", metrics_count=10, workouts_count=1)
        finally:
            self.in_flight -= 1


class TestShouldSync:
    def test_never_synced_is_due(self, store: FakeIngestStore, clock: FakeClock) -> None:
        sweep = ScheduledSync(store, RecordingOrchestrator(), clock=clock)
        assert sweep.should_sync("whoop", None) is True

    def test_interval_boundary(self, store: FakeIngestStore, clock: FakeClock) -> None:
        sweep = ScheduledSync(store, RecordingOrchestrator(), clock=clock)
        assert sweep.should_sync("whoop", clock() - timedelta(minutes=59)) is False
        assert sweep.should_sync("whoop", clock() - timedelta(minutes=60)) is True

    def test_unknown_provider_defaults_to_hourly(self, store: FakeIngestStore, clock: FakeClock) -> None:
        assert ScheduledSync(store, RecordingOrchestrator(), clock=clock).get_interval("polar") == 3600


class TestRun:
    @pytest.mark.asyncio
    async def test_recently_synced_users_skipped(self, store: FakeIngestStore, clock: FakeClock) -> None:
        fresh_user, stale_user, new_user = uuid4(), uuid4(), uuid4()
        store.add_token(fresh_user, last_sync_at=clock() - timedelta(minutes=10))
        store.add_token(stale_user, last_sync_at=clock() - timedelta(hours=2))
        store.add_token(new_user)
        orchestrator = RecordingOrchestrator()

        outcomes = await ScheduledSync(store, orchestrator, clock=clock).run()

        by_user = {o.user_id: o for o in outcomes}
        assert by_user[fresh_user].status == "skipped"
        assert by_user[stale_user].status == "success"
        assert by_user[new_user].status == "success"
        assert by_user[new_user].metrics_count == 10
        assert {t.user_id for t in orchestrator.synced} == {stale_user, new_user}

    @pytest.mark.asyncio
    async def test_force_syncs_everyone(self, store: FakeIngestStore, clock: FakeClock) -> None:
        store.add_token(TEST_USER_ID, last_sync_at=clock() - timedelta(minutes=1))
        orchestrator = RecordingOrchestrator()

        outcomes = await ScheduledSync(store, orchestrator, clock=clock).run(force=True)

        assert [o.status for o in outcomes] == ["success"]
        assert len(orchestrator.synced) == 1

    @pytest.mark.asyncio
    async def test_short_window_is_used(self, store: FakeIngestStore, clock: FakeClock) -> None:
        store.add_token(TEST_USER_ID)
        orchestrator = RecordingOrchestrator()

        await ScheduledSync(store, orchestrator, clock=clock).run()

        assert orchestrator.kwargs == [{"days_back": 2, "max_pages": 5}]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, store: FakeIngestStore, clock: FakeClock) -> None:
        broken, healthy, crashing = uuid4(), uuid4(), uuid4()
        for user_id in (broken, healthy, crashing):
            store.add_token(user_id)
        orchestrator = RecordingOrchestrator(
            failures={
                broken: ReauthorizationRequired(broken, "whoop"),
                crashing: RuntimeError("unexpected"),
            }
        )

        outcomes = await ScheduledSync(store, orchestrator, clock=clock).run()

        by_user = {o.user_id: o for o in outcomes}
        assert by_user[healthy].status == "success"
        assert by_user[broken].status == "error"
        assert "reauthorization" in by_user[broken].error
        assert by_user[crashing].status == "error"
        assert by_user[crashing].error == "unexpected"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store: FakeIngestStore, clock: FakeClock) -> None:
        for _ in range(6):
            store.add_token(uuid4())
        orchestrator = RecordingOrchestrator(delay=True)

        outcomes = await ScheduledSync(store, orchestrator, max_concurrent=2, clock=clock).run()

        assert len(outcomes) == 6
        assert orchestrator.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_no_tokens(self, store: FakeIngestStore, clock: FakeClock) -> None:
        assert await ScheduledSync(store, RecordingOrchestrator(), clock=clock).run() == []

    @pytest.mark.asyncio
    async def test_inactive_tokens_not_synced(self, store: FakeIngestStore, clock: FakeClock) -> None:
        token = store.add_token(TEST_USER_ID)
        await store.deactivate_token(token.id)
        orchestrator = RecordingOrchestrator()

        assert await ScheduledSync(store, orchestrator, clock=clock).run() == []
        assert orchestrator.synced == []
