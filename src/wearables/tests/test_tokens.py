"""Tests for the token store: proactive refresh, duplicate pruning and CAS handling."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import pytest

from src.wearables.errors import ReauthorizationRequired, TokenNotFoundError, TokenRefreshError
from src.wearables.tests.conftest import TEST_USER_ID
from src.wearables.tests.fakes import FakeClock, FakeIngestStore, FakeRefresher
from src.wearables.tokens import OAuthRefresher, TokenStore

TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"


def _token_store(store: FakeIngestStore, clock: FakeClock, refresher: FakeRefresher) -> TokenStore:
    return TokenStore(store, {"whoop": refresher}, clock=clock)


class TestProactiveRefresh:
    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(self, store: FakeIngestStore, clock: FakeClock) -> None:
        """A token expiring in 4 minutes is inside the 5-minute buffer."""
        store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=4))
        refresher = FakeRefresher(clock)

        access = await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")

        assert access == "access-2"
        assert refresher.calls == 1
        stored = next(iter(store.tokens.values()))
        assert stored.refresh_token == "refresh-2"
        assert stored.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_token_outside_buffer_is_reused(self, store: FakeIngestStore, clock: FakeClock) -> None:
        store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=6))
        refresher = FakeRefresher(clock)

        access = await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")

        assert access == "access-1"
        assert refresher.calls == 0
        assert store.calls["update_token_if_unchanged"] == 0

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_reused(self, store: FakeIngestStore, clock: FakeClock) -> None:
        store.add_token(TEST_USER_ID, expires_at=None)
        refresher = FakeRefresher(clock)

        assert await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop") == "access-1"
        assert refresher.calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(self, store: FakeIngestStore, clock: FakeClock) -> None:
        store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=1))
        refresher = FakeRefresher(clock)
        tokens = _token_store(store, clock, refresher)

        results = await asyncio.gather(
            tokens.get_valid_access_token(TEST_USER_ID, "whoop"),
            tokens.get_valid_access_token(TEST_USER_ID, "whoop"),
        )

        assert results == ["access-2", "access-2"]
        assert refresher.calls == 1

    @pytest.mark.asyncio
    async def test_lock_table_does_not_grow(self, store: FakeIngestStore, clock: FakeClock) -> None:
        tokens = _token_store(store, clock, FakeRefresher(clock))
        users = [uuid4() for _ in range(5)]
        for user_id in users:
            store.add_token(user_id, expires_at=clock() + timedelta(minutes=1))

        for user_id in users:
            await tokens.get_valid_access_token(user_id, "whoop")

        assert len(tokens._locks) == 0


class TestTokenLookup:
    @pytest.mark.asyncio
    async def test_no_token_raises(self, store: FakeIngestStore, clock: FakeClock) -> None:
        with pytest.raises(TokenNotFoundError):
            await _token_store(store, clock, FakeRefresher(clock)).get_valid_access_token(TEST_USER_ID, "whoop")

    @pytest.mark.asyncio
    async def test_duplicates_pruned_keeping_newest(self, store: FakeIngestStore, clock: FakeClock) -> None:
        far = clock() + timedelta(hours=2)
        old = store.add_token(TEST_USER_ID, expires_at=far, access_token="old")
        newest = store.add_token(TEST_USER_ID, expires_at=far, access_token="new")

        access = await _token_store(store, clock, FakeRefresher(clock)).get_valid_access_token(TEST_USER_ID, "whoop")

        assert access == "new"
        assert old.id not in store.tokens
        assert newest.id in store.tokens

    @pytest.mark.asyncio
    async def test_inactive_tokens_are_ignored(self, store: FakeIngestStore, clock: FakeClock) -> None:
        token = store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(hours=1))
        await store.deactivate_token(token.id)

        with pytest.raises(TokenNotFoundError):
            await _token_store(store, clock, FakeRefresher(clock)).get_valid_access_token(TEST_USER_ID, "whoop")


class TestRefreshFailure:
    @pytest.mark.asyncio
    async def test_rejected_refresh_deactivates(self, store: FakeIngestStore, clock: FakeClock) -> None:
        token = store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=2))
        refresher = FakeRefresher(clock, fail=True)

        with pytest.raises(ReauthorizationRequired):
            await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")

        assert token.id in store.tokens
        assert store.tokens[token.id].is_active is False

    @pytest.mark.asyncio
    async def test_missing_refresh_token_deactivates(self, store: FakeIngestStore, clock: FakeClock) -> None:
        token = store.add_token(TEST_USER_ID, expires_at=clock() - timedelta(minutes=1), refresh_token=None)
        refresher = FakeRefresher(clock)

        with pytest.raises(ReauthorizationRequired):
            await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")
        assert refresher.calls == 0
        assert store.tokens[token.id].is_active is False

    @pytest.mark.asyncio
    async def test_failure_after_concurrent_success_keeps_token(
        self, store: FakeIngestStore, clock: FakeClock
    ) -> None:
        """Another worker rotated the refresh token first; use its result."""
        token = store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=2))
        refresher = FakeRefresher(
            clock,
            fail=True,
            on_refresh=lambda: store.overwrite_token(token.id, "winner", clock() + timedelta(hours=1)),
        )

        access = await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")

        assert access == "winner"
        assert store.tokens[token.id].is_active is True
        assert store.calls["deactivate_token"] == 0


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_lost_swap_adopts_winner(self, store: FakeIngestStore, clock: FakeClock) -> None:
        token = store.add_token(TEST_USER_ID, expires_at=clock() + timedelta(minutes=2))
        refresher = FakeRefresher(
            clock,
            on_refresh=lambda: store.overwrite_token(token.id, "winner", clock() + timedelta(hours=1)),
        )

        access = await _token_store(store, clock, refresher).get_valid_access_token(TEST_USER_ID, "whoop")

        assert access == "winner"
        assert store.tokens[token.id].access_token == "winner"
        assert store.calls["update_token_if_unchanged"] == 1


class TestOAuthRefresher:
    @pytest.mark.asyncio
    async def test_posts_refresh_grant(self, clock: FakeClock) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600},
            )

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        refresher = OAuthRefresher(TOKEN_URL, "client-id", "client-secret", http_client=http, clock=clock)

        tokens = await refresher.refresh("old-refresh")

        form = parse_qs(captured[0].content.decode())
        assert captured[0].method == "POST"
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]
        assert form["client_id"] == ["client-id"]
        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "new-refresh"
        assert tokens.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unrotated_refresh_token_is_kept(self, clock: FakeClock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 60})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tokens = await OAuthRefresher(TOKEN_URL, "id", "secret", http_client=http, clock=clock).refresh("keep-me")

        assert tokens.refresh_token == "keep-me"
        assert tokens.expires_at == clock() + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_error_status_raises(self, clock: FakeClock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TokenRefreshError) as exc_info:
            await OAuthRefresher(TOKEN_URL, "id", "secret", http_client=http, clock=clock).refresh("r")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self, clock: FakeClock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TokenRefreshError):
            await OAuthRefresher(TOKEN_URL, "id", "secret", http_client=http, clock=clock).refresh("r")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, clock: FakeClock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TokenRefreshError):
            await OAuthRefresher(TOKEN_URL, "id", "secret", http_client=http, clock=clock).refresh("r")
