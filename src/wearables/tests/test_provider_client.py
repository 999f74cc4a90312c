"""Tests for the provider REST client: pagination, errors and log redaction."""

from __future__ import annotations

import httpx
import pytest

from src.wearables.client import ProviderClient, ProviderClientFactory, redact_url
from src.wearables.errors import ProviderAPIError

BASE = "https://api.example.test/v2"


def _client(handler, **kwargs) -> ProviderClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderClient(BASE, "token-abc", http_client=http, **kwargs)


class TestPagination:
    @pytest.mark.asyncio
    async def test_follows_cursor_until_exhausted(self) -> None:
        pages = {
            None: {"records": [{"id": 1}, {"id": 2}], "next_token": "p2"},
            "p2": {"records": [{"id": 3}], "nextToken": "p3"},
            "p3": {"records": [{"id": 4}], "next_token": None},
        }
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            cursor = request.url.params.get("nextToken")
            seen.append(cursor)
            return httpx.Response(200, json=pages[cursor])

        records = await _client(handler).fetch_all_paged("/cycle", {"start": "s"})

        assert [r["id"] for r in records] == [1, 2, 3, 4]
        assert seen == [None, "p2", "p3"]

    @pytest.mark.asyncio
    async def test_stops_at_page_ceiling(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"records": [{"id": calls}], "next_token": f"p{calls}"})

        records = await _client(handler, max_pages=3).fetch_all_paged("/sleep")

        assert calls == 3
        assert len(records) == 3

    @pytest.mark.asyncio
    async def test_sends_bearer_and_limit(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"records": []})

        await _client(handler, page_size=10).fetch_all_paged("/workout")

        assert captured[0].headers["Authorization"] == "Bearer token-abc"
        assert captured[0].url.params["limit"] == "10"
        assert captured[0].url.path == "/v2/workout"

    @pytest.mark.asyncio
    async def test_unexpected_shape_yields_no_records(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"records": "nope"})

        assert await _client(handler).fetch_all_paged("/cycle") == []


class TestErrors:
    @pytest.mark.asyncio
    async def test_client_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="unauthorized")

        with pytest.raises(ProviderAPIError) as exc_info:
            await _client(handler).fetch_records("/recovery")
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "unauthorized"

    @pytest.mark.asyncio
    async def test_error_mid_pagination_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("nextToken"):
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json={"records": [{"id": 1}], "next_token": "p2"})

        with pytest.raises(ProviderAPIError):
            await _client(handler).fetch_all_paged("/cycle")

    @pytest.mark.asyncio
    async def test_error_url_is_redacted(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="bad")

        with pytest.raises(ProviderAPIError) as exc_info:
            await _client(handler).get("/cycle", {"access_token": "leaky", "limit": 5})
        assert "leaky" not in exc_info.value.url
        assert "limit=5" in exc_info.value.url


class TestRedactUrl:
    def test_secret_params_hidden(self) -> None:
        url = "https://api.example.test/oauth?refresh_token=abc123&client_secret=xyz&page=2"
        redacted = redact_url(url)

        assert "abc123" not in redacted
        assert "xyz" not in redacted
        assert "page=2" in redacted

    def test_url_without_query_unchanged(self) -> None:
        assert redact_url(f"{BASE}/cycle") == f"{BASE}/cycle"


class TestClientFactory:
    def test_builds_bound_client(self) -> None:
        factory = ProviderClientFactory(BASE, max_pages=7)
        client = factory("token-xyz")

        assert client.max_pages == 7
        assert client.url_for("/cycle") == f"{BASE}/cycle"

    def test_max_pages_override(self) -> None:
        assert ProviderClientFactory(BASE)("t", max_pages=2).max_pages == 2
