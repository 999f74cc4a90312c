"""Authenticated REST client for pull-based providers.

Wraps ``httpx.AsyncClient`` with bearer auth, cursor pagination and a hard
page ceiling.  Non-2xx responses raise ``ProviderAPIError``; nothing is
retried here — callers decide whether a failure is per-record, per-type or
fatal.

Pagination follows ``next_token`` (or ``nextToken``) from each response and
sends it back as the ``nextToken`` query parameter.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from src.wearables.errors import ProviderAPIError

logger = logging.getLogger("pulsebridge.wearables.client")

_BODY_LOG_LIMIT = 300

# Query parameters never written to logs
_SECRET_PARAMS = {"access_token", "refresh_token", "client_secret", "token", "api_key", "key"}


def redact_url(url: httpx.URL | str) -> str:
    """Return ``url`` with secret query values replaced by ``***``."""
    url = httpx.URL(url)
    if not url.params:
        return str(url)
    params = [
        (name, "***" if name.lower() in _SECRET_PARAMS else value)
        for name, value in url.params.multi_items()
    ]
    return str(url.copy_with(params=params))


def _records(data: Any) -> list[dict]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    records = data.get("records", data.get("data", []))
    return records if isinstance(records, list) else []


class ProviderClient:
    """Bearer-authenticated GET client bound to one access token.

    Args:
        base_url:     API root, e.g. ``https://api.prod.whoop.com/developer/v2``.
        access_token: Valid OAuth access token.
        http_client:  Optional shared httpx client (for pooling and tests).
        max_pages:    Page ceiling for ``fetch_all_paged``.
        page_size:    Default ``limit`` sent on paged requests.
        timeout:      Per-request timeout when no client is injected.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        max_pages: int = 10,
        page_size: int = 25,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._http_client = http_client
        self._max_pages = max_pages
        self._page_size = page_size
        self._timeout = timeout

    @property
    def max_pages(self) -> int:
        return self._max_pages

    def url_for(self, endpoint: str) -> str:
        return f"{self._base_url}/{endpoint.lstrip('/')}"

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    async def _get(self, client: httpx.AsyncClient, url: str, params: dict | None) -> Any:
        safe_url = redact_url(httpx.URL(url, params=params or None))
        response = await client.get(url, params=params, headers=self._headers)
        body_preview = response.text[:_BODY_LOG_LIMIT]
        logger.debug("GET %s → %d %s", safe_url, response.status_code, body_preview)
        if response.is_error:
            logger.warning("Provider GET %s failed with %d: %s", safe_url, response.status_code, body_preview)
            raise ProviderAPIError(response.status_code, body_preview, safe_url)
        return response.json()

    async def get(self, endpoint: str, params: dict | None = None) -> Any:
        """Make one authenticated GET request and return the decoded JSON."""
        async with self._session() as client:
            return await self._get(client, self.url_for(endpoint), params)

    async def fetch_one(self, endpoint: str) -> dict:
        """Fetch a single-record endpoint such as ``/activity/sleep/{id}``."""
        data = await self.get(endpoint)
        return data if isinstance(data, dict) else {}

    async def fetch_records(self, endpoint: str, params: dict | None = None) -> list[dict]:
        """Fetch one page and return its ``records`` list."""
        return _records(await self.get(endpoint, params))

    async def fetch_all_paged(
        self,
        endpoint: str,
        params: dict | None = None,
        page_size: int | None = None,
    ) -> list[dict]:
        """Follow the pagination cursor until exhausted or ``max_pages`` is hit.

        Args:
            endpoint:  Collection endpoint, e.g. ``/cycle``.
            params:    Extra query params (``start``/``end`` window).
            page_size: Override the default ``limit``.

        Returns:
            All records from every page fetched.
        """
        url = self.url_for(endpoint)
        records: list[dict] = []
        next_token: str | None = None
        pages = 0

        async with self._session() as client:
            while pages < self._max_pages:
                page_params = dict(params or {})
                page_params["limit"] = page_size or self._page_size
                if next_token:
                    page_params["nextToken"] = next_token

                data = await self._get(client, url, page_params)
                pages += 1
                records.extend(_records(data))

                next_token = None
                if isinstance(data, dict):
                    next_token = data.get("next_token") or data.get("nextToken")
                if not next_token:
                    break

        if next_token:
            logger.warning(
                "Stopped paging %s after %d pages with more records available",
                endpoint,
                pages,
            )
        logger.debug("Fetched %d records from %s in %d pages", len(records), endpoint, pages)
        return records


class ProviderClientFactory:
    """Build ProviderClients for a provider once a token is known."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        max_pages: int = 10,
        page_size: int = 25,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url
        self._http_client = http_client
        self._max_pages = max_pages
        self._page_size = page_size
        self._timeout = timeout

    def __call__(self, access_token: str, max_pages: int | None = None) -> ProviderClient:
        return ProviderClient(
            self._base_url,
            access_token,
            http_client=self._http_client,
            max_pages=max_pages or self._max_pages,
            page_size=self._page_size,
            timeout=self._timeout,
        )
