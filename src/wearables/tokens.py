"""OAuth token storage and refresh.

``TokenStore.get_valid_access_token`` is the only way pipeline code obtains
a bearer token.  It guarantees:

- at most one active token per (user, provider): older duplicates are
  deleted, keeping the most recently updated row;
- a token expiring within the refresh buffer (5 minutes by default) is
  refreshed before it is returned;
- concurrent refreshes of the same token do not clobber each other.  Inside
  one process a per-(user, provider) lock serializes them; across processes
  the write is a compare-and-swap on ``updated_at`` and the loser adopts the
  winner's token;
- a token the provider refuses to refresh is deactivated (never deleted)
  and ``ReauthorizationRequired`` is raised, unless another invocation has
  already refreshed it successfully.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import Callable, Protocol
from uuid import UUID

import httpx

from src.wearables.base import OAuthToken, OAuthTokens, utc_now
from src.wearables.errors import (
    ReauthorizationRequired,
    TokenNotFoundError,
    TokenRefreshError,
)
from src.wearables.store import IngestStore

logger = logging.getLogger("pulsebridge.wearables.tokens")

DEFAULT_REFRESH_BUFFER_SECONDS = 300


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> OAuthTokens: ...


class OAuthRefresher:
    """Perform an OAuth2 refresh-token grant against a provider token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the refresher.

        Args:
            token_url:     Provider token endpoint.
            client_id:     OAuth2 client ID.
            client_secret: OAuth2 client secret.
            http_client:   Optional pre-configured httpx client (for testing).
            timeout:       Request timeout when no client is injected.
            clock:         Returns the current UTC time.
        """
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Returns:
            New OAuthTokens.  If the provider does not rotate the refresh
            token, the current one is carried over.

        Raises:
            TokenRefreshError: On any HTTP failure or a malformed response.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        try:
            if self._http_client:
                response = await self._http_client.post(self._token_url, data=data, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._token_url, data=data, headers=headers)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Token endpoint unreachable: {exc}") from exc

        if response.is_error:
            raise TokenRefreshError(
                f"Token refresh failed with {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError) as exc:
            raise TokenRefreshError("Token endpoint returned no access_token") from exc

        expires_in = payload.get("expires_in", 3600)
        return OAuthTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=self._clock() + timedelta(seconds=int(expires_in)),
            token_type=payload.get("token_type", "Bearer"),
        )


class TokenStore:
    """Hand out valid access tokens, refreshing them when close to expiry."""

    def __init__(
        self,
        store: IngestStore,
        refreshers: dict[str, TokenRefresher],
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._refreshers = refreshers
        self._buffer = refresh_buffer_seconds
        self._clock = clock
        # Entries vanish once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[tuple[UUID, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: UUID, provider: str) -> asyncio.Lock:
        key = (user_id, provider)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get_valid_access_token(self, user_id: UUID, provider: str) -> str:
        """Return a bearer token for (user, provider) valid for at least the buffer.

        Raises:
            TokenNotFoundError:      No active token row.
            ReauthorizationRequired: Refresh was refused; token deactivated.
        """
        token = await self.get_valid_token(user_id, provider)
        return token.access_token

    async def get_valid_token(self, user_id: UUID, provider: str) -> OAuthToken:
        tokens = await self._store.list_tokens(user_id, provider)
        if not tokens:
            raise TokenNotFoundError(user_id, provider)

        token, *duplicates = tokens
        if duplicates:
            logger.warning(
                "Pruning %d duplicate %s tokens for user %s", len(duplicates), provider, user_id
            )
            await self._store.delete_tokens([t.id for t in duplicates])

        return await self.ensure_fresh(token)

    async def ensure_fresh(self, token: OAuthToken) -> OAuthToken:
        """Return ``token`` if it is not close to expiry, otherwise a refreshed copy."""
        if not token.needs_refresh(self._buffer, now=self._clock()):
            return token

        async with self._lock_for(token.user_id, token.provider):
            current = await self._store.get_token(token.id)
            if current is None or not current.is_active:
                raise TokenNotFoundError(token.user_id, token.provider)
            if not current.needs_refresh(self._buffer, now=self._clock()):
                return current
            return await self._refresh(current)

    async def _refresh(self, token: OAuthToken) -> OAuthToken:
        refresher = self._refreshers.get(token.provider)
        try:
            if refresher is None:
                raise TokenRefreshError(f"No refresher configured for {token.provider}")
            if not token.refresh_token:
                raise TokenRefreshError("Token has no refresh_token")
            new_tokens = await refresher.refresh(token.refresh_token)
        except TokenRefreshError as exc:
            latest = await self._store.get_token(token.id)
            if (
                latest is not None
                and latest.is_active
                and latest.updated_at != token.updated_at
                and not latest.needs_refresh(self._buffer, now=self._clock())
            ):
                logger.info(
                    "Refresh for %s/%s failed but another worker already refreshed it",
                    token.user_id,
                    token.provider,
                )
                return latest
            logger.warning(
                "Deactivating %s token for user %s: %s", token.provider, token.user_id, exc
            )
            await self._store.deactivate_token(token.id)
            raise ReauthorizationRequired(token.user_id, token.provider) from exc

        updated = await self._store.update_token_if_unchanged(token.id, token.updated_at, new_tokens)
        if updated is not None:
            logger.info("Refreshed %s token for user %s", token.provider, token.user_id)
            return updated

        # Lost the compare-and-swap: adopt whatever the winner wrote.
        latest = await self._store.get_token(token.id)
        if latest is None or not latest.is_active:
            raise ReauthorizationRequired(token.user_id, token.provider)
        logger.info("Concurrent refresh detected for %s/%s; using stored token", token.user_id, token.provider)
        return latest
