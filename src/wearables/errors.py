"""Exception hierarchy for the ingestion pipeline.

Routers translate these into HTTP responses; sync and webhook code catch
them at the isolation boundaries (per record type, per user, per event).
"""

from __future__ import annotations

from uuid import UUID


class IngestError(Exception):
    """Base class for all ingestion failures."""


class ProviderAPIError(IngestError):
    """A provider REST call returned a non-2xx response."""

    def __init__(self, status_code: int, body: str, url: str) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"Provider API returned {status_code} for {url}: {body}")


class TokenNotFoundError(IngestError):
    """No active OAuth token exists for the user and provider."""

    def __init__(self, user_id: UUID, provider: str) -> None:
        self.user_id = user_id
        self.provider = provider
        super().__init__(f"No active {provider} token for user {user_id}")


class TokenRefreshError(IngestError):
    """The provider rejected or failed a refresh-token grant."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ReauthorizationRequired(IngestError):
    """The stored token can no longer be refreshed; the user must reconnect."""

    def __init__(self, user_id: UUID, provider: str) -> None:
        self.user_id = user_id
        self.provider = provider
        super().__init__(f"{provider} token for user {user_id} requires reauthorization")


class UnknownProviderUser(IngestError):
    """A provider user id has no internal user mapping."""

    def __init__(self, provider: str, provider_user_id: str) -> None:
        self.provider = provider
        self.provider_user_id = provider_user_id
        super().__init__(f"No user mapped to {provider} user {provider_user_id}")


class NormalizationError(IngestError):
    """A provider record is missing fields required to normalize it."""
