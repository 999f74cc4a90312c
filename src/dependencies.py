"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.wearables.adapters import TerraAdapter, WhoopAdapter
from src.wearables.client import ProviderClientFactory
from src.wearables.events import EventRouter
from src.wearables.normalizer import Normalizer
from src.wearables.priority import SourcePolicy
from src.wearables.store import IngestStore, PostgresIngestStore
from src.wearables.sync.orchestrator import SyncOrchestrator
from src.wearables.sync.scheduler import ScheduledSync
from src.wearables.tokens import OAuthRefresher, TokenStore


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the Supabase JWT."""

    user_id: uuid.UUID  # Supabase auth user id (JWT ``sub``)
    email: str | None = None
    role: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Supabase auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


# ---------- Pipeline components ----------
# Cached so the token store's per-user refresh locks are shared by every request.


@lru_cache
def get_ingest_store() -> IngestStore:
    return PostgresIngestStore()


@lru_cache
def get_source_policy() -> SourcePolicy:
    return SourcePolicy()


@lru_cache
def get_token_store() -> TokenStore:
    settings = get_settings()
    refreshers = {
        "whoop": OAuthRefresher(
            settings.whoop_token_url,
            settings.whoop_client_id,
            settings.whoop_client_secret,
            timeout=settings.http_timeout_seconds,
        ),
    }
    return TokenStore(
        get_ingest_store(),
        refreshers,
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
    )


@lru_cache
def get_client_factory() -> ProviderClientFactory:
    settings = get_settings()
    return ProviderClientFactory(
        settings.whoop_api_base,
        max_pages=settings.provider_max_pages,
        page_size=settings.provider_page_size,
        timeout=settings.http_timeout_seconds,
    )


def _normalizer() -> Normalizer:
    return Normalizer(get_source_policy())


@lru_cache
def get_event_router() -> EventRouter:
    normalizer = _normalizer()
    adapters = {
        "whoop": WhoopAdapter(normalizer),
        "terra": TerraAdapter(normalizer),
    }
    return EventRouter(get_ingest_store(), get_token_store(), adapters, get_client_factory())


@lru_cache
def get_sync_orchestrator() -> SyncOrchestrator:
    normalizer = _normalizer()
    return SyncOrchestrator(
        get_ingest_store(),
        get_token_store(),
        WhoopAdapter(normalizer),
        get_client_factory(),
        normalizer=normalizer,
    )


@lru_cache
def get_scheduled_sync() -> ScheduledSync:
    settings = get_settings()
    return ScheduledSync(
        get_ingest_store(),
        get_sync_orchestrator(),
        days_back=settings.scheduled_days_back,
        max_pages=settings.scheduled_max_pages,
        max_concurrent=settings.scheduled_max_concurrent,
    )


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Store = Annotated[IngestStore, Depends(get_ingest_store)]
Events = Annotated[EventRouter, Depends(get_event_router)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)]
Scheduler = Annotated[ScheduledSync, Depends(get_scheduled_sync)]
Policy = Annotated[SourcePolicy, Depends(get_source_policy)]
