"""Pydantic models for sync triggers."""

from __future__ import annotations

import uuid

from pydantic import Field

from src.models.base import PulseBridgeBase


class SyncRequest(PulseBridgeBase):
    target_user_id: uuid.UUID
    days_back: int = Field(default=28, ge=1, le=365)


class SyncResponse(PulseBridgeBase):
    success: bool = True
    status: str
    metrics_count: int
    workouts_count: int
    failed_types: list[str] = Field(default_factory=list)


class ScheduledUserResult(PulseBridgeBase):
    user_id: uuid.UUID
    status: str
    metrics_count: int = 0
    workouts_count: int = 0
    error: str | None = None


class ScheduledSyncResponse(PulseBridgeBase):
    success: bool = True
    processed: int
    skipped: int
    errors: int
    results: list[ScheduledUserResult] = Field(default_factory=list)
