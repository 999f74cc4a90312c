"""Base classes and canonical data models for the PulseBridge ingestion pipeline.

Every provider adapter must subclass WearableAdapter and return the canonical
UnifiedMetric / Workout models.  These types are the single source of truth
consumed by the deduplicator, database writer, and API layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger("pulsebridge.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetricCategory(str, Enum):
    ACTIVITY = "activity"
    SLEEP = "sleep"
    RECOVERY = "recovery"
    HEART = "heart"
    WORKOUT = "workout"
    BODY = "body"


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned by a refresh-token grant.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        extra:         Any additional fields returned by the provider.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    extra: dict = field(default_factory=dict)


@dataclass
class OAuthToken:
    """A stored provider credential row (``oauth_tokens``).

    Attributes:
        id:               Row id.
        user_id:          Internal user UUID.
        provider:         Provider slug ('whoop').
        access_token:     Current bearer token.
        refresh_token:    Refresh token, if the provider issued one.
        expires_at:       UTC expiry of the access token.
        is_active:        False once the token can no longer be refreshed.
        last_sync_at:     UTC timestamp of the last completed sync.
        provider_user_id: The provider's own id for the user.
        updated_at:       Row version used for compare-and-swap refreshes.
    """

    id: UUID
    user_id: UUID
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    provider_user_id: str | None = None
    updated_at: datetime | None = None

    def seconds_until_expiry(self, now: datetime | None = None) -> float | None:
        if self.expires_at is None:
            return None
        return (self.expires_at - (now or utc_now())).total_seconds()

    def needs_refresh(self, buffer_seconds: int = 300, now: datetime | None = None) -> bool:
        """Return True if the access token expires within ``buffer_seconds``.

        Tokens without a known expiry are never refreshed proactively.
        """
        remaining = self.seconds_until_expiry(now)
        if remaining is None:
            return False
        return remaining < buffer_seconds


# ---------------------------------------------------------------------------
# Canonical / Normalized models
# ---------------------------------------------------------------------------


@dataclass
class UnifiedMetric:
    """One scalar measurement in the unified schema (``unified_metrics``).

    Attributes:
        user_id:          Internal user UUID.
        metric_name:      Controlled-vocabulary name ('Recovery Score', 'Sleep Duration').
        category:         MetricCategory value.
        value:            Numeric value in ``unit``.
        unit:             Display unit ('%', 'ms', 'bpm', 'hours', 'kcal').
        source:           Device that produced the data ('whoop', 'garmin').
        provider:         Integration it arrived through ('whoop', 'terra').
        measurement_date: UTC calendar day the value belongs to.
        external_id:      Stable id derived from the provider record.
        priority:         Source rank, lower wins at read time.
        confidence_score: 0–100 confidence in this source for this metric.
        source_data:      Optional provider detail (e.g. sleep stage breakdown).
        updated_at:       Set when the row is read back from storage.
    """

    user_id: UUID
    metric_name: str
    category: str
    value: float
    unit: str
    source: str
    provider: str
    measurement_date: date
    external_id: str | None = None
    priority: int = 1
    confidence_score: int = 95
    source_data: dict | None = None
    updated_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[UUID, str, date, str]:
        """The row's uniqueness key: (user, metric name, date, source)."""
        return (self.user_id, self.metric_name, self.measurement_date, self.source)


@dataclass
class Workout:
    """A single workout session (``workouts``).  Unique on (user_id, external_id)."""

    user_id: UUID
    external_id: str
    workout_type: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    calories: float | None = None
    avg_heart_rate: float | None = None
    max_heart_rate: float | None = None
    strain: float | None = None
    distance_meters: float | None = None
    source: str = "whoop"
    source_data: dict | None = None

    @property
    def dedup_key(self) -> tuple[UUID, str]:
        return (self.user_id, self.external_id)


@dataclass
class NormalizedRecord:
    """Everything derived from one provider record."""

    metrics: list[UnifiedMetric] = field(default_factory=list)
    workout: Workout | None = None


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


@dataclass
class WebhookEvent:
    """A transient provider notification.

    Attributes:
        provider:         Provider slug.
        event_type:       Dotted type, e.g. 'sleep.updated'.
        record_id:        Provider record id the event refers to.
        provider_user_id: Provider's id for the user.
        trace_id:         Provider delivery trace id, if any.
        raw:              Parsed body, kept for dead-letter records.
    """

    provider: str
    event_type: str
    record_id: str
    provider_user_id: str
    trace_id: str | None = None
    raw: dict = field(default_factory=dict)

    @property
    def record_type(self) -> str:
        return self.event_type.rpartition(".")[0]

    @property
    def action(self) -> str:
        return self.event_type.rpartition(".")[2]


@dataclass
class DeadLetter:
    """An authenticated event that was acknowledged but not fully processed."""

    provider: str
    event_type: str | None
    error: str
    payload: str
    record_id: str | None = None
    provider_user_id: str | None = None
    user_id: UUID | None = None
    trace_id: str | None = None
    received_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class WearableAdapter(ABC):
    """Abstract base class for all provider adapters.

    An adapter owns the provider-specific mapping tables and turns one raw
    provider record into a NormalizedRecord.  Pull-based providers also
    know how to fetch records through a ProviderClient.
    """

    #: Provider slug stored in ``unified_metrics.provider``.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    #: Record types this adapter can normalize.
    RECORD_TYPES: tuple[str, ...] = ()

    @abstractmethod
    def normalize(
        self,
        user_id: UUID,
        record_type: str,
        payload: dict,
        source: str | None = None,
    ) -> NormalizedRecord:
        """Convert one provider record into unified metrics and an optional workout.

        Args:
            user_id:     Internal user UUID the record belongs to.
            record_type: One of ``RECORD_TYPES``.
            payload:     Provider JSON for a single record.
            source:      Originating device when it differs from the provider.

        Returns:
            NormalizedRecord.

        Raises:
            NormalizationError: If identity fields (id, timestamps) are missing.
        """

    async def fetch_record(self, client: Any, record_type: str, record_id: str) -> dict | None:
        """Fetch one record by id.  Push-only providers do not support this."""
        raise NotImplementedError(f"{self.DISPLAY_NAME} does not support record fetches")

    async def fetch_window(
        self, client: Any, record_type: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Fetch all records of a type in a time window.  Pull providers only."""
        raise NotImplementedError(f"{self.DISPLAY_NAME} does not support windowed fetches")

    # ------------------------------------------------------------------
    # Shared helpers for adapters
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: Any) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value or not isinstance(value, str):
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
