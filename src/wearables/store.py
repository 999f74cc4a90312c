"""Persistence for tokens, provider user mappings, metrics and workouts.

``IngestStore`` is the seam every pipeline component writes through;
``PostgresIngestStore`` implements it on the shared asyncpg pool.  All
metric and workout writes are keyed upserts so replaying a batch is a no-op.

Tables (see ``db/schema.sql``):
    oauth_tokens           — one active row per (user_id, provider)
    provider_user_mapping  — (provider, provider_user_id) → user_id
    unified_metrics        — UNIQUE (user_id, metric_name, measurement_date, source)
    workouts               — UNIQUE (user_id, external_id)
    webhook_dead_letters   — acknowledged-but-failed webhook deliveries
    trainer_clients, challenge_trainers, challenge_participants — read-only
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any
from uuid import UUID

from src.services.supabase import execute, fetch, fetchrow, fetchval, get_connection
from src.wearables.base import (
    DeadLetter,
    OAuthToken,
    OAuthTokens,
    UnifiedMetric,
    Workout,
)
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("pulsebridge.wearables.store")

METRIC_COLUMNS = [
    "user_id",
    "metric_name",
    "category",
    "value",
    "unit",
    "source",
    "provider",
    "measurement_date",
    "external_id",
    "priority",
    "confidence_score",
    "source_data",
]
METRIC_CONFLICT = ["user_id", "metric_name", "measurement_date", "source"]

WORKOUT_COLUMNS = [
    "user_id",
    "external_id",
    "workout_type",
    "start_time",
    "end_time",
    "duration_minutes",
    "calories",
    "avg_heart_rate",
    "max_heart_rate",
    "strain",
    "distance_meters",
    "source",
    "source_data",
]
WORKOUT_CONFLICT = ["user_id", "external_id"]


class IngestStore(ABC):
    """Storage operations used by the ingestion pipeline."""

    # ---------- Tokens ----------

    @abstractmethod
    async def list_tokens(self, user_id: UUID, provider: str) -> list[OAuthToken]:
        """Active tokens for (user, provider), most recently updated first."""

    @abstractmethod
    async def get_token(self, token_id: UUID) -> OAuthToken | None:
        ...

    @abstractmethod
    async def list_active_tokens(self, provider: str) -> list[OAuthToken]:
        ...

    @abstractmethod
    async def delete_tokens(self, token_ids: list[UUID]) -> int:
        ...

    @abstractmethod
    async def update_token_if_unchanged(
        self, token_id: UUID, expected_updated_at: datetime | None, tokens: OAuthTokens
    ) -> OAuthToken | None:
        """Write refreshed credentials only if the row still has ``expected_updated_at``.

        Returns:
            The updated token, or None if another writer got there first.
        """

    @abstractmethod
    async def deactivate_token(self, token_id: UUID) -> None:
        ...

    @abstractmethod
    async def mark_synced(self, token_id: UUID, synced_at: datetime) -> None:
        ...

    # ---------- Provider users ----------

    @abstractmethod
    async def resolve_provider_user(self, provider: str, provider_user_id: str) -> UUID | None:
        ...

    @abstractmethod
    async def upsert_provider_user(
        self, provider: str, provider_user_id: str, user_id: UUID, source: str | None = None
    ) -> None:
        ...

    # ---------- Metrics / workouts ----------

    @abstractmethod
    async def upsert_metrics(self, rows: list[UnifiedMetric]) -> int:
        """Write already-collapsed metric rows; return the number written."""

    @abstractmethod
    async def upsert_workouts(self, rows: list[Workout]) -> int:
        ...

    @abstractmethod
    async def delete_metrics_by_external_id_prefix(self, user_id: UUID, prefix: str) -> int:
        ...

    @abstractmethod
    async def delete_workout(self, user_id: UUID, external_id: str) -> int:
        ...

    @abstractmethod
    async def list_metrics(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        metric_name: str | None = None,
    ) -> list[UnifiedMetric]:
        ...

    # ---------- Misc ----------

    @abstractmethod
    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        ...

    @abstractmethod
    async def has_trainer_access(self, trainer_id: UUID, client_id: UUID) -> bool:
        """True if ``trainer_id`` coaches ``client_id`` directly or via a shared challenge."""


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _token_from_row(row: Any) -> OAuthToken:
    return OAuthToken(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        is_active=row["is_active"],
        last_sync_at=row["last_sync_at"],
        provider_user_id=row["provider_user_id"],
        updated_at=row["updated_at"],
    )


def _metric_from_row(row: Any) -> UnifiedMetric:
    source_data = row["source_data"]
    if isinstance(source_data, str):
        source_data = json.loads(source_data)
    return UnifiedMetric(
        user_id=row["user_id"],
        metric_name=row["metric_name"],
        category=row["category"],
        value=float(row["value"]),
        unit=row["unit"],
        source=row["source"],
        provider=row["provider"],
        measurement_date=row["measurement_date"],
        external_id=row["external_id"],
        priority=row["priority"],
        confidence_score=row["confidence_score"],
        source_data=source_data,
        updated_at=row["updated_at"],
    )


def _json(value: dict | None) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


_TOKEN_FIELDS = (
    "id, user_id, provider, access_token, refresh_token, expires_at, "
    "is_active, last_sync_at, provider_user_id, updated_at"
)


class PostgresIngestStore(IngestStore):
    """IngestStore backed by the shared asyncpg pool."""

    # ---------- Tokens ----------

    async def list_tokens(self, user_id: UUID, provider: str) -> list[OAuthToken]:
        rows = await fetch(
            f"SELECT {_TOKEN_FIELDS} FROM oauth_tokens "
            "WHERE user_id = $1 AND provider = $2 AND is_active "
            "ORDER BY updated_at DESC",
            user_id,
            provider,
        )
        return [_token_from_row(r) for r in rows]

    async def get_token(self, token_id: UUID) -> OAuthToken | None:
        row = await fetchrow(f"SELECT {_TOKEN_FIELDS} FROM oauth_tokens WHERE id = $1", token_id)
        return _token_from_row(row) if row else None

    async def list_active_tokens(self, provider: str) -> list[OAuthToken]:
        rows = await fetch(
            f"SELECT {_TOKEN_FIELDS} FROM oauth_tokens "
            "WHERE provider = $1 AND is_active ORDER BY last_sync_at NULLS FIRST",
            provider,
        )
        return [_token_from_row(r) for r in rows]

    async def delete_tokens(self, token_ids: list[UUID]) -> int:
        if not token_ids:
            return 0
        status = await execute("DELETE FROM oauth_tokens WHERE id = ANY($1::uuid[])", token_ids)
        return _affected(status)

    async def update_token_if_unchanged(
        self, token_id: UUID, expected_updated_at: datetime | None, tokens: OAuthTokens
    ) -> OAuthToken | None:
        row = await fetchrow(
            f"""
            UPDATE oauth_tokens
               SET access_token = $3,
                   refresh_token = $4,
                   expires_at = $5,
                   updated_at = NOW()
             WHERE id = $1
               AND is_active
               AND updated_at IS NOT DISTINCT FROM $2
            RETURNING {_TOKEN_FIELDS}
            """,
            token_id,
            expected_updated_at,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
        )
        return _token_from_row(row) if row else None

    async def deactivate_token(self, token_id: UUID) -> None:
        await execute(
            "UPDATE oauth_tokens SET is_active = FALSE, updated_at = NOW() WHERE id = $1",
            token_id,
        )

    async def mark_synced(self, token_id: UUID, synced_at: datetime) -> None:
        await execute("UPDATE oauth_tokens SET last_sync_at = $2 WHERE id = $1", token_id, synced_at)

    # ---------- Provider users ----------

    async def resolve_provider_user(self, provider: str, provider_user_id: str) -> UUID | None:
        return await fetchval(
            "SELECT user_id FROM provider_user_mapping WHERE provider = $1 AND provider_user_id = $2",
            provider,
            provider_user_id,
        )

    async def upsert_provider_user(
        self, provider: str, provider_user_id: str, user_id: UUID, source: str | None = None
    ) -> None:
        await execute(
            build_upsert_query(
                "provider_user_mapping",
                ["provider", "provider_user_id", "user_id", "source"],
                ["provider", "provider_user_id"],
            ),
            provider,
            provider_user_id,
            user_id,
            source,
        )

    # ---------- Metrics / workouts ----------

    async def upsert_metrics(self, rows: list[UnifiedMetric]) -> int:
        if not rows:
            return 0
        query = build_upsert_query("unified_metrics", METRIC_COLUMNS, METRIC_CONFLICT)
        args = [
            (
                r.user_id,
                r.metric_name,
                r.category,
                r.value,
                r.unit,
                r.source,
                r.provider,
                r.measurement_date,
                r.external_id,
                r.priority,
                r.confidence_score,
                _json(r.source_data),
            )
            for r in rows
        ]
        async with get_connection() as conn:
            await conn.executemany(query, args)
        logger.debug("Upserted %d unified_metrics rows", len(rows))
        return len(rows)

    async def upsert_workouts(self, rows: list[Workout]) -> int:
        if not rows:
            return 0
        query = build_upsert_query("workouts", WORKOUT_COLUMNS, WORKOUT_CONFLICT)
        args = [
            (
                w.user_id,
                w.external_id,
                w.workout_type,
                w.start_time,
                w.end_time,
                w.duration_minutes,
                w.calories,
                w.avg_heart_rate,
                w.max_heart_rate,
                w.strain,
                w.distance_meters,
                w.source,
                _json(w.source_data),
            )
            for w in rows
        ]
        async with get_connection() as conn:
            await conn.executemany(query, args)
        logger.debug("Upserted %d workouts rows", len(rows))
        return len(rows)

    async def delete_metrics_by_external_id_prefix(self, user_id: UUID, prefix: str) -> int:
        # left() instead of LIKE: external ids contain '_' which LIKE treats as a wildcard
        status = await execute(
            "DELETE FROM unified_metrics WHERE user_id = $1 AND left(external_id, length($2)) = $2",
            user_id,
            prefix,
        )
        return _affected(status)

    async def delete_workout(self, user_id: UUID, external_id: str) -> int:
        status = await execute(
            "DELETE FROM workouts WHERE user_id = $1 AND external_id = $2",
            user_id,
            external_id,
        )
        return _affected(status)

    async def list_metrics(
        self,
        user_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        metric_name: str | None = None,
    ) -> list[UnifiedMetric]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        idx = 2

        if start_date:
            conditions.append(f"measurement_date >= ${idx}")
            params.append(start_date)
            idx += 1
        if end_date:
            conditions.append(f"measurement_date <= ${idx}")
            params.append(end_date)
            idx += 1
        if metric_name:
            conditions.append(f"metric_name = ${idx}")
            params.append(metric_name)
            idx += 1

        rows = await fetch(
            f"SELECT * FROM unified_metrics WHERE {' AND '.join(conditions)} "
            "ORDER BY measurement_date DESC, metric_name",
            *params,
        )
        return [_metric_from_row(r) for r in rows]

    # ---------- Misc ----------

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        await execute(
            """
            INSERT INTO webhook_dead_letters
                (provider, event_type, record_id, provider_user_id, user_id,
                 trace_id, error, payload, received_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            dead_letter.provider,
            dead_letter.event_type,
            dead_letter.record_id,
            dead_letter.provider_user_id,
            dead_letter.user_id,
            dead_letter.trace_id,
            dead_letter.error,
            dead_letter.payload,
            dead_letter.received_at,
        )

    async def has_trainer_access(self, trainer_id: UUID, client_id: UUID) -> bool:
        return bool(
            await fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM trainer_clients
                     WHERE trainer_id = $1 AND client_id = $2 AND active
                ) OR EXISTS (
                    SELECT 1
                      FROM challenge_trainers ct
                      JOIN challenge_participants cp ON cp.challenge_id = ct.challenge_id
                     WHERE ct.trainer_id = $1 AND cp.user_id = $2
                )
                """,
                trainer_id,
                client_id,
            )
        )


def _affected(status: str) -> int:
    """'DELETE 3' → 3."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
