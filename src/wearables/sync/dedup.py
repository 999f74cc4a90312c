"""Deduplication and idempotent writes for normalized wearable data.

Prevents storing duplicate rows when the same provider record arrives
through more than one path (a webhook and a later manual sync, or two
deliveries of the same webhook).

Dedup keys:
    - unified_metrics: (user_id, metric_name, measurement_date, source) — UNIQUE constraint
    - workouts:        (user_id, external_id) — UNIQUE constraint

Within a batch rows are collapsed in memory first, because Postgres rejects
an ``INSERT ... ON CONFLICT DO UPDATE`` that touches the same key twice.
Cross-source priority is NOT resolved here; every source keeps its own row
and the read path picks one (see ``src.wearables.priority``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable
from uuid import UUID

from src.wearables.base import UnifiedMetric, Workout

if TYPE_CHECKING:
    from src.wearables.store import IngestStore

logger = logging.getLogger("pulsebridge.wearables.sync.dedup")


def collapse_metrics(rows: Iterable[UnifiedMetric]) -> list[UnifiedMetric]:
    """Collapse metric rows to one per dedup key.

    A row carrying an external id replaces one without; otherwise the first
    row encountered wins.  Input order is preserved for the survivors.

    Args:
        rows: Metric rows, possibly with duplicate keys.

    Returns:
        One row per (user_id, metric_name, measurement_date, source).
    """
    kept: dict[tuple, UnifiedMetric] = {}
    dropped = 0
    for row in rows:
        key = row.dedup_key
        current = kept.get(key)
        if current is None:
            kept[key] = row
            continue
        dropped += 1
        if current.external_id is None and row.external_id is not None:
            kept[key] = row
    if dropped:
        logger.debug("Collapsed %d duplicate metric rows", dropped)
    return list(kept.values())


def collapse_workouts(rows: Iterable[Workout]) -> list[Workout]:
    """Collapse workouts to one per (user_id, external_id); the last one wins."""
    kept: dict[tuple[UUID, str], Workout] = {}
    for row in rows:
        kept[row.dedup_key] = row
    return list(kept.values())


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


class Upserter:
    """Collapse a batch in memory, then write it through the store.

    Usage::

        upserter = Upserter(store)
        written = await upserter.upsert_metrics(rows)
    """

    def __init__(self, store: IngestStore) -> None:
        self._store = store

    async def upsert_metrics(self, rows: Iterable[UnifiedMetric]) -> int:
        """Write metric rows idempotently.

        Returns:
            Number of rows written after the collapse pass.
        """
        collapsed = collapse_metrics(rows)
        if not collapsed:
            return 0
        return await self._store.upsert_metrics(collapsed)

    async def upsert_workouts(self, rows: Iterable[Workout]) -> int:
        collapsed = collapse_workouts(rows)
        if not collapsed:
            return 0
        return await self._store.upsert_workouts(collapsed)

    async def delete_by_external_id(self, user_id: UUID, external_id_prefix: str) -> int:
        """Delete every metric row for ``user_id`` whose external id starts with the prefix."""
        deleted = await self._store.delete_metrics_by_external_id_prefix(user_id, external_id_prefix)
        logger.info("Deleted %d metric rows for %s with prefix %s", deleted, user_id, external_id_prefix)
        return deleted
