"""Table-driven normalization of provider payloads into unified metrics.

Provider adapters declare their mappings as data — tuples of ``FieldSpec`` —
and call ``Normalizer.extract`` to turn one record into ``UnifiedMetric``
rows.  Unit conversion happens here, via the ``transform`` on each spec.

Rules:
    - A field that is absent (or null) produces no row; never a zero.
    - ``paths`` are tried in order and the first present value wins.
    - Every row is stamped with (priority, confidence) from the SourcePolicy.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable
from uuid import UUID

from src.wearables.base import MetricCategory, UnifiedMetric, Workout
from src.wearables.priority import SourcePolicy

logger = logging.getLogger("pulsebridge.wearables.normalizer")

Transform = Callable[[float], float]

_INDEX_RE = re.compile(r"^(?P<key>[^\[]*)\[(?P<index>\d+)\]$")


# ---------------------------------------------------------------------------
# Unit conversions
# ---------------------------------------------------------------------------


def kj_to_kcal(value: float) -> float:
    """Kilojoules → kilocalories, rounded to the nearest whole kcal."""
    return float(round(value / 4.184))


def ms_to_hours(value: float) -> float:
    return round(value / 3_600_000, 2)


def seconds_to_hours(value: float) -> float:
    return round(value / 3600, 2)


def meters_to_km(value: float) -> float:
    return round(value / 1000, 2)


def round1(value: float) -> float:
    return round(value, 1)


def whole(value: float) -> float:
    return float(round(value))


# ---------------------------------------------------------------------------
# Mapping tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpec:
    """Map a provider field to a unified metric.

    Attributes:
        paths:       Dotted field paths, tried in order (``a.b[0].c`` supported).
        metric_name: Unified metric name.
        unit:        Unit of the value after ``transform``.
        category:    MetricCategory of the metric.
        transform:   Optional unit conversion applied to the raw number.
        positive_only: Drop the row when the converted value is not above zero.
    """

    paths: tuple[str, ...]
    metric_name: str
    unit: str
    category: MetricCategory
    transform: Transform | None = None
    positive_only: bool = False

    @property
    def slug(self) -> str:
        return metric_slug(self.metric_name)


def metric_slug(metric_name: str) -> str:
    """'HRV RMSSD' → 'hrv_rmssd'."""
    return re.sub(r"[^a-z0-9]+", "_", metric_name.lower()).strip("_")


def metric_external_id(provider: str, record_type: str, record_id: str, metric_name: str) -> str:
    return f"{provider}_{record_type}_{record_id}_{metric_slug(metric_name)}"


def record_external_id_prefix(provider: str, record_type: str, record_id: str) -> str:
    """Prefix shared by every metric row derived from one provider record."""
    return f"{provider}_{record_type}_{record_id}_"


def workout_external_id(provider: str, record_id: str) -> str:
    return f"{provider}_workout_{record_id}"


def get_path(payload: Any, path: str) -> Any:
    """Resolve a dotted path with optional list indexes against nested dicts.

    >>> get_path({"a": {"b": [{"c": 1}]}}, "a.b[0].c")
    1

    Returns None if any segment is missing.
    """
    value = payload
    for part in path.split("."):
        if value is None:
            return None
        match = _INDEX_RE.match(part)
        if match:
            key, index = match.group("key"), int(match.group("index"))
            if key:
                value = value.get(key) if isinstance(value, dict) else None
            if not isinstance(value, list) or index >= len(value):
                return None
            value = value[index]
        else:
            value = value.get(part) if isinstance(value, dict) else None
    return value


def first_number(payload: Any, paths: Iterable[str]) -> float | None:
    """Return the first numeric value found among ``paths``."""
    for path in paths:
        value = get_path(payload, path)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric value at %s: %r", path, value)
    return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class Normalizer:
    """Build UnifiedMetric rows from a mapping table and a record."""

    def __init__(self, policy: SourcePolicy | None = None) -> None:
        self._policy = policy or SourcePolicy()

    @property
    def policy(self) -> SourcePolicy:
        return self._policy

    def metric(
        self,
        *,
        user_id: UUID,
        metric_name: str,
        category: MetricCategory,
        value: float,
        unit: str,
        source: str,
        provider: str,
        measurement_date: date,
        external_id: str | None,
        source_data: dict | None = None,
    ) -> UnifiedMetric:
        rank = self._policy.rank(metric_name, source)
        return UnifiedMetric(
            user_id=user_id,
            metric_name=metric_name,
            category=category.value,
            value=value,
            unit=unit,
            source=source,
            provider=provider,
            measurement_date=measurement_date,
            external_id=external_id,
            priority=rank.priority,
            confidence_score=rank.confidence,
            source_data=source_data,
        )

    def extract(
        self,
        specs: Iterable[FieldSpec],
        payload: dict,
        *,
        user_id: UUID,
        source: str,
        provider: str,
        record_type: str,
        record_id: str,
        measurement_date: date,
    ) -> list[UnifiedMetric]:
        """Apply a mapping table to one record.

        Args:
            specs:            FieldSpecs for this record type.
            payload:          Provider record.
            user_id:          Internal user UUID.
            source:           Originating device slug.
            provider:         Integration slug used in external ids.
            record_type:      Provider record type ('sleep', 'cycle', ...).
            record_id:        Provider record id.
            measurement_date: UTC day the values belong to.

        Returns:
            One UnifiedMetric per spec whose field is present.
        """
        rows: list[UnifiedMetric] = []
        for spec in specs:
            raw = first_number(payload, spec.paths)
            if raw is None:
                continue
            value = spec.transform(raw) if spec.transform else raw
            if spec.positive_only and value <= 0:
                continue
            rows.append(
                self.metric(
                    user_id=user_id,
                    metric_name=spec.metric_name,
                    category=spec.category,
                    value=value,
                    unit=spec.unit,
                    source=source,
                    provider=provider,
                    measurement_date=measurement_date,
                    external_id=metric_external_id(provider, record_type, record_id, spec.metric_name),
                )
            )
        return rows

    def workout_aggregates(self, workouts: Iterable[Workout], provider: str) -> list[UnifiedMetric]:
        """Roll workouts up into per-day totals.

        Produces Workout Count, Workout Time (min), Workout Calories (kcal)
        and Distance (km) for each (user, UTC start day, source).  Totals
        that sum to nothing (no calories or distance reported) are omitted.
        """
        buckets: dict[tuple[UUID, date, str], list[Workout]] = defaultdict(list)
        for workout in workouts:
            buckets[(workout.user_id, workout.start_time.date(), workout.source)].append(workout)

        rows: list[UnifiedMetric] = []
        for (user_id, day, source), items in sorted(buckets.items(), key=lambda kv: (str(kv[0][0]), kv[0][1], kv[0][2])):
            totals: list[tuple[str, float | None, str]] = [
                ("Workout Count", float(len(items)), "count"),
                ("Workout Time", _sum(w.duration_minutes for w in items), "min"),
                ("Workout Calories", _sum(w.calories for w in items), "kcal"),
                ("Distance", _sum(w.distance_meters for w in items), "km"),
            ]
            record_id = f"{source}_{day.isoformat()}" if source != provider else day.isoformat()
            for metric_name, value, unit in totals:
                if value is None:
                    continue
                if metric_name == "Distance":
                    value = meters_to_km(value)
                rows.append(
                    self.metric(
                        user_id=user_id,
                        metric_name=metric_name,
                        category=MetricCategory.WORKOUT,
                        value=value,
                        unit=unit,
                        source=source,
                        provider=provider,
                        measurement_date=day,
                        external_id=metric_external_id(provider, "daily", record_id, metric_name),
                    )
                )
        return rows


def _sum(values: Iterable[float | int | None]) -> float | None:
    present = [float(v) for v in values if v is not None]
    if not present:
        return None
    return round(sum(present), 2)
