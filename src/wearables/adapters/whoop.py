"""Whoop API v2 adapter.

Uses OAuth2 for authentication; tokens are refreshed by TokenStore.

API base: https://api.prod.whoop.com/developer/v2

Endpoints used:
    /cycle, /cycle/{id}                       — Physiological cycles (day strain)
    /recovery                                 — Recovery scores (keyed by sleep id)
    /activity/sleep, /activity/sleep/{id}     — Sleep sessions
    /activity/workout, /activity/workout/{id} — Workout sessions

Record id conventions for external ids:
    cycle    → cycle id
    recovery → sleep id (falls back to cycle id)
    sleep    → sleep id
    workout  → workout id
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from uuid import UUID

from src.wearables.base import (
    MetricCategory,
    NormalizedRecord,
    UnifiedMetric,
    WearableAdapter,
    Workout,
)
from src.wearables.client import ProviderClient
from src.wearables.errors import NormalizationError, ProviderAPIError
from src.wearables.normalizer import (
    FieldSpec,
    Normalizer,
    kj_to_kcal,
    metric_external_id,
    ms_to_hours,
    workout_external_id,
)

logger = logging.getLogger("pulsebridge.wearables.whoop")

_STAGES = "score.stage_summary"

# Whoop record type → unified metric mapping table
WHOOP_FIELD_MAP: dict[str, tuple[FieldSpec, ...]] = {
    "cycle": (
        FieldSpec(("score.strain",), "Day Strain", "strain", MetricCategory.ACTIVITY),
        FieldSpec(("score.average_heart_rate",), "Average Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec(("score.max_heart_rate",), "Max Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec(("score.kilojoule",), "Active Calories", "kcal", MetricCategory.ACTIVITY, kj_to_kcal),
    ),
    "recovery": (
        FieldSpec(("score.recovery_score",), "Recovery Score", "%", MetricCategory.RECOVERY),
        FieldSpec(("score.hrv_rmssd_milli",), "HRV RMSSD", "ms", MetricCategory.RECOVERY),
        FieldSpec(("score.resting_heart_rate",), "Resting Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec(("score.spo2_percentage",), "SpO2", "%", MetricCategory.RECOVERY),
        FieldSpec(("score.skin_temp_celsius",), "Skin Temperature", "°C", MetricCategory.RECOVERY),
    ),
    "sleep": (
        FieldSpec(("score.sleep_performance_percentage",), "Sleep Performance", "%", MetricCategory.SLEEP),
        FieldSpec(("score.sleep_efficiency_percentage",), "Sleep Efficiency", "%", MetricCategory.SLEEP),
        FieldSpec(("score.sleep_consistency_percentage",), "Sleep Consistency", "%", MetricCategory.SLEEP),
        FieldSpec(("score.respiratory_rate",), "Respiratory Rate", "breaths/min", MetricCategory.SLEEP),
        FieldSpec((f"{_STAGES}.total_light_sleep_time_milli",), "Light Sleep Duration", "hours", MetricCategory.SLEEP, ms_to_hours),
        FieldSpec((f"{_STAGES}.total_slow_wave_sleep_time_milli",), "Deep Sleep Duration", "hours", MetricCategory.SLEEP, ms_to_hours),
        FieldSpec((f"{_STAGES}.total_rem_sleep_time_milli",), "REM Sleep Duration", "hours", MetricCategory.SLEEP, ms_to_hours),
        FieldSpec((f"{_STAGES}.total_awake_time_milli",), "Awake Duration", "hours", MetricCategory.SLEEP, ms_to_hours),
        FieldSpec((f"{_STAGES}.total_in_bed_time_milli",), "Time in Bed", "hours", MetricCategory.SLEEP, ms_to_hours),
    ),
    "workout": (
        FieldSpec(("score.strain",), "Workout Strain", "strain", MetricCategory.WORKOUT),
    ),
}

# Collection endpoints, in sync order
WHOOP_COLLECTIONS: dict[str, str] = {
    "cycle": "/cycle",
    "recovery": "/recovery",
    "sleep": "/activity/sleep",
    "workout": "/activity/workout",
}

# Whoop sport id → canonical workout type (v1 payloads carry only sport_id)
_WHOOP_SPORT_MAP: dict[int, str] = {
    -1: "activity",
    0: "running",
    1: "cycling",
    16: "baseball",
    17: "basketball",
    18: "rowing",
    21: "football",
    22: "golf",
    24: "ice_hockey",
    29: "skiing",
    30: "soccer",
    33: "swimming",
    34: "tennis",
    42: "dance",
    43: "pilates",
    44: "yoga",
    45: "weightlifting",
    47: "crossfit",
    48: "functional_fitness",
    52: "hiking",
    56: "martial_arts",
    57: "mountain_biking",
    59: "powerlifting",
    60: "rock_climbing",
    63: "walking",
    65: "elliptical",
    66: "stairmaster",
    70: "meditation",
    71: "other",
    84: "jumping_rope",
    96: "hiit",
    97: "spin",
    98: "jiu_jitsu",
    101: "pickleball",
    107: "barre",
}


def sport_name(record: dict) -> str:
    """Return the workout type for a Whoop workout record."""
    name = record.get("sport_name")
    if isinstance(name, str) and name.strip():
        return name.strip().lower().replace(" ", "_").replace("-", "_")
    sport_id = record.get("sport_id")
    try:
        return _WHOOP_SPORT_MAP.get(int(sport_id), "other")
    except (TypeError, ValueError):
        return "other"


class WhoopAdapter(WearableAdapter):
    """Whoop API v2 adapter.

    Whoop focuses on strain, recovery, and HRV tracking.  Its data is
    organized around cycles (one physiological day each) with recovery,
    sleep and workouts hanging off them.
    """

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "Whoop"
    RECORD_TYPES = ("cycle", "recovery", "sleep", "workout")

    def __init__(self, normalizer: Normalizer | None = None) -> None:
        self._normalizer = normalizer or Normalizer()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_window(
        self,
        client: ProviderClient,
        record_type: str,
        start: datetime,
        end: datetime,
    ) -> list[dict]:
        """Fetch every record of one type inside [start, end]."""
        params = {"start": _whoop_timestamp(start), "end": _whoop_timestamp(end)}
        return await client.fetch_all_paged(WHOOP_COLLECTIONS[record_type], params)

    async def fetch_record(
        self, client: ProviderClient, record_type: str, record_id: str
    ) -> dict | None:
        """Fetch the single record a webhook refers to.

        Recovery webhooks carry the sleep id, and Whoop has no lookup by
        sleep id, so the most recent recovery page is scanned for a record
        whose ``sleep_id`` matches.

        Returns:
            The record, or None if Whoop no longer has it.
        """
        if record_type == "recovery":
            records = await client.fetch_records(WHOOP_COLLECTIONS["recovery"], {"limit": 25})
            for record in records:
                if str(record.get("sleep_id")) == str(record_id):
                    return record
            logger.warning("Whoop: no recovery found for sleep %s", record_id)
            return None

        endpoint = f"{WHOOP_COLLECTIONS[record_type]}/{record_id}"
        try:
            return await client.fetch_one(endpoint)
        except ProviderAPIError as exc:
            if exc.status_code == 404:
                logger.warning("Whoop: %s %s not found", record_type, record_id)
                return None
            raise

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(
        self,
        user_id: UUID,
        record_type: str,
        payload: dict,
        source: str | None = None,
    ) -> NormalizedRecord:
        """Convert a Whoop record into unified metrics (and a Workout for workouts).

        Args:
            user_id:     Internal user UUID.
            record_type: 'cycle', 'recovery', 'sleep' or 'workout'.
            payload:     Whoop JSON for one record.
            source:      Ignored; Whoop data always has source 'whoop'.

        Returns:
            NormalizedRecord.

        Raises:
            NormalizationError: If the record has no id or no usable date.
            KeyError:           If ``record_type`` is not a Whoop record type.
        """
        specs = WHOOP_FIELD_MAP[record_type]
        record_id = self.record_id(record_type, payload)
        measurement_date = self._measurement_date(record_type, payload)

        metrics = self._normalizer.extract(
            specs,
            payload,
            user_id=user_id,
            source=self.SOURCE_ID,
            provider=self.SOURCE_ID,
            record_type=record_type,
            record_id=record_id,
            measurement_date=measurement_date,
        )

        workout = None
        if record_type == "sleep":
            total = self._sleep_total(user_id, record_id, payload, measurement_date)
            if total is not None:
                metrics.append(total)
        elif record_type == "workout":
            workout = self._workout(user_id, record_id, payload)

        return NormalizedRecord(metrics=metrics, workout=workout)

    @staticmethod
    def record_id(record_type: str, payload: dict) -> str:
        if record_type == "recovery":
            record_id = payload.get("sleep_id") or payload.get("cycle_id")
        else:
            record_id = payload.get("id")
        if record_id is None or record_id == "":
            raise NormalizationError(f"Whoop {record_type} record has no id")
        return str(record_id)

    def _measurement_date(self, record_type: str, payload: dict) -> date:
        field = "created_at" if record_type == "recovery" else "start"
        parsed = self._parse_iso_datetime(payload.get(field))
        if parsed is None:
            raise NormalizationError(f"Whoop {record_type} record has no usable {field}")
        return parsed.date()

    def _sleep_total(
        self, user_id: UUID, record_id: str, payload: dict, measurement_date: date
    ) -> UnifiedMetric | None:
        """Sleep Duration = light + deep + REM.  Awake time is not sleep."""
        stages = (payload.get("score") or {}).get("stage_summary") or {}
        light = self._safe_float(stages.get("total_light_sleep_time_milli"))
        deep = self._safe_float(stages.get("total_slow_wave_sleep_time_milli"))
        rem = self._safe_float(stages.get("total_rem_sleep_time_milli"))
        awake = self._safe_float(stages.get("total_awake_time_milli"))

        total_ms = (light or 0.0) + (deep or 0.0) + (rem or 0.0)
        if total_ms <= 0:
            return None

        breakdown = {
            "light_hours": ms_to_hours(light) if light is not None else None,
            "deep_hours": ms_to_hours(deep) if deep is not None else None,
            "rem_hours": ms_to_hours(rem) if rem is not None else None,
            "awake_hours": ms_to_hours(awake) if awake is not None else None,
            "nap": bool(payload.get("nap", False)),
        }
        return self._normalizer.metric(
            user_id=user_id,
            metric_name="Sleep Duration",
            category=MetricCategory.SLEEP,
            value=round(total_ms / 3_600_000, 1),
            unit="hours",
            source=self.SOURCE_ID,
            provider=self.SOURCE_ID,
            measurement_date=measurement_date,
            external_id=metric_external_id(self.SOURCE_ID, "sleep", record_id, "Sleep Duration"),
            source_data=breakdown,
        )

    def _workout(self, user_id: UUID, record_id: str, payload: dict) -> Workout:
        start = self._parse_iso_datetime(payload.get("start"))
        if start is None:
            raise NormalizationError(f"Whoop workout {record_id} has no start time")
        end = self._parse_iso_datetime(payload.get("end"))
        score = payload.get("score") or {}

        duration = None
        if end is not None:
            duration = round((end - start).total_seconds() / 60)

        kilojoule = self._safe_float(score.get("kilojoule"))
        return Workout(
            user_id=user_id,
            external_id=workout_external_id(self.SOURCE_ID, record_id),
            workout_type=sport_name(payload),
            start_time=start,
            end_time=end,
            duration_minutes=duration,
            calories=kj_to_kcal(kilojoule) if kilojoule is not None else None,
            avg_heart_rate=self._safe_float(score.get("average_heart_rate")),
            max_heart_rate=self._safe_float(score.get("max_heart_rate")),
            strain=self._safe_float(score.get("strain")),
            distance_meters=self._safe_float(score.get("distance_meter")),
            source=self.SOURCE_ID,
            source_data={
                "sport_id": payload.get("sport_id"),
                "zone_durations": score.get("zone_durations"),
                "percent_recorded": score.get("percent_recorded"),
            },
        )


def _whoop_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")
