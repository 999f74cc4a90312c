"""Terra aggregator adapter.

Terra pushes fully-formed records to our webhook, so there is nothing to
fetch: each item in a webhook's ``data`` array is normalized directly.

The originating device (``user.provider`` in the webhook, e.g. ``GARMIN``)
becomes the row's ``source``; ``provider`` is always ``terra``.  Field paths
differ slightly between devices, so each spec lists fallbacks and the first
present value wins.
"""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from src.wearables.base import MetricCategory, NormalizedRecord, WearableAdapter, Workout
from src.wearables.errors import NormalizationError
from src.wearables.normalizer import (
    FieldSpec,
    Normalizer,
    first_number,
    get_path,
    meters_to_km,
    round1,
    seconds_to_hours,
    whole,
    workout_external_id,
)

logger = logging.getLogger("pulsebridge.wearables.terra")

_ASLEEP = "sleep_durations_data.asleep"
_HR = "heart_rate_data.summary"

TERRA_FIELD_MAP: dict[str, tuple[FieldSpec, ...]] = {
    "sleep": (
        FieldSpec(
            (f"{_ASLEEP}.duration_asleep_state_seconds",),
            "Sleep Duration", "hours", MetricCategory.SLEEP, lambda s: round1(s / 3600),
            positive_only=True,
        ),
        FieldSpec(
            (f"{_ASLEEP}.duration_deep_sleep_state_seconds", f"{_ASLEEP}.duration_asleep_state_deep_sleep_seconds"),
            "Deep Sleep Duration", "hours", MetricCategory.SLEEP, seconds_to_hours,
        ),
        FieldSpec(
            (f"{_ASLEEP}.duration_light_sleep_state_seconds", f"{_ASLEEP}.duration_asleep_state_light_sleep_seconds"),
            "Light Sleep Duration", "hours", MetricCategory.SLEEP, seconds_to_hours,
        ),
        FieldSpec(
            (f"{_ASLEEP}.duration_REM_sleep_state_seconds", f"{_ASLEEP}.duration_asleep_state_rem_sleep_seconds"),
            "REM Sleep Duration", "hours", MetricCategory.SLEEP, seconds_to_hours,
        ),
        FieldSpec(
            ("sleep_durations_data.awake.duration_awake_state_seconds",),
            "Awake Duration", "hours", MetricCategory.SLEEP, seconds_to_hours,
        ),
        FieldSpec(
            ("sleep_durations_data.other.duration_in_bed_seconds",),
            "Time in Bed", "hours", MetricCategory.SLEEP, seconds_to_hours,
        ),
        FieldSpec(("sleep_durations_data.sleep_efficiency",), "Sleep Efficiency", "%", MetricCategory.SLEEP),
        FieldSpec(("respiration_data.breaths_data.avg_breaths_per_min",), "Respiratory Rate", "breaths/min", MetricCategory.SLEEP),
        FieldSpec((f"{_HR}.avg_hrv_rmssd", f"{_HR}.avg_hrv_rmssd_ms"), "HRV RMSSD", "ms", MetricCategory.RECOVERY),
        FieldSpec((f"{_HR}.resting_hr_bpm",), "Resting Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec(("readiness_data.readiness",), "Recovery Score", "%", MetricCategory.RECOVERY),
    ),
    "daily": (
        FieldSpec(("distance_data.steps", "steps"), "Steps", "steps", MetricCategory.ACTIVITY),
        FieldSpec(("calories_data.net_activity_calories",), "Active Calories", "kcal", MetricCategory.ACTIVITY, whole),
        FieldSpec(("calories_data.total_burned_calories",), "Total Calories", "kcal", MetricCategory.ACTIVITY, whole),
        FieldSpec(("distance_data.distance_meters",), "Distance", "km", MetricCategory.ACTIVITY, meters_to_km),
        FieldSpec((f"{_HR}.avg_hr_bpm", "heart_rate_data.avg_hr_bpm"), "Average Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec((f"{_HR}.max_hr_bpm", "heart_rate_data.max_hr_bpm"), "Max Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec((f"{_HR}.resting_hr_bpm", "resting_hr_bpm"), "Resting Heart Rate", "bpm", MetricCategory.HEART),
        FieldSpec((f"{_HR}.avg_hrv_rmssd", "hrv_rmssd_ms"), "HRV RMSSD", "ms", MetricCategory.RECOVERY),
        FieldSpec(("oxygen_data.avg_saturation_percentage",), "SpO2", "%", MetricCategory.RECOVERY),
        FieldSpec(("oxygen_data.vo2max_ml_per_min_per_kg", "vo2max_ml_per_min_per_kg"), "VO2Max", "ml/kg/min", MetricCategory.HEART),
        FieldSpec(("scores.recovery", "recovery_score"), "Recovery Score", "%", MetricCategory.RECOVERY),
        FieldSpec(("strain_data.strain_level", "day_strain"), "Day Strain", "strain", MetricCategory.ACTIVITY),
    ),
    "activity": (
        FieldSpec(("strain_data.strain_level",), "Workout Strain", "strain", MetricCategory.WORKOUT),
    ),
    "body": (
        FieldSpec(("measurements_data.measurements[0].weight_kg", "weight_kg"), "Weight", "kg", MetricCategory.BODY),
        FieldSpec(
            ("measurements_data.measurements[0].bodyfat_percentage", "body_fat_percentage"),
            "Body Fat Percentage", "%", MetricCategory.BODY,
        ),
        FieldSpec(("measurements_data.measurements[0].BMI",), "BMI", "kg/m²", MetricCategory.BODY),
        FieldSpec(("heart_data.heart_rate_data.summary.resting_hr_bpm",), "Resting Heart Rate", "bpm", MetricCategory.HEART),
    ),
}


class TerraAdapter(WearableAdapter):
    """Normalize records pushed by the Terra aggregator."""

    SOURCE_ID = "terra"
    DISPLAY_NAME = "Terra"
    RECORD_TYPES = ("sleep", "daily", "activity", "body")

    def __init__(self, normalizer: Normalizer | None = None) -> None:
        self._normalizer = normalizer or Normalizer()

    def normalize(
        self,
        user_id: UUID,
        record_type: str,
        payload: dict,
        source: str | None = None,
    ) -> NormalizedRecord:
        """Convert one Terra data item into unified metrics.

        ``activity`` items also yield a Workout row.
        """
        specs = TERRA_FIELD_MAP[record_type]
        source = (source or "unknown").lower()
        measurement_date = self._measurement_date(record_type, payload)
        record_id = self._record_id(payload, source, measurement_date)

        metrics = self._normalizer.extract(
            specs,
            payload,
            user_id=user_id,
            source=source,
            provider=self.SOURCE_ID,
            record_type=record_type,
            record_id=record_id,
            measurement_date=measurement_date,
        )

        workout = None
        if record_type == "activity":
            workout = self._workout(user_id, record_id, source, payload)
        return NormalizedRecord(metrics=metrics, workout=workout)

    def _measurement_date(self, record_type: str, payload: dict) -> date:
        start = self._parse_iso_datetime(get_path(payload, "metadata.start_time"))
        if start is not None:
            return start.date()
        day = get_path(payload, "metadata.day") or payload.get("day")
        if isinstance(day, str):
            try:
                return date.fromisoformat(day[:10])
            except ValueError:
                pass
        raise NormalizationError(f"Terra {record_type} item has no start_time")

    @staticmethod
    def _record_id(payload: dict, source: str, measurement_date: date) -> str:
        summary_id = get_path(payload, "metadata.summary_id")
        if summary_id:
            return f"{source}_{summary_id}"
        return f"{source}_{measurement_date.isoformat()}"

    def _workout(self, user_id: UUID, record_id: str, source: str, payload: dict) -> Workout:
        start = self._parse_iso_datetime(get_path(payload, "metadata.start_time"))
        if start is None:
            raise NormalizationError(f"Terra activity {record_id} has no start_time")
        end = self._parse_iso_datetime(get_path(payload, "metadata.end_time"))

        duration = None
        active_seconds = first_number(payload, ("active_durations_data.activity_seconds",))
        if active_seconds is not None:
            duration = round(active_seconds / 60)
        elif end is not None:
            duration = round((end - start).total_seconds() / 60)

        calories = first_number(payload, ("calories_data.total_burned_calories",))
        workout_type = get_path(payload, "metadata.name") or get_path(payload, "metadata.type")
        return Workout(
            user_id=user_id,
            external_id=workout_external_id(self.SOURCE_ID, record_id),
            workout_type=str(workout_type).lower() if workout_type is not None else "other",
            start_time=start,
            end_time=end,
            duration_minutes=duration,
            calories=float(round(calories)) if calories is not None else None,
            avg_heart_rate=first_number(payload, (f"{_HR}.avg_hr_bpm",)),
            max_heart_rate=first_number(payload, (f"{_HR}.max_hr_bpm",)),
            strain=first_number(payload, ("strain_data.strain_level",)),
            distance_meters=first_number(payload, ("distance_data.summary.distance_meters", "distance_data.distance_meters")),
            source=source,
            source_data={"summary_id": get_path(payload, "metadata.summary_id")},
        )
