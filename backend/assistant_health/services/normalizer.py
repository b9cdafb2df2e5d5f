"""
Map raw provider payloads onto ``HealthMetricEntry`` fields.

Pure functions only.  Each provider normalizer always returns the same set of
keys so a day's entries can be bulk-upserted together; a provider only ever
writes the fields it knows about.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from assistant_health.models import PROVIDER_FITBIT, PROVIDER_GOOGLE_FIT

FITBIT_FIELDS = (
    "steps",
    "calories",
    "sleep_hours",
    "sleep_deep_hours",
    "sleep_light_hours",
    "sleep_rem_hours",
    "sleep_awake_hours",
    "resting_heart_rate",
    "weight_kg",
    "water_ml",
)

GOOGLE_FIT_FIELDS = (
    "steps",
    "calories",
    "resting_heart_rate",
    "weight_kg",
    "water_ml",
    "systolic_bp",
    "diastolic_bp",
    "oxygen_saturation_pct",
    "body_temperature_c",
    "blood_glucose_mmol_l",
    "sleep_hours",
    "sleep_deep_hours",
    "sleep_light_hours",
    "sleep_rem_hours",
    "sleep_awake_hours",
    "reproductive_events_count",
)

# Google Fit sleep.segment stage codes
_SLEEP_AWAKE_CODES = (1, 3)
_SLEEP_LIGHT = 4
_SLEEP_DEEP = 5
_SLEEP_REM = 6

_SLEEP_SESSION_ACTIVITY = 72

MG_DL_PER_MMOL_L = 18


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _nonzero(value: Any) -> Optional[float]:
    """Numeric value, with zero and garbage collapsing to ``None``."""
    number = _to_float(value)
    return number if number else None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _int_or_none(value: Optional[float]) -> Optional[int]:
    return None if value is None else round_half_up(value)


def _round2(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def _clamp_hours(value: float) -> float:
    return min(max(value, 0.0), 24.0)


def is_empty(fields: dict[str, Any]) -> bool:
    return all(value is None for value in fields.values())


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------

def _minutes_to_hours(minutes: Any) -> Optional[float]:
    value = _nonzero(minutes)
    if value is None or value < 0:
        return None
    return round(value / 60, 2)


def normalize_fitbit_day(raw: dict[str, Any]) -> dict[str, Any]:
    activity = (raw.get("activity") or {}).get("summary") or {}
    sleep_summary = (raw.get("sleep") or {}).get("summary") or {}
    heart = (raw.get("heart") or {}).get("activities-heart") or []
    weights = (raw.get("weight") or {}).get("weight") or []
    water = (raw.get("water") or {}).get("summary") or {}

    stages = sleep_summary.get("stages") or {}

    resting = None
    if heart:
        resting = _nonzero((heart[0].get("value") or {}).get("restingHeartRate"))

    weight = _nonzero(weights[0].get("weight")) if weights else None

    return {
        "steps": _int_or_none(_nonzero(activity.get("steps"))),
        "calories": _int_or_none(_nonzero(activity.get("caloriesOut"))),
        "sleep_hours": _minutes_to_hours(sleep_summary.get("totalMinutesAsleep")),
        "sleep_deep_hours": _minutes_to_hours(stages.get("deep")),
        "sleep_light_hours": _minutes_to_hours(stages.get("light")),
        "sleep_rem_hours": _minutes_to_hours(stages.get("rem")),
        "sleep_awake_hours": _minutes_to_hours(stages.get("wake")),
        "resting_heart_rate": _int_or_none(resting),
        "weight_kg": _round2(weight),
        "water_ml": _int_or_none(_nonzero(water.get("water"))),
    }


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------

def point_numbers(point: dict[str, Any]) -> list[float]:
    """All numeric values of a data point: intVal, fpVal and mapVal entries."""
    numbers: list[float] = []
    for value in point.get("value") or []:
        for key in ("intVal", "fpVal"):
            if isinstance(value.get(key), (int, float)):
                numbers.append(value[key])
        for item in value.get("mapVal") or []:
            inner = item.get("value") or {}
            for key in ("intVal", "fpVal"):
                if isinstance(inner.get(key), (int, float)):
                    numbers.append(inner[key])
    return numbers


def point_duration_hours(point: dict[str, Any]) -> float:
    """Duration of a point from nanosecond timestamps, falling back to millis."""
    start_ns = _to_float(point.get("startTimeNanos")) or 0
    end_ns = _to_float(point.get("endTimeNanos")) or 0
    if end_ns > start_ns:
        return (end_ns - start_ns) / 1_000_000_000 / 3600

    start_ms = _to_float(point.get("startTimeMillis")) or 0
    end_ms = _to_float(point.get("endTimeMillis")) or 0
    if end_ms > start_ms:
        return (end_ms - start_ms) / 1000 / 3600

    return 0.0


def _datasets(aggregate: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    buckets = (aggregate or {}).get("bucket") or []
    if not buckets:
        return []
    return buckets[0].get("dataset") or []


def google_fit_sleep_from_aggregate(aggregate: Optional[dict[str, Any]]) -> dict[str, Optional[float]]:
    """Sleep totals per stage from sleep.segment points, each clamped to [0, 24] h."""
    totals = {"total": 0.0, "deep": 0.0, "light": 0.0, "rem": 0.0, "awake": 0.0}
    for dataset in _datasets(aggregate):
        if "sleep.segment" not in (dataset.get("dataSourceId") or "").lower():
            continue
        for point in dataset.get("point") or []:
            values = point_numbers(point)
            stage = int(values[0]) if values else 2
            hours = point_duration_hours(point)
            if hours <= 0:
                continue
            if stage in _SLEEP_AWAKE_CODES:
                totals["awake"] += hours
                continue
            if stage == _SLEEP_DEEP:
                totals["deep"] += hours
            elif stage == _SLEEP_REM:
                totals["rem"] += hours
            else:
                totals["light"] += hours
            totals["total"] += hours

    def _hours(key: str) -> Optional[float]:
        return _clamp_hours(totals[key]) if totals[key] > 0 else None

    return {
        "sleep_hours": _hours("total"),
        "sleep_deep_hours": _hours("deep"),
        "sleep_light_hours": _hours("light"),
        "sleep_rem_hours": _hours("rem"),
        "sleep_awake_hours": _hours("awake"),
    }


def sleep_hours_from_sessions(sessions: list[dict[str, Any]], day: date) -> Optional[float]:
    """Hours of sleep sessions overlapping the UTC *day*."""
    day_start = datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp() * 1000
    day_end = day_start + 86_400_000 - 1

    total = 0.0
    for session in sessions:
        if session.get("activityType") != _SLEEP_SESSION_ACTIVITY:
            continue
        start = _to_float(session.get("startTimeMillis"))
        end = _to_float(session.get("endTimeMillis"))
        if start is None or end is None or end <= start:
            continue
        overlap_start = max(start, day_start)
        overlap_end = min(end, day_end)
        if overlap_end <= overlap_start:
            continue
        total += (overlap_end - overlap_start) / 1000 / 3600

    if total <= 0:
        return None
    return round(_clamp_hours(total), 2)


def normalize_google_fit_day(raw: dict[str, Any]) -> dict[str, Any]:
    steps: Optional[float] = None
    calories: Optional[float] = None
    weight: Optional[float] = None
    water: Optional[float] = None
    systolic: Optional[float] = None
    diastolic: Optional[float] = None
    oxygen: Optional[float] = None
    temperature: Optional[float] = None
    glucose: Optional[float] = None
    heart_values: list[float] = []
    reproductive = 0

    for dataset in _datasets(raw.get("aggregate")):
        source_id = (dataset.get("dataSourceId") or "").lower()
        for point in dataset.get("point") or []:
            values = point_numbers(point)
            positive = [v for v in values if v > 0]

            if "step_count" in source_id:
                if positive:
                    steps = (steps or 0) + sum(positive)
            elif "calories.expended" in source_id:
                if positive:
                    calories = (calories or 0) + sum(positive)
            elif "heart_rate" in source_id:
                heart_values.extend(positive)
            elif "weight" in source_id:
                if positive:
                    weight = positive[0]
            elif "hydration" in source_id:
                # liters -> milliliters
                if positive:
                    water = (water or 0) + sum(v * 1000 for v in positive)
            elif "blood_pressure" in source_id:
                if len(values) > 0 and values[0] > 0:
                    systolic = values[0]
                if len(values) > 1 and values[1] > 0:
                    diastolic = values[1]
            elif "oxygen_saturation" in source_id:
                if positive:
                    oxygen = positive[0] * 100 if positive[0] <= 1 else positive[0]
            elif "body.temperature" in source_id:
                if positive:
                    temperature = positive[0]
            elif "blood_glucose" in source_id:
                # values above 40 can only be mg/dL
                if positive:
                    glucose = positive[0] / MG_DL_PER_MMOL_L if positive[0] > 40 else positive[0]
            elif "reproductive_health" in source_id:
                reproductive += 1

    resting = sum(heart_values) / len(heart_values) if heart_values else None

    sleep = google_fit_sleep_from_aggregate(raw.get("aggregate"))
    sleep_hours = sleep["sleep_hours"]
    if sleep_hours is None and raw.get("sessions"):
        sleep_hours = sleep_hours_from_sessions(raw["sessions"], date.fromisoformat(raw["date"]))

    return {
        "steps": _int_or_none(steps),
        "calories": _int_or_none(calories),
        "resting_heart_rate": _int_or_none(resting),
        "weight_kg": _round2(weight),
        "water_ml": _int_or_none(water),
        "systolic_bp": _int_or_none(systolic),
        "diastolic_bp": _int_or_none(diastolic),
        "oxygen_saturation_pct": _round2(oxygen),
        "body_temperature_c": _round2(temperature),
        "blood_glucose_mmol_l": _round2(glucose),
        "sleep_hours": _round2(sleep_hours),
        "sleep_deep_hours": _round2(sleep["sleep_deep_hours"]),
        "sleep_light_hours": _round2(sleep["sleep_light_hours"]),
        "sleep_rem_hours": _round2(sleep["sleep_rem_hours"]),
        "sleep_awake_hours": _round2(sleep["sleep_awake_hours"]),
        "reproductive_events_count": reproductive or None,
    }


_NORMALIZERS = {
    PROVIDER_FITBIT: normalize_fitbit_day,
    PROVIDER_GOOGLE_FIT: normalize_google_fit_day,
}


def normalize(raw: dict[str, Any], provider: str) -> dict[str, Any]:
    return _NORMALIZERS[provider](raw)
