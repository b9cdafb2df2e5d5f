from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from assistant_health.database import get_db
from assistant_health.models import HealthMetricEntry, utcnow
from assistant_health.security import get_current_user_id
from assistant_health.services.integration_state import list_integrations

router = APIRouter(tags=["data"])

METRIC_FIELDS = (
    "steps", "calories", "sleep_hours", "sleep_deep_hours", "sleep_light_hours",
    "sleep_rem_hours", "sleep_awake_hours", "water_ml", "weight_kg",
    "resting_heart_rate", "systolic_bp", "diastolic_bp", "oxygen_saturation_pct",
    "body_temperature_c", "blood_glucose_mmol_l", "reproductive_events_count",
    "mood_score", "note",
)


# ─── Integrations ─────────────────────────────────────────────

@router.get("/health/integrations")
def get_integrations(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Provider catalog with the user's connection status for each entry."""
    return {"integrations": list_integrations(db, user_id)}


# ─── Daily Metrics ────────────────────────────────────────────

@router.get("/health/metrics")
def get_health_metrics(
    days: int = Query(30, ge=1, le=366),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Daily entries from every source over the last *days* days, newest first."""
    since = utcnow().date() - timedelta(days=days - 1)
    rows = (
        db.query(HealthMetricEntry)
        .filter(HealthMetricEntry.user_id == user_id, HealthMetricEntry.recorded_for >= since)
        .order_by(HealthMetricEntry.recorded_for.desc(), HealthMetricEntry.source)
        .all()
    )
    return {
        "entries": [
            {
                "recorded_for": r.recorded_for.isoformat(),
                "source": r.source,
                **{field: getattr(r, field) for field in METRIC_FIELDS},
                "provider": (r.metadata_ or {}).get("provider"),
                "updated_at": r.updated_at.isoformat() if r.updated_at else None,
            }
            for r in rows
        ]
    }
