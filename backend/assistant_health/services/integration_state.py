"""
Integration status tracking.

``health_integrations`` holds one row per (user, provider).  Status moves to
``pending`` when a handshake starts, to ``connected``/``error`` when it ends,
and back to ``connected`` after every sync that reaches its final upsert.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from assistant_health.models import (
    HealthIntegration,
    STATUS_CONNECTED,
    STATUS_ERROR,
    STATUS_NOT_CONNECTED,
    STATUS_PENDING,
    utcnow,
)

# Providers shown to the user, in display order
INTEGRATION_CATALOG: list[dict[str, str]] = [
    {"provider": "apple_health", "name": "Apple Health", "sync_method": "mobile_bridge", "badge": "iOS"},
    {"provider": "health_connect", "name": "Health Connect", "sync_method": "mobile_bridge", "badge": "Android"},
    {"provider": "fitbit", "name": "Fitbit", "sync_method": "oauth_api", "badge": "Wearable"},
    {"provider": "google_fit", "name": "Google Fit", "sync_method": "oauth_api", "badge": "Android"},
    {"provider": "garmin", "name": "Garmin", "sync_method": "oauth_api", "badge": "Wearable"},
    {"provider": "oura", "name": "Oura", "sync_method": "oauth_api", "badge": "Ring"},
    {"provider": "withings", "name": "Withings", "sync_method": "oauth_api", "badge": "Scale"},
    {"provider": "polar", "name": "Polar", "sync_method": "oauth_api", "badge": "Sport"},
    {"provider": "whoop", "name": "WHOOP", "sync_method": "oauth_api", "badge": "Recovery"},
]


def get_integration(db: Session, user_id: str, provider: str) -> Optional[HealthIntegration]:
    return (
        db.query(HealthIntegration)
        .filter(HealthIntegration.user_id == user_id, HealthIntegration.provider == provider)
        .first()
    )


def _get_or_create(db: Session, user_id: str, provider: str) -> HealthIntegration:
    row = get_integration(db, user_id, provider)
    if row is None:
        row = HealthIntegration(
            user_id=user_id, provider=provider, access_scope=[], metadata_={}
        )
        db.add(row)
    return row


def mark_pending(db: Session, user_id: str, provider: str) -> HealthIntegration:
    row = _get_or_create(db, user_id, provider)
    row.status = STATUS_PENDING
    row.metadata_ = {"oauth": True, "started_at": utcnow().isoformat()}
    db.commit()
    return row


def mark_connected(
    db: Session, user_id: str, provider: str, scope: list[str]
) -> HealthIntegration:
    row = _get_or_create(db, user_id, provider)
    row.status = STATUS_CONNECTED
    row.connected_at = utcnow()
    row.last_sync_at = None
    row.access_scope = scope
    row.metadata_ = {"connected_via": "oauth_callback"}
    db.commit()
    return row


def mark_error(db: Session, user_id: str, provider: str, oauth_error: Any) -> HealthIntegration:
    row = _get_or_create(db, user_id, provider)
    row.status = STATUS_ERROR
    row.metadata_ = {"oauth_error": oauth_error, "failed_at": utcnow().isoformat()}
    db.commit()
    return row


def record_sync_outcome(
    db: Session, user_id: str, provider: str, outcome: dict[str, Any]
) -> HealthIntegration:
    """Persist the result of a sync run that reached its final upsert."""
    row = _get_or_create(db, user_id, provider)
    row.status = STATUS_CONNECTED
    row.last_sync_at = utcnow()
    metadata: dict[str, Any] = {
        "provider": provider,
        "last_import_count": outcome["imported_entries"],
        "last_import_days": outcome["days_requested"],
        "processed_days": outcome["processed_days"],
        "rate_limited": outcome["rate_limited"],
        "retry_after_seconds": outcome["retry_after_seconds"],
    }
    if "blocked_data_types" in outcome:
        metadata["blocked_data_types"] = outcome["blocked_data_types"]
    row.metadata_ = metadata
    db.commit()
    return row


def claim_auto_sync(
    db: Session, user_id: str, provider: str, cooldown: timedelta
) -> Optional[datetime]:
    """Record an automatic sync attempt unless one happened within *cooldown*.

    Returns ``None`` when the attempt may proceed, otherwise the time the next
    automatic attempt is allowed.
    """
    row = _get_or_create(db, user_id, provider)
    now = utcnow()
    last = row.last_auto_sync_attempt_at
    if last is not None and last + cooldown > now:
        db.rollback()
        return last + cooldown
    row.last_auto_sync_attempt_at = now
    db.commit()
    return None


def list_integrations(db: Session, user_id: str) -> list[dict[str, Any]]:
    rows = db.query(HealthIntegration).filter(HealthIntegration.user_id == user_id).all()
    by_provider = {row.provider: row for row in rows}

    views = []
    for item in INTEGRATION_CATALOG:
        row = by_provider.get(item["provider"])
        views.append({
            **item,
            "status": row.status if row else STATUS_NOT_CONNECTED,
            "connected_at": row.connected_at.isoformat() if row and row.connected_at else None,
            "last_sync_at": row.last_sync_at.isoformat() if row and row.last_sync_at else None,
        })
    return views
