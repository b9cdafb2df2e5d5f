from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, Float, String, DateTime, Date, Boolean, Text, JSON,
    Index, UniqueConstraint,
)
from assistant_health.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


PROVIDER_FITBIT = "fitbit"
PROVIDER_GOOGLE_FIT = "google_fit"

SOURCE_MANUAL = "manual"
SOURCE_INTEGRATION = "integration"

STATUS_NOT_CONNECTED = "not_connected"
STATUS_PENDING = "pending"
STATUS_CONNECTED = "connected"
STATUS_ERROR = "error"
STATUS_REVOKED = "revoked"


class OAuthToken(Base):
    """OAuth2 token set for one user + provider."""
    __tablename__ = "health_integration_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scope = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_token_user_provider"),
    )


class HealthIntegration(Base):
    """Connection status and last-sync diagnostics for one user + provider."""
    __tablename__ = "health_integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    connected_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_auto_sync_attempt_at = Column(DateTime, nullable=True)
    access_scope = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
    )


class OAuthState(Base):
    """Single-use CSRF state issued at the start of an OAuth handshake."""
    __tablename__ = "health_oauth_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    state = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    return_to = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class HealthMetricEntry(Base):
    """Canonical per-day health snapshot for one user and source."""
    __tablename__ = "health_metric_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    recorded_for = Column(Date, nullable=False)
    source = Column(String, nullable=False, default=SOURCE_MANUAL)

    steps = Column(Integer, nullable=True)
    calories = Column(Integer, nullable=True)
    sleep_hours = Column(Float, nullable=True)
    sleep_deep_hours = Column(Float, nullable=True)
    sleep_light_hours = Column(Float, nullable=True)
    sleep_rem_hours = Column(Float, nullable=True)
    sleep_awake_hours = Column(Float, nullable=True)
    water_ml = Column(Integer, nullable=True)
    weight_kg = Column(Float, nullable=True)
    resting_heart_rate = Column(Integer, nullable=True)
    systolic_bp = Column(Integer, nullable=True)
    diastolic_bp = Column(Integer, nullable=True)
    oxygen_saturation_pct = Column(Float, nullable=True)
    body_temperature_c = Column(Float, nullable=True)
    blood_glucose_mmol_l = Column(Float, nullable=True)
    reproductive_events_count = Column(Integer, nullable=True)
    mood_score = Column(Integer, nullable=True)
    note = Column(Text, nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "recorded_for", "source", name="uq_metric_user_day_source"
        ),
        Index("ix_metric_user_recorded_for", "user_id", "recorded_for"),
    )


class DataTypeGrant(Base):
    """Whether a provider data type may be requested for a user.

    A missing row means the data type is permitted.
    """
    __tablename__ = "health_data_type_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    data_type = Column(String, nullable=False)
    permitted = Column(Boolean, nullable=False, default=True)
    reason = Column(String, nullable=True)  # scope_not_granted, permission_denied, datasource_missing
    retry_after = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "data_type", name="uq_grant_user_provider_type"
        ),
    )


class SyncLock(Base):
    """Advisory lock held while a sync runs for one user + provider."""
    __tablename__ = "health_sync_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_sync_lock_user_provider"),
    )
