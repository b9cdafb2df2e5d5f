"""
Tests for SQLAlchemy ORM models (assistant_health.models).

Covers:
  - Unique-constraint enforcement on every (user, provider) keyed table.
  - The one-row-per-(user, day, source) rule for metric entries.
  - Column defaults.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from assistant_health import models


class TestOAuthTokenModel:
    def test_defaults(self, db):
        token = models.OAuthToken(user_id="u1", provider="fitbit", access_token="a")
        db.add(token)
        db.commit()
        db.refresh(token)
        assert token.scope == []
        assert token.metadata_ == {}
        assert token.created_at is not None

    def test_unique_per_user_and_provider(self, db):
        db.add(models.OAuthToken(user_id="u1", provider="fitbit", access_token="a"))
        db.commit()
        db.add(models.OAuthToken(user_id="u1", provider="fitbit", access_token="b"))
        with pytest.raises(IntegrityError):
            db.commit()

    def test_same_user_different_provider(self, db):
        db.add(models.OAuthToken(user_id="u1", provider="fitbit", access_token="a"))
        db.add(models.OAuthToken(user_id="u1", provider="google_fit", access_token="b"))
        db.commit()
        assert db.query(models.OAuthToken).count() == 2


class TestHealthIntegrationModel:
    def test_unique_per_user_and_provider(self, db):
        db.add(models.HealthIntegration(user_id="u1", provider="fitbit"))
        db.commit()
        db.add(models.HealthIntegration(user_id="u1", provider="fitbit"))
        with pytest.raises(IntegrityError):
            db.commit()


class TestOAuthStateModel:
    def test_state_is_unique(self, db):
        expires = models.utcnow() + timedelta(minutes=15)
        db.add(models.OAuthState(
            state="s", user_id="u1", provider="fitbit", return_to="/", expires_at=expires
        ))
        db.commit()
        db.add(models.OAuthState(
            state="s", user_id="u2", provider="fitbit", return_to="/", expires_at=expires
        ))
        with pytest.raises(IntegrityError):
            db.commit()


class TestHealthMetricEntryModel:
    def test_one_row_per_user_day_source(self, db):
        day = date(2024, 6, 15)
        db.add(models.HealthMetricEntry(user_id="u1", recorded_for=day, source="integration", steps=1))
        db.commit()
        db.add(models.HealthMetricEntry(user_id="u1", recorded_for=day, source="integration", steps=2))
        with pytest.raises(IntegrityError):
            db.commit()

    def test_sources_coexist_on_same_day(self, db):
        day = date(2024, 6, 15)
        db.add(models.HealthMetricEntry(user_id="u1", recorded_for=day, source="manual", mood_score=4))
        db.add(models.HealthMetricEntry(user_id="u1", recorded_for=day, source="integration", steps=9000))
        db.commit()
        assert db.query(models.HealthMetricEntry).count() == 2

    def test_source_defaults_to_manual(self, db):
        entry = models.HealthMetricEntry(user_id="u1", recorded_for=date(2024, 6, 15))
        db.add(entry)
        db.commit()
        db.refresh(entry)
        assert entry.source == models.SOURCE_MANUAL
        assert entry.steps is None


class TestDataTypeGrantModel:
    def test_unique_per_data_type(self, db):
        db.add(models.DataTypeGrant(user_id="u1", provider="google_fit", data_type="com.google.weight"))
        db.commit()
        db.add(models.DataTypeGrant(user_id="u1", provider="google_fit", data_type="com.google.weight"))
        with pytest.raises(IntegrityError):
            db.commit()

    def test_permitted_by_default(self, db):
        grant = models.DataTypeGrant(user_id="u1", provider="google_fit", data_type="com.google.weight")
        db.add(grant)
        db.commit()
        db.refresh(grant)
        assert grant.permitted is True


class TestSyncLockModel:
    def test_one_lock_per_user_and_provider(self, db):
        now = models.utcnow()
        db.add(models.SyncLock(user_id="u1", provider="fitbit", acquired_at=now, expires_at=now))
        db.commit()
        db.add(models.SyncLock(user_id="u1", provider="fitbit", acquired_at=now, expires_at=now))
        with pytest.raises(IntegrityError):
            db.commit()
