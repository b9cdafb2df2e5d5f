"""
Tests for the OAuth handshake (routers/oauth.py, services/oauth_handshake.py).

Covers:
  - Starting a handshake: consent URL, state row, pending status.
  - Callback success for Fitbit and Google Fit, including grant negotiation.
  - Every callback failure reason, delivered as a redirect.
"""

import urllib.parse
from datetime import timedelta

import httpx

from assistant_health.models import (
    DataTypeGrant,
    HealthIntegration,
    OAuthState,
    OAuthToken,
    utcnow,
)
from assistant_health.services.oauth_handshake import build_redirect, resolve_return_to

from conftest import USER_ID

APP_HEALTH_URL = "http://localhost:5173/dashboard/health"


def _query(url):
    return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))


def _start(client, auth_headers, provider="fitbit", return_to=None):
    resp = client.post(
        "/api/health-oauth-start",
        json={"provider": provider, "return_to": return_to},
        headers=auth_headers,
    )
    assert resp.status_code == 200, resp.text
    return _query(resp.json()["authorize_url"])["state"]


def _callback(client, **params):
    resp = client.get("/api/health-oauth-callback", params=params, follow_redirects=False)
    assert resp.status_code == 302
    location = resp.headers["location"]
    return location, _query(location)


def _integration(db, provider="fitbit"):
    db.expire_all()
    return db.query(HealthIntegration).filter_by(user_id=USER_ID, provider=provider).first()


def _fitbit_token_ok(provider_api):
    provider_api.on("POST", "api.fitbit.com/oauth2/token", httpx.Response(200, json={
        "access_token": "fb-access",
        "refresh_token": "fb-refresh",
        "expires_in": 28800,
        "token_type": "Bearer",
        "scope": "activity heartrate sleep weight",
        "user_id": "FB123",
    }))


# ======================================================================
# Helpers
# ======================================================================

class TestRedirectHelpers:
    def test_build_redirect_merges_query(self):
        url = build_redirect("http://localhost:5173/settings?tab=health", {"health_oauth": "success"})
        assert _query(url) == {"tab": "health", "health_oauth": "success"}

    def test_foreign_return_to_replaced(self):
        assert resolve_return_to("https://evil.example.com/x") == APP_HEALTH_URL

    def test_same_origin_return_to_kept(self):
        assert resolve_return_to("http://localhost:5173/settings") == "http://localhost:5173/settings"

    def test_empty_return_to(self):
        assert resolve_return_to(None) == APP_HEALTH_URL


# ======================================================================
# Start
# ======================================================================

class TestOAuthStart:
    def test_fitbit_consent_url(self, client, auth_headers, db):
        resp = client.post("/api/health-oauth-start", json={"provider": "Fitbit"}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["provider"] == "fitbit"
        assert data["authorize_url"].startswith("https://www.fitbit.com/oauth2/authorize?")

        params = _query(data["authorize_url"])
        assert params["client_id"] == "fitbit-id"
        assert params["response_type"] == "code"

        state = db.query(OAuthState).filter_by(state=params["state"]).one()
        assert state.user_id == USER_ID
        assert state.used_at is None
        assert timedelta(minutes=14) < state.expires_at - utcnow() <= timedelta(minutes=15)
        assert state.return_to == APP_HEALTH_URL

        assert _integration(db).status == "pending"

    def test_google_consent_url_requests_offline_access(self, client, auth_headers):
        resp = client.post("/api/health-oauth-start", json={"provider": "google_fit"}, headers=auth_headers)
        params = _query(resp.json()["authorize_url"])
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert "https://www.googleapis.com/auth/fitness.sleep.read" in params["scope"].split(" ")

    def test_unsupported_provider(self, client, auth_headers):
        resp = client.post("/api/health-oauth-start", json={"provider": "garmin"}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Unsupported provider"}

    def test_missing_provider(self, client, auth_headers):
        resp = client.post("/api/health-oauth-start", json={}, headers=auth_headers)
        assert resp.status_code == 400

    def test_requires_session(self, client):
        resp = client.post("/api/health-oauth-start", json={"provider": "fitbit"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Missing Authorization"

    def test_missing_credentials(self, client, auth_headers, monkeypatch):
        from assistant_health.config import settings
        monkeypatch.setattr(settings, "FITBIT_CLIENT_SECRET", "")
        resp = client.post("/api/health-oauth-start", json={"provider": "fitbit"}, headers=auth_headers)
        assert resp.status_code == 500
        assert resp.json()["required"] == ["FITBIT_CLIENT_SECRET"]


# ======================================================================
# Callback
# ======================================================================

class TestOAuthCallbackSuccess:
    def test_fitbit_connects(self, client, auth_headers, db, provider_api):
        _fitbit_token_ok(provider_api)
        state = _start(client, auth_headers)

        location, params = _callback(client, state=state, code="auth-code")

        assert location.startswith(APP_HEALTH_URL)
        assert params == {"health_oauth": "success", "provider": "fitbit"}

        request = provider_api.calls("oauth2/token")[0]
        assert request.headers["Authorization"].startswith("Basic ")
        form = dict(urllib.parse.parse_qsl(request.content.decode()))
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"

        token = db.query(OAuthToken).filter_by(user_id=USER_ID, provider="fitbit").one()
        assert token.access_token == "fb-access"
        assert token.refresh_token == "fb-refresh"
        assert token.scope == ["activity", "heartrate", "sleep", "weight"]
        assert token.metadata_["updated_via"] == "oauth_callback"

        integration = _integration(db)
        assert integration.status == "connected"
        assert integration.connected_at is not None
        assert integration.last_sync_at is None
        assert integration.access_scope == ["activity", "heartrate", "sleep", "weight"]

    def test_return_to_query_preserved(self, client, auth_headers, provider_api):
        _fitbit_token_ok(provider_api)
        state = _start(client, auth_headers, return_to="http://localhost:5173/settings?tab=health")

        location, params = _callback(client, state=state, code="auth-code")

        assert location.startswith("http://localhost:5173/settings?")
        assert params["tab"] == "health"
        assert params["health_oauth"] == "success"

    def test_google_fit_negotiates_grants(self, client, auth_headers, db, provider_api):
        provider_api.on("POST", "oauth2.googleapis.com/token", httpx.Response(200, json={
            "access_token": "g-access",
            "refresh_token": "g-refresh",
            "expires_in": 3599,
            "token_type": "Bearer",
            "scope": "https://www.googleapis.com/auth/fitness.activity.read "
                     "https://www.googleapis.com/auth/fitness.sleep.read",
        }))
        state = _start(client, auth_headers, provider="google_fit")

        _, params = _callback(client, state=state, code="g-code")
        assert params["health_oauth"] == "success"

        grants = {
            g.data_type: g
            for g in db.query(DataTypeGrant).filter_by(user_id=USER_ID, provider="google_fit")
        }
        assert grants["com.google.step_count.delta"].permitted is True
        assert grants["com.google.sleep.segment"].permitted is True
        assert grants["com.google.blood_glucose"].permitted is False
        assert grants["com.google.blood_glucose"].reason == "scope_not_granted"


class TestOAuthCallbackFailures:
    def test_replay_is_rejected(self, client, auth_headers, db, provider_api):
        _fitbit_token_ok(provider_api)
        state = _start(client, auth_headers)
        _callback(client, state=state, code="auth-code")

        _, params = _callback(client, state=state, code="auth-code")

        assert params["health_oauth"] == "error"
        assert params["reason"] == "state_already_used"
        # one exchange only, and the live connection is left alone
        assert len(provider_api.calls("oauth2/token")) == 1
        assert _integration(db).status == "connected"

    def test_replay_after_failed_callback(self, client, auth_headers, provider_api):
        _fitbit_token_ok(provider_api)
        state = _start(client, auth_headers)
        _, first = _callback(client, state=state, error="access_denied")
        assert first["reason"] == "access_denied"

        _, params = _callback(client, state=state, code="x")

        assert params["health_oauth"] == "error"
        assert params["reason"] == "state_already_used"
        assert provider_api.calls("oauth2/token") == []

    def test_expired_state(self, client, db):
        db.add(HealthIntegration(user_id=USER_ID, provider="fitbit", status="pending"))
        db.add(OAuthState(
            state="old-state",
            user_id=USER_ID,
            provider="fitbit",
            return_to=APP_HEALTH_URL,
            expires_at=utcnow() - timedelta(minutes=1),
            created_at=utcnow() - timedelta(minutes=16),
        ))
        db.commit()

        _, params = _callback(client, state="old-state", code="auth-code")

        assert params["reason"] == "state_expired"
        assert params["provider"] == "fitbit"
        assert _integration(db).status == "error"

    def test_missing_state(self, client):
        location, params = _callback(client, code="auth-code")
        assert location.startswith(APP_HEALTH_URL)
        assert params == {"health_oauth": "error", "reason": "missing_state"}

    def test_unknown_state(self, client):
        _, params = _callback(client, state="nope", code="auth-code")
        assert params["reason"] == "invalid_state"

    def test_provider_error(self, client, auth_headers, db, provider_api):
        state = _start(client, auth_headers)

        _, params = _callback(client, state=state, error="access_denied")

        assert params["reason"] == "access_denied"
        integration = _integration(db)
        assert integration.status == "error"
        assert integration.metadata_["oauth_error"] == "access_denied"
        assert provider_api.requests == []

    def test_missing_code(self, client, auth_headers, db):
        state = _start(client, auth_headers)
        _, params = _callback(client, state=state)
        assert params["reason"] == "missing_code"
        assert _integration(db).status == "error"

    def test_exchange_failure(self, client, auth_headers, db, provider_api):
        provider_api.on("POST", "oauth2/token", httpx.Response(400, json={"errors": [
            {"errorType": "invalid_request", "message": "Authorization code expired"}
        ]}))
        state = _start(client, auth_headers)

        _, params = _callback(client, state=state, code="stale-code")

        assert params["reason"] == "token_exchange_failed"
        assert _integration(db).status == "error"
        assert db.query(OAuthToken).count() == 0

    def test_exchange_without_access_token(self, client, auth_headers, db, provider_api):
        provider_api.on("POST", "oauth2/token", httpx.Response(200, json={"token_type": "Bearer"}))
        state = _start(client, auth_headers)

        _, params = _callback(client, state=state, code="auth-code")

        assert params["reason"] == "token_exchange_failed"
        assert db.query(OAuthToken).count() == 0

    def test_credentials_removed_after_start(self, client, auth_headers, monkeypatch):
        from assistant_health.config import settings
        state = _start(client, auth_headers, provider="google_fit")
        monkeypatch.setattr(settings, "GOOGLE_FIT_CLIENT_SECRET", "")

        _, params = _callback(client, state=state, code="auth-code")

        assert params["reason"] == "missing_google_fit_env"
        assert params["provider"] == "google_fit"
