"""
Shared pytest fixtures for the health integration backend test suite.

Provides:
  - db:            An in-memory SQLite session (isolated per test).
  - provider_api:  A fake of the Fitbit / Google endpoints behind ``httpx.MockTransport``.
  - client:        A FastAPI TestClient wired to the in-memory DB and the fake APIs.
  - auth_headers:  A signed session for ``USER_ID``.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assistant_health.config import settings
from assistant_health.database import Base, get_db
from assistant_health.main import app
from assistant_health.models import OAuthToken, utcnow
from assistant_health.services.provider_base import get_provider_http_client

USER_ID = "user-123"
JWT_SECRET = "test-secret"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def provider_settings(monkeypatch):
    """Configure both providers and drop the inter-day delays."""
    values = {
        "APP_URL": "http://localhost:5173",
        "AUTH_JWT_SECRET": JWT_SECRET,
        "AUTH_JWT_AUDIENCE": "authenticated",
        "FITBIT_CLIENT_ID": "fitbit-id",
        "FITBIT_CLIENT_SECRET": "fitbit-secret",
        "FITBIT_REDIRECT_URI": "http://testserver/api/health-oauth-callback",
        "GOOGLE_FIT_CLIENT_ID": "google-id",
        "GOOGLE_FIT_CLIENT_SECRET": "google-secret",
        "GOOGLE_FIT_REDIRECT_URI": "http://testserver/api/health-oauth-callback",
        "FITBIT_DAY_DELAY_SECONDS": 0,
        "GOOGLE_FIT_DAY_DELAY_SECONDS": 0,
    }
    for name, value in values.items():
        monkeypatch.setattr(settings, name, value)
    return settings


# ---------------------------------------------------------------------------
# Database fixture
# ---------------------------------------------------------------------------

@pytest.fixture()
def db():
    """Create a fresh in-memory SQLite database for each test.

    ``StaticPool`` shares one connection across threads so the TestClient
    worker thread sees the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=engine
    )
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


# ---------------------------------------------------------------------------
# Fake provider APIs
# ---------------------------------------------------------------------------

class FakeProviderApi:
    """Route outbound provider requests to canned responses.

    ``on(method, fragment, response)`` registers a response (or a callable
    taking the request) for every request whose URL contains *fragment*.
    Later registrations win.  Unmatched requests get a 404.
    """

    def __init__(self):
        self.routes = []
        self.requests = []

    def on(self, method, fragment, response):
        self.routes.append((method, fragment, response))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for method, fragment, response in reversed(self.routes):
            if request.method == method and fragment in url:
                return response(request) if callable(response) else response
        return httpx.Response(404, json={"errors": [{"message": "not found"}]})

    def calls(self, fragment, method=None):
        return [
            r for r in self.requests
            if fragment in str(r.url) and (method is None or r.method == method)
        ]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture()
def provider_api():
    return FakeProviderApi()


# ---------------------------------------------------------------------------
# FastAPI TestClient fixture
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(db, provider_api):
    """TestClient with ``get_db`` and the provider HTTP client overridden."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass  # session lifecycle managed by the db fixture

    async def _override_http_client():
        async with provider_api.client() as http:
            yield http

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_provider_http_client] = _override_http_client
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Auth and token helpers
# ---------------------------------------------------------------------------

def make_session_token(user_id=USER_ID, secret=JWT_SECRET, audience="authenticated"):
    claims = {
        "sub": user_id,
        "aud": audience,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {make_session_token()}"}


def store_token(db, provider, user_id=USER_ID, expires_in=timedelta(hours=8), **fields):
    token = OAuthToken(
        user_id=user_id,
        provider=provider,
        access_token=fields.pop("access_token", f"{provider}-access"),
        refresh_token=fields.pop("refresh_token", f"{provider}-refresh"),
        token_type="Bearer",
        expires_at=utcnow() + expires_in if expires_in is not None else None,
        scope=fields.pop("scope", []),
        metadata_={},
        **fields,
    )
    db.add(token)
    db.commit()
    db.refresh(token)
    return token
