"""Read and write the per-user, per-provider OAuth token row."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from assistant_health.errors import TokenNotFound
from assistant_health.models import OAuthToken, utcnow

PROVIDER_LABELS = {
    "fitbit": "Fitbit",
    "google_fit": "Google Fit",
}


def parse_scope(scope: Any) -> list[str]:
    """Provider scope strings are space separated."""
    if isinstance(scope, str):
        return [s for s in scope.split(" ") if s]
    if isinstance(scope, (list, tuple)):
        return [str(s) for s in scope if s]
    return []


def get_token(db: Session, user_id: str, provider: str) -> OAuthToken:
    token = (
        db.query(OAuthToken)
        .filter(OAuthToken.user_id == user_id, OAuthToken.provider == provider)
        .first()
    )
    if token is None:
        label = PROVIDER_LABELS.get(provider, provider)
        raise TokenNotFound(f"{label} token not found. Connect {label} first.")
    return token


def save_token(
    db: Session,
    user_id: str,
    provider: str,
    data: dict[str, Any],
    updated_via: str,
) -> OAuthToken:
    """Upsert the token row from a provider token-endpoint response.

    A response without ``refresh_token`` (usual for refresh grants) keeps the
    stored one; a response without ``scope`` keeps the stored scope.
    """
    token = (
        db.query(OAuthToken)
        .filter(OAuthToken.user_id == user_id, OAuthToken.provider == provider)
        .first()
    )
    if token is None:
        token = OAuthToken(user_id=user_id, provider=provider, scope=[], metadata_={})
        db.add(token)

    expires_in = data.get("expires_in")
    try:
        expires_in = int(expires_in or 0)
    except (TypeError, ValueError):
        expires_in = 0

    token.access_token = str(data.get("access_token") or "")
    token.refresh_token = data.get("refresh_token") or token.refresh_token
    token.token_type = data.get("token_type") or None
    token.expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in > 0 else None
    if "scope" in data:
        token.scope = parse_scope(data.get("scope"))

    metadata = dict(token.metadata_ or {})
    metadata["updated_via"] = updated_via
    if data.get("user_id"):
        metadata["provider_user_id"] = data["user_id"]
    token.metadata_ = metadata

    db.commit()
    db.refresh(token)
    return token
