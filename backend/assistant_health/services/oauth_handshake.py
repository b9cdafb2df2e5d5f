"""
OAuth2 authorization-code handshake.

``start_oauth`` issues a single-use state bound to user, provider and return
URL; ``complete_oauth`` consumes it on the provider redirect, exchanges the
code for the first token set and always answers with the URL to send the
browser back to.
"""

from __future__ import annotations

import logging
import secrets
import urllib.parse
from datetime import timedelta
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assistant_health.config import settings
from assistant_health.errors import ConfigurationError, HealthSyncError, StorageError
from assistant_health.models import OAuthState, STATUS_PENDING, utcnow
from assistant_health.services import capabilities, integration_state, token_store
from assistant_health.services.providers import PROVIDER_CLIENTS, get_provider_client

logger = logging.getLogger("oauth_handshake")

# Callback failure reasons
REASON_MISSING_STATE = "missing_state"
REASON_INVALID_STATE = "invalid_state"
REASON_STATE_EXPIRED = "state_expired"
REASON_STATE_ALREADY_USED = "state_already_used"
REASON_PROVIDER_NOT_IMPLEMENTED = "provider_not_implemented"
REASON_MISSING_CODE = "missing_code"
REASON_TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
REASON_TOKEN_STORE_FAILED = "token_store_failed"

_MISSING_ENV_REASONS = {
    "fitbit": "missing_fitbit_env",
    "google_fit": "missing_google_fit_env",
}


def default_return_to() -> str:
    return f"{settings.APP_URL.rstrip('/')}/dashboard/health"


def resolve_return_to(return_to: Optional[str]) -> str:
    """Keep *return_to* only when it points at the app's own origin."""
    if not return_to:
        return default_return_to()
    app = urllib.parse.urlsplit(settings.APP_URL)
    target = urllib.parse.urlsplit(return_to)
    if (target.scheme, target.netloc) != (app.scheme, app.netloc):
        logger.warning("Ignoring return_to outside the app origin: %s", return_to)
        return default_return_to()
    return return_to


def build_redirect(base: str, params: dict[str, str]) -> str:
    parts = urllib.parse.urlsplit(base)
    query = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

def start_oauth(
    db: Session,
    user_id: str,
    provider: Optional[str],
    return_to: Optional[str],
    http_client: httpx.AsyncClient,
) -> dict[str, str]:
    provider = (provider or "").lower()
    client = get_provider_client(provider, http_client)
    client.ensure_configured()

    state = secrets.token_urlsafe(32)
    try:
        integration_state.mark_pending(db, user_id, provider)
        db.add(OAuthState(
            state=state,
            user_id=user_id,
            provider=provider,
            return_to=resolve_return_to(return_to),
            expires_at=utcnow() + timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES),
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError("Failed to create oauth state", details=str(e))

    logger.info("OAuth started for %s by user %s", provider, user_id)
    return {"provider": provider, "authorize_url": client.authorize_url(state)}


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------

def _mark_error_if_pending(db: Session, user_id: str, provider: str, reason: str) -> None:
    """Flag an in-flight handshake as failed without disturbing a live connection."""
    row = integration_state.get_integration(db, user_id, provider)
    if row is not None and row.status == STATUS_PENDING:
        integration_state.mark_error(db, user_id, provider, reason)


def _consume(db: Session, row: OAuthState) -> bool:
    """Set ``used_at`` unless another request already did."""
    updated = (
        db.query(OAuthState)
        .filter(OAuthState.id == row.id, OAuthState.used_at.is_(None))
        .update({OAuthState.used_at: utcnow()}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


async def complete_oauth(
    db: Session,
    state: Optional[str],
    code: Optional[str],
    provider_error: Optional[str],
    http_client: httpx.AsyncClient,
) -> str:
    """Finish a handshake and return the URL the browser is redirected to."""
    if not state:
        return build_redirect(
            default_return_to(), {"health_oauth": "error", "reason": REASON_MISSING_STATE}
        )

    row = db.query(OAuthState).filter(OAuthState.state == state).first()
    if row is None:
        return build_redirect(
            default_return_to(), {"health_oauth": "error", "reason": REASON_INVALID_STATE}
        )

    base = row.return_to or default_return_to()
    provider = row.provider
    user_id = row.user_id

    def fail(reason: str) -> str:
        logger.warning("OAuth callback for %s/%s failed: %s", user_id, provider, reason)
        return build_redirect(
            base, {"health_oauth": "error", "provider": provider, "reason": reason}
        )

    if row.used_at is not None:
        _mark_error_if_pending(db, user_id, provider, REASON_STATE_ALREADY_USED)
        return fail(REASON_STATE_ALREADY_USED)

    if row.expires_at < utcnow():
        _mark_error_if_pending(db, user_id, provider, REASON_STATE_EXPIRED)
        return fail(REASON_STATE_EXPIRED)

    if not _consume(db, row):
        return fail(REASON_STATE_ALREADY_USED)

    if provider_error or not code:
        reason = provider_error or REASON_MISSING_CODE
        integration_state.mark_error(db, user_id, provider, reason)
        return fail(reason)

    client_cls = PROVIDER_CLIENTS.get(provider)
    if client_cls is None:
        return fail(REASON_PROVIDER_NOT_IMPLEMENTED)
    client = client_cls(http_client)

    try:
        client.ensure_configured()
    except ConfigurationError:
        return fail(_MISSING_ENV_REASONS.get(provider, REASON_PROVIDER_NOT_IMPLEMENTED))

    try:
        data: dict[str, Any] = await client.exchange_code(code)
    except (HealthSyncError, httpx.HTTPError, ValueError) as e:
        details = getattr(e, "details", None) or str(e)
        integration_state.mark_error(db, user_id, provider, details)
        return fail(REASON_TOKEN_EXCHANGE_FAILED)

    if not data.get("access_token"):
        integration_state.mark_error(db, user_id, provider, data)
        return fail(REASON_TOKEN_EXCHANGE_FAILED)

    try:
        token = token_store.save_token(db, user_id, provider, data, updated_via="oauth_callback")
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Storing %s token for %s failed", provider, user_id)
        return fail(REASON_TOKEN_STORE_FAILED)

    scope = list(token.scope or [])
    if client.data_type_scopes:
        capabilities.negotiate_from_scope(
            db, user_id, provider, client.data_type_scopes, scope
        )
    integration_state.mark_connected(db, user_id, provider, scope)

    logger.info("OAuth completed for %s by user %s", provider, user_id)
    return build_redirect(base, {"health_oauth": "success", "provider": provider})
