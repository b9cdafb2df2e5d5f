"""Refresh-before-use for stored OAuth tokens."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from assistant_health.config import settings
from assistant_health.errors import ReauthorizationRequired
from assistant_health.models import OAuthToken, utcnow
from assistant_health.services import token_store
from assistant_health.services.provider_base import ProviderClient

logger = logging.getLogger("token_refresher")


def token_is_expired(token: OAuthToken, now: Optional[datetime] = None) -> bool:
    """True when ``expires_at`` falls within the clock-skew buffer of *now*."""
    if token.expires_at is None:
        return False
    now = now or utcnow()
    return token.expires_at <= now + timedelta(seconds=settings.TOKEN_EXPIRY_BUFFER_SECONDS)


async def ensure_fresh_token(
    db: Session,
    token: OAuthToken,
    client: ProviderClient,
    now: Optional[datetime] = None,
) -> OAuthToken:
    """Return *token*, exchanging its refresh token first if it is (nearly) expired."""
    if not token_is_expired(token, now):
        return token

    if not token.refresh_token:
        raise ReauthorizationRequired(
            f"{client.label} refresh token missing. Reconnect {client.label}."
        )

    logger.info("Refreshing %s token for user %s", client.provider, token.user_id)
    data = await client.refresh_access_token(token.refresh_token)
    return token_store.save_token(
        db, token.user_id, token.provider, data, updated_via="refresh_token_flow"
    )
