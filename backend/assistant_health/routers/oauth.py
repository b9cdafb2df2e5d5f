"""
Provider OAuth2 router.

Handles the Authorization Code Grant Flow for every OAuth-capable provider:
  1. /api/health-oauth-start     : issue a state and return the consent URL
  2. /api/health-oauth-callback  : consume the state, exchange the code, redirect
"""

from typing import Optional

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from assistant_health.database import get_db
from assistant_health.security import get_current_user_id
from assistant_health.services import oauth_handshake
from assistant_health.services.provider_base import get_provider_http_client

router = APIRouter(tags=["oauth"])


class OAuthStartRequest(BaseModel):
    provider: Optional[str] = None
    return_to: Optional[str] = None


@router.post("/health-oauth-start")
def oauth_start(
    body: OAuthStartRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_provider_http_client),
):
    """Return the provider consent URL for the signed-in user."""
    return oauth_handshake.start_oauth(db, user_id, body.provider, body.return_to, http_client)


@router.get("/health-oauth-callback")
async def oauth_callback(
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_provider_http_client),
):
    """Provider redirect target. Always answers with a redirect back to the app."""
    url = await oauth_handshake.complete_oauth(db, state, code, error, http_client)
    return RedirectResponse(url=url, status_code=302)
