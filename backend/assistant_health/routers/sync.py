"""
Provider sync router.

Each endpoint pulls a window of days from one provider for the signed-in
user and upserts the normalized rows.
"""

from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from assistant_health.database import get_db
from assistant_health.security import get_current_user_id
from assistant_health.services.fitbit_client import FitbitClient
from assistant_health.services.google_fit_client import GoogleFitClient
from assistant_health.services.health_sync import sync_provider
from assistant_health.services.provider_base import ProviderClient, get_provider_http_client

router = APIRouter(tags=["sync"])


class SyncRequest(BaseModel):
    days: Optional[int] = None
    auto: bool = False


async def sync_request_body(request: Request) -> SyncRequest:
    """Parse the optional JSON body; an empty or non-JSON body means defaults."""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    try:
        return SyncRequest(**payload)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


async def _run_sync(
    db: Session, user_id: str, client: ProviderClient, body: SyncRequest
) -> dict[str, Any]:
    client.ensure_configured()
    result = await sync_provider(db, user_id, client, body.days, auto=body.auto)

    if result["skipped"]:
        return {
            "ok": True,
            "skipped": True,
            "reason": result["reason"],
            "next_allowed_at": result["next_allowed_at"],
        }

    response = {"ok": True, **result}
    response.pop("skipped")
    return response


@router.post("/health-fitbit-sync")
async def fitbit_sync(
    user_id: str = Depends(get_current_user_id),
    body: SyncRequest = Depends(sync_request_body),
    db: Session = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_provider_http_client),
):
    return await _run_sync(db, user_id, FitbitClient(http_client), body)


@router.post("/health-google-fit-sync")
async def google_fit_sync(
    user_id: str = Depends(get_current_user_id),
    body: SyncRequest = Depends(sync_request_body),
    db: Session = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_provider_http_client),
):
    return await _run_sync(db, user_id, GoogleFitClient(http_client), body)
