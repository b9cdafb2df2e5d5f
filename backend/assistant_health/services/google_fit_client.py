"""
Google Fit REST client.

A synced day is one ``dataset:aggregate`` call over the permitted data types,
plus a ``sessions`` call when the aggregate carries no sleep.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from datetime import date, datetime, time, timezone
from typing import Any, Optional

import httpx

from assistant_health.config import settings
from assistant_health.errors import PermissionBlocked, ProviderApiError, RateLimited
from assistant_health.models import PROVIDER_GOOGLE_FIT
from assistant_health.services import normalizer
from assistant_health.services.provider_base import (
    ProviderClient,
    raise_for_provider_status,
)

logger = logging.getLogger("google_fit_client")

SLEEP_DATA_TYPE = "com.google.sleep.segment"

GOOGLE_DATA_TYPES: tuple[str, ...] = (
    "com.google.step_count.delta",
    "com.google.calories.expended",
    "com.google.heart_rate.bpm",
    "com.google.weight",
    "com.google.hydration",
    "com.google.blood_pressure",
    "com.google.oxygen_saturation",
    "com.google.blood_glucose",
    "com.google.body.temperature",
    SLEEP_DATA_TYPE,
    "com.google.reproductive_health",
)

_FITNESS_SCOPE = "https://www.googleapis.com/auth/fitness.{}.read"

# Read scope that grants each data type
DATA_TYPE_SCOPES: dict[str, str] = {
    "com.google.step_count.delta": _FITNESS_SCOPE.format("activity"),
    "com.google.calories.expended": _FITNESS_SCOPE.format("activity"),
    "com.google.heart_rate.bpm": _FITNESS_SCOPE.format("heart_rate"),
    "com.google.weight": _FITNESS_SCOPE.format("body"),
    "com.google.hydration": _FITNESS_SCOPE.format("nutrition"),
    "com.google.blood_pressure": _FITNESS_SCOPE.format("blood_pressure"),
    "com.google.oxygen_saturation": _FITNESS_SCOPE.format("oxygen_saturation"),
    "com.google.blood_glucose": _FITNESS_SCOPE.format("blood_glucose"),
    "com.google.body.temperature": _FITNESS_SCOPE.format("body_temperature"),
    SLEEP_DATA_TYPE: _FITNESS_SCOPE.format("sleep"),
    "com.google.reproductive_health": _FITNESS_SCOPE.format("reproductive_health"),
}

SCOPES: list[str] = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    _FITNESS_SCOPE.format("activity"),
    _FITNESS_SCOPE.format("heart_rate"),
    _FITNESS_SCOPE.format("body"),
    _FITNESS_SCOPE.format("location"),
    _FITNESS_SCOPE.format("sleep"),
    _FITNESS_SCOPE.format("blood_pressure"),
    _FITNESS_SCOPE.format("blood_glucose"),
    _FITNESS_SCOPE.format("body_temperature"),
    _FITNESS_SCOPE.format("oxygen_saturation"),
    _FITNESS_SCOPE.format("reproductive_health"),
    _FITNESS_SCOPE.format("nutrition"),
]

_DAY_MILLIS = 86_400_000

_FORBIDDEN_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"Cannot read data of type\s+([a-zA-Z0-9._]+)", re.IGNORECASE), "permission_denied"),
    (re.compile(r"no default datasource found for:\s*([a-zA-Z0-9._]+)", re.IGNORECASE), "datasource_missing"),
]


def parse_forbidden_data_type(status: int, body: str) -> Optional[tuple[str, str]]:
    """Return ``(data_type, reason)`` when a 400/403 names an unreadable data type."""
    if status not in (400, 403):
        return None
    for pattern, reason in _FORBIDDEN_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1).rstrip("."), reason
    return None


def _day_bounds_millis(day: date) -> tuple[int, int]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    return start_ms, start_ms + _DAY_MILLIS - 1


class GoogleFitClient(ProviderClient):
    provider = PROVIDER_GOOGLE_FIT
    label = "Google Fit"
    data_types = GOOGLE_DATA_TYPES
    data_type_scopes = DATA_TYPE_SCOPES

    def required_settings(self) -> dict[str, str]:
        return {
            "GOOGLE_FIT_CLIENT_ID": settings.GOOGLE_FIT_CLIENT_ID,
            "GOOGLE_FIT_CLIENT_SECRET": settings.GOOGLE_FIT_CLIENT_SECRET,
            "GOOGLE_FIT_REDIRECT_URI": settings.GOOGLE_FIT_REDIRECT_URI,
        }

    @property
    def max_days(self) -> int:
        return settings.GOOGLE_FIT_MAX_DAYS

    @property
    def day_delay_seconds(self) -> float:
        return settings.GOOGLE_FIT_DAY_DELAY_SECONDS

    def authorize_url(self, state: str) -> str:
        params = urllib.parse.urlencode({
            "response_type": "code",
            "client_id": settings.GOOGLE_FIT_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_FIT_REDIRECT_URI,
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "state": state,
        })
        return f"{settings.GOOGLE_AUTH_URL}?{params}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        return await self._post_token_request(
            settings.GOOGLE_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.GOOGLE_FIT_REDIRECT_URI,
                "client_id": settings.GOOGLE_FIT_CLIENT_ID,
                "client_secret": settings.GOOGLE_FIT_CLIENT_SECRET,
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        return await self._post_token_request(
            settings.GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": settings.GOOGLE_FIT_CLIENT_ID,
                "client_secret": settings.GOOGLE_FIT_CLIENT_SECRET,
            },
        )

    def _check(self, resp: httpx.Response, label: str, data_types: list[str]) -> None:
        if resp.is_success:
            return
        forbidden = parse_forbidden_data_type(resp.status_code, resp.text)
        if forbidden and forbidden[0] in data_types:
            data_type, reason = forbidden
            logger.warning("%s refused %s (%s)", label, data_type, reason)
            raise PermissionBlocked(data_type, reason, resp.status_code, resp.text)
        raise_for_provider_status(resp, label)

    async def aggregate_day(
        self, access_token: str, day: date, data_types: list[str]
    ) -> dict[str, Any]:
        start_ms, end_ms = _day_bounds_millis(day)
        resp = await self.http.post(
            f"{settings.GOOGLE_FIT_API_BASE}/dataset:aggregate",
            json={
                "aggregateBy": [{"dataTypeName": name} for name in data_types],
                "bucketByTime": {"durationMillis": _DAY_MILLIS},
                "startTimeMillis": start_ms,
                "endTimeMillis": end_ms,
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )
        self._check(resp, "Google Fit API", data_types)
        return resp.json()

    async def list_sessions(
        self, access_token: str, day: date, data_types: list[str]
    ) -> list[dict[str, Any]]:
        ds = day.isoformat()
        resp = await self.http.get(
            f"{settings.GOOGLE_FIT_API_BASE}/sessions",
            params={
                "startTime": f"{ds}T00:00:00.000Z",
                "endTime": f"{ds}T23:59:59.999Z",
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )
        self._check(resp, "Google Fit sessions API", data_types)
        return resp.json().get("session", [])

    async def fetch_day(
        self,
        access_token: str,
        day: date,
        data_types: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        requested = list(self.data_types if data_types is None else data_types)
        payload: dict[str, Any] = {
            "date": day.isoformat(),
            "aggregate": None,
            "sessions": None,
            "blocked": [],
        }
        if not requested:
            return payload

        payload["aggregate"] = await self.aggregate_day(access_token, day, requested)

        if SLEEP_DATA_TYPE not in requested:
            return payload
        if normalizer.google_fit_sleep_from_aggregate(payload["aggregate"])["sleep_hours"] is not None:
            return payload

        try:
            payload["sessions"] = await self.list_sessions(access_token, day, requested)
        except RateLimited:
            raise
        except PermissionBlocked as e:
            # The aggregate already succeeded; keep it and report the refusal
            payload["blocked"].append((e.data_type, e.reason))
        except ProviderApiError as e:
            if 400 <= e.status < 500:
                logger.warning("Sleep session fallback skipped for %s: %s", day, e.message)
            else:
                raise
        return payload
