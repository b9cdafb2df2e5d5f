"""
Fitbit Web API client.

One synced day is five independent GETs (activity summary, sleep, heart rate,
weight log, water log) issued concurrently.  A 404 from any of them means
"no data for that metric on that date".
"""

from __future__ import annotations

import asyncio
import urllib.parse
from datetime import date
from typing import Any, Optional

from assistant_health.config import settings
from assistant_health.errors import RateLimited
from assistant_health.models import PROVIDER_FITBIT
from assistant_health.services.provider_base import (
    ProviderClient,
    raise_for_provider_status,
)

SCOPES = "activity heartrate nutrition profile settings sleep social weight"

# payload key -> endpoint path template
_DAY_ENDPOINTS: list[tuple[str, str]] = [
    ("activity", "/1/user/-/activities/date/{day}.json"),
    ("sleep", "/1.2/user/-/sleep/date/{day}.json"),
    ("heart", "/1/user/-/activities/heart/date/{day}/1d.json"),
    ("weight", "/1/user/-/body/log/weight/date/{day}.json"),
    ("water", "/1/user/-/foods/log/water/date/{day}.json"),
]


class FitbitClient(ProviderClient):
    provider = PROVIDER_FITBIT
    label = "Fitbit"

    def required_settings(self) -> dict[str, str]:
        return {
            "FITBIT_CLIENT_ID": settings.FITBIT_CLIENT_ID,
            "FITBIT_CLIENT_SECRET": settings.FITBIT_CLIENT_SECRET,
            "FITBIT_REDIRECT_URI": settings.FITBIT_REDIRECT_URI,
        }

    @property
    def max_days(self) -> int:
        return settings.FITBIT_MAX_DAYS

    @property
    def day_delay_seconds(self) -> float:
        return settings.FITBIT_DAY_DELAY_SECONDS

    def _basic_auth(self) -> tuple[str, str]:
        return (settings.FITBIT_CLIENT_ID, settings.FITBIT_CLIENT_SECRET)

    def authorize_url(self, state: str) -> str:
        params = urllib.parse.urlencode({
            "response_type": "code",
            "client_id": settings.FITBIT_CLIENT_ID,
            "redirect_uri": settings.FITBIT_REDIRECT_URI,
            "scope": SCOPES,
            "state": state,
        })
        return f"{settings.FITBIT_AUTH_URL}?{params}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        return await self._post_token_request(
            settings.FITBIT_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.FITBIT_REDIRECT_URI,
                "client_id": settings.FITBIT_CLIENT_ID,
            },
            auth=self._basic_auth(),
        )

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        return await self._post_token_request(
            settings.FITBIT_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            auth=self._basic_auth(),
        )

    async def _get_json(self, path: str, access_token: str) -> Optional[dict[str, Any]]:
        resp = await self.http.get(
            f"{settings.FITBIT_API_BASE}{path}",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if resp.status_code == 404:
            return None
        raise_for_provider_status(resp, "Fitbit API")
        return resp.json()

    async def fetch_day(
        self,
        access_token: str,
        day: date,
        data_types: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        ds = day.isoformat()
        results = await asyncio.gather(
            *(self._get_json(path.format(day=ds), access_token) for _, path in _DAY_ENDPOINTS),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        # A throttled call outranks any other failure of the same day
        for err in errors:
            if isinstance(err, RateLimited):
                raise err
        if errors:
            raise errors[0]

        payload: dict[str, Any] = {"date": ds}
        for (key, _), result in zip(_DAY_ENDPOINTS, results):
            payload[key] = result
        return payload
