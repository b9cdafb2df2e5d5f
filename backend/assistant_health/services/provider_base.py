"""
Shared plumbing for provider REST clients.

Each concrete client wraps one ``httpx.AsyncClient`` for the duration of a
request and knows its provider's OAuth endpoints and daily data endpoints.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

import httpx

from assistant_health.config import settings
from assistant_health.errors import (
    ConfigurationError,
    ProviderApiError,
    RateLimited,
    ReauthorizationRequired,
)

logger = logging.getLogger("providers")


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Seconds from a ``Retry-After`` header, or ``None`` when absent/non-numeric."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds != seconds or seconds in (float("inf"), float("-inf")):
        return None
    return int(seconds)


def raise_for_provider_status(resp: httpx.Response, label: str) -> None:
    """Raise ``RateLimited`` on 429 and ``ProviderApiError`` on any other non-2xx."""
    if resp.is_success:
        return
    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
    message = f"{label} error {resp.status_code}: {resp.text[:300]}"
    if resp.status_code == 429:
        logger.warning("Rate-limited by %s. Retry-After: %s seconds", label, retry_after)
        raise RateLimited(message, resp.status_code, resp.text, retry_after)
    raise ProviderApiError(message, resp.status_code, resp.text, retry_after)


class ProviderClient:
    """Base class for a provider's OAuth + data API."""

    provider: str = ""
    label: str = ""
    data_types: tuple[str, ...] = ()
    # data type -> OAuth scope that grants it; empty when not scope-gated
    data_type_scopes: dict[str, str] = {}

    def __init__(self, http_client: httpx.AsyncClient):
        self.http = http_client

    # -- configuration -----------------------------------------------------

    def required_settings(self) -> dict[str, str]:
        """Mapping of env var name -> current value needed by this provider."""
        raise NotImplementedError

    def ensure_configured(self) -> None:
        missing = [name for name, value in self.required_settings().items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing env vars for {self.label} integration", required=missing
            )

    @property
    def max_days(self) -> int:
        raise NotImplementedError

    @property
    def day_delay_seconds(self) -> float:
        raise NotImplementedError

    # -- OAuth -------------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        raise NotImplementedError

    async def exchange_code(self, code: str) -> dict[str, Any]:
        raise NotImplementedError

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        raise NotImplementedError

    async def _post_token_request(
        self,
        url: str,
        data: dict[str, str],
        auth: Optional[tuple[str, str]] = None,
    ) -> dict[str, Any]:
        resp = await self.http.post(
            url,
            data=data,
            auth=auth,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if not resp.is_success:
            grant_type = data.get("grant_type")
            logger.warning(
                "%s token request (%s) failed with %s", self.label, grant_type, resp.status_code
            )
            if (
                grant_type == "refresh_token"
                and resp.status_code in (400, 401)
                and "invalid_grant" in resp.text
            ):
                raise ReauthorizationRequired(
                    f"{self.label} refresh token was rejected. Reconnect {self.label}.",
                    details=resp.text[:500],
                )
            raise_for_provider_status(resp, f"{self.label} token endpoint")
        return resp.json()

    # -- data --------------------------------------------------------------

    async def fetch_day(
        self,
        access_token: str,
        day: date,
        data_types: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Fetch the raw provider payload describing *day*."""
        raise NotImplementedError


async def get_provider_http_client():
    """FastAPI dependency yielding the outbound HTTP client for provider calls."""
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROVIDER_HTTP_TIMEOUT_SECONDS)
    ) as client:
        yield client
