"""
Error taxonomy for the health integration backend.

Every error that can reach a client derives from ``HealthSyncError`` and is
rendered by ``health_sync_error_handler`` as ``{"error": ..., "details": ...}``.
``RateLimited`` and ``PermissionBlocked`` are provider conditions handled by
the sync orchestrator; they only reach a client if something fails to
absorb them.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("errors")


class HealthSyncError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            content["details"] = self.details
        return content


class Unauthorized(HealthSyncError):
    status_code = 401


class TokenNotFound(HealthSyncError):
    status_code = 400


class ReauthorizationRequired(HealthSyncError):
    status_code = 400


class UnsupportedProvider(HealthSyncError):
    status_code = 400


class SyncAlreadyInProgress(HealthSyncError):
    status_code = 409


class StorageError(HealthSyncError):
    status_code = 500


class ConfigurationError(HealthSyncError):
    status_code = 500

    def __init__(self, message: str, required: Optional[list[str]] = None):
        super().__init__(message)
        self.required = required or []

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        if self.required:
            content["required"] = self.required
        return content


class ProviderApiError(HealthSyncError):
    """Non-2xx response from a provider API."""
    status_code = 500

    def __init__(
        self,
        message: str,
        status: int,
        body: str = "",
        retry_after_seconds: Optional[int] = None,
    ):
        super().__init__(message, details=body[:500] if body else None)
        self.status = status
        self.body = body
        self.retry_after_seconds = retry_after_seconds


class RateLimited(ProviderApiError):
    """HTTP 429 from a provider. Halts the day loop; never retried here."""


class PermissionBlocked(ProviderApiError):
    """The account may not read one data type; only that type is dropped."""

    def __init__(self, data_type: str, reason: str, status: int, body: str = ""):
        super().__init__(
            f"Access to {data_type} is blocked ({reason})", status, body
        )
        self.data_type = data_type
        self.reason = reason


async def health_sync_error_handler(request: Request, exc: HealthSyncError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("%s %s rejected: invalid request", request.method, request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )
