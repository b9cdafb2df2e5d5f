"""
Bearer session verification.

Session tokens are JWTs signed by the hosted auth service with a shared HS256
secret; the user id is carried in ``sub``.
"""

from typing import Optional

from fastapi import Header
from jose import JWTError, jwt

from assistant_health.config import settings
from assistant_health.errors import ConfigurationError, Unauthorized

ALGORITHM = "HS256"


def _extract_bearer(authorization: str) -> str:
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip()
    return authorization.strip()


def decode_session_token(token: str) -> str:
    """Return the user id carried by *token* or raise ``Unauthorized``."""
    if not settings.AUTH_JWT_SECRET:
        raise ConfigurationError(
            "Auth env vars are not fully configured", required=["AUTH_JWT_SECRET"]
        )
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
        )
    except JWTError as e:
        raise Unauthorized("Unauthorized", details=str(e))

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Unauthorized", details="Token has no subject")
    return str(user_id)


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: the authenticated user's id."""
    if not authorization:
        raise Unauthorized("Missing Authorization")
    return decode_session_token(_extract_bearer(authorization))
