"""
Per-user record of which provider data types may be requested.

Grants are negotiated from the granted OAuth scope when a provider is
connected and narrowed explicitly when the provider refuses a data type during
a sync.  A refusal because the account has no data source for a type is only
remembered for ``DATA_TYPE_RETRY_DAYS``; scope refusals last until reconnect.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from assistant_health.config import settings
from assistant_health.models import DataTypeGrant, utcnow

logger = logging.getLogger("capabilities")

REASON_SCOPE_NOT_GRANTED = "scope_not_granted"
REASON_PERMISSION_DENIED = "permission_denied"
REASON_DATASOURCE_MISSING = "datasource_missing"


def _grants(db: Session, user_id: str, provider: str) -> dict[str, DataTypeGrant]:
    rows = (
        db.query(DataTypeGrant)
        .filter(DataTypeGrant.user_id == user_id, DataTypeGrant.provider == provider)
        .all()
    )
    return {row.data_type: row for row in rows}


def negotiate_from_scope(
    db: Session,
    user_id: str,
    provider: str,
    data_type_scopes: dict[str, str],
    granted_scope: Iterable[str],
) -> list[str]:
    """Reset grants for *provider* from a freshly granted scope.

    Returns the data types that are not permitted.  An empty scope means the
    provider did not report one, and every data type is permitted.
    """
    granted = set(granted_scope)
    existing = _grants(db, user_id, provider)
    denied: list[str] = []

    for data_type, required_scope in data_type_scopes.items():
        permitted = not granted or required_scope in granted
        row = existing.get(data_type)
        if row is None:
            row = DataTypeGrant(user_id=user_id, provider=provider, data_type=data_type)
            db.add(row)
        row.permitted = permitted
        row.reason = None if permitted else REASON_SCOPE_NOT_GRANTED
        row.retry_after = None
        if not permitted:
            denied.append(data_type)

    db.commit()
    if denied:
        logger.info("%s scope for user %s excludes %s", provider, user_id, ", ".join(denied))
    return denied


def permitted_data_types(
    db: Session, user_id: str, provider: str, data_types: Iterable[str]
) -> list[str]:
    """Filter *data_types* (keeping their order) down to the permitted ones."""
    grants = _grants(db, user_id, provider)
    now = utcnow()
    allowed: list[str] = []
    for data_type in data_types:
        row = grants.get(data_type)
        if row is None or row.permitted:
            allowed.append(data_type)
        elif row.retry_after is not None and row.retry_after <= now:
            allowed.append(data_type)
    return allowed


def deny_data_type(
    db: Session, user_id: str, provider: str, data_type: str, reason: str
) -> None:
    row: Optional[DataTypeGrant] = (
        db.query(DataTypeGrant)
        .filter(
            DataTypeGrant.user_id == user_id,
            DataTypeGrant.provider == provider,
            DataTypeGrant.data_type == data_type,
        )
        .first()
    )
    if row is None:
        row = DataTypeGrant(user_id=user_id, provider=provider, data_type=data_type)
        db.add(row)
    row.permitted = False
    row.reason = reason
    row.retry_after = (
        utcnow() + timedelta(days=settings.DATA_TYPE_RETRY_DAYS)
        if reason == REASON_DATASOURCE_MISSING
        else None
    )
    db.commit()
    logger.info("Data type %s blocked for user %s (%s)", data_type, user_id, reason)
