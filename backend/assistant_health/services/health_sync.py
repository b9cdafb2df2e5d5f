"""
Provider sync orchestrator.

Pulls one calendar day at a time from a provider, oldest first, normalizes it
into a ``HealthMetricEntry`` row and writes the whole batch with a single
idempotent upsert keyed on ``(user_id, recorded_for, source)``.

Public entry points
-------------------
- ``resolve_sync_days(requested, last_sync_at, max_days)`` -- window size.
- ``build_date_range(days, today)`` -- the dates to pull, oldest first.
- ``sync_provider(db, user_id, client, ...)`` -- async, runs one sync.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assistant_health.config import settings
from assistant_health.errors import (
    PermissionBlocked,
    ProviderApiError,
    RateLimited,
    StorageError,
)
from assistant_health.models import (
    HealthMetricEntry,
    SOURCE_INTEGRATION,
    utcnow,
)
from assistant_health.services import (
    capabilities,
    integration_state,
    normalizer,
    sync_lock,
    token_refresher,
    token_store,
)
from assistant_health.services.provider_base import ProviderClient

logger = logging.getLogger("health_sync")

Sleeper = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Window helpers
# ---------------------------------------------------------------------------

def resolve_sync_days(
    requested: Optional[int], last_sync_at: Optional[datetime], max_days: int
) -> int:
    """Days to pull: 60 on a cold start, 7 incrementally, clamped to [1, max_days]."""
    if requested is None:
        requested = (
            settings.INCREMENTAL_SYNC_DAYS if last_sync_at else settings.COLD_START_SYNC_DAYS
        )
    return min(max(int(requested), 1), max_days)


def build_date_range(days: int, today: date) -> list[date]:
    """*days* consecutive dates ending at *today*, oldest first."""
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

_UPSERT_KEEP_COLUMNS = ("user_id", "recorded_for", "source", "created_at")


def _dialect_insert(db: Session):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def upsert_entries(db: Session, entries: list[dict[str, Any]]) -> None:
    """Bulk upsert, overwriting only the columns present in *entries*."""
    if not entries:
        return

    insert = _dialect_insert(db)
    stmt = insert(HealthMetricEntry.__table__).values(entries)
    update_columns = [key for key in entries[0] if key not in _UPSERT_KEEP_COLUMNS]
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "recorded_for", "source"],
        set_={key: stmt.excluded[key] for key in update_columns},
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Upsert of %d health entries failed", len(entries))
        raise StorageError("Failed to upsert health entries", details=str(e))


def _build_entry(
    user_id: str, provider: str, day: date, fields: dict[str, Any]
) -> dict[str, Any]:
    now = utcnow()
    return {
        "user_id": user_id,
        "recorded_for": day,
        "source": SOURCE_INTEGRATION,
        **fields,
        "metadata": {"provider": provider, "imported_at": now.isoformat()},
        "created_at": now,
        "updated_at": now,
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

async def _fetch_day_with_grants(
    db: Session,
    user_id: str,
    client: ProviderClient,
    access_token: str,
    day: date,
    data_types: list[str],
    blocked: list[str],
) -> Optional[dict[str, Any]]:
    """Fetch *day*, dropping any data type the provider refuses and retrying.

    *data_types* and *blocked* are narrowed in place so later days skip the
    refused types.  Returns ``None`` when no data type is left to request.
    """
    while True:
        if client.data_types and not data_types:
            return None
        try:
            raw = await client.fetch_day(access_token, day, list(data_types))
        except PermissionBlocked as e:
            capabilities.deny_data_type(db, user_id, client.provider, e.data_type, e.reason)
            data_types.remove(e.data_type)
            blocked.append(e.data_type)
            continue

        for data_type, reason in raw.get("blocked", []):
            capabilities.deny_data_type(db, user_id, client.provider, data_type, reason)
            if data_type in data_types:
                data_types.remove(data_type)
            blocked.append(data_type)
        return raw


async def sync_provider(
    db: Session,
    user_id: str,
    client: ProviderClient,
    requested_days: Optional[int] = None,
    *,
    auto: bool = False,
    today: Optional[date] = None,
    sleep: Sleeper = asyncio.sleep,
) -> dict[str, Any]:
    """Run one sync of *client*'s provider for *user_id*.

    ``RateLimited`` ends the day loop early; what was collected is still
    saved.  ``ProviderApiError`` aborts the run after saving what was
    collected, leaving the integration state untouched.
    """
    provider = client.provider
    integration = integration_state.get_integration(db, user_id, provider)
    last_sync_at = integration.last_sync_at if integration else None
    days = resolve_sync_days(requested_days, last_sync_at, client.max_days)

    token = token_store.get_token(db, user_id, provider)

    if auto:
        next_allowed = integration_state.claim_auto_sync(
            db, user_id, provider, timedelta(minutes=settings.AUTO_SYNC_COOLDOWN_MINUTES)
        )
        if next_allowed is not None:
            logger.info("%s auto-sync for %s skipped until %s", provider, user_id, next_allowed)
            return {
                "skipped": True,
                "reason": "cooldown",
                "next_allowed_at": next_allowed.isoformat(),
                "imported_entries": 0,
                "days_requested": days,
                "processed_days": 0,
                "rate_limited": False,
                "retry_after_seconds": None,
            }

    with sync_lock.sync_lock(db, user_id, provider):
        token = await token_refresher.ensure_fresh_token(db, token, client)
        access_token = token.access_token

        data_types = capabilities.permitted_data_types(
            db, user_id, provider, client.data_types
        )
        blocked = [t for t in client.data_types if t not in data_types]

        dates = build_date_range(days, today or utcnow().date())
        entries: list[dict[str, Any]] = []
        processed_days = 0
        rate_limited = False
        retry_after_seconds: Optional[int] = None

        logger.info(
            "%s: syncing %d days (%s..%s) for user %s",
            provider, days, dates[0], dates[-1], user_id,
        )

        try:
            for index, day in enumerate(dates):
                if index > 0 and client.day_delay_seconds > 0:
                    await sleep(client.day_delay_seconds)

                try:
                    raw = await _fetch_day_with_grants(
                        db, user_id, client, access_token, day, data_types, blocked
                    )
                except RateLimited as e:
                    rate_limited = True
                    retry_after_seconds = e.retry_after_seconds
                    logger.warning(
                        "%s: rate-limited on %s after %d days", provider, day, processed_days
                    )
                    break

                processed_days += 1
                if raw is None:
                    continue

                fields = normalizer.normalize(raw, provider)
                if normalizer.is_empty(fields):
                    continue
                entries.append(_build_entry(user_id, provider, day, fields))
        except ProviderApiError:
            logger.exception(
                "%s: sync aborted after %d days; saving %d collected entries",
                provider, processed_days, len(entries),
            )
            upsert_entries(db, entries)
            raise

        upsert_entries(db, entries)

        result: dict[str, Any] = {
            "skipped": False,
            "imported_entries": len(entries),
            "days_requested": days,
            "processed_days": processed_days,
            "rate_limited": rate_limited,
            "retry_after_seconds": retry_after_seconds,
        }
        if client.data_types:
            result["blocked_data_types"] = [t for t in client.data_types if t in blocked]

        integration_state.record_sync_outcome(db, user_id, provider, result)
        logger.info(
            "%s: imported %d entries over %d days for user %s",
            provider, len(entries), processed_days, user_id,
        )
        return result
