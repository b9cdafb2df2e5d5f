"""At most one running sync per (user, provider), enforced by a TTL row."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from assistant_health.config import settings
from assistant_health.errors import SyncAlreadyInProgress
from assistant_health.models import SyncLock, utcnow

logger = logging.getLogger("sync_lock")


def acquire(db: Session, user_id: str, provider: str) -> SyncLock:
    now = utcnow()
    # A crashed run leaves its row behind; it stops counting after the TTL
    db.query(SyncLock).filter(
        SyncLock.user_id == user_id,
        SyncLock.provider == provider,
        SyncLock.expires_at <= now,
    ).delete(synchronize_session=False)
    db.commit()

    lock = SyncLock(
        user_id=user_id,
        provider=provider,
        acquired_at=now,
        expires_at=now + timedelta(seconds=settings.SYNC_LOCK_TTL_SECONDS),
    )
    db.add(lock)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Sync for %s/%s already running", user_id, provider)
        raise SyncAlreadyInProgress("A sync for this provider is already in progress")
    return lock


def release(db: Session, user_id: str, provider: str) -> None:
    db.query(SyncLock).filter(
        SyncLock.user_id == user_id, SyncLock.provider == provider
    ).delete(synchronize_session=False)
    db.commit()


@contextmanager
def sync_lock(db: Session, user_id: str, provider: str):
    acquire(db, user_id, provider)
    try:
        yield
    finally:
        # A failed transaction must be cleared before the lock row can go
        db.rollback()
        release(db, user_id, provider)
