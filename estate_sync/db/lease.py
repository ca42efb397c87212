"""Named storage lease so only one process runs a sync pass at a time."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from estate_sync.db.models import SyncLease, utcnow
from estate_sync.errors import PersistenceError

logger = logging.getLogger(__name__)

SYNC_LEASE_NAME = "sync"


def acquire_lease(
    session: Session,
    holder: str,
    ttl: timedelta,
    name: str = SYNC_LEASE_NAME,
    now: Optional[datetime] = None,
) -> bool:
    """Take the named lease if it is free or expired.

    Returns:
        True if ``holder`` now owns the lease
    """
    now = now or utcnow()
    try:
        session.execute(insert(SyncLease).values(name=name, holder=holder, expires_at=now + ttl))
        session.commit()
        logger.debug(f"Lease '{name}' acquired by {holder}")
        return True
    except IntegrityError:
        session.rollback()

    # Row exists: take it over only if it has expired
    try:
        result = session.execute(
            update(SyncLease)
            .where(SyncLease.name == name, SyncLease.expires_at <= now)
            .values(holder=holder, expires_at=now + ttl)
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Could not acquire lease '{name}': {e}") from e

    if result.rowcount:
        logger.info(f"Lease '{name}' expired, taken over by {holder}")
        return True
    return False


def release_lease(session: Session, holder: str, name: str = SYNC_LEASE_NAME) -> None:
    """Release the lease if ``holder`` still owns it."""
    try:
        session.execute(
            delete(SyncLease).where(SyncLease.name == name, SyncLease.holder == holder)
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Could not release lease '{name}': {e}") from e
    logger.debug(f"Lease '{name}' released by {holder}")
