from datetime import timedelta
import logging
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from roster_sync.models.sync_lock import SyncLock
from roster_sync.schemas.sync import LockAcquisition, LockInfo
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def _to_lock_info(scope: str, record: SyncLock | None) -> LockInfo:
    if record is None:
        return LockInfo(scope=scope, locked=False)
    return LockInfo(
        scope=scope,
        locked=True,
        holder=record.holder,
        initiator=record.initiator,
        machine_name=record.machine_name,
        acquired_at=record.acquired_at,
        expires_at=record.expires_at,
        age_seconds=max((utcnow() - record.acquired_at).total_seconds(), 0.0),
    )


def get_active_sync_lock(db: Session, scope: str) -> SyncLock | None:
    query = select(SyncLock).where(SyncLock.scope == scope, SyncLock.expires_at > utcnow())
    return db.execute(query).scalar_one_or_none()


def get_sync_lock_info(db: Session, scope: str) -> LockInfo:
    record = get_active_sync_lock(db, scope=scope)
    logger.info("crud_get_sync_lock_info scope=%s locked=%s", scope, record is not None)
    return _to_lock_info(scope, record)


def try_acquire_sync_lock(
    db: Session,
    scope: str,
    holder: str,
    initiator: str | None = None,
    ttl_minutes: int = 30,
    machine_name: str | None = None,
) -> LockAcquisition:
    now = utcnow()
    token = uuid4().hex
    # Expired rows are reaped and the new row inserted in one transaction; the primary key
    # on scope rejects the insert when an unexpired holder exists.
    db.execute(delete(SyncLock).where(SyncLock.scope == scope, SyncLock.expires_at <= now))
    db.add(
        SyncLock(
            scope=scope,
            lock_token=token,
            holder=holder,
            initiator=initiator,
            machine_name=machine_name,
            acquired_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_heartbeat=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        current = get_sync_lock_info(db, scope=scope)
        logger.info(
            "crud_try_acquire_sync_lock scope=%s acquired=%s reason=active_lock current_holder=%s initiator=%s",
            scope,
            False,
            current.holder,
            current.initiator,
        )
        return LockAcquisition(granted=False, current_holder=current)

    logger.info("crud_try_acquire_sync_lock scope=%s acquired=%s holder=%s", scope, True, holder)
    return LockAcquisition(
        granted=True,
        token=token,
        current_holder=LockInfo(
            scope=scope,
            locked=True,
            holder=holder,
            initiator=initiator,
            machine_name=machine_name,
            acquired_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            age_seconds=0.0,
        ),
    )


def release_sync_lock(db: Session, scope: str, token: str) -> bool:
    result = db.execute(delete(SyncLock).where(SyncLock.scope == scope, SyncLock.lock_token == token))
    db.commit()
    released = result.rowcount == 1
    logger.info(
        "crud_release_sync_lock scope=%s released=%s reason=%s",
        scope,
        released,
        "ok" if released else "missing_or_not_owned",
    )
    return released


def extend_sync_lock(db: Session, scope: str, token: str, ttl_minutes: int = 30) -> bool:
    now = utcnow()
    result = db.execute(
        update(SyncLock)
        .where(SyncLock.scope == scope, SyncLock.lock_token == token, SyncLock.expires_at > now)
        .values(expires_at=now + timedelta(minutes=ttl_minutes), last_heartbeat=now)
    )
    db.commit()
    extended = result.rowcount == 1
    logger.info("crud_extend_sync_lock scope=%s extended=%s", scope, extended)
    return extended


def cleanup_expired_sync_locks(db: Session) -> int:
    result = db.execute(delete(SyncLock).where(SyncLock.expires_at <= utcnow()))
    db.commit()
    logger.info("crud_cleanup_expired_sync_locks deleted=%s", result.rowcount)
    return int(result.rowcount)
