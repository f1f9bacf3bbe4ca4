import logging

from sqlalchemy.orm import Session, sessionmaker

from roster_sync.cruds.sync_locks import (
    cleanup_expired_sync_locks,
    extend_sync_lock,
    get_sync_lock_info,
    release_sync_lock,
    try_acquire_sync_lock,
)
from roster_sync.schemas.sync import LockAcquisition, LockInfo

logger = logging.getLogger(__name__)


class SyncLockManager:
    """Advisory, TTL-bounded lock per scope key stored in the shared control database.

    Every call runs in its own short transaction so the lock row is visible to other
    processes as soon as the call returns.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        default_ttl_minutes: int = 30,
        machine_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.default_ttl_minutes = default_ttl_minutes
        self.machine_name = machine_name

    def try_acquire(
        self,
        scope: str,
        holder: str,
        initiator: str | None = None,
        ttl_minutes: int | None = None,
    ) -> LockAcquisition:
        with self.session_factory() as db:
            return try_acquire_sync_lock(
                db=db,
                scope=scope,
                holder=holder,
                initiator=initiator,
                ttl_minutes=ttl_minutes or self.default_ttl_minutes,
                machine_name=self.machine_name,
            )

    def release(self, scope: str, token: str) -> bool:
        with self.session_factory() as db:
            return release_sync_lock(db=db, scope=scope, token=token)

    def extend(self, scope: str, token: str, ttl_minutes: int | None = None) -> bool:
        with self.session_factory() as db:
            return extend_sync_lock(
                db=db,
                scope=scope,
                token=token,
                ttl_minutes=ttl_minutes or self.default_ttl_minutes,
            )

    def get_info(self, scope: str) -> LockInfo:
        with self.session_factory() as db:
            return get_sync_lock_info(db=db, scope=scope)

    def cleanup_expired(self) -> int:
        with self.session_factory() as db:
            deleted = cleanup_expired_sync_locks(db=db)
        if deleted:
            logger.info("sync_lock_cleanup deleted=%s", deleted)
        return deleted
