import logging
import threading

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from roster_sync.core.db import build_engine, build_session_factory
from roster_sync.models.roster import TenantBase
from roster_sync.models.tenant import Tenant

logger = logging.getLogger(__name__)


class TenantDatabaseError(Exception):
    pass


class EntityIdentityMap:
    """Source-id keyed cache of loaded roster rows, one bucket per entity type."""

    def __init__(self) -> None:
        self._buckets: dict[str, dict[str, object]] = {}

    def get(self, entity_type: str, source_id: str) -> object | None:
        return self._buckets.get(entity_type, {}).get(source_id)

    def put(self, entity_type: str, source_id: str, record: object) -> None:
        self._buckets.setdefault(entity_type, {})[source_id] = record

    def discard(self, entity_type: str, source_id: str) -> None:
        self._buckets.get(entity_type, {}).pop(source_id, None)

    def invalidate(self, entity_type: str | None = None) -> None:
        if entity_type is None:
            self._buckets.clear()
        else:
            self._buckets.pop(entity_type, None)

    def size(self, entity_type: str) -> int:
        return len(self._buckets.get(entity_type, {}))


class TenantHandle:
    def __init__(self, tenant_id: int, session: Session) -> None:
        self.tenant_id = tenant_id
        self.session = session
        self.identity_map = EntityIdentityMap()

    def invalidate(self, entity_type: str | None = None) -> None:
        # Bulk statements bypass the ORM, so both caches must forget what they loaded.
        self.identity_map.invalidate(entity_type)
        self.session.expire_all()
        logger.info("tenant_handle_invalidated tenant_id=%s entity_type=%s", self.tenant_id, entity_type)

    def close(self) -> None:
        self.identity_map.invalidate()
        self.session.close()

    def __enter__(self) -> "TenantHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.session.rollback()
        self.close()


class TenantDatabaseRouter:
    def __init__(self, url_template: str) -> None:
        self.url_template = url_template
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    def url_for(self, tenant: Tenant) -> str:
        try:
            return self.url_template.format(
                tenant_id=tenant.id,
                external_id=tenant.external_id,
                database_name=tenant.database_name or f"tenant_{tenant.id}",
            )
        except (KeyError, IndexError) as exc:
            raise TenantDatabaseError(f"Invalid tenant database url template: {exc}") from exc

    def _get_engine(self, url: str) -> Engine:
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                engine = build_engine(url)
                TenantBase.metadata.create_all(bind=engine)
                self._engines[url] = engine
                logger.info("tenant_engine_created url_scheme=%s", url.split(":", 1)[0])
            return engine

    def open(self, tenant: Tenant) -> TenantHandle:
        url = self.url_for(tenant)
        try:
            engine = self._get_engine(url)
            session = build_session_factory(engine)()
        except SQLAlchemyError as exc:
            logger.exception("tenant_database_open_failed tenant_id=%s", tenant.id)
            raise TenantDatabaseError(f"Unable to open database for tenant {tenant.id}: {exc}") from exc
        logger.info("tenant_database_opened tenant_id=%s", tenant.id)
        return TenantHandle(tenant_id=tenant.id, session=session)

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
