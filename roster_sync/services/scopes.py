import logging

from sqlalchemy.orm import Session, sessionmaker

from roster_sync.cruds.tenants import get_district_by_external_id, get_tenant, list_active_tenants
from roster_sync.models.tenant import Tenant
from roster_sync.schemas.sync import ScopeKind, SyncScope

logger = logging.getLogger(__name__)


class InvalidScopeError(ValueError):
    pass


class ScopeNotFoundError(LookupError):
    pass


def parse_scope(token: str) -> SyncScope:
    """Parse ``school:<id>``, ``district:<id>`` or ``all``."""
    normalized = (token or "").strip()
    if normalized == ScopeKind.ALL.value:
        return SyncScope(kind=ScopeKind.ALL)

    kind, separator, value = normalized.partition(":")
    value = value.strip()
    if not separator or not value:
        raise InvalidScopeError(f"Invalid scope token: {token!r}")

    if kind == ScopeKind.TENANT.value:
        if not value.isdigit() or int(value) <= 0:
            raise InvalidScopeError(f"Invalid school id in scope: {token!r}")
        return SyncScope(kind=ScopeKind.TENANT, value=str(int(value)))
    if kind == ScopeKind.TENANT_GROUP.value:
        return SyncScope(kind=ScopeKind.TENANT_GROUP, value=value)
    raise InvalidScopeError(f"Unknown scope kind: {kind!r}")


class ScopeResolver:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def resolve_tenants(self, token: str) -> list[Tenant]:
        scope = parse_scope(token)
        with self.session_factory() as db:
            if scope.kind is ScopeKind.ALL:
                tenants = list_active_tenants(db=db)
            elif scope.kind is ScopeKind.TENANT:
                tenant = get_tenant(db=db, tenant_id=int(scope.value))
                if tenant is None:
                    raise ScopeNotFoundError(f"School {scope.value} not found")
                tenants = [tenant] if tenant.is_active else []
            else:
                district = get_district_by_external_id(db=db, external_id=scope.value)
                if district is None:
                    raise ScopeNotFoundError(f"District {scope.value} not found")
                tenants = list_active_tenants(db=db, district_id=district.id)
        logger.info("scope_resolved scope=%s tenants=%s", scope.key, len(tenants))
        return tenants

    def resolve(self, token: str) -> list[int]:
        return [tenant.id for tenant in self.resolve_tenants(token)]
