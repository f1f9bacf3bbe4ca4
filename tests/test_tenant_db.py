import pytest
from sqlalchemy import inspect

from roster_sync.core.tenant_db import EntityIdentityMap, TenantDatabaseError, TenantDatabaseRouter
from roster_sync.models.tenant import Tenant


def test_router_creates_tenant_tables_per_database(tmp_path, tenant: Tenant) -> None:
    router = TenantDatabaseRouter(f"sqlite:///{tmp_path}/{{external_id}}.db")

    with router.open(tenant) as handle:
        tables = set(inspect(handle.session.get_bind()).get_table_names())

    router.dispose()
    assert router.url_for(tenant) == f"sqlite:///{tmp_path}/S1.db"
    assert {"terms", "students", "teachers", "sections", "admins", "student_sections", "teacher_sections"} <= tables
    assert (tmp_path / "S1.db").exists()


def test_router_rejects_unknown_template_fields(tenant: Tenant) -> None:
    router = TenantDatabaseRouter("sqlite:///./{region}.db")

    with pytest.raises(TenantDatabaseError):
        router.open(tenant)


def test_identity_map_invalidates_per_entity_type() -> None:
    identity_map = EntityIdentityMap()
    identity_map.put("student", "s1", object())
    identity_map.put("teacher", "t1", object())

    identity_map.invalidate("student")

    assert identity_map.get("student", "s1") is None
    assert identity_map.get("teacher", "t1") is not None
    identity_map.invalidate()
    assert identity_map.size("teacher") == 0
