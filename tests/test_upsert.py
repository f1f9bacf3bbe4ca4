from datetime import timedelta

from sqlalchemy import select, update

from roster_sync.core.tenant_db import TenantDatabaseRouter
from roster_sync.models.roster import Section, Student, StudentSection, TeacherSection
from roster_sync.models.tenant import Tenant
from roster_sync.schemas.roster import RosterRecord
from roster_sync.schemas.sync import RecordChange
from roster_sync.services.entities import ENTITY_DEFINITIONS
from roster_sync.services.upsert import EntityUpsertEngine
from roster_sync.utils.timestamps import utcnow

STUDENT = ENTITY_DEFINITIONS["student"]
SECTION = ENTITY_DEFINITIONS["section"]


def student(source_id: str, **fields: object) -> RosterRecord:
    values = {"first_name": "Ada", "last_name": "Lovelace", "grade": "5"}
    values.update(fields)
    return RosterRecord(source_id=source_id, entity_type="student", fields=values)


def test_upsert_inserts_then_is_idempotent(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()
    records = [student("s1"), student("s2", first_name="Grace")]

    with tenant_router.open(tenant) as handle:
        first = engine.upsert(handle, STUDENT, records)
        second = engine.upsert(handle, STUDENT, records)

    assert (first.inserted, first.updated, first.unchanged, first.failed) == (2, 0, 0, 0)
    assert (second.inserted, second.updated, second.unchanged, second.failed) == (0, 0, 2, 0)
    assert second.examined == 2


def test_upsert_updates_changed_fields_and_records_delta(
    tenant_router: TenantDatabaseRouter,
    tenant: Tenant,
) -> None:
    engine = EntityUpsertEngine()
    changes: list[RecordChange] = []

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("s1")])
        result = engine.upsert(handle, STUDENT, [student("s1", grade="6")], changes=changes)
        stored = handle.session.execute(select(Student).where(Student.source_id == "s1")).scalar_one()

    assert result.updated == 1
    assert stored.grade == "6"
    assert [(change.change_type, change.source_id) for change in changes] == [("updated", "s1")]
    assert [(item.field, item.old, item.new) for item in changes[0].fields] == [("grade", "5", "6")]


def test_upsert_isolates_bad_record(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()
    records = [student("s1"), student("s2", grade={"unexpected": "shape"}), student("s3")]

    with tenant_router.open(tenant) as handle:
        result = engine.upsert(handle, STUDENT, records)
        stored = handle.session.execute(select(Student.source_id).order_by(Student.source_id)).scalars().all()

    assert (result.inserted, result.failed) == (2, 1)
    assert stored == ["s1", "s3"]


def test_soft_deactivate_invalidates_cached_rows(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("s1"), student("s2")])
        assert handle.identity_map.size("student") == 2

        deactivated = engine.soft_deactivate(handle, STUDENT, before=utcnow() + timedelta(seconds=1))

        assert deactivated == 2
        assert handle.identity_map.size("student") == 0
        # A stale cached row would still claim to be active and the upsert would report it unchanged.
        result = engine.upsert(handle, STUDENT, [student("s1")], mark_active=True)
        assert result.updated == 1
        active = handle.session.execute(
            select(Student.source_id).where(Student.is_active.is_(True))
        ).scalars().all()

    assert active == ["s1"]


def test_soft_deactivate_skips_rows_synced_after_cutoff(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()
    cutoff = utcnow()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("fresh")])
        handle.session.add(Student(source_id="old", first_name="Old", is_active=True, last_synced_at=cutoff - timedelta(days=1)))
        handle.session.commit()

        deactivated = engine.soft_deactivate(handle, STUDENT, before=cutoff)

    assert deactivated == 1


def test_hard_delete_removes_only_inactive_rows(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("s1"), student("s2"), student("s3")])
        handle.session.execute(
            update(Student).where(Student.source_id.in_(["s2", "s3"])).values(is_active=False)
        )
        handle.session.commit()

        deleted = engine.hard_delete_inactive(handle, STUDENT)
        remaining = handle.session.execute(select(Student.source_id)).scalars().all()

    assert deleted == 2
    assert remaining == ["s1"]


def test_deactivate_one_is_soft_and_idempotent(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("s1")])

        assert engine.deactivate_one(handle, STUDENT, "s1") is True
        assert engine.deactivate_one(handle, STUDENT, "s1") is False
        assert engine.deactivate_one(handle, STUDENT, "missing") is False

        stored = handle.session.execute(select(Student).where(Student.source_id == "s1")).scalar_one()

    assert stored.is_active is False
    assert stored.deactivated_at is not None


def section(source_id: str, students: list[str] | None = None, teachers: list[str] | None = None) -> RosterRecord:
    links = {}
    if students is not None:
        links["students"] = students
    if teachers is not None:
        links["teachers"] = teachers
    return RosterRecord(
        source_id=source_id,
        entity_type="section",
        fields={"name": "Algebra I", "period": "2"},
        links=links or None,
    )


def enrolled(handle, section_id: str) -> list[str]:
    return list(handle.session.execute(
        select(StudentSection.student_source_id)
        .where(StudentSection.section_source_id == section_id)
        .order_by(StudentSection.student_source_id)
    ).scalars().all())


def test_upsert_reconciles_section_enrollments(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        created = engine.upsert(handle, SECTION, [section("sec1", students=["s1", "s2"], teachers=["t1"])])
        moved = engine.upsert(handle, SECTION, [section("sec1", students=["s2", "s3"], teachers=["t1"])])
        untouched = engine.upsert(handle, SECTION, [section("sec1")])
        students = enrolled(handle, "sec1")
        teachers = handle.session.execute(select(TeacherSection.teacher_source_id)).scalars().all()

    assert (created.inserted, created.links_added, created.links_removed) == (1, 3, 0)
    # Only the roster changed, so the section row itself is unchanged.
    assert (moved.unchanged, moved.links_added, moved.links_removed) == (1, 1, 1)
    assert (untouched.unchanged, untouched.links_added, untouched.links_removed) == (1, 0, 0)
    assert students == ["s2", "s3"]
    assert teachers == ["t1"]


def test_empty_member_list_clears_enrollments(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, SECTION, [section("sec1", students=["s1", "s2"])])
        result = engine.upsert(handle, SECTION, [section("sec1", students=[])])
        students = enrolled(handle, "sec1")

    assert result.links_removed == 2
    assert students == []


def test_hard_delete_purges_links_of_deleted_rows(tenant_router: TenantDatabaseRouter, tenant: Tenant) -> None:
    engine = EntityUpsertEngine()

    with tenant_router.open(tenant) as handle:
        engine.upsert(handle, STUDENT, [student("s1"), student("s2")])
        engine.upsert(handle, SECTION, [section("sec1", students=["s1", "s2"]), section("sec2", students=["s1"])])
        handle.session.execute(update(Student).where(Student.source_id == "s1").values(is_active=False))
        handle.session.execute(update(Section).where(Section.source_id == "sec2").values(is_active=False))
        handle.session.commit()

        assert engine.hard_delete_inactive(handle, STUDENT) == 1
        assert engine.hard_delete_inactive(handle, SECTION) == 1
        links = handle.session.execute(
            select(StudentSection.section_source_id, StudentSection.student_source_id)
        ).all()

    assert [tuple(link) for link in links] == [("sec1", "s2")]
