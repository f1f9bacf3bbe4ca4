from collections.abc import Iterable
from datetime import date, datetime
import logging
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from roster_sync.core.tenant_db import TenantHandle
from roster_sync.schemas.roster import RosterRecord
from roster_sync.schemas.sync import RecordChange, UpsertResult
from roster_sync.services.change_detection import ChangeDetector
from roster_sync.services.entities import EntityDefinition, links_referencing
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

PREFETCH_CHUNK_SIZE = 500
SCALAR_TYPES = (str, int, float, bool, date, datetime)


class EntityUpsertEngine:
    def __init__(self, change_detector: ChangeDetector | None = None) -> None:
        self.change_detector = change_detector or ChangeDetector()

    def _build_values(self, entity: EntityDefinition, record: RosterRecord) -> dict[str, Any]:
        values = {}
        for field in entity.fields:
            value = record.fields.get(field)
            if value is not None and not isinstance(value, SCALAR_TYPES):
                raise ValueError(f"Unsupported value for {entity.entity_type}.{field}: {type(value).__name__}")
            values[field] = value
        return values

    def _prefetch(self, handle: TenantHandle, entity: EntityDefinition, source_ids: Iterable[str]) -> None:
        model = entity.model
        missing = sorted({
            source_id
            for source_id in source_ids
            if handle.identity_map.get(entity.entity_type, source_id) is None
        })
        for start in range(0, len(missing), PREFETCH_CHUNK_SIZE):
            chunk = missing[start:start + PREFETCH_CHUNK_SIZE]
            rows = handle.session.execute(select(model).where(model.source_id.in_(chunk))).scalars().all()
            for row in rows:
                handle.identity_map.put(entity.entity_type, row.source_id, row)

    def _lookup(self, handle: TenantHandle, entity: EntityDefinition, source_id: str) -> Any:
        existing = handle.identity_map.get(entity.entity_type, source_id)
        if existing is None:
            model = entity.model
            existing = handle.session.execute(
                select(model).where(model.source_id == source_id)
            ).scalar_one_or_none()
            if existing is not None:
                handle.identity_map.put(entity.entity_type, source_id, existing)
        return existing

    def _reconcile_links(
        self,
        handle: TenantHandle,
        entity: EntityDefinition,
        record: RosterRecord,
    ) -> tuple[int, int]:
        """Make the record's link tables match the member lists it arrived with."""
        if record.links is None:
            return 0, 0
        session = handle.session
        added = removed = 0
        for link in entity.links:
            if link.name not in record.links:
                continue
            owner = getattr(link.model, link.owner_column)
            member = getattr(link.model, link.member_column)
            incoming = set(record.links[link.name])
            current = set(session.execute(select(member).where(owner == record.source_id)).scalars().all())
            stale = current - incoming
            if stale:
                session.execute(
                    delete(link.model)
                    .where(owner == record.source_id)
                    .where(member.in_(sorted(stale)))
                    .execution_options(synchronize_session=False)
                )
            for member_id in sorted(incoming - current):
                session.add(link.model(**{link.owner_column: record.source_id, link.member_column: member_id}))
            added += len(incoming - current)
            removed += len(stale)
        if added or removed:
            logger.info(
                "links_reconciled tenant_id=%s entity_type=%s source_id=%s added=%s removed=%s",
                handle.tenant_id,
                entity.entity_type,
                record.source_id,
                added,
                removed,
            )
        return added, removed

    def upsert(
        self,
        handle: TenantHandle,
        entity: EntityDefinition,
        records: list[RosterRecord],
        mark_active: bool = True,
        changes: list[RecordChange] | None = None,
    ) -> UpsertResult:
        result = UpsertResult()
        if not records:
            return result

        session = handle.session
        now = utcnow()
        self._prefetch(handle, entity, (record.source_id for record in records))

        for record in records:
            try:
                values = self._build_values(entity, record)
                existing = handle.identity_map.get(entity.entity_type, record.source_id)
                if existing is None:
                    row = entity.model(
                        source_id=record.source_id,
                        source_last_modified=record.last_modified,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                        last_synced_at=now,
                        **values,
                    )
                    with session.begin_nested():
                        session.add(row)
                        added, removed = self._reconcile_links(handle, entity, record)
                    handle.identity_map.put(entity.entity_type, record.source_id, row)
                    result.inserted += 1
                    result.links_added += added
                    result.links_removed += removed
                    if changes is not None:
                        changes.append(RecordChange(
                            entity_type=entity.entity_type,
                            source_id=record.source_id,
                            change_type="created",
                        ))
                    continue

                field_changes = self.change_detector.changed_fields(existing, values, entity.fields)
                reactivate = mark_active and not existing.is_active
                if not field_changes and not reactivate:
                    if record.links is not None and entity.links:
                        with session.begin_nested():
                            added, removed = self._reconcile_links(handle, entity, record)
                        result.links_added += added
                        result.links_removed += removed
                    result.unchanged += 1
                    continue

                with session.begin_nested():
                    for field, value in values.items():
                        setattr(existing, field, value)
                    existing.source_last_modified = record.last_modified
                    existing.updated_at = now
                    existing.last_synced_at = now
                    if mark_active:
                        existing.is_active = True
                        existing.deactivated_at = None
                    added, removed = self._reconcile_links(handle, entity, record)
                result.updated += 1
                result.links_added += added
                result.links_removed += removed
                if changes is not None and field_changes:
                    changes.append(RecordChange(
                        entity_type=entity.entity_type,
                        source_id=record.source_id,
                        change_type="updated",
                        fields=field_changes,
                    ))
            except (SQLAlchemyError, ValueError):
                logger.exception(
                    "upsert_record_failed tenant_id=%s entity_type=%s source_id=%s",
                    handle.tenant_id,
                    entity.entity_type,
                    record.source_id,
                )
                # A rolled back savepoint leaves the cached row in an unknown state.
                handle.identity_map.discard(entity.entity_type, record.source_id)
                result.failed += 1

        session.commit()
        logger.info(
            "upsert_batch tenant_id=%s entity_type=%s examined=%s inserted=%s updated=%s unchanged=%s failed=%s",
            handle.tenant_id,
            entity.entity_type,
            result.examined,
            result.inserted,
            result.updated,
            result.unchanged,
            result.failed,
        )
        return result

    def soft_deactivate(self, handle: TenantHandle, entity: EntityDefinition, before: datetime) -> int:
        """Mark active rows not synced since ``before`` as inactive."""
        model = entity.model
        now = utcnow()
        statement = (
            update(model)
            .where(model.is_active.is_(True))
            .where(or_(model.last_synced_at.is_(None), model.last_synced_at < before))
            .values(is_active=False, deactivated_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        deactivated = handle.session.execute(statement).rowcount
        handle.session.commit()
        handle.invalidate(entity.entity_type)
        logger.info(
            "soft_deactivate tenant_id=%s entity_type=%s deactivated=%s",
            handle.tenant_id,
            entity.entity_type,
            deactivated,
        )
        return deactivated

    def hard_delete_inactive(self, handle: TenantHandle, entity: EntityDefinition) -> int:
        model = entity.model
        inactive_ids = select(model.source_id).where(model.is_active.is_(False))
        for link, column in links_referencing(entity.entity_type):
            handle.session.execute(
                delete(link.model)
                .where(getattr(link.model, column).in_(inactive_ids))
                .execution_options(synchronize_session=False)
            )
        statement = (
            delete(model)
            .where(model.is_active.is_(False))
            .execution_options(synchronize_session=False)
        )
        deleted = handle.session.execute(statement).rowcount
        handle.session.commit()
        handle.invalidate(entity.entity_type)
        logger.info(
            "hard_delete_inactive tenant_id=%s entity_type=%s deleted=%s",
            handle.tenant_id,
            entity.entity_type,
            deleted,
        )
        return deleted

    def deactivate_one(
        self,
        handle: TenantHandle,
        entity: EntityDefinition,
        source_id: str,
        changes: list[RecordChange] | None = None,
    ) -> bool:
        existing = self._lookup(handle, entity, source_id)
        if existing is None or not existing.is_active:
            logger.info(
                "deactivate_one_noop tenant_id=%s entity_type=%s source_id=%s found=%s",
                handle.tenant_id,
                entity.entity_type,
                source_id,
                existing is not None,
            )
            return False

        now = utcnow()
        existing.is_active = False
        existing.deactivated_at = now
        existing.updated_at = now
        handle.session.commit()
        if changes is not None:
            changes.append(RecordChange(
                entity_type=entity.entity_type,
                source_id=source_id,
                change_type="deactivated",
            ))
        logger.info(
            "deactivate_one tenant_id=%s entity_type=%s source_id=%s",
            handle.tenant_id,
            entity.entity_type,
            source_id,
        )
        return True
