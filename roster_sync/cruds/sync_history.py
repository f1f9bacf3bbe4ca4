from datetime import datetime
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from roster_sync.models.sync_history import SyncChangeDetail, SyncHistory
from roster_sync.schemas.sync import SyncMode, SyncStatus
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def create_history(db: Session, tenant_id: int, entity_type: str, mode: SyncMode) -> SyncHistory:
    record = SyncHistory(
        tenant_id=tenant_id,
        entity_type=entity_type,
        mode=mode.value,
        status=SyncStatus.IN_PROGRESS.value,
        started_at=utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(
        "crud_create_history history_id=%s tenant_id=%s entity_type=%s mode=%s",
        record.id,
        tenant_id,
        entity_type,
        mode.value,
    )
    return record


def finalize_history(
    db: Session,
    history_id: int,
    status: SyncStatus,
    records_processed: int = 0,
    records_updated: int = 0,
    records_failed: int = 0,
    records_deleted: int = 0,
    error_message: str | None = None,
    last_sync_timestamp: datetime | None = None,
    last_event_id: str | None = None,
) -> bool:
    # Only an in-progress row can be finalized; finalized rows are immutable.
    result = db.execute(
        update(SyncHistory)
        .where(SyncHistory.id == history_id, SyncHistory.status == SyncStatus.IN_PROGRESS.value)
        .values(
            status=status.value,
            finished_at=utcnow(),
            records_processed=records_processed,
            records_updated=records_updated,
            records_failed=records_failed,
            records_deleted=records_deleted,
            error_message=error_message,
            last_sync_timestamp=last_sync_timestamp,
            last_event_id=last_event_id,
        )
    )
    db.commit()
    finalized = result.rowcount == 1
    logger.info(
        "crud_finalize_history history_id=%s status=%s finalized=%s",
        history_id,
        status.value,
        finalized,
    )
    return finalized


def get_history(db: Session, history_id: int) -> SyncHistory | None:
    return db.get(SyncHistory, history_id)


def get_last_successful_history(
    db: Session,
    tenant_id: int,
    entity_type: str | None = None,
) -> SyncHistory | None:
    query = select(SyncHistory).where(
        SyncHistory.tenant_id == tenant_id,
        SyncHistory.status == SyncStatus.SUCCESS.value,
    )
    if entity_type is not None:
        query = query.where(SyncHistory.entity_type == entity_type)
    query = query.order_by(SyncHistory.finished_at.desc(), SyncHistory.id.desc()).limit(1)
    record = db.execute(query).scalar_one_or_none()
    logger.info(
        "crud_get_last_successful_history tenant_id=%s entity_type=%s found=%s",
        tenant_id,
        entity_type,
        record is not None,
    )
    return record


def list_history(
    db: Session,
    tenant_id: int,
    entity_type: str | None = None,
    limit: int = 10,
) -> list[SyncHistory]:
    query = select(SyncHistory).where(SyncHistory.tenant_id == tenant_id)
    if entity_type:
        query = query.where(SyncHistory.entity_type == entity_type)
    query = query.order_by(SyncHistory.started_at.desc(), SyncHistory.id.desc()).limit(limit)
    return list(db.execute(query).scalars().all())


def add_change_details(db: Session, details: list[SyncChangeDetail]) -> int:
    if not details:
        return 0
    db.add_all(details)
    db.commit()
    logger.info("crud_add_change_details count=%s", len(details))
    return len(details)
