from datetime import datetime
import json
import logging

from sqlalchemy.orm import Session, sessionmaker

from roster_sync.cruds.event_baselines import get_event_baseline, set_event_baseline
from roster_sync.cruds.sync_history import (
    add_change_details,
    create_history,
    finalize_history,
    get_last_successful_history,
    list_history,
)
from roster_sync.models.sync_history import SyncChangeDetail, SyncHistory
from roster_sync.schemas.sync import EntitySyncResult, RecordChange, SyncMode, SyncStatus
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class SyncHistoryRecorder:
    """Audit rows for every (tenant, entity type, run).

    Writes go through their own control-database session and commit immediately, so the
    audit trail survives whatever happens to the tenant database transaction.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def start(self, tenant_id: int, entity_type: str, mode: SyncMode) -> int:
        with self.session_factory() as db:
            return create_history(db=db, tenant_id=tenant_id, entity_type=entity_type, mode=mode).id

    def finish(
        self,
        history_id: int,
        result: EntitySyncResult,
        last_sync_timestamp: datetime | None = None,
        last_event_id: str | None = None,
    ) -> bool:
        status = result.status
        if status is SyncStatus.IN_PROGRESS:
            status = SyncStatus.FAILED
        with self.session_factory() as db:
            return finalize_history(
                db=db,
                history_id=history_id,
                status=status,
                records_processed=result.examined,
                records_updated=result.changed,
                records_failed=result.failed,
                records_deleted=result.deleted,
                error_message=result.error,
                last_sync_timestamp=last_sync_timestamp,
                last_event_id=last_event_id,
            )

    def record_changes(self, history_id: int, changes: list[RecordChange]) -> int:
        details = [
            SyncChangeDetail(
                history_id=history_id,
                entity_type=change.entity_type,
                source_id=change.source_id,
                change_type=change.change_type,
                fields_changed=",".join(item.field for item in change.fields),
                old_values=json.dumps({item.field: item.old for item in change.fields}) if change.fields else None,
                new_values=json.dumps({item.field: item.new for item in change.fields}) if change.fields else None,
                changed_at=utcnow(),
            )
            for change in changes
        ]
        with self.session_factory() as db:
            return add_change_details(db=db, details=details)

    def last_successful(self, tenant_id: int, entity_type: str | None = None) -> SyncHistory | None:
        with self.session_factory() as db:
            return get_last_successful_history(db=db, tenant_id=tenant_id, entity_type=entity_type)

    def has_successful_sync(self, tenant_id: int) -> bool:
        return self.last_successful(tenant_id) is not None

    def list_history(self, tenant_id: int, entity_type: str | None = None, limit: int = 10) -> list[SyncHistory]:
        with self.session_factory() as db:
            return list_history(db=db, tenant_id=tenant_id, entity_type=entity_type, limit=limit)


class EventBaselineStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def get(self, tenant_id: int) -> str | None:
        with self.session_factory() as db:
            return get_event_baseline(db=db, tenant_id=tenant_id)

    def set(self, tenant_id: int, last_event_id: str | None) -> None:
        with self.session_factory() as db:
            set_event_baseline(db=db, tenant_id=tenant_id, last_event_id=last_event_id)
        logger.info("event_baseline_updated tenant_id=%s last_event_id=%s", tenant_id, last_event_id)
