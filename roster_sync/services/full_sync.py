import logging

from roster_sync.clients.roster import RosterSource, RosterUnauthorizedError
from roster_sync.core.tenant_db import TenantDatabaseError, TenantHandle
from roster_sync.schemas.sync import RecordChange, SyncStatus
from roster_sync.services.context import SyncLockLostError, SyncTimeoutError, TenantSyncContext
from roster_sync.services.entities import EntityDefinition
from roster_sync.services.history import EventBaselineStore, SyncHistoryRecorder
from roster_sync.services.upsert import EntityUpsertEngine

logger = logging.getLogger(__name__)

# Errors that make every remaining entity type for the tenant pointless to attempt.
TENANT_FATAL_ERRORS = (SyncTimeoutError, SyncLockLostError, RosterUnauthorizedError, TenantDatabaseError)


class FullSyncEngine:
    """Deactivate everything, reactivate what the source still reports, purge the rest."""

    def __init__(
        self,
        roster_client: RosterSource,
        upsert_engine: EntityUpsertEngine,
        history: SyncHistoryRecorder,
        baselines: EventBaselineStore,
    ) -> None:
        self.roster_client = roster_client
        self.upsert_engine = upsert_engine
        self.history = history
        self.baselines = baselines

    def run(self, context: TenantSyncContext, handle: TenantHandle, entities: list[EntityDefinition]) -> None:
        tenant = context.tenant
        context.checkpoint("latest_event_id")
        # Captured before any data is read so that changes made during the run are replayed later.
        latest_event_id = self.roster_client.fetch_latest_event_id(tenant.external_id)

        for entity in entities:
            self._sync_entity(context, handle, entity)

        if all(result.status is SyncStatus.SUCCESS for result in context.results.values()):
            self.baselines.set(tenant.id, latest_event_id)
            context.new_event_id = latest_event_id
        else:
            logger.warning(
                "full_sync_baseline_kept tenant_id=%s latest_event_id=%s",
                tenant.id,
                latest_event_id,
            )

    def _sync_entity(self, context: TenantSyncContext, handle: TenantHandle, entity: EntityDefinition) -> None:
        tenant = context.tenant
        result = context.result_for(entity.entity_type)
        try:
            context.checkpoint(f"deactivate:{entity.entity_type}")
            result.deactivated = self.upsert_engine.soft_deactivate(handle, entity, before=context.started_at)
            context.deactivated = True

            context.checkpoint(f"fetch:{entity.entity_type}")
            records = self.roster_client.fetch_entities(tenant.external_id, entity.entity_type, since=None)

            context.checkpoint(f"reactivate:{entity.entity_type}")
            changes: list[RecordChange] = []
            result.absorb(self.upsert_engine.upsert(handle, entity, records, mark_active=True, changes=changes))
            if changes:
                self.history.record_changes(context.history_ids[entity.entity_type], changes)

            if result.failed:
                # Rows that failed to reactivate may still exist upstream; keep them until a clean run.
                result.status = SyncStatus.PARTIAL
                result.error = f"{result.failed} record(s) failed"
            else:
                context.checkpoint(f"hard_delete:{entity.entity_type}")
                result.deleted = self.upsert_engine.hard_delete_inactive(handle, entity)
                result.status = SyncStatus.SUCCESS
        except TENANT_FATAL_ERRORS:
            raise
        except Exception as exc:
            handle.session.rollback()
            result.status = SyncStatus.FAILED
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception("full_sync_entity_failed tenant_id=%s entity_type=%s", tenant.id, entity.entity_type)
            return

        logger.info(
            "full_sync_entity tenant_id=%s entity_type=%s status=%s deactivated=%s examined=%s inserted=%s "
            "updated=%s unchanged=%s failed=%s deleted=%s",
            tenant.id,
            entity.entity_type,
            result.status.value,
            result.deactivated,
            result.examined,
            result.inserted,
            result.updated,
            result.unchanged,
            result.failed,
            result.deleted,
        )
