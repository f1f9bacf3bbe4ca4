import logging

from pydantic import ValidationError

from roster_sync.clients.roster import RosterSource
from roster_sync.core.tenant_db import TenantHandle
from roster_sync.schemas.roster import RosterEvent, RosterRecord
from roster_sync.schemas.sync import RecordChange, SyncStatus
from roster_sync.services.context import TenantSyncContext
from roster_sync.services.entities import EntityDefinition
from roster_sync.services.full_sync import TENANT_FATAL_ERRORS
from roster_sync.services.history import EventBaselineStore, SyncHistoryRecorder
from roster_sync.services.upsert import EntityUpsertEngine

logger = logging.getLogger(__name__)

CHECKPOINT_EVERY_EVENTS = 100


class IncrementalSyncEngine:
    """Apply the change feed since the stored baseline, or fall back to a modified-since window."""

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
        baseline = self.baselines.get(context.tenant.id)
        if baseline:
            self._apply_events(context, handle, entities, baseline)
        else:
            logger.info("incremental_sync_timestamp_fallback tenant_id=%s", context.tenant.id)
            self._apply_modified_since(context, handle, entities)

    def _apply_events(
        self,
        context: TenantSyncContext,
        handle: TenantHandle,
        entities: list[EntityDefinition],
        baseline: str,
    ) -> None:
        tenant = context.tenant
        context.checkpoint("fetch_events")
        events = self.roster_client.fetch_events(tenant.external_id, since_event_id=baseline)

        definitions = {entity.entity_type: entity for entity in entities}
        changes: dict[str, list[RecordChange]] = {entity_type: [] for entity_type in definitions}
        last_processed: str | None = None

        for index, event in enumerate(events):
            if index and index % CHECKPOINT_EVERY_EVENTS == 0:
                context.checkpoint("apply_events")
            entity = definitions.get(event.entity_type)
            if entity is None:
                context.events_skipped += 1
                last_processed = event.id
                logger.info(
                    "incremental_event_skipped tenant_id=%s event_id=%s entity_type=%s",
                    tenant.id,
                    event.id,
                    event.entity_type,
                )
                continue
            self._apply_event(handle, entity, event, context, changes[entity.entity_type])
            context.events_processed += 1
            last_processed = event.id

        for entity_type, entity_changes in changes.items():
            if entity_changes:
                self.history.record_changes(context.history_ids[entity_type], entity_changes)

        for result in context.results.values():
            if result.status is SyncStatus.IN_PROGRESS:
                result.status = SyncStatus.PARTIAL if result.failed else SyncStatus.SUCCESS
                if result.failed:
                    result.error = f"{result.failed} event(s) failed"

        new_baseline = last_processed or baseline
        if last_processed:
            self.baselines.set(tenant.id, last_processed)
        context.new_event_id = new_baseline
        logger.info(
            "incremental_sync_events tenant_id=%s baseline=%s new_baseline=%s processed=%s skipped=%s",
            tenant.id,
            baseline,
            new_baseline,
            context.events_processed,
            context.events_skipped,
        )

    def _apply_event(
        self,
        handle: TenantHandle,
        entity: EntityDefinition,
        event: RosterEvent,
        context: TenantSyncContext,
        changes: list[RecordChange],
    ) -> None:
        result = context.result_for(entity.entity_type)
        if event.action == "deleted":
            try:
                deactivated = self.upsert_engine.deactivate_one(handle, entity, event.source_id, changes=changes)
            except TENANT_FATAL_ERRORS:
                raise
            except Exception:
                handle.session.rollback()
                handle.invalidate(entity.entity_type)
                logger.exception(
                    "incremental_event_failed tenant_id=%s event_id=%s source_id=%s",
                    context.tenant.id,
                    event.id,
                    event.source_id,
                )
                result.examined += 1
                result.failed += 1
                return
            result.examined += 1
            if deactivated:
                result.deactivated += 1
            else:
                result.unchanged += 1
            return

        try:
            record = RosterRecord(
                source_id=event.source_id,
                entity_type=entity.entity_type,
                fields=event.payload,
                last_modified=event.created,
                links=event.links,
            )
        except ValidationError:
            logger.warning("incremental_event_invalid tenant_id=%s event_id=%s", context.tenant.id, event.id)
            result.examined += 1
            result.failed += 1
            return
        result.absorb(self.upsert_engine.upsert(handle, entity, [record], mark_active=True, changes=changes))

    def _apply_modified_since(
        self,
        context: TenantSyncContext,
        handle: TenantHandle,
        entities: list[EntityDefinition],
    ) -> None:
        tenant = context.tenant
        for entity in entities:
            result = context.result_for(entity.entity_type)
            try:
                last = self.history.last_successful(tenant.id, entity.entity_type)
                since = last.last_sync_timestamp if last is not None else None
                context.checkpoint(f"fetch:{entity.entity_type}")
                records = self.roster_client.fetch_entities(tenant.external_id, entity.entity_type, since=since)
                changes: list[RecordChange] = []
                result.absorb(self.upsert_engine.upsert(handle, entity, records, mark_active=True, changes=changes))
                if changes:
                    self.history.record_changes(context.history_ids[entity.entity_type], changes)
                result.status = SyncStatus.PARTIAL if result.failed else SyncStatus.SUCCESS
                if result.failed:
                    result.error = f"{result.failed} record(s) failed"
            except TENANT_FATAL_ERRORS:
                raise
            except Exception as exc:
                handle.session.rollback()
                result.status = SyncStatus.FAILED
                result.error = f"{type(exc).__name__}: {exc}"
                logger.exception(
                    "incremental_sync_entity_failed tenant_id=%s entity_type=%s",
                    tenant.id,
                    entity.entity_type,
                )
                continue
            logger.info(
                "incremental_sync_entity tenant_id=%s entity_type=%s since=%s examined=%s changed=%s failed=%s",
                tenant.id,
                entity.entity_type,
                since,
                result.examined,
                result.changed,
                result.failed,
            )
