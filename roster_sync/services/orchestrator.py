from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import logging
import threading
import time

from sqlalchemy.orm import Session, sessionmaker

from roster_sync.clients.roster import RosterClient, RosterSource
from roster_sync.core.db import SessionLocal
from roster_sync.core.settings import settings
from roster_sync.core.tenant_db import TenantDatabaseRouter
from roster_sync.cruds.tenants import get_tenant, set_requires_full_sync
from roster_sync.models.tenant import Tenant
from roster_sync.schemas.sync import (
    SyncMode,
    SyncScope,
    SyncStatus,
    SyncSummary,
    TenantSyncResult,
    TenantSyncStatus,
)
from roster_sync.services.context import (
    SyncCancelledError,
    SyncLockLostError,
    SyncTimeoutError,
    TenantSyncContext,
    is_cancelled,
)
from roster_sync.services.entities import ENTITY_DEFINITIONS, resolve_entity_definitions
from roster_sync.services.full_sync import FullSyncEngine
from roster_sync.services.history import EventBaselineStore, SyncHistoryRecorder
from roster_sync.services.incremental_sync import IncrementalSyncEngine
from roster_sync.services.locks import SyncLockManager
from roster_sync.services.scopes import ScopeResolver
from roster_sync.services.upsert import EntityUpsertEngine
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def aggregate_tenant_status(statuses: list[SyncStatus]) -> TenantSyncStatus:
    if all(status is SyncStatus.SUCCESS for status in statuses):
        return TenantSyncStatus.SUCCESS
    if all(status is SyncStatus.FAILED for status in statuses):
        return TenantSyncStatus.FAILED
    return TenantSyncStatus.PARTIAL


class SyncOrchestrator:
    """Runs a scope's tenants in parallel, each under its own lock and audit rows."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        tenant_router: TenantDatabaseRouter,
        roster_client: RosterSource,
        entity_types: list[str] | None = None,
        concurrency_limit: int = 5,
        lock_ttl_minutes: int = 30,
        tenant_timeout_seconds: float | None = None,
        holder: str = "roster-sync",
        machine_name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.tenant_router = tenant_router
        self.roster_client = roster_client
        self.entities = resolve_entity_definitions(entity_types or list(ENTITY_DEFINITIONS))
        self.concurrency_limit = concurrency_limit
        self.lock_ttl_minutes = lock_ttl_minutes
        self.tenant_timeout_seconds = tenant_timeout_seconds
        self.holder = holder
        self.clock = clock

        self.scope_resolver = ScopeResolver(session_factory)
        self.lock_manager = SyncLockManager(
            session_factory,
            default_ttl_minutes=lock_ttl_minutes,
            machine_name=machine_name,
        )
        self.history = SyncHistoryRecorder(session_factory)
        self.baselines = EventBaselineStore(session_factory)
        upsert_engine = EntityUpsertEngine()
        self.full_engine = FullSyncEngine(roster_client, upsert_engine, self.history, self.baselines)
        self.incremental_engine = IncrementalSyncEngine(roster_client, upsert_engine, self.history, self.baselines)

    def run(
        self,
        scope_token: str,
        mode: SyncMode | None = None,
        concurrency_limit: int | None = None,
        initiator: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SyncSummary:
        started_at = utcnow()
        started = time.monotonic()
        tenants = self.scope_resolver.resolve_tenants(scope_token)
        if is_cancelled(cancel_event):
            raise SyncCancelledError("Sync cancelled before any tenant started")

        limit = max(1, concurrency_limit or self.concurrency_limit)
        logger.info(
            "sync_run_started scope=%s mode=%s tenants=%s concurrency_limit=%s initiator=%s",
            scope_token,
            mode.value if mode else None,
            len(tenants),
            limit,
            initiator,
        )

        results: list[TenantSyncResult] = []
        if tenants:
            with ThreadPoolExecutor(max_workers=min(limit, len(tenants)), thread_name_prefix="roster-sync") as executor:
                futures = [
                    executor.submit(self._run_tenant_worker, tenant, mode, initiator, cancel_event)
                    for tenant in tenants
                ]
                results = [future.result() for future in futures]

        summary = SyncSummary(
            scope=scope_token,
            requested_mode=mode,
            started_at=started_at,
            finished_at=utcnow(),
            duration_seconds=round(time.monotonic() - started, 3),
            total=len(results),
            succeeded=sum(1 for result in results if result.status is TenantSyncStatus.SUCCESS),
            partial=sum(1 for result in results if result.status is TenantSyncStatus.PARTIAL),
            failed=sum(1 for result in results if result.status is TenantSyncStatus.FAILED),
            skipped=sum(1 for result in results if result.status is TenantSyncStatus.SKIPPED),
            cancelled=sum(1 for result in results if result.status is TenantSyncStatus.CANCELLED),
            tenants=results,
        )
        logger.info(
            "sync_run_completed scope=%s total=%s succeeded=%s partial=%s failed=%s skipped=%s cancelled=%s "
            "duration_seconds=%s",
            scope_token,
            summary.total,
            summary.succeeded,
            summary.partial,
            summary.failed,
            summary.skipped,
            summary.cancelled,
            summary.duration_seconds,
        )
        return summary

    def select_mode(self, tenant: Tenant, requested: SyncMode | None) -> SyncMode:
        if requested is SyncMode.FULL:
            reason = "requested"
        elif tenant.requires_full_sync:
            reason = "requires_full_sync"
        elif not self.history.has_successful_sync(tenant.id):
            reason = "no_prior_success"
        else:
            logger.info("sync_mode_selected tenant_id=%s mode=incremental", tenant.id)
            return SyncMode.INCREMENTAL
        logger.info("sync_mode_selected tenant_id=%s mode=full reason=%s", tenant.id, reason)
        return SyncMode.FULL

    def _run_tenant_worker(
        self,
        tenant: Tenant,
        mode: SyncMode | None,
        initiator: str | None,
        cancel_event: threading.Event | None,
    ) -> TenantSyncResult:
        started_at = utcnow()
        try:
            return self._sync_tenant(tenant, mode, initiator, cancel_event)
        except Exception as exc:
            logger.exception("tenant_sync_crashed tenant_id=%s", tenant.id)
            return TenantSyncResult(
                tenant_id=tenant.id,
                tenant_name=tenant.name,
                status=TenantSyncStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
                started_at=started_at,
                finished_at=utcnow(),
            )

    def _sync_tenant(
        self,
        tenant: Tenant,
        mode: SyncMode | None,
        initiator: str | None,
        cancel_event: threading.Event | None,
    ) -> TenantSyncResult:
        if is_cancelled(cancel_event):
            logger.info("tenant_sync_cancelled tenant_id=%s", tenant.id)
            return TenantSyncResult(tenant_id=tenant.id, tenant_name=tenant.name, status=TenantSyncStatus.CANCELLED)

        scope_key = SyncScope.for_tenant(tenant.id).key
        acquisition = self.lock_manager.try_acquire(scope_key, holder=self.holder, initiator=initiator)
        if not acquisition.granted:
            current = acquisition.current_holder
            logger.info(
                "tenant_sync_skipped tenant_id=%s scope=%s holder=%s",
                tenant.id,
                scope_key,
                current.holder if current else None,
            )
            return TenantSyncResult(
                tenant_id=tenant.id,
                tenant_name=tenant.name,
                status=TenantSyncStatus.SKIPPED,
                error="sync already in progress",
                lock_holder=current,
            )

        try:
            return self._sync_locked_tenant(tenant, mode, scope_key, acquisition.token)
        finally:
            released = self.lock_manager.release(scope_key, acquisition.token)
            if not released:
                logger.warning("tenant_sync_lock_lost tenant_id=%s scope=%s", tenant.id, scope_key)

    def _sync_locked_tenant(
        self,
        tenant: Tenant,
        mode: SyncMode | None,
        scope_key: str,
        token: str,
    ) -> TenantSyncResult:
        # Re-read under the lock; the flag may have changed since the scope was resolved.
        with self.session_factory() as db:
            tenant = get_tenant(db=db, tenant_id=tenant.id) or tenant

        selected = self.select_mode(tenant, mode)
        context = TenantSyncContext(
            tenant=tenant,
            mode=selected,
            entity_types=[entity.entity_type for entity in self.entities],
            timeout_seconds=self.tenant_timeout_seconds,
            heartbeat=lambda: self.lock_manager.extend(scope_key, token),
            clock=self.clock,
        )
        error: str | None = None
        try:
            for entity in self.entities:
                context.history_ids[entity.entity_type] = self.history.start(tenant.id, entity.entity_type, selected)
            with self.tenant_router.open(tenant) as handle:
                if selected is SyncMode.FULL:
                    self.full_engine.run(context, handle, self.entities)
                else:
                    self.incremental_engine.run(context, handle, self.entities)
        except SyncTimeoutError:
            error = "timeout"
            logger.warning("tenant_sync_timed_out tenant_id=%s", tenant.id)
        except SyncLockLostError:
            error = "lock lost"
            logger.warning("tenant_sync_aborted_lock_lost tenant_id=%s scope=%s", tenant.id, scope_key)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("tenant_sync_failed tenant_id=%s mode=%s", tenant.id, selected.value)
        finally:
            for result in context.results.values():
                if result.status is SyncStatus.IN_PROGRESS:
                    result.status = SyncStatus.FAILED
                    result.error = error or "interrupted"
            self._finalize_history(context)

        # Per-type errors are absorbed by the engines; anything reaching here aborted the tenant.
        if error is not None:
            status = TenantSyncStatus.FAILED
        else:
            status = aggregate_tenant_status([result.status for result in context.results.values()])
        if selected is SyncMode.FULL:
            if status is TenantSyncStatus.SUCCESS and tenant.requires_full_sync:
                self._set_requires_full_sync(tenant.id, False)
            elif status is not TenantSyncStatus.SUCCESS and context.deactivated:
                self._set_requires_full_sync(tenant.id, True)

        result = TenantSyncResult(
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            status=status,
            mode=selected,
            error=error,
            events_processed=context.events_processed,
            events_skipped=context.events_skipped,
            new_event_id=context.new_event_id,
            entities=list(context.results.values()),
            started_at=context.started_at,
            finished_at=utcnow(),
        )
        logger.info(
            "tenant_sync_completed tenant_id=%s mode=%s status=%s error=%s",
            tenant.id,
            selected.value,
            status.value,
            error,
        )
        return result

    def _finalize_history(self, context: TenantSyncContext) -> None:
        for entity_type, result in context.results.items():
            history_id = context.history_ids.get(entity_type)
            if history_id is None:
                continue
            self.history.finish(
                history_id,
                result,
                last_sync_timestamp=context.started_at if result.status is SyncStatus.SUCCESS else None,
                last_event_id=context.new_event_id,
            )

    def _set_requires_full_sync(self, tenant_id: int, required: bool) -> None:
        with self.session_factory() as db:
            set_requires_full_sync(db=db, tenant_id=tenant_id, required=required)


def get_roster_client() -> RosterClient:
    return RosterClient(
        api_token=settings.roster_api_token,
        base_url=settings.roster_base_url,
        page_size=settings.roster_page_size,
        timeout_seconds=settings.roster_timeout_seconds,
        max_429_retries=settings.roster_max_429_retries,
        retry_delay_seconds=settings.roster_retry_delay_seconds,
    )


def build_orchestrator(
    session_factory: sessionmaker[Session] = SessionLocal,
    tenant_router: TenantDatabaseRouter | None = None,
    roster_client: RosterSource | None = None,
) -> SyncOrchestrator:
    orchestrator = SyncOrchestrator(
        session_factory=session_factory,
        tenant_router=tenant_router or TenantDatabaseRouter(settings.tenant_database_url_template),
        roster_client=roster_client or get_roster_client(),
        entity_types=settings.sync_entity_types,
        concurrency_limit=settings.sync_concurrency_limit,
        lock_ttl_minutes=settings.sync_lock_ttl_minutes,
        tenant_timeout_seconds=settings.sync_tenant_timeout_seconds,
        machine_name=settings.sync_instance_name,
    )
    logger.info(
        "service_build_orchestrator concurrency_limit=%s entity_types=%s",
        settings.sync_concurrency_limit,
        ",".join(settings.sync_entity_types),
    )
    return orchestrator
