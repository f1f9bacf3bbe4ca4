from collections.abc import Callable
import logging
import threading
import time

from roster_sync.models.tenant import Tenant
from roster_sync.schemas.sync import EntitySyncResult, SyncMode
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class SyncTimeoutError(Exception):
    pass


class SyncCancelledError(Exception):
    pass


class SyncLockLostError(Exception):
    pass


class TenantSyncContext:
    """Mutable state for one tenant run, shared by the orchestrator and the sync engines."""

    def __init__(
        self,
        tenant: Tenant,
        mode: SyncMode,
        entity_types: list[str],
        timeout_seconds: float | None = None,
        heartbeat: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tenant = tenant
        self.mode = mode
        self.started_at = utcnow()
        self.clock = clock
        self.deadline = clock() + timeout_seconds if timeout_seconds else None
        self.heartbeat = heartbeat
        self.results = {entity_type: EntitySyncResult(entity_type=entity_type) for entity_type in entity_types}
        self.history_ids: dict[str, int] = {}
        self.events_processed = 0
        self.events_skipped = 0
        self.new_event_id: str | None = None
        self.deactivated = False

    def result_for(self, entity_type: str) -> EntitySyncResult:
        return self.results[entity_type]

    def checkpoint(self, phase: str) -> None:
        if self.deadline is not None and self.clock() >= self.deadline:
            logger.warning("tenant_sync_timeout tenant_id=%s phase=%s", self.tenant.id, phase)
            raise SyncTimeoutError(f"timeout during {phase}")
        if self.heartbeat is not None and not self.heartbeat():
            logger.warning("tenant_sync_lock_lost tenant_id=%s phase=%s", self.tenant.id, phase)
            raise SyncLockLostError(f"lock lost during {phase}")


def is_cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()
