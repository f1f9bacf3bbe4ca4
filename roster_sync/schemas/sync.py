from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ScopeKind(str, Enum):
    TENANT = "school"
    TENANT_GROUP = "district"
    ALL = "all"


class SyncScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    value: str | None = None

    @property
    def key(self) -> str:
        if self.kind is ScopeKind.ALL:
            return ScopeKind.ALL.value
        return f"{self.kind.value}:{self.value}"

    @classmethod
    def for_tenant(cls, tenant_id: int) -> "SyncScope":
        return cls(kind=ScopeKind.TENANT, value=str(tenant_id))


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class TenantSyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class LockInfo(BaseModel):
    scope: str
    locked: bool
    holder: str | None = None
    initiator: str | None = None
    machine_name: str | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None
    age_seconds: float | None = None


class LockAcquisition(BaseModel):
    granted: bool
    token: str | None = None
    current_holder: LockInfo | None = None


class UpsertResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    links_added: int = 0
    links_removed: int = 0

    @property
    def examined(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.failed

    @property
    def changed(self) -> int:
        return self.inserted + self.updated


class EntitySyncResult(BaseModel):
    entity_type: str
    status: SyncStatus = SyncStatus.IN_PROGRESS
    examined: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    deactivated: int = 0
    deleted: int = 0
    links_added: int = 0
    links_removed: int = 0
    error: str | None = None

    def absorb(self, result: UpsertResult) -> None:
        self.examined += result.examined
        self.inserted += result.inserted
        self.updated += result.updated
        self.unchanged += result.unchanged
        self.failed += result.failed
        self.links_added += result.links_added
        self.links_removed += result.links_removed

    @property
    def changed(self) -> int:
        return self.inserted + self.updated


class TenantSyncResult(BaseModel):
    tenant_id: int
    tenant_name: str | None = None
    status: TenantSyncStatus
    mode: SyncMode | None = None
    error: str | None = None
    lock_holder: LockInfo | None = None
    events_processed: int = 0
    events_skipped: int = 0
    new_event_id: str | None = None
    entities: list[EntitySyncResult] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class SyncSummary(BaseModel):
    scope: str
    requested_mode: SyncMode | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    total: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    tenants: list[TenantSyncResult] = Field(default_factory=list)


class SyncRequest(BaseModel):
    scope: str = Field(min_length=1, max_length=100)
    force_full_sync: bool = False
    concurrency_limit: int | None = Field(default=None, ge=1, le=50)


class SyncHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    entity_type: str
    mode: SyncMode
    status: SyncStatus
    started_at: datetime
    finished_at: datetime | None = None
    records_processed: int
    records_updated: int
    records_failed: int
    records_deleted: int
    error_message: str | None = None
    last_sync_timestamp: datetime | None = None
    last_event_id: str | None = None


class FieldChange(BaseModel):
    field: str
    old: str | None = None
    new: str | None = None


class RecordChange(BaseModel):
    entity_type: str
    source_id: str
    change_type: str
    fields: list[FieldChange] = Field(default_factory=list)
