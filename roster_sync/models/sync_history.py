from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from roster_sync.core.db import Base
from roster_sync.utils.timestamps import utcnow


class SyncHistory(Base):
    """One row per (tenant, entity type, run); finalized exactly once."""

    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    entity_type: Mapped[str] = mapped_column(String(32), index=True)
    mode: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    records_deleted: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    changes: Mapped[list["SyncChangeDetail"]] = relationship(back_populates="history")


class SyncChangeDetail(Base):
    __tablename__ = "sync_change_details"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    history_id: Mapped[int] = mapped_column(ForeignKey("sync_history.id"), index=True)
    entity_type: Mapped[str] = mapped_column(String(32))
    source_id: Mapped[str] = mapped_column(String(64))
    change_type: Mapped[str] = mapped_column(String(16))
    fields_changed: Mapped[str] = mapped_column(Text, default="")
    old_values: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_values: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    history: Mapped[SyncHistory] = relationship(back_populates="changes")
