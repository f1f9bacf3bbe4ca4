from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from roster_sync.core.db import Base


class SyncLock(Base):
    __tablename__ = "sync_locks"

    # The primary key on scope is what makes acquisition a single atomic conditional insert.
    scope: Mapped[str] = mapped_column(String(100), primary_key=True)
    lock_token: Mapped[str] = mapped_column(String(64))
    holder: Mapped[str] = mapped_column(String(100))
    initiator: Mapped[str | None] = mapped_column(String(255), nullable=True)
    machine_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
