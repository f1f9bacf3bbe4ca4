import logging

from sqlalchemy.orm import Session

from roster_sync.models.event_baseline import EventBaseline
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def get_event_baseline(db: Session, tenant_id: int) -> str | None:
    record = db.get(EventBaseline, tenant_id)
    last_event_id = record.last_event_id if record is not None else None
    logger.info("crud_get_event_baseline tenant_id=%s last_event_id=%s", tenant_id, last_event_id)
    return last_event_id


def set_event_baseline(db: Session, tenant_id: int, last_event_id: str | None) -> None:
    record = db.get(EventBaseline, tenant_id)
    created = record is None
    if record is None:
        record = EventBaseline(tenant_id=tenant_id, last_event_id=last_event_id)
        db.add(record)
    else:
        record.last_event_id = last_event_id
        record.updated_at = utcnow()
    db.commit()
    logger.info(
        "crud_set_event_baseline tenant_id=%s last_event_id=%s created=%s",
        tenant_id,
        last_event_id,
        created,
    )
