import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from roster_sync.models.district import District
from roster_sync.models.tenant import Tenant
from roster_sync.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def get_tenant(db: Session, tenant_id: int) -> Tenant | None:
    record = db.get(Tenant, tenant_id)
    logger.info("crud_get_tenant tenant_id=%s found=%s", tenant_id, record is not None)
    return record


def get_district_by_external_id(db: Session, external_id: str) -> District | None:
    query = select(District).where(District.external_id == external_id)
    record = db.execute(query).scalar_one_or_none()
    logger.info("crud_get_district_by_external_id external_id=%s found=%s", external_id, record is not None)
    return record


def list_active_tenants(db: Session, district_id: int | None = None) -> list[Tenant]:
    query = select(Tenant).where(Tenant.is_active.is_(True))
    if district_id is not None:
        query = query.where(Tenant.district_id == district_id)
    records = list(db.execute(query.order_by(Tenant.id)).scalars().all())
    logger.info("crud_list_active_tenants district_id=%s count=%s", district_id, len(records))
    return records


def create_district(db: Session, external_id: str, name: str) -> District:
    record = District(external_id=external_id, name=name)
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("crud_create_district external_id=%s district_id=%s", external_id, record.id)
    return record


def create_tenant(
    db: Session,
    district_id: int,
    external_id: str,
    name: str,
    database_name: str | None = None,
    is_active: bool = True,
    requires_full_sync: bool = False,
) -> Tenant:
    record = Tenant(
        district_id=district_id,
        external_id=external_id,
        name=name,
        database_name=database_name,
        is_active=is_active,
        requires_full_sync=requires_full_sync,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("crud_create_tenant external_id=%s tenant_id=%s", external_id, record.id)
    return record


def set_requires_full_sync(db: Session, tenant_id: int, required: bool) -> None:
    db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(requires_full_sync=required, updated_at=utcnow())
    )
    db.commit()
    logger.info("crud_set_requires_full_sync tenant_id=%s required=%s", tenant_id, required)
