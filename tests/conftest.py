from collections.abc import Generator
from datetime import datetime

import pytest
from sqlalchemy.orm import Session, sessionmaker

from roster_sync.core.db import build_engine, build_session_factory, init_db
from roster_sync.core.tenant_db import TenantDatabaseRouter
from roster_sync.cruds.tenants import create_district, create_tenant
from roster_sync.models.district import District
from roster_sync.models.tenant import Tenant
from roster_sync.schemas.roster import RosterEvent, RosterRecord
from roster_sync.services.orchestrator import SyncOrchestrator


class FakeRosterClient:
    """In-memory roster source keyed by tenant external id."""

    def __init__(self) -> None:
        self.entities: dict[tuple[str, str], list[RosterRecord]] = {}
        self.events: dict[str, list[RosterEvent]] = {}
        self.latest_event_ids: dict[str, str | None] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple] = []

    def fetch_entities(
        self,
        tenant_external_id: str,
        entity_type: str,
        since: datetime | None = None,
    ) -> list[RosterRecord]:
        self.calls.append(("fetch_entities", tenant_external_id, entity_type, since))
        failure = self.failures.get((tenant_external_id, entity_type))
        if failure is not None:
            raise failure
        records = self.entities.get((tenant_external_id, entity_type), [])
        if since is not None:
            records = [record for record in records if record.last_modified is None or record.last_modified > since]
        return list(records)

    def fetch_events(self, tenant_external_id: str, since_event_id: str | None = None) -> list[RosterEvent]:
        self.calls.append(("fetch_events", tenant_external_id, since_event_id))
        failure = self.failures.get((tenant_external_id, "events"))
        if failure is not None:
            raise failure
        events = self.events.get(tenant_external_id, [])
        event_ids = [event.id for event in events]
        if since_event_id in event_ids:
            events = events[event_ids.index(since_event_id) + 1:]
        return list(events)

    def fetch_latest_event_id(self, tenant_external_id: str) -> str | None:
        self.calls.append(("fetch_latest_event_id", tenant_external_id))
        return self.latest_event_ids.get(tenant_external_id)


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker[Session], None, None]:
    engine = build_engine(f"sqlite:///{tmp_path / 'control.db'}")
    init_db(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def tenant_router(tmp_path) -> Generator[TenantDatabaseRouter, None, None]:
    router = TenantDatabaseRouter(f"sqlite:///{tmp_path}/tenant_{{tenant_id}}.db")
    yield router
    router.dispose()


@pytest.fixture
def roster_client() -> FakeRosterClient:
    return FakeRosterClient()


@pytest.fixture
def district(session_factory: sessionmaker[Session]) -> District:
    with session_factory() as db:
        return create_district(db=db, external_id="D1", name="Unified District")


@pytest.fixture
def tenant(session_factory: sessionmaker[Session], district: District) -> Tenant:
    with session_factory() as db:
        return create_tenant(db=db, district_id=district.id, external_id="S1", name="Lincoln High")


@pytest.fixture
def orchestrator(
    session_factory: sessionmaker[Session],
    tenant_router: TenantDatabaseRouter,
    roster_client: FakeRosterClient,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory=session_factory,
        tenant_router=tenant_router,
        roster_client=roster_client,
        entity_types=["student"],
        concurrency_limit=5,
        machine_name="test-host",
    )
