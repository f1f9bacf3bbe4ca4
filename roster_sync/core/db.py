from collections.abc import Generator
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from roster_sync.core.settings import settings

Base = declarative_base()
logger = logging.getLogger(__name__)


def _use_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; savepoints and concurrent writers need the
    # write lock taken when the transaction starts.
    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str) -> Engine:
    engine_kwargs: dict = {"future": True}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, **engine_kwargs)
    if is_sqlite:
        _use_immediate_transactions(engine)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        logger.info("db_session_closed")
        db.close()


def init_db(bind: Engine | None = None) -> None:
    # Import models before create_all so metadata is populated.
    from roster_sync.models import district  # noqa: F401
    from roster_sync.models import event_baseline  # noqa: F401
    from roster_sync.models import sync_history  # noqa: F401
    from roster_sync.models import sync_lock  # noqa: F401
    from roster_sync.models import tenant  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("db_initialized")
