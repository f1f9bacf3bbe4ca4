import logging

from fastapi import Depends, FastAPI
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse

from roster_sync.api.routes import router as api_router
from roster_sync.core.auth import SyncPrincipal, authenticate
from roster_sync.core.db import SessionLocal, init_db
from roster_sync.core.settings import settings
from roster_sync.services.locks import SyncLockManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Roster Sync",
    version="0.1.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.include_router(api_router)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    lock_manager = SyncLockManager(SessionLocal, default_ttl_minutes=settings.sync_lock_ttl_minutes)
    expired_locks = lock_manager.cleanup_expired()
    logger.info(
        "startup_completed env=%s instance=%s expired_locks_removed=%s roster_token_configured=%s",
        settings.app_env,
        settings.sync_instance_name,
        expired_locks,
        bool(settings.roster_api_token),
    )


@app.get("/docs", response_class=HTMLResponse)
def docs(principal: SyncPrincipal = Depends(authenticate)) -> HTMLResponse:
    logger.info("docs_requested username=%s role=%s", principal.username, principal.role)
    return get_swagger_ui_html(openapi_url="/openapi.json", title=f"{app.title} - Swagger UI")


@app.get("/openapi.json", dependencies=[Depends(authenticate)])
def openapi_schema() -> dict:
    return app.openapi()


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "ok",
        "env": settings.app_env,
        "instance": settings.sync_instance_name,
        "roster_token_configured": bool(settings.roster_api_token),
        "entity_types": settings.sync_entity_types,
    }
