from functools import lru_cache
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session

from roster_sync.core.auth import SyncPrincipal, authenticate, require_admin
from roster_sync.core.db import get_db
from roster_sync.cruds.sync_history import list_history
from roster_sync.cruds.sync_locks import get_sync_lock_info
from roster_sync.cruds.tenants import get_tenant
from roster_sync.schemas.sync import LockInfo, SyncHistoryResponse, SyncMode, SyncRequest, SyncSummary
from roster_sync.services.context import SyncCancelledError
from roster_sync.services.orchestrator import SyncOrchestrator, build_orchestrator
from roster_sync.services.scopes import InvalidScopeError, ScopeNotFoundError, parse_scope

router = APIRouter(tags=["sync"], dependencies=[Depends(authenticate)])
logger = logging.getLogger(__name__)


@lru_cache
def get_orchestrator() -> SyncOrchestrator:
    return build_orchestrator()


@router.post(
    "/sync",
    response_model=SyncSummary,
    responses={
        400: {"description": "Malformed scope token"},
        404: {"description": "Scope references an unknown school or district"},
        403: {"description": "Caller is not an admin"},
        409: {"description": "Run was cancelled before any tenant started"},
    },
)
def trigger_sync(
    payload: SyncRequest,
    principal: SyncPrincipal = Depends(require_admin),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncSummary:
    outcome = "unknown"
    try:
        summary = orchestrator.run(
            payload.scope,
            mode=SyncMode.FULL if payload.force_full_sync else None,
            concurrency_limit=payload.concurrency_limit,
            initiator=principal.username,
        )
        outcome = f"ok:total={summary.total}"
        return summary
    except InvalidScopeError as exc:
        outcome = "invalid_scope"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ScopeNotFoundError as exc:
        outcome = "scope_not_found"
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SyncCancelledError as exc:
        outcome = "cancelled"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    finally:
        logger.info(
            "route_trigger_sync scope=%s initiator=%s force_full_sync=%s outcome=%s",
            payload.scope,
            principal.username,
            payload.force_full_sync,
            outcome,
        )


@router.get("/sync/locks/{scope}", response_model=LockInfo)
def get_lock(
    scope: str = Path(min_length=1, max_length=100),
    db: Session = Depends(get_db),
) -> LockInfo:
    try:
        scope_key = parse_scope(scope).key
    except InvalidScopeError as exc:
        logger.info("route_get_lock scope=%s outcome=invalid_scope", scope)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    info = get_sync_lock_info(db=db, scope=scope_key)
    logger.info("route_get_lock scope=%s locked=%s", scope_key, info.locked)
    return info


@router.get("/tenants/{tenant_id}/history", response_model=list[SyncHistoryResponse])
def get_tenant_history(
    tenant_id: int = Path(ge=1),
    entity_type: str | None = Query(default=None, max_length=32),
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
) -> list[SyncHistoryResponse]:
    if get_tenant(db=db, tenant_id=tenant_id) is None:
        logger.info("route_get_tenant_history tenant_id=%s outcome=not_found", tenant_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"School {tenant_id} not found")
    rows = list_history(db=db, tenant_id=tenant_id, entity_type=entity_type, limit=limit)
    logger.info("route_get_tenant_history tenant_id=%s entity_type=%s rows=%s", tenant_id, entity_type, len(rows))
    return [SyncHistoryResponse.model_validate(row) for row in rows]
