import logging
import secrets
from typing import Literal

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from roster_sync.core.settings import settings

security = HTTPBasic(realm="roster-sync")
logger = logging.getLogger(__name__)


class SyncPrincipal(BaseModel):
    username: str
    role: Literal["admin", "viewer"]


def _matches(credentials: HTTPBasicCredentials, username: str, password: str) -> bool:
    if not username or not password:
        return False
    user_ok = secrets.compare_digest(credentials.username.encode(), username.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
    return user_ok and pass_ok


def authenticate(credentials: HTTPBasicCredentials = Depends(security)) -> SyncPrincipal:
    """Resolve Basic credentials to the admin or the read-only viewer account."""
    principal: SyncPrincipal | None = None
    if _matches(credentials, settings.admin_username, settings.admin_password):
        principal = SyncPrincipal(username=credentials.username, role="admin")
    elif _matches(credentials, settings.viewer_username, settings.viewer_password):
        principal = SyncPrincipal(username=credentials.username, role="viewer")
    logger.info(
        "auth_checked username=%s role=%s",
        credentials.username,
        principal.role if principal else None,
    )
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": 'Basic realm="roster-sync"'},
        )
    return principal


def require_admin(principal: SyncPrincipal = Depends(authenticate)) -> SyncPrincipal:
    if principal.role != "admin":
        logger.info("auth_forbidden username=%s role=%s", principal.username, principal.role)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Triggering a sync requires the admin role")
    return principal
