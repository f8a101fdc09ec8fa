"""
FastAPI dependencies for route protection and audit logging.

Implements:
- Resolution of the institute scope a request acts in
- Permission-gated dependencies built on ``access.authorize``
- Audit logging helpers
"""
from typing import Annotated, Any, Dict, Optional
from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.core.database.engine import get_db
from institute_rbac.features.users.dependencies import get_current_user
from institute_rbac.features.users.models import User
from institute_rbac.features.permissions.access import authorize
from institute_rbac.features.permissions.catalog import PermissionCatalog, get_catalog
from institute_rbac.features.permissions.exceptions import Forbidden
from institute_rbac.features.permissions.models import AuditLog
from institute_rbac.utils import get_logger


log = get_logger(__name__)


async def get_institute_scope(
    user: Annotated[User, Depends(get_current_user)],
    institute_id: Annotated[Optional[str], Query(description="Institute to act in")] = None,
) -> Optional[str]:
    """
    The institute a request acts in: the ``institute_id`` query parameter,
    else the user's current institute, else the platform scope (None).
    """
    return institute_id or user.current_institute_id


def require_permission(*required: str):
    """
    FastAPI dependency to require every listed permission in the request scope.

    Usage:
        @router.post("/roles")
        async def create(user: User = Depends(require_permission("roles.manage"))):
            # User holds roles.manage (or full access) in the institute
            pass

    Returns:
        Dependency function that returns the current user if authorized

    Raises:
        Forbidden: if the user lacks a permission or has no role in the scope
    """
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)],
        institute_id: Annotated[Optional[str], Depends(get_institute_scope)],
        permission_catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    ) -> User:
        if not await authorize(db, current_user.id, institute_id, list(required), permission_catalog=permission_catalog):
            raise Forbidden(required)
        return current_user

    return permission_dependency


def require_any_permission(*required: str):
    """
    FastAPI dependency to require ANY of the listed permissions.

    Usage:
        @router.get("/roles")
        async def list(user: User = Depends(require_any_permission("roles.view", "roles.manage"))):
            pass
    """
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)],
        institute_id: Annotated[Optional[str], Depends(get_institute_scope)],
        permission_catalog: Annotated[PermissionCatalog, Depends(get_catalog)],
    ) -> User:
        if not await authorize(
            db, current_user.id, institute_id, list(required), any_of=True, permission_catalog=permission_catalog
        ):
            raise Forbidden(required)
        return current_user

    return permission_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    institute_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None
) -> AuditLog:
    """
    Record an audit log entry in the current transaction.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign")
        resource_type: Type of resource (e.g., "role", "assignment")
        resource_id: ID of the resource
        institute_id: Institute context
        details: Additional details
        request: Incoming request, for client IP and user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        institute_id=institute_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )

    db.add(audit_log)
    await db.flush()

    log.info(
        "Audit: user=%s action=%s resource=%s:%s institute=%s",
        user_id, action, resource_type, resource_id, institute_id
    )

    return audit_log
