"""
Permission management API routes.

Provides the permission catalog, role CRUD, role assignment and the caller's
own effective permissions. Every mutation is gated by ``roles.manage`` in the
request's institute scope and recorded in the audit log.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.core import config
from institute_rbac.core.database.engine import get_db
from institute_rbac.core.rate_limit import limiter
from institute_rbac.features.users.dependencies import get_current_user
from institute_rbac.features.users.models import User
from institute_rbac.features.permissions import assignments, roles
from institute_rbac.features.permissions.access import resolve_actor_access
from institute_rbac.features.permissions.catalog import PermissionCatalog, get_catalog, sync_permission_catalog
from institute_rbac.features.permissions.defaults import initialize_institute_roles
from institute_rbac.features.permissions.dependencies import (
    create_audit_log,
    get_institute_scope,
    require_any_permission,
    require_permission,
)
from institute_rbac.features.permissions.exceptions import Forbidden, NoAssignment, NotFound, UnknownPermission
from institute_rbac.features.permissions.models import AuditLog, Permission, Role
from institute_rbac.features.permissions.schemas import (
    AssignmentResponse,
    AssignRoleToUser,
    AuditLogListResponse,
    MyPermissionsResponse,
    PermissionCatalogResponse,
    RoleCreate,
    RoleListResponse,
    RoleResponse,
    RoleUpdate,
)
from institute_rbac.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

DbSession = Annotated[AsyncSession, Depends(get_db)]
Scope = Annotated[Optional[str], Depends(get_institute_scope)]
Catalog = Annotated[PermissionCatalog, Depends(get_catalog)]
RoleViewer = Annotated[User, Depends(require_any_permission("roles.view", "roles.manage"))]
RoleManager = Annotated[User, Depends(require_permission("roles.manage"))]


async def _permission_keys_for_ids(db: AsyncSession, permission_ids: List[str]) -> List[str]:
    """Translate catalog permission ids from a request body into keys."""
    if not permission_ids:
        return []
    result = await db.execute(select(Permission).where(Permission.id.in_(permission_ids)))
    found = {permission.id: permission.key for permission in result.scalars().all()}
    missing = set(permission_ids) - found.keys()
    if missing:
        raise UnknownPermission(missing)
    return list(found.values())


async def _role_in_scope(db: AsyncSession, role_id: str, institute_id: Optional[str], for_write: bool) -> Role:
    role = await roles.get_role(db, role_id)
    if not role.is_visible_in(institute_id):
        raise NotFound("role", role_id)
    # Platform roles are visible to institutes but only editable from the platform scope
    if for_write and role.institute_id != institute_id:
        raise Forbidden(("roles.manage",))
    return role


# ============================================================================
# Permission Routes
# ============================================================================

@router.get("/permissions", response_model=PermissionCatalogResponse)
async def list_permissions(
    db: DbSession,
    permission_catalog: Catalog,
    current_user: RoleViewer,
):
    """Get all available permissions grouped by module."""
    result = await db.execute(select(Permission))
    rows = {permission.key: permission for permission in result.scalars().all()}
    if not permission_catalog.keys() <= rows.keys():
        rows = await sync_permission_catalog(db, permission_catalog)

    grouped = {
        module: [rows[definition.key] for definition in definitions]
        for module, definitions in permission_catalog.list_permissions().items()
    }
    return {"permissions": grouped, "total_permissions": len(permission_catalog)}


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=RoleListResponse)
async def list_roles(
    db: DbSession,
    institute_id: Scope,
    current_user: RoleViewer,
):
    """List the institute's roles plus platform system roles, with permissions."""
    items = await roles.list_roles(db, institute_id)
    return {"roles": items, "total_roles": len(items)}


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    db: DbSession,
    institute_id: Scope,
    current_user: RoleViewer,
):
    """Get a specific role with its permissions."""
    return await _role_in_scope(db, role_id, institute_id, for_write=False)


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def create_role(
    request: Request,
    role: RoleCreate,
    db: DbSession,
    institute_id: Scope,
    permission_catalog: Catalog,
    current_user: RoleManager,
):
    """Create a new custom role in the institute."""
    permission_keys = await _permission_keys_for_ids(db, role.permission_ids)
    db_role = await roles.create_role(
        db,
        institute_id=institute_id,
        name=role.name,
        key=role.key,
        description=role.description,
        permission_keys=permission_keys,
        permission_catalog=permission_catalog,
    )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="role",
        resource_id=db_role.id,
        institute_id=institute_id,
        details={"key": db_role.key, "name": db_role.name, "permissions": sorted(permission_keys)},
        request=request,
    )
    return db_role


@router.put("/roles/{role_id}", response_model=RoleResponse)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def update_role(
    request: Request,
    role_id: str,
    role_update: RoleUpdate,
    db: DbSession,
    institute_id: Scope,
    permission_catalog: Catalog,
    current_user: RoleManager,
):
    """
    Update role details and permissions.

    System roles accept name and description only.
    """
    await _role_in_scope(db, role_id, institute_id, for_write=True)

    patch = role_update.model_dump(exclude_unset=True)
    expected_version = patch.pop("version", None)
    if "permission_ids" in patch:
        permission_ids = patch.pop("permission_ids")
        if permission_ids is not None:
            patch["permission_keys"] = await _permission_keys_for_ids(db, permission_ids)

    db_role = await roles.update_role(
        db, role_id, patch, expected_version=expected_version, permission_catalog=permission_catalog
    )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="update",
        resource_type="role",
        resource_id=role_id,
        institute_id=db_role.institute_id,
        details={
            key: sorted(value) if key == "permission_keys" else value
            for key, value in patch.items()
        },
        request=request,
    )
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def delete_role(
    request: Request,
    role_id: str,
    db: DbSession,
    institute_id: Scope,
    current_user: RoleManager,
    version: Annotated[Optional[int], Query(ge=1, description="Last revision read")] = None,
):
    """
    Delete a custom role.

    System roles and roles still assigned to users cannot be deleted.
    """
    role = await _role_in_scope(db, role_id, institute_id, for_write=True)
    role_key = role.key
    role_institute_id = role.institute_id

    await roles.delete_role(db, role_id, expected_version=version)

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="delete",
        resource_type="role",
        resource_id=role_id,
        institute_id=role_institute_id,
        details={"key": role_key},
        request=request,
    )
    return None


@router.post("/initialize-default-roles", response_model=RoleListResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def initialize_default_roles(
    request: Request,
    db: DbSession,
    institute_id: Scope,
    permission_catalog: Catalog,
    current_user: RoleManager,
):
    """Seed the default system roles (Teacher, HR Manager, Trainer, Support Staff) for the institute."""
    if institute_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No institute selected. Pass institute_id or switch to an institute first."
        )

    created = await initialize_institute_roles(db, institute_id, permission_catalog)

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="initialize_default_roles",
        resource_type="role",
        institute_id=institute_id,
        details={"keys": [role.key for role in created]},
        request=request,
    )
    return {"roles": created, "total_roles": len(created)}


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/assign-role", response_model=AssignmentResponse)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def assign_role(
    request: Request,
    assignment: AssignRoleToUser,
    db: DbSession,
    institute_id: Scope,
    current_user: RoleManager,
):
    """Assign a role to a user in the institute, replacing any role they held there."""
    db_assignment = await assignments.set_assignment(
        db,
        user_id=assignment.user_id,
        institute_id=institute_id,
        role_id=assignment.role_id,
        assigned_by_id=current_user.id,
    )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="assign_role",
        resource_type="assignment",
        resource_id=db_assignment.id,
        institute_id=institute_id,
        details={"user_id": assignment.user_id, "role_id": assignment.role_id},
        request=request,
    )
    return db_assignment


@router.delete("/assignments/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(config.MUTATION_RATE_LIMIT)
async def remove_assignment(
    request: Request,
    user_id: str,
    db: DbSession,
    institute_id: Scope,
    current_user: RoleManager,
):
    """Remove a user's role in the institute."""
    await assignments.remove_assignment(db, user_id, institute_id)

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove_role",
        resource_type="assignment",
        institute_id=institute_id,
        details={"user_id": user_id},
        request=request,
    )
    return None


# ============================================================================
# User Permissions
# ============================================================================

@router.get("/my-permissions", response_model=MyPermissionsResponse)
async def get_my_permissions(
    db: DbSession,
    institute_id: Scope,
    permission_catalog: Catalog,
    current_user: Annotated[User, Depends(get_current_user)],
):
    """
    Get the current user's permissions in the institute.

    A user without a role gets an empty permission list rather than an error.
    """
    try:
        access = await resolve_actor_access(db, current_user.id, institute_id, permission_catalog)
    except NoAssignment:
        return MyPermissionsResponse(permissions=[], role=None, role_key=None, has_full_access=False)

    return MyPermissionsResponse(
        permissions=sorted(access.permission_keys),
        role=access.role.name if access.role else None,
        role_key=access.role.key if access.role else None,
        has_full_access=access.full_access,
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: DbSession,
    institute_id: Scope,
    current_user: RoleManager,
    skip: int = 0,
    limit: int = 50,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
):
    """List the institute's role and assignment audit trail, newest first."""
    stmt = select(AuditLog)
    if institute_id is not None:
        stmt = stmt.where(AuditLog.institute_id == institute_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)

    return {"items": result.scalars().all(), "total": total, "skip": skip, "limit": limit}
