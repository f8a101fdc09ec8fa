"""
Role assignment store.

An actor holds at most one role per scope. ``set_assignment`` is an upsert
over the (user, scope) pair; the unique constraint backs it up when two
writers race to create the first assignment.
"""
from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from institute_rbac.features.institutes.models import Institute
from institute_rbac.features.permissions.exceptions import ConcurrentModification, NotFound
from institute_rbac.features.permissions.models import Role, RoleAssignment, scope_key_for
from institute_rbac.features.users.models import User
from institute_rbac.utils import get_logger


log = get_logger(__name__)


async def get_assignment(
    db: AsyncSession,
    user_id: str,
    institute_id: Optional[str]
) -> RoleAssignment | None:
    stmt = select(RoleAssignment).where(
        RoleAssignment.user_id == user_id,
        RoleAssignment.scope_key == scope_key_for(institute_id),
    ).execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def count_assignments(db: AsyncSession, role_id: str) -> int:
    stmt = select(func.count()).select_from(RoleAssignment).where(RoleAssignment.role_id == role_id)
    result = await db.execute(stmt)
    return result.scalar_one()


async def set_assignment(
    db: AsyncSession,
    user_id: str,
    institute_id: Optional[str],
    role_id: str,
    assigned_by_id: Optional[str] = None
) -> RoleAssignment:
    """
    Assign ``role_id`` to ``user_id`` in the scope, replacing any previous role.

    Raises:
        NotFound: the user does not exist, or the role does not exist or is not
            visible in the scope
        ConcurrentModification: another writer changed the assignment first
    """
    if await db.get(User, user_id) is None:
        raise NotFound("user", user_id)
    if institute_id is not None and await db.get(Institute, institute_id) is None:
        raise NotFound("institute", institute_id)

    role = await db.get(Role, role_id)
    if role is None or not role.is_visible_in(institute_id):
        raise NotFound("role", role_id)

    assignment = await get_assignment(db, user_id, institute_id)
    previous_role_id = assignment.role_id if assignment else None

    if assignment is None:
        assignment = RoleAssignment(
            user_id=user_id,
            role_id=role_id,
            institute_id=institute_id,
            scope_key=scope_key_for(institute_id),
            assigned_by_id=assigned_by_id,
        )
        db.add(assignment)
    else:
        assignment.role_id = role_id
        assignment.assigned_by_id = assigned_by_id

    try:
        await db.flush()
    except (IntegrityError, StaleDataError) as exc:
        log.warning("Assignment race for user %s in %s: %s", user_id, scope_key_for(institute_id), exc)
        raise ConcurrentModification("assignment", user_id) from exc

    await db.refresh(assignment)
    log.info(
        "Assigned role %s to user %s in %s (previous: %s)",
        role_id, user_id, scope_key_for(institute_id), previous_role_id
    )
    return assignment


async def remove_assignment(db: AsyncSession, user_id: str, institute_id: Optional[str]) -> None:
    assignment = await get_assignment(db, user_id, institute_id)
    if assignment is None:
        raise NotFound("assignment", user_id)

    await db.delete(assignment)
    try:
        await db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification("assignment", user_id) from exc

    log.info("Removed role %s from user %s in %s", assignment.role_id, user_id, scope_key_for(institute_id))
