"""
System roles that ship with the platform.

Platform roles are global and seeded at startup. Institute roles are seeded on
demand, once per institute, as system roles owned by that institute.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.features.permissions.catalog import PermissionCatalog, catalog as default_catalog
from institute_rbac.features.permissions.exceptions import DuplicateKey
from institute_rbac.features.permissions.models import Role, GLOBAL_SCOPE, scope_key_for
from institute_rbac.features.permissions.roles import create_role
from institute_rbac.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class SystemRoleDefinition:
    """Seed data for immutable system roles."""

    key: str
    name: str
    description: str
    permissions: tuple[str, ...]


PLATFORM_SYSTEM_ROLES: tuple[SystemRoleDefinition, ...] = (
    SystemRoleDefinition(
        key="platform_auditor",
        name="Platform Auditor",
        description="Read-only view of dashboards, reports and role definitions",
        permissions=("dashboard.view", "dashboard.analytics", "reports.view", "roles.view"),
    ),
)


DEFAULT_INSTITUTE_ROLES: tuple[SystemRoleDefinition, ...] = (
    SystemRoleDefinition(
        key="teacher",
        name="Teacher",
        description="Can manage students and attendance",
        permissions=(
            "dashboard.view",
            "students.view", "students.add", "students.edit", "students.password",
            "attendance.view", "attendance.mark", "attendance.edit",
            "reports.view", "reports.student",
        ),
    ),
    SystemRoleDefinition(
        key="hr",
        name="HR Manager",
        description="Manages staff and generates reports",
        permissions=(
            "dashboard.view", "dashboard.analytics",
            "staff.view", "staff.add", "staff.edit",
            "students.view", "students.export",
            "reports.view", "reports.staff", "reports.student",
        ),
    ),
    SystemRoleDefinition(
        key="trainer",
        name="Trainer",
        description="Marks attendance and views reports",
        permissions=(
            "dashboard.view",
            "students.view",
            "attendance.view", "attendance.mark",
            "reports.view", "reports.student",
        ),
    ),
    SystemRoleDefinition(
        key="support",
        name="Support Staff",
        description="View-only access to students and attendance",
        permissions=(
            "dashboard.view",
            "students.view",
            "attendance.view",
        ),
    ),
)


async def seed_platform_roles(
    db: AsyncSession,
    permission_catalog: Optional[PermissionCatalog] = None
) -> list[Role]:
    """Create missing platform system roles. Existing ones are left untouched."""
    result = await db.execute(select(Role.key).where(Role.scope_key == GLOBAL_SCOPE))
    existing = set(result.scalars().all())

    created = []
    for definition in PLATFORM_SYSTEM_ROLES:
        if definition.key in existing:
            log.debug("Platform role '%s' already exists, skipping", definition.key)
            continue
        role = await create_role(
            db,
            institute_id=None,
            name=definition.name,
            key=definition.key,
            description=definition.description,
            permission_keys=definition.permissions,
            is_system=True,
            permission_catalog=permission_catalog or default_catalog,
        )
        created.append(role)
    return created


async def initialize_institute_roles(
    db: AsyncSession,
    institute_id: str,
    permission_catalog: Optional[PermissionCatalog] = None
) -> list[Role]:
    """
    Seed the default system roles of an institute.

    Raises:
        DuplicateKey: the institute already has one of the default role keys
    """
    keys = [definition.key for definition in DEFAULT_INSTITUTE_ROLES]
    result = await db.execute(
        select(Role.key).where(Role.scope_key == scope_key_for(institute_id), Role.key.in_(keys))
    )
    taken = result.scalars().first()
    if taken is not None:
        raise DuplicateKey(taken, institute_id)

    created = []
    for definition in DEFAULT_INSTITUTE_ROLES:
        role = await create_role(
            db,
            institute_id=institute_id,
            name=definition.name,
            key=definition.key,
            description=definition.description,
            permission_keys=definition.permissions,
            is_system=True,
            permission_catalog=permission_catalog or default_catalog,
        )
        created.append(role)

    log.info("Initialized %d default roles for institute %s", len(created), institute_id)
    return created
