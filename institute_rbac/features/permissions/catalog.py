"""
Permission catalog.

The catalog is the closed set of permission keys the platform understands. It
ships with the code: adding a permission means adding a definition here and
deploying. Existing keys never change meaning and are never removed while a
role may reference them.
"""
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from institute_rbac.features.permissions.exceptions import UnknownPermission
from institute_rbac.features.permissions.models import Permission
from institute_rbac.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class PermissionDefinition:
    """Describes a permission entry in the catalog."""

    key: str
    module: str
    display_name: str
    description: str


PERMISSION_DEFINITIONS: tuple[PermissionDefinition, ...] = (
    # Dashboard ----------------------------------------------------------
    PermissionDefinition("dashboard.view", "dashboard", "View dashboard", "Open the institute dashboard."),
    PermissionDefinition("dashboard.analytics", "dashboard", "View analytics", "See dashboard analytics widgets."),
    # Students -----------------------------------------------------------
    PermissionDefinition("students.view", "students", "View students", "List and inspect student records."),
    PermissionDefinition("students.add", "students", "Add students", "Enrol new students."),
    PermissionDefinition("students.edit", "students", "Edit students", "Update student records."),
    PermissionDefinition("students.delete", "students", "Delete students", "Remove students from the institute."),
    PermissionDefinition("students.export", "students", "Export students", "Download student lists."),
    PermissionDefinition("students.password", "students", "Reset student passwords", "Set or reset student passwords."),
    PermissionDefinition("students.manage", "students", "Manage students", "Full control over student records."),
    # Staff --------------------------------------------------------------
    PermissionDefinition("staff.view", "staff", "View staff", "List and inspect staff members."),
    PermissionDefinition("staff.add", "staff", "Add staff", "Invite new staff members."),
    PermissionDefinition("staff.edit", "staff", "Edit staff", "Update staff member details."),
    PermissionDefinition("staff.delete", "staff", "Delete staff", "Remove staff members."),
    # Attendance ---------------------------------------------------------
    PermissionDefinition("attendance.view", "attendance", "View attendance", "See attendance registers."),
    PermissionDefinition("attendance.mark", "attendance", "Mark attendance", "Record attendance for a session."),
    PermissionDefinition("attendance.edit", "attendance", "Edit attendance", "Correct recorded attendance."),
    # Reports ------------------------------------------------------------
    PermissionDefinition("reports.view", "reports", "View reports", "Open the reports section."),
    PermissionDefinition("reports.student", "reports", "Student reports", "Generate student reports."),
    PermissionDefinition("reports.staff", "reports", "Staff reports", "Generate staff reports."),
    # Roles --------------------------------------------------------------
    PermissionDefinition("roles.view", "roles", "View roles", "See roles and their permissions."),
    PermissionDefinition("roles.manage", "roles", "Manage roles", "Create, edit, delete and assign roles."),
    # Settings -----------------------------------------------------------
    PermissionDefinition("settings.view", "settings", "View settings", "See institute settings."),
    PermissionDefinition("settings.manage", "settings", "Manage settings", "Change institute settings."),
)


class PermissionCatalog:
    """Read-only registry of permission definitions, grouped by module."""

    def __init__(self, definitions: Iterable[PermissionDefinition]):
        by_key: dict[str, PermissionDefinition] = {}
        for definition in definitions:
            if definition.key in by_key:
                raise ValueError(f"Duplicate permission key in catalog: {definition.key}")
            by_key[definition.key] = definition
        self._by_key = by_key

        grouped: dict[str, list[PermissionDefinition]] = {}
        for definition in sorted(by_key.values(), key=lambda d: (d.module, d.key)):
            grouped.setdefault(definition.module, []).append(definition)
        self._grouped = grouped

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self):
        return iter(self._by_key.values())

    def list_permissions(self) -> dict[str, list[PermissionDefinition]]:
        """Module name to its permissions, modules and keys in ascending order."""
        return {module: list(items) for module, items in self._grouped.items()}

    def exists(self, key: str) -> bool:
        return key in self._by_key

    def get(self, key: str) -> PermissionDefinition | None:
        return self._by_key.get(key)

    def keys(self) -> frozenset[str]:
        return frozenset(self._by_key)

    def validate(self, keys: Iterable[str]) -> frozenset[str]:
        """Return ``keys`` as a frozenset or raise ``UnknownPermission`` naming every unknown key."""
        requested = frozenset(keys)
        unknown = requested - self._by_key.keys()
        if unknown:
            raise UnknownPermission(unknown)
        return requested


catalog = PermissionCatalog(PERMISSION_DEFINITIONS)


def get_catalog() -> PermissionCatalog:
    """FastAPI dependency returning the deployed catalog."""
    return catalog


async def sync_permission_catalog(
    db: AsyncSession,
    permission_catalog: PermissionCatalog | None = None
) -> dict[str, Permission]:
    """
    Write the catalog into the ``permissions`` table.

    Append-only: missing keys are inserted and display fields of existing keys
    are refreshed. Rows are never deleted.

    Returns:
        Dictionary mapping permission keys to Permission rows
    """
    permission_catalog = permission_catalog or catalog
    result = await db.execute(select(Permission))
    existing = {permission.key: permission for permission in result.scalars().all()}

    created = 0
    for definition in permission_catalog:
        row = existing.get(definition.key)
        if row is None:
            row = Permission(
                key=definition.key,
                module=definition.module,
                display_name=definition.display_name,
                description=definition.description,
            )
            db.add(row)
            existing[definition.key] = row
            created += 1
            continue
        row.display_name = definition.display_name
        row.description = definition.description

    await db.flush()
    if created:
        log.info("Permission catalog synced: %d new, %d total", created, len(existing))
    return existing
