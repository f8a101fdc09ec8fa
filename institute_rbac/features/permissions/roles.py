"""
Role store.

CRUD over roles with the engine's invariants:
- role keys are unique per scope and may not shadow a platform-global key
- every role grants at least one catalog permission
- system roles keep their key, permissions and active flag forever
- assigned roles cannot be deleted

Writes are guarded by the role ``version``: pass ``expected_version`` to
reject edits based on a stale read, and concurrent writers are detected by
the version-checked UPDATE/DELETE SQLAlchemy emits.
"""
from typing import Any, Iterable, Mapping, Optional
from sqlalchemy import select, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from institute_rbac.features.institutes.models import Institute
from institute_rbac.features.permissions.assignments import count_assignments
from institute_rbac.features.permissions.catalog import (
    PermissionCatalog,
    catalog as default_catalog,
    sync_permission_catalog,
)
from institute_rbac.features.permissions.exceptions import (
    ConcurrentModification,
    DuplicateKey,
    EmptyPermissionSet,
    NotFound,
    RoleInUse,
    SystemRoleImmutable,
)
from institute_rbac.features.permissions.models import Permission, Role, GLOBAL_SCOPE, scope_key_for
from institute_rbac.utils import get_logger


log = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "is_active", "key", "permission_keys"})


def normalize_key(key: str) -> str:
    return key.strip().lower()


async def _permission_rows(
    db: AsyncSession,
    keys: frozenset[str],
    permission_catalog: PermissionCatalog
) -> list[Permission]:
    """Load Permission rows for catalog-validated keys, syncing the table if it lags the catalog."""
    stmt = select(Permission).where(Permission.key.in_(keys))
    rows = list((await db.execute(stmt)).scalars().all())
    if len(rows) < len(keys):
        synced = await sync_permission_catalog(db, permission_catalog)
        rows = [synced[key] for key in keys]
    return sorted(rows, key=lambda row: row.key)


async def _validated_permissions(
    db: AsyncSession,
    permission_keys: Iterable[str],
    permission_catalog: PermissionCatalog
) -> list[Permission]:
    keys = frozenset(permission_keys)
    if not keys:
        raise EmptyPermissionSet()
    permission_catalog.validate(keys)
    return await _permission_rows(db, keys, permission_catalog)


async def _ensure_key_available(
    db: AsyncSession,
    key: str,
    institute_id: Optional[str],
    exclude_role_id: Optional[str] = None
) -> None:
    stmt = select(Role.id).where(Role.key == key)
    if institute_id is not None:
        # Scoped keys may not collide within the scope or with a platform-global key
        stmt = stmt.where(Role.scope_key.in_([institute_id, GLOBAL_SCOPE]))
    if exclude_role_id is not None:
        stmt = stmt.where(Role.id != exclude_role_id)
    if (await db.execute(stmt.limit(1))).first() is not None:
        raise DuplicateKey(key, institute_id)


def _check_version(role: Role, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != role.version:
        raise ConcurrentModification("role", role.id, current_version=role.version)


async def list_roles(db: AsyncSession, institute_id: Optional[str]) -> list[Role]:
    """Roles of the scope plus platform-global system roles, system roles first."""
    if institute_id is None:
        condition = Role.institute_id.is_(None)
    else:
        condition = or_(
            Role.institute_id == institute_id,
            and_(Role.institute_id.is_(None), Role.is_system.is_(True)),
        )
    stmt = select(Role).where(condition).order_by(Role.is_system.desc(), Role.name.asc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_role(db: AsyncSession, role_id: str) -> Role:
    stmt = select(Role).where(Role.id == role_id).execution_options(populate_existing=True)
    role = (await db.execute(stmt)).scalar_one_or_none()
    if role is None:
        raise NotFound("role", role_id)
    return role


async def create_role(
    db: AsyncSession,
    institute_id: Optional[str],
    name: str,
    key: str,
    description: Optional[str],
    permission_keys: Iterable[str],
    is_system: bool = False,
    permission_catalog: Optional[PermissionCatalog] = None
) -> Role:
    """
    Create a role in ``institute_id`` (None for platform-global).

    Raises:
        NotFound: the institute does not exist
        EmptyPermissionSet: no permission keys given
        UnknownPermission: a key is not in the catalog
        DuplicateKey: the key is already taken in the scope
    """
    if institute_id is not None and await db.get(Institute, institute_id) is None:
        raise NotFound("institute", institute_id)

    permission_catalog = permission_catalog or default_catalog
    key = normalize_key(key)
    permissions = await _validated_permissions(db, permission_keys, permission_catalog)
    await _ensure_key_available(db, key, institute_id)

    role = Role(
        institute_id=institute_id,
        scope_key=scope_key_for(institute_id),
        name=name,
        key=key,
        description=description,
        is_active=True,
        is_system=is_system,
    )
    role.permissions = permissions
    db.add(role)

    try:
        await db.flush()
    except IntegrityError as exc:
        raise DuplicateKey(key, institute_id) from exc

    await db.refresh(role)
    log.info(
        "Role created: %s (%s) in %s with %d permissions",
        role.key, role.id, role.scope_key, len(permissions)
    )
    return role


async def update_role(
    db: AsyncSession,
    role_id: str,
    patch: Mapping[str, Any],
    expected_version: Optional[int] = None,
    permission_catalog: Optional[PermissionCatalog] = None
) -> Role:
    """
    Apply ``patch`` to a role.

    ``patch`` may contain name, description, is_active, key and
    permission_keys. On a system role only name and description may change;
    resubmitting the current key, permissions or active flag is not a change.

    Raises:
        NotFound, ConcurrentModification, SystemRoleImmutable, DuplicateKey,
        EmptyPermissionSet, UnknownPermission
    """
    unknown_fields = set(patch) - UPDATABLE_FIELDS
    if unknown_fields:
        raise ValueError(f"Unsupported role fields: {sorted(unknown_fields)}")

    permission_catalog = permission_catalog or default_catalog
    role = await get_role(db, role_id)
    _check_version(role, expected_version)

    new_key = normalize_key(patch["key"]) if patch.get("key") is not None else None
    new_keys = frozenset(patch["permission_keys"]) if patch.get("permission_keys") is not None else None
    new_active = patch.get("is_active")

    if role.is_system:
        locked = []
        if new_key is not None and new_key != role.key:
            locked.append("key")
        if new_keys is not None and new_keys != role.permission_keys:
            locked.append("permission_keys")
        if new_active is not None and new_active != role.is_active:
            locked.append("is_active")
        if locked:
            log.warning("Rejected change of %s on system role %s", locked, role.id)
            raise SystemRoleImmutable(role.id, locked)

    changes: dict[str, Any] = {}
    if patch.get("name") is not None and patch["name"] != role.name:
        role.name = patch["name"]
        changes["name"] = role.name
    if "description" in patch and patch["description"] != role.description:
        role.description = patch["description"]
        changes["description"] = role.description

    if not role.is_system:
        if new_active is not None and new_active != role.is_active:
            role.is_active = new_active
            changes["is_active"] = new_active
        if new_key is not None and new_key != role.key:
            await _ensure_key_available(db, new_key, role.institute_id, exclude_role_id=role.id)
            role.key = new_key
            changes["key"] = new_key
        if new_keys is not None and new_keys != role.permission_keys:
            role.permissions = await _validated_permissions(db, new_keys, permission_catalog)
            changes["permission_keys"] = sorted(new_keys)

    if not changes:
        return role

    # Permission-only edits touch just the association table; force a guarded
    # UPDATE of the role row so the version still moves.
    flag_modified(role, "name")
    try:
        await db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification("role", role.id) from exc
    except IntegrityError as exc:
        raise DuplicateKey(role.key, role.institute_id) from exc

    await db.refresh(role)
    log.info("Role updated: %s (v%d) fields=%s", role.id, role.version, sorted(changes))
    return role


async def delete_role(
    db: AsyncSession,
    role_id: str,
    expected_version: Optional[int] = None
) -> None:
    """
    Delete a non-system role that nobody holds.

    Assigned roles are never cascaded: reassign or remove the assignments
    first. The assignment foreign key makes the check hold even against a
    concurrent ``set_assignment``.

    Raises:
        NotFound, ConcurrentModification, SystemRoleImmutable, RoleInUse
    """
    role = await get_role(db, role_id)
    _check_version(role, expected_version)

    if role.is_system:
        raise SystemRoleImmutable(role.id)

    assigned = await count_assignments(db, role.id)
    if assigned:
        raise RoleInUse(role.id, assigned)

    await db.delete(role)
    try:
        await db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification("role", role_id) from exc
    except IntegrityError as exc:
        raise RoleInUse(role_id, 1) from exc

    log.info("Role deleted: %s (%s) from %s", role.key, role_id, role.scope_key)
