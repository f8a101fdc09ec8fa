"""
Access query facade.

The boundary the rest of the application uses to ask "what can this actor do
here" (``resolve_actor_access``) and "may this actor do X here"
(``authorize``). Effective permissions are recomputed from the database on
every call; nothing is cached between requests.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from institute_rbac.features.institutes.models import Institute
from institute_rbac.features.permissions.assignments import get_assignment
from institute_rbac.features.permissions.catalog import PermissionCatalog, catalog as default_catalog
from institute_rbac.features.permissions.evaluator import PermissionQuery, has_any_permission, has_permission
from institute_rbac.features.permissions.exceptions import NoAssignment, NotFound, RbacError
from institute_rbac.features.permissions.models import Role
from institute_rbac.features.users.models import User
from institute_rbac.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class RoleRef:
    id: str
    key: str
    name: str
    is_active: bool


@dataclass(frozen=True)
class ActorAccess:
    """An actor's effective access in one scope."""

    user_id: str
    institute_id: Optional[str]
    permission_keys: frozenset[str]
    role: Optional[RoleRef]
    full_access: bool

    def has_permission(self, required: PermissionQuery) -> bool:
        return has_permission(self.permission_keys, self.full_access, required)

    def has_any_permission(self, required: PermissionQuery) -> bool:
        return has_any_permission(self.permission_keys, self.full_access, required)


async def has_full_access(db: AsyncSession, user: User, institute_id: Optional[str]) -> bool:
    """Platform superadmins everywhere; an institute's owner-admin inside that institute."""
    if user.is_admin:
        return True
    if institute_id is None:
        return False
    institute = await db.get(Institute, institute_id)
    return institute is not None and institute.admin_user_id == user.id


async def resolve_actor_access(
    db: AsyncSession,
    user_id: str,
    institute_id: Optional[str],
    permission_catalog: Optional[PermissionCatalog] = None
) -> ActorAccess:
    """
    Compose assignment lookup, role lookup and the full-access check.

    Full-access actors get the whole catalog and need no assignment. An
    inactive role grants nothing.

    Raises:
        NotFound: unknown or deactivated user
        NoAssignment: the user holds no role in the scope
    """
    permission_catalog = permission_catalog or default_catalog

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("user", user_id)

    full_access = await has_full_access(db, user, institute_id)
    assignment = await get_assignment(db, user_id, institute_id)

    if assignment is None:
        if not full_access:
            raise NoAssignment(user_id, institute_id)
        return ActorAccess(user_id, institute_id, permission_catalog.keys(), None, True)

    # Re-read the role so a permission change committed by another request is
    # seen now rather than whatever this session loaded earlier.
    stmt = select(Role).where(Role.id == assignment.role_id).execution_options(populate_existing=True)
    role = (await db.execute(stmt)).scalar_one()
    ref = RoleRef(role.id, role.key, role.name, role.is_active)

    if full_access:
        keys = permission_catalog.keys()
    elif role.is_active:
        keys = role.permission_keys
    else:
        keys = frozenset()

    return ActorAccess(user_id, institute_id, keys, ref, full_access)


async def authorize(
    db: AsyncSession,
    user_id: str,
    institute_id: Optional[str],
    required: PermissionQuery,
    any_of: bool = False,
    permission_catalog: Optional[PermissionCatalog] = None
) -> bool:
    """
    Decide whether ``user_id`` may act in ``institute_id``.

    ``required`` is a key or a list of keys; all are needed unless ``any_of``.
    Fails closed: engine errors are a deny. Persistence faults are logged and
    re-raised so callers can tell "not allowed" from "broken".
    """
    try:
        access = await resolve_actor_access(db, user_id, institute_id, permission_catalog)
    except RbacError as exc:
        log.info("Denied %s in %s for %r: %s", user_id, institute_id, required, exc.code)
        return False
    except SQLAlchemyError:
        log.exception("Access resolution failed for user %s in %s", user_id, institute_id)
        raise

    allowed = access.has_any_permission(required) if any_of else access.has_permission(required)
    if not allowed:
        log.info("Denied %s in %s for %r: missing permission", user_id, institute_id, required)
    return allowed


class AccessCache:
    """
    A caller-owned snapshot of one actor's access in one scope.

    Nothing is shared between instances and nothing refreshes implicitly:
    the snapshot changes only when ``refresh`` is awaited. Before the first
    refresh, and after a failed one, every check is denied.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: str,
        institute_id: Optional[str],
        permission_catalog: Optional[PermissionCatalog] = None
    ):
        self._session_factory = session_factory
        self.user_id = user_id
        self.institute_id = institute_id
        self._catalog = permission_catalog
        self._snapshot: Optional[ActorAccess] = None

    @property
    def snapshot(self) -> Optional[ActorAccess]:
        return self._snapshot

    @property
    def permissions(self) -> frozenset[str]:
        return self._snapshot.permission_keys if self._snapshot else frozenset()

    @property
    def role(self) -> Optional[RoleRef]:
        return self._snapshot.role if self._snapshot else None

    @property
    def full_access(self) -> bool:
        return bool(self._snapshot and self._snapshot.full_access)

    async def refresh(self) -> Optional[ActorAccess]:
        """Re-resolve access. An actor without a role ends up with an empty snapshot."""
        self._snapshot = None
        async with self._session_factory() as session:
            try:
                self._snapshot = await resolve_actor_access(
                    session, self.user_id, self.institute_id, self._catalog
                )
            except (NoAssignment, NotFound):
                log.debug("No access for %s in %s", self.user_id, self.institute_id)
        return self._snapshot

    def has_permission(self, required: PermissionQuery) -> bool:
        if self._snapshot is None:
            return False
        return self._snapshot.has_permission(required)

    def has_any_permission(self, required: PermissionQuery) -> bool:
        if self._snapshot is None:
            return False
        return self._snapshot.has_any_permission(required)
