"""
Permission, Role and RoleAssignment models for institute-scoped RBAC.

This module implements the persisted half of the authorization engine:
- Catalog permissions mirrored into a table so roles can reference them
- Roles owning a set of permissions, scoped to an institute or platform-global
- One role assignment per (user, scope)
- An audit trail of role and assignment mutations

Roles and assignments carry a ``version`` column used by SQLAlchemy as the
optimistic-concurrency counter: every UPDATE/DELETE is guarded by the version
read earlier in the transaction.
"""
from typing import Any, Dict, Optional
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, Boolean, Integer, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from institute_rbac.core.database.base import Base, TimestampMixin, generate_ulid


# Scope key of platform-global roles and assignments. Unique constraints treat
# NULLs as distinct, so scopes are keyed on this non-null column instead.
GLOBAL_SCOPE = "*"


def scope_key_for(institute_id: Optional[str]) -> str:
    return institute_id or GLOBAL_SCOPE


# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="RESTRICT"), primary_key=True),
)


class Permission(Base, TimestampMixin):
    """
    A catalog permission, e.g. key="roles.manage", module="roles".

    Rows are written by the catalog sync only.
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, key={self.key!r}, module={self.module})>"


class Role(Base, TimestampMixin):
    """
    Role model grouping permission keys.

    Roles are institute-specific (``institute_id`` set) or platform-global.
    System roles ship with the platform: their key, permissions and active
    flag are immutable and they cannot be deleted.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("scope_key", "key", name="uq_roles_scope_key_key"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Null = platform-global role
    institute_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("institutes.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    scope_key: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        order_by="Permission.key",
        lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def permission_keys(self) -> frozenset[str]:
        return frozenset(permission.key for permission in self.permissions)

    @property
    def is_global(self) -> bool:
        return self.institute_id is None

    def is_visible_in(self, institute_id: Optional[str]) -> bool:
        """Institute scopes see their own roles plus platform-global system roles."""
        if institute_id is None:
            return self.is_global
        return self.institute_id == institute_id or (self.is_global and self.is_system)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, key={self.key!r}, institute_id={self.institute_id}, v={self.version})>"


class RoleAssignment(Base, TimestampMixin):
    """
    Binds a user to exactly one role within an institute (or the platform scope).
    """
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_role_assignments_user_scope"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # RESTRICT: a role cannot be deleted while assigned
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    institute_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("institutes.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    scope_key: Mapped[str] = mapped_column(String(26), nullable=False)
    assigned_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<RoleAssignment(user_id={self.user_id}, role_id={self.role_id}, scope={self.scope_key})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking role and assignment mutations.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Context
    institute_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("institutes.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
