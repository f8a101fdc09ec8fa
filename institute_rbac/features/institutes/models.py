"""
Institute model.

An institute is the organisational scope of the RBAC engine: custom role keys
are unique per institute and an actor holds at most one role per institute.
Signup and profile management live outside this service; only the fields the
engine reads are mapped here.
"""
from sqlalchemy import String, ForeignKey, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from institute_rbac.core.database.base import Base, TimestampMixin, generate_ulid


class Institute(Base, TimestampMixin):
    __tablename__ = "institutes"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Owner-admin of the institute; holds full access inside it
    admin_user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Institute(id={self.id}, name={self.name!r})>"
