"""Role, Permission, PermissionGrant and RoleAssignment models.

Roles and permissions are reference data. Role assignments are never hard
deleted: revocation flips ``is_active`` so the history stays auditable.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schoolgate.models.base import Base, IdMixin, TimestampMixin, utcnow


class Role(TimestampMixin, Base):
    """A named bundle of permissions (Teacher, Accountant, ...)."""

    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    priority: Mapped[int | None] = mapped_column(Integer, comment="Higher wins when displaying a primary role")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    grants: Mapped[list[PermissionGrant]] = relationship(back_populates="role")

    def __repr__(self) -> str:
        return f"<Role {self.name}>"


class Permission(TimestampMixin, Base):
    """A (module, action) pair such as attendance.write."""

    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("module", "action", name="uq_permissions_module_action"),)

    module: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))

    def __repr__(self) -> str:
        return f"<Permission {self.module}.{self.action}>"


class PermissionGrant(IdMixin, Base):
    """Junction between Role and Permission."""

    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permissions"),)

    role_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("roles.id"), nullable=False, index=True)
    permission_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("permissions.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    role: Mapped[Role] = relationship(back_populates="grants")
    permission: Mapped[Permission] = relationship()


class RoleAssignment(TimestampMixin, Base):
    """Binds a Principal to a Role, optionally scoped to one school.

    Effective iff ``is_active`` and (``expires_at`` is NULL or in the future).
    """

    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "school_id", name="uq_user_roles_user_role_school"),
    )

    principal_id: Mapped[uuid.UUID] = mapped_column(
        "user_id", Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("roles.id"), nullable=False)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        "school_id", Uuid, ForeignKey("schools.id"), comment="NULL = global assignment"
    )
    assigned_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role: Mapped[Role] = relationship()

    def __repr__(self) -> str:
        return f"<RoleAssignment user={self.principal_id} role={self.role_id} school={self.tenant_id}>"
