"""Principal and Tenant read models.

Both tables are owned by the identity and school-administration subsystems;
this package only reads the columns it needs to resolve permissions.
"""

from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from schoolgate.models.base import Base, TimestampMixin


class Principal(TimestampMixin, Base):
    """An authenticated actor (user account)."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Principal {self.email} active={self.is_active}>"


class Tenant(TimestampMixin, Base):
    """A school — the scoping boundary for role assignments and audit records."""

    __tablename__ = "schools"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Tenant {self.code}>"
