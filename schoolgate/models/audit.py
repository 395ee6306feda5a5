"""Audit trail tables — audit_logs, data_access_logs and system_events.

All three tables are append-only. Rows are only ever removed by the
retention sweeper, by age.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from schoolgate.models.base import Base, IdMixin, JSONType, utcnow


class AuditLog(IdMixin, Base):
    """Immutable record of a write, login/logout or access decision."""

    __tablename__ = "audit_logs"

    operation_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    record_id: Mapped[str | None] = mapped_column(String(100))

    # Acting principal snapshot at the time of the operation
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    user_email: Mapped[str | None] = mapped_column(String(255))
    user_role: Mapped[str | None] = mapped_column(String(100))

    school_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    request_id: Mapped[str | None] = mapped_column(String(100), index=True)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(500))

    module: Mapped[str | None] = mapped_column(String(100))
    action: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(String(500))

    old_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    changed_fields: Mapped[list[str] | None] = mapped_column(JSONType)

    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int | None] = mapped_column(Integer)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    redaction_version: Mapped[str | None] = mapped_column(String(50))
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.operation_type} {self.table_name} request={self.request_id}>"


class DataAccessLog(IdMixin, Base):
    """Read-path analogue of AuditLog."""

    __tablename__ = "data_access_logs"

    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    school_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    accessed_table: Mapped[str] = mapped_column(String(100), nullable=False)
    accessed_record_id: Mapped[str | None] = mapped_column(String(100), comment="NULL for bulk reads")
    access_type: Mapped[str] = mapped_column(String(20), nullable=False)
    records_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    purpose: Mapped[str | None] = mapped_column(String(200))
    filters_applied: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    request_id: Mapped[str | None] = mapped_column(String(100))
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<DataAccessLog {self.access_type} {self.accessed_table}>"


class SystemEventLog(IdMixin, Base):
    """Cross-cutting notable occurrence (security alert, bulk operation, maintenance)."""

    __tablename__ = "system_events"

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_category: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    triggered_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    school_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    request_id: Mapped[str | None] = mapped_column(String(100), index=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<SystemEventLog {self.event_category}/{self.event_type} {self.title!r}>"
