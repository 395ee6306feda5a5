"""Audit record schemas — what the builder produces and the writer persists.

All records are frozen: once built, a record is never modified, merged or
deduplicated.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from schoolgate.models.enums import AccessType, EventCategory, OperationKind, Severity


def _coerce_id(value: Any) -> str | None:
    return None if value is None else str(value)


class PrincipalSnapshot(BaseModel):
    """Acting principal as it was when the operation ran."""

    model_config = {"frozen": True}

    id: uuid.UUID | None = None
    email: str | None = None
    role_name: str | None = Field(default=None, description="Role that authorized the operation")


class AuditContext(BaseModel):
    """Request-side facts about one operation, handed to the builder with before/after state."""

    model_config = {"frozen": True}

    operation: OperationKind
    table_name: str
    record_id: str | None = None
    actor: PrincipalSnapshot = Field(default_factory=PrincipalSnapshot)
    tenant_id: uuid.UUID | None = None
    request_id: str | None = None
    occurred_at: datetime | None = None
    duration_ms: int | None = None

    success: bool = True
    error_message: str | None = None

    module: str | None = None
    action: str | None = None
    description: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    # Extra field names the caller wants redacted for this operation only
    sensitive_fields: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("record_id", mode="before")
    @classmethod
    def coerce_record_id(cls, v: Any) -> str | None:
        """Record ids arrive as ints or UUIDs; they are stored as text."""
        return _coerce_id(v)


class AuditRecord(BaseModel):
    """Redacted, diffed audit trail entry (one row of audit_logs)."""

    model_config = {"frozen": True}

    operation: OperationKind
    table_name: str
    record_id: str | None = None

    actor_id: uuid.UUID | None = None
    actor_email: str | None = None
    actor_role: str | None = None
    tenant_id: uuid.UUID | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    module: str | None = None
    action: str | None = None
    description: str | None = None

    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changed_fields: list[str] = Field(default_factory=list)

    success: bool = True
    error_message: str | None = None
    duration_ms: int | None = None
    occurred_at: datetime

    redaction_version: str | None = None
    fingerprint: str = ""


class DataAccessRecord(BaseModel):
    """Read-path analogue of AuditRecord (one row of data_access_logs)."""

    model_config = {"frozen": True}

    principal_id: uuid.UUID | None = None
    tenant_id: uuid.UUID | None = None
    table_name: str
    record_id: str | None = Field(default=None, description="None for bulk reads")
    access_type: AccessType = AccessType.READ
    row_count: int = 1
    purpose: str | None = None
    filters: dict[str, Any] | None = None
    request_id: str | None = None
    occurred_at: datetime

    @field_validator("record_id", mode="before")
    @classmethod
    def coerce_record_id(cls, v: Any) -> str | None:
        """Record ids arrive as ints or UUIDs; they are stored as text."""
        return _coerce_id(v)


class SystemEventRecord(BaseModel):
    """Cross-cutting notable occurrence (one row of system_events).

    ``internal`` marks events the audit pipeline emits about itself; if one
    of those cannot be written it is only logged, never re-reported.
    """

    model_config = {"frozen": True}

    event_type: str
    category: EventCategory
    severity: Severity = Severity.INFO
    title: str
    description: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    triggered_by: uuid.UUID | None = None
    tenant_id: uuid.UUID | None = None
    request_id: str | None = None
    occurred_at: datetime
    internal: bool = False
