"""Audit event builder — turns (context, before, after) into an AuditRecord.

Pure: no I/O. The only side input is the clock, used when the context
carries no ``occurred_at``. Two builds of the same input yield equal
records, fingerprint included.

Redaction:
- Field names are compared case-insensitively with ``_``/``-`` stripped, so
  ``Password_Hash``, ``passwordHash`` and ``password-hash`` all match.
- A name matching a configured field exactly, or containing a configured
  fragment, is redacted at any nesting depth.
- Callers may tag extra fields per operation via ``AuditContext.sensitive_fields``.
- Redaction happens after the diff, so a changed secret still shows up in
  ``changed_fields`` while neither value is stored.
"""

from __future__ import annotations

import enum
import hashlib
import json
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from schoolgate.audit.schemas import (
    AuditContext,
    AuditRecord,
    DataAccessRecord,
    SystemEventRecord,
)
from schoolgate.config import AuditSettings
from schoolgate.models.base import utcnow
from schoolgate.models.enums import AccessType, EventCategory, Severity

_MISSING = object()


def normalize_field_name(name: str) -> str:
    return "".join(ch for ch in str(name).lower() if ch not in "_- ")


def to_jsonable(value: Any) -> Any:
    """Convert ``value`` into plain JSON types, deterministically."""
    if isinstance(value, enum.Enum):
        return to_jsonable(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((to_jsonable(v) for v in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if hasattr(value, "model_dump"):
        return to_jsonable(value.model_dump())
    return str(value)


def _as_state(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    normalized = to_jsonable(value)
    if isinstance(normalized, dict):
        return normalized
    return {"value": normalized}


def diff_fields(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> list[str]:
    """Sorted names of fields whose value differs between the two states.

    A field present on one side only counts as changed.
    """
    old = before or {}
    new = after or {}
    return sorted(k for k in set(old) | set(new) if old.get(k, _MISSING) != new.get(k, _MISSING))


@dataclass(frozen=True)
class RedactionPolicy:
    """Versioned list of field names whose values never reach the audit store."""

    version: str
    fields: frozenset[str]
    fragments: frozenset[str] = frozenset()
    marker: str = "[REDACTED]"

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", frozenset(normalize_field_name(f) for f in self.fields))
        object.__setattr__(self, "fragments", frozenset(normalize_field_name(f) for f in self.fragments))

    @classmethod
    def from_settings(cls, config: AuditSettings) -> RedactionPolicy:
        return cls(
            version=config.sensitive_fields_version,
            fields=config.sensitive_field_set,
            fragments=config.sensitive_fragment_set,
            marker=config.redaction_marker,
        )

    def with_fields(self, extra: Iterable[str]) -> RedactionPolicy:
        extra = frozenset(extra)
        if not extra:
            return self
        return RedactionPolicy(self.version, self.fields | extra, self.fragments, self.marker)

    def is_sensitive(self, name: str) -> bool:
        normalized = normalize_field_name(name)
        if normalized in self.fields:
            return True
        return any(fragment in normalized for fragment in self.fragments)

    def redact(self, value: Any) -> Any:
        """Replace sensitive values anywhere inside nested dicts/lists."""
        if isinstance(value, dict):
            return {
                k: self.marker if self.is_sensitive(k) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.redact(v) for v in value]
        return value


def compute_fingerprint(record: AuditRecord) -> str:
    """SHA-256 over the canonical JSON of every field except the fingerprint itself."""
    payload = record.model_dump(mode="json", exclude={"fingerprint"})
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditEventBuilder:
    """Builds redacted audit, data-access and system-event records.

    Usage:
        builder = AuditEventBuilder(RedactionPolicy.from_settings(settings.audit))
        record = builder.build(context, before={"email": "a@x"}, after={"email": "b@x"})
    """

    def __init__(self, policy: RedactionPolicy, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> RedactionPolicy:
        return self._policy

    def build(self, context: AuditContext, before: Any = None, after: Any = None) -> AuditRecord:
        old = _as_state(before)
        new = _as_state(after)
        changed = diff_fields(old, new)

        policy = self._policy.with_fields(context.sensitive_fields)
        old = policy.redact(old) if old is not None else None
        new = policy.redact(new) if new is not None else None

        record = AuditRecord(
            operation=context.operation,
            table_name=context.table_name,
            record_id=context.record_id,
            actor_id=context.actor.id,
            actor_email=context.actor.email,
            actor_role=context.actor.role_name,
            tenant_id=context.tenant_id,
            request_id=context.request_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            module=context.module,
            action=context.action,
            description=context.description
            or f"{context.operation.value} operation on {context.table_name}",
            old_values=old,
            new_values=new,
            changed_fields=changed,
            success=context.success,
            error_message=context.error_message,
            duration_ms=context.duration_ms,
            occurred_at=context.occurred_at or self._clock(),
            redaction_version=policy.version,
        )
        return record.model_copy(update={"fingerprint": compute_fingerprint(record)})

    def build_access_record(
        self,
        table_name: str,
        *,
        principal_id: uuid.UUID | None = None,
        tenant_id: uuid.UUID | None = None,
        record_id: Any = None,
        access_type: AccessType = AccessType.READ,
        row_count: int = 1,
        purpose: str | None = None,
        filters: Mapping[str, Any] | None = None,
        request_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> DataAccessRecord:
        """Read-path record; filter values are redacted like audit values."""
        state = _as_state(filters)
        return DataAccessRecord(
            principal_id=principal_id,
            tenant_id=tenant_id,
            table_name=table_name,
            record_id=record_id,
            access_type=access_type,
            row_count=row_count,
            purpose=purpose,
            filters=self._policy.redact(state) if state is not None else None,
            request_id=request_id,
            occurred_at=occurred_at or self._clock(),
        )

    def build_system_event(
        self,
        event_type: str,
        category: EventCategory,
        title: str,
        *,
        severity: Severity = Severity.INFO,
        description: str | None = None,
        details: Mapping[str, Any] | None = None,
        triggered_by: uuid.UUID | None = None,
        tenant_id: uuid.UUID | None = None,
        request_id: str | None = None,
        occurred_at: datetime | None = None,
        internal: bool = False,
    ) -> SystemEventRecord:
        state = _as_state(details) or {}
        return SystemEventRecord(
            event_type=event_type,
            category=category,
            severity=severity,
            title=title,
            description=description,
            details=self._policy.redact(state),
            triggered_by=triggered_by,
            tenant_id=tenant_id,
            request_id=request_id,
            occurred_at=occurred_at or self._clock(),
            internal=internal,
        )


def critical_table_event(record: AuditRecord) -> SystemEventRecord:
    """SECURITY alert written alongside every write to a critical table."""
    return SystemEventRecord(
        event_type="SECURITY_ALERT",
        category=EventCategory.SECURITY,
        severity=Severity.MEDIUM,
        title=f"Critical table operation: {record.table_name}",
        description=f"{record.operation.value} operation performed on critical table {record.table_name}",
        details={
            "table_name": record.table_name,
            "operation": record.operation.value,
            "record_id": record.record_id,
            "success": record.success,
            "fingerprint": record.fingerprint,
        },
        triggered_by=record.actor_id,
        tenant_id=record.tenant_id,
        request_id=record.request_id,
        occurred_at=record.occurred_at,
    )
