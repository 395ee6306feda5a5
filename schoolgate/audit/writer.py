"""Audit writer — persists audit, data-access and system-event records.

Best-effort by contract: every public method returns True/False and never
raises, so a failing audit store cannot fail the operation being audited.
Transient store errors are retried a bounded number of times; constraint
and other non-transient errors are not. When a record is finally given up
on, one ``AUDIT_EVENT_LOST`` system event is attempted. That event is
marked internal, so its own failure is only logged.

Writes to critical tables add a SECURITY_ALERT system event in the same
transaction as the audit row: both land or neither does.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.exc import (
    DBAPIError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolgate.audit.builder import critical_table_event
from schoolgate.audit.schemas import AuditRecord, DataAccessRecord, SystemEventRecord
from schoolgate.errors import AuditWriteFailedError
from schoolgate.models.audit import AuditLog, DataAccessLog, SystemEventLog
from schoolgate.models.base import Base, utcnow
from schoolgate.models.enums import EventCategory, Severity

logger = logging.getLogger(__name__)

LOST_EVENT_TYPE = "AUDIT_EVENT_LOST"


def is_transient(exc: BaseException) -> bool:
    """Connection-level failures worth one more attempt."""
    if isinstance(exc, (TimeoutError, OSError, PoolTimeoutError, OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


# ── Record → row mapping ─────────────────────────────────────────────


def audit_row(record: AuditRecord) -> AuditLog:
    return AuditLog(
        operation_type=record.operation.value,
        table_name=record.table_name,
        record_id=record.record_id,
        user_id=record.actor_id,
        user_email=record.actor_email,
        user_role=record.actor_role,
        school_id=record.tenant_id,
        request_id=record.request_id,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        module=record.module,
        action=record.action,
        description=record.description,
        old_values=record.old_values,
        new_values=record.new_values,
        changed_fields=list(record.changed_fields),
        success=record.success,
        error_message=record.error_message,
        duration_ms=record.duration_ms,
        fingerprint=record.fingerprint,
        redaction_version=record.redaction_version,
        occurred_at=record.occurred_at,
    )


def access_row(record: DataAccessRecord) -> DataAccessLog:
    return DataAccessLog(
        user_id=record.principal_id,
        school_id=record.tenant_id,
        accessed_table=record.table_name,
        accessed_record_id=record.record_id,
        access_type=record.access_type.value,
        records_count=record.row_count,
        purpose=record.purpose,
        filters_applied=record.filters,
        request_id=record.request_id,
        occurred_at=record.occurred_at,
    )


def event_row(record: SystemEventRecord) -> SystemEventLog:
    return SystemEventLog(
        event_type=record.event_type,
        event_category=record.category.value,
        severity=record.severity.value,
        title=record.title,
        description=record.description,
        details=record.model_dump(mode="json")["details"],
        triggered_by=record.triggered_by,
        school_id=record.tenant_id,
        request_id=record.request_id,
        occurred_at=record.occurred_at,
    )


# ── Writer ───────────────────────────────────────────────────────────


class AuditWriter:
    """Persists records through a session factory.

    Usage:
        writer = AuditWriter(async_session_factory, critical_tables=settings.audit.critical_table_set)
        ok = await writer.write(record)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        critical_tables: frozenset[str] = frozenset(),
        retries: int = 1,
        backoff_seconds: float = 0.2,
    ) -> None:
        self._session_factory = session_factory
        self._critical_tables = frozenset(t.lower() for t in critical_tables)
        self._retries = max(0, retries)
        self._backoff = backoff_seconds

    def is_critical(self, table_name: str) -> bool:
        return table_name.lower() in self._critical_tables

    async def write(self, record: AuditRecord) -> bool:
        """Persist one audit record (plus its SECURITY alert for critical tables)."""

        def rows() -> list[Base]:
            built: list[Base] = [audit_row(record)]
            if self.is_critical(record.table_name):
                built.append(event_row(critical_table_event(record)))
            return built

        label = f"audit {record.operation.value} {record.table_name}"
        if await self._try_persist(rows, label):
            return True
        await self._report_lost("audit_log", label, record.request_id, record.fingerprint)
        return False

    async def write_access(self, record: DataAccessRecord) -> bool:
        label = f"data access {record.access_type.value} {record.table_name}"
        if await self._try_persist(lambda: [access_row(record)], label):
            return True
        await self._report_lost("data_access_log", label, record.request_id, None)
        return False

    async def write_event(self, record: SystemEventRecord) -> bool:
        label = f"system event {record.event_type}"
        if await self._try_persist(lambda: [event_row(record)], label):
            return True
        if not record.internal:
            await self._report_lost("system_event", label, record.request_id, None)
        return False

    async def _try_persist(self, rows: Callable[[], list[Base]], label: str) -> bool:
        try:
            await self._persist(rows)
        except AuditWriteFailedError as exc:
            logger.error("Audit write failed (%s): %s", label, exc.__cause__ or exc)
            return False
        except Exception:
            logger.exception("Unexpected error writing %s", label)
            return False
        return True

    async def _persist(self, rows: Callable[[], list[Base]]) -> None:
        """Insert freshly built rows in one transaction, retrying transient failures."""
        attempts = self._retries + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._session_factory() as db:
                    db.add_all(rows())
                    await db.commit()
                return
            except (SQLAlchemyError, OSError, TimeoutError) as exc:
                if not is_transient(exc) or attempt == attempts:
                    raise AuditWriteFailedError(f"gave up after {attempt} attempt(s)") from exc
                logger.warning("Transient audit store error (attempt %d/%d), retrying", attempt, attempts)
                await asyncio.sleep(self._backoff * attempt)

    async def _report_lost(
        self,
        kind: str,
        label: str,
        request_id: str | None,
        fingerprint: str | None,
    ) -> None:
        lost = SystemEventRecord(
            event_type=LOST_EVENT_TYPE,
            category=EventCategory.SECURITY,
            severity=Severity.HIGH,
            title=f"Audit record lost: {kind}",
            description=f"Could not persist {label}",
            details={"record_kind": kind, "fingerprint": fingerprint},
            request_id=request_id,
            occurred_at=utcnow(),
            internal=True,
        )
        if not await self._try_persist(lambda: [event_row(lost)], f"system event {LOST_EVENT_TYPE}"):
            logger.critical("Audit record lost and could not be reported: %s request=%s", label, request_id)
