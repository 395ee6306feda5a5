"""Retention sweeper — purges audit records older than their class's window.

Three record classes, each with its own window:
- audit_logs: 365 days (RETENTION_AUDIT_LOG_DAYS)
- data_access_logs: 90 days
- system_events: 180 days

Deletes are scoped by an age predicate only, so a sweep can run while new
records are being written. Each class is purged in its own transaction;
one failing class does not block the others. Running twice is harmless.

Not time-triggered here: an external scheduler calls ``enforce_retention()``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolgate.audit.schemas import SystemEventRecord
from schoolgate.audit.writer import AuditWriter
from schoolgate.config import RetentionSettings
from schoolgate.models.audit import AuditLog, DataAccessLog, SystemEventLog
from schoolgate.models.base import utcnow
from schoolgate.models.enums import EventCategory, RecordClass, Severity

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Per-class removed counts, plus classes whose purge failed."""

    removed: dict[str, int] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())

    @property
    def ok(self) -> bool:
        return not self.failed


class RetentionSweeper:
    """Age-based purge of audit_logs, data_access_logs and system_events.

    Usage:
        sweeper = RetentionSweeper(async_session_factory, settings.retention, writer=writer)
        result = await sweeper.sweep()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: RetentionSettings,
        *,
        writer: AuditWriter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._writer = writer
        self._clock = clock

    def windows(self) -> dict[RecordClass, timedelta]:
        return {
            RecordClass.AUDIT_LOG: timedelta(days=self._config.audit_log_days),
            RecordClass.DATA_ACCESS: timedelta(days=self._config.data_access_days),
            RecordClass.SYSTEM_EVENT: timedelta(days=self._config.system_event_days),
        }

    async def sweep(self) -> SweepResult:
        now = self._clock()
        result = SweepResult()

        for record_class, window in self.windows().items():
            cutoff = now - window
            try:
                count = await self._purge(record_class, cutoff)
            except SQLAlchemyError:
                logger.exception("Retention purge failed for %s", record_class.value)
                result.failed.append(record_class.value)
                continue
            result.removed[record_class.value] = count
            if count:
                logger.info("Deleted %d %s rows (cutoff=%s)", count, record_class.value, cutoff.date())

        if result.total_removed or result.failed:
            await self._report(result, now)

        logger.info(
            "Retention sweep complete: audit=%d access=%d events=%d failed=%s",
            result.removed.get(RecordClass.AUDIT_LOG.value, 0),
            result.removed.get(RecordClass.DATA_ACCESS.value, 0),
            result.removed.get(RecordClass.SYSTEM_EVENT.value, 0),
            result.failed or "none",
        )
        return result

    async def _purge(self, record_class: RecordClass, cutoff: datetime) -> int:
        stmt = self._delete_statement(record_class, cutoff)
        async with self._session_factory() as db:
            del_result = await db.execute(stmt)
            await db.commit()
        return del_result.rowcount or 0  # type: ignore[attr-defined]

    def _delete_statement(self, record_class: RecordClass, cutoff: datetime) -> Any:
        if record_class is RecordClass.AUDIT_LOG:
            stmt = delete(AuditLog).where(AuditLog.occurred_at < cutoff)
            exempt = self._config.exempt_operation_set
            if exempt:
                stmt = stmt.where(AuditLog.operation_type.notin_(sorted(exempt)))
            return stmt
        if record_class is RecordClass.DATA_ACCESS:
            return delete(DataAccessLog).where(DataAccessLog.occurred_at < cutoff)
        return delete(SystemEventLog).where(SystemEventLog.occurred_at < cutoff)

    async def _report(self, result: SweepResult, now: datetime) -> None:
        if self._writer is None:
            return
        await self._writer.write_event(
            SystemEventRecord(
                event_type="AUDIT_CLEANUP",
                category=EventCategory.MAINTENANCE,
                severity=Severity.MEDIUM if result.failed else Severity.INFO,
                title="Audit log cleanup completed" if result.ok else "Audit log cleanup partially failed",
                description=f"Removed {result.total_removed} expired audit rows",
                details={
                    "removed": dict(result.removed),
                    "failed": list(result.failed),
                    "windows_days": {
                        RecordClass.AUDIT_LOG.value: self._config.audit_log_days,
                        RecordClass.DATA_ACCESS.value: self._config.data_access_days,
                        RecordClass.SYSTEM_EVENT.value: self._config.system_event_days,
                    },
                },
                occurred_at=now,
                internal=True,
            )
        )


async def enforce_retention() -> SweepResult:
    """Run one sweep against the configured database. Entry point for the scheduler."""
    from schoolgate.config import settings
    from schoolgate.db.engine import async_session_factory

    writer = AuditWriter(
        async_session_factory,
        retries=settings.audit.write_retries,
        backoff_seconds=settings.audit.retry_backoff_seconds,
    )
    sweeper = RetentionSweeper(async_session_factory, settings.retention, writer=writer)
    return await sweeper.sweep()
