"""Async audit pipeline — non-blocking hand-off from request path to writer.

Records are built on the caller's task (so redaction and the diff reflect
the state at call time) and placed on a bounded queue. A single background
worker drains the queue into the AuditWriter. Order is preserved per
process; ``occurred_at`` is taken when the record is built, not when it is
written.

Usage:
    pipeline = AuditPipeline(writer, builder)
    await pipeline.start()
    await pipeline.record_operation(context, before=old, after=new)
    await pipeline.execute_with_audit(context, lambda: save_grade(db, grade))
    ...
    await pipeline.stop()  # drains pending records, then stops the worker

If the queue is full the record is dropped with a warning instead of
blocking the request.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from schoolgate.audit.builder import AuditEventBuilder
from schoolgate.audit.schemas import (
    AuditContext,
    AuditRecord,
    DataAccessRecord,
    PrincipalSnapshot,
    SystemEventRecord,
)
from schoolgate.audit.writer import AuditWriter
from schoolgate.models.enums import EventCategory, OperationKind, Severity

logger = logging.getLogger(__name__)

QueueItem = AuditRecord | DataAccessRecord | SystemEventRecord
T = TypeVar("T")


class AuditPipeline:
    """Queue plus background worker in front of an AuditWriter."""

    def __init__(
        self,
        writer: AuditWriter,
        builder: AuditEventBuilder,
        *,
        max_size: int = 10_000,
        drain_timeout: float = 10.0,
    ) -> None:
        self._writer = writer
        self._builder = builder
        self._max_size = max_size
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[QueueItem] | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self.dropped = 0

    @property
    def builder(self) -> AuditEventBuilder:
        return self._builder

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._ensure_worker()

    async def stop(self) -> None:
        """Drain pending records (bounded by ``drain_timeout``), then stop the worker."""
        if self._queue is not None and self._worker_task is not None and not self._worker_task.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
            except TimeoutError:
                logger.warning("Audit pipeline stopped with %d record(s) unwritten", self._queue.qsize())

        if self._worker_task is not None:
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None
        self._queue = None
        logger.info("Audit pipeline stopped")

    # ── Recording API ────────────────────────────────────────────────

    async def record_operation(
        self,
        context: AuditContext,
        before: Any = None,
        after: Any = None,
    ) -> AuditRecord:
        record = self._builder.build(context, before, after)
        self._enqueue(record)
        return record

    async def execute_with_audit(
        self,
        context: AuditContext,
        operation: Callable[[], Awaitable[T]],
        *,
        before: Any = None,
        capture_result: bool = False,
    ) -> T:
        """Run ``operation`` and queue one audit record with its outcome and duration.

        ``success``, ``error_message`` and ``duration_ms`` on the record come
        from the run, not from ``context``. The operation's exception
        propagates unchanged; a failure to record the entry is logged and
        never replaces the operation's result or error. With
        ``capture_result`` the returned value is diffed as the after state.
        """
        started = time.perf_counter()
        result: T | None = None
        error: BaseException | None = None
        try:
            result = await operation()
            return result
        except BaseException as exc:
            error = exc
            raise
        finally:
            outcome = context.model_copy(
                update={
                    "success": error is None,
                    "error_message": (str(error) or type(error).__name__) if error is not None else None,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                }
            )
            try:
                await self.record_operation(outcome, before=before, after=result if capture_result else None)
            except Exception:
                logger.exception(
                    "Failed to record audit entry for %s on %s", context.operation.value, context.table_name
                )

    async def record_access(self, record: DataAccessRecord) -> DataAccessRecord:
        """Queue a read-path record built with ``builder.build_access_record``."""
        self._enqueue(record)
        return record

    async def record_event(self, record: SystemEventRecord) -> SystemEventRecord:
        self._enqueue(record)
        return record

    async def record_auth_event(
        self,
        actor: PrincipalSnapshot,
        operation: OperationKind,
        *,
        success: bool = True,
        error_message: str | None = None,
        request_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditRecord:
        """LOGIN/LOGOUT audit entry against the users table."""
        if operation not in (OperationKind.LOGIN, OperationKind.LOGOUT):
            msg = f"Not an auth operation: {operation.value}"
            raise ValueError(msg)
        context = AuditContext(
            operation=operation,
            table_name="users",
            record_id=actor.id,
            actor=actor,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            error_message=error_message,
            module="auth",
            action=operation.value.lower(),
            description=f"User {operation.value.lower()}{'' if success else ' failed'}",
        )
        return await self.record_operation(context)

    async def record_bulk_operation(
        self,
        context: AuditContext,
        record_ids: Iterable[Any],
    ) -> SystemEventRecord:
        """One ADMIN event summarizing a bulk write instead of a row per record."""
        ids = [str(r) for r in record_ids]
        event = self._builder.build_system_event(
            "BULK_OPERATION",
            EventCategory.ADMIN,
            f"Bulk {context.operation.value} on {context.table_name}",
            severity=Severity.MEDIUM,
            description=context.description
            or f"Bulk {context.operation.value} affecting {len(ids)} records in {context.table_name}",
            details={
                "table_name": context.table_name,
                "operation": context.operation.value,
                "record_count": len(ids),
                "record_ids": ids,
            },
            triggered_by=context.actor.id,
            tenant_id=context.tenant_id,
            request_id=context.request_id,
            occurred_at=context.occurred_at,
        )
        return await self.record_event(event)

    async def record_decision_denied(
        self,
        principal: PrincipalSnapshot,
        requirement: dict[str, Any] | None,
        reason_code: str,
        *,
        tenant_id: uuid.UUID | None = None,
        request_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        path: str | None = None,
    ) -> AuditRecord:
        """ACCESS audit entry for a denied authorization decision."""
        context = AuditContext(
            operation=OperationKind.ACCESS,
            table_name="authorization",
            actor=principal,
            tenant_id=tenant_id,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message=reason_code,
            module="authz",
            action="deny",
            description=f"Access denied to {path}" if path else "Access denied",
        )
        return await self.record_operation(context, after={"requirement": requirement, "reason": reason_code})

    # ── Internals ────────────────────────────────────────────────────

    def _enqueue(self, item: QueueItem) -> None:
        queue = self._ensure_worker()
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Audit queue full, dropped %s (dropped so far: %d)", type(item).__name__, self.dropped)

    def _ensure_worker(self) -> asyncio.Queue[QueueItem]:
        """Create the queue and start the background worker if not already running."""
        queue = self._queue
        if queue is None:
            queue = self._queue = asyncio.Queue(maxsize=self._max_size)
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())
            logger.info("Audit worker started")
        return queue

    async def _worker(self) -> None:
        """Drain the queue into the writer; the writer never raises."""
        queue = self._queue
        if queue is None:
            return

        while True:
            try:
                item = await queue.get()
            except asyncio.CancelledError:
                logger.info("Audit worker shutting down")
                break
            try:
                await self._dispatch(item)
            except Exception:
                logger.exception("Error in audit worker")
            finally:
                queue.task_done()

    async def _dispatch(self, item: QueueItem) -> None:
        if isinstance(item, AuditRecord):
            await self._writer.write(item)
        elif isinstance(item, DataAccessRecord):
            await self._writer.write_access(item)
        else:
            await self._writer.write_event(item)
