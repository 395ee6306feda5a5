"""Read-side helpers over the audit tables for admin dashboards.

Every audit listing is tenant-scoped: a caller only ever sees rows of the
school it asked for.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolgate.models.audit import AuditLog, SystemEventLog
from schoolgate.models.enums import EventCategory, OperationKind

MAX_PAGE_SIZE = 500


async def search_audit_logs(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    principal_id: uuid.UUID | None = None,
    operation: OperationKind | None = None,
    table_name: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> Sequence[AuditLog]:
    """Audit rows for one school, newest first."""
    stmt = select(AuditLog).where(AuditLog.school_id == tenant_id)
    if principal_id is not None:
        stmt = stmt.where(AuditLog.user_id == principal_id)
    if operation is not None:
        stmt = stmt.where(AuditLog.operation_type == operation.value)
    if table_name is not None:
        stmt = stmt.where(AuditLog.table_name == table_name)
    if since is not None:
        stmt = stmt.where(AuditLog.occurred_at >= since)
    if until is not None:
        stmt = stmt.where(AuditLog.occurred_at < until)

    limit = max(1, min(limit, MAX_PAGE_SIZE))
    stmt = stmt.order_by(AuditLog.occurred_at.desc()).limit(limit).offset(max(0, offset))
    result = await db.execute(stmt)
    return result.scalars().all()


async def recent_security_events(db: AsyncSession, limit: int = 20) -> Sequence[SystemEventLog]:
    stmt = (
        select(SystemEventLog)
        .where(SystemEventLog.event_category == EventCategory.SECURITY.value)
        .order_by(SystemEventLog.occurred_at.desc())
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
    )
    result = await db.execute(stmt)
    return result.scalars().all()
