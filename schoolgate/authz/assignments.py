"""Role assignment workflow — grant, revoke and expire user roles.

Assignments are never deleted: revoking soft-disables the row, and
re-granting a disabled assignment reactivates it. Every mutation commits,
then invalidates the principal's cached permissions, then queues a
user_roles audit record. Invalidation happens before returning so a
revoke is effective for the very next check on this process.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolgate.audit.pipeline import AuditPipeline
from schoolgate.audit.schemas import AuditContext, PrincipalSnapshot
from schoolgate.authz.service import AccessControl
from schoolgate.models.base import utcnow
from schoolgate.models.enums import OperationKind
from schoolgate.models.rbac import RoleAssignment

logger = logging.getLogger(__name__)

_TABLE = "user_roles"


def _snapshot(assignment: RoleAssignment) -> dict[str, Any]:
    return {
        "user_id": assignment.principal_id,
        "role_id": assignment.role_id,
        "school_id": assignment.tenant_id,
        "assigned_by": assignment.assigned_by,
        "assigned_at": assignment.assigned_at,
        "expires_at": assignment.expires_at,
        "is_active": assignment.is_active,
    }


class RoleAssignmentService:
    """Administrative role changes — AsyncSession passed per call."""

    def __init__(
        self,
        access_control: AccessControl,
        pipeline: AuditPipeline | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._access_control = access_control
        self._pipeline = pipeline
        self._clock = clock

    async def find_assignment(
        self,
        db: AsyncSession,
        principal_id: uuid.UUID,
        role_id: uuid.UUID,
        tenant_id: uuid.UUID | None = None,
    ) -> RoleAssignment | None:
        tenant_clause = (
            RoleAssignment.tenant_id.is_(None) if tenant_id is None else RoleAssignment.tenant_id == tenant_id
        )
        result = await db.execute(
            select(RoleAssignment).where(
                RoleAssignment.principal_id == principal_id,
                RoleAssignment.role_id == role_id,
                tenant_clause,
            )
        )
        return result.scalar_one_or_none()

    async def assign_role(
        self,
        db: AsyncSession,
        principal_id: uuid.UUID,
        role_id: uuid.UUID,
        *,
        tenant_id: uuid.UUID | None = None,
        assigned_by: uuid.UUID | None = None,
        expires_at: datetime | None = None,
        request_id: str | None = None,
    ) -> RoleAssignment:
        """Grant a role, reactivating a previously revoked assignment if one exists."""
        now = self._clock()
        assignment = await self.find_assignment(db, principal_id, role_id, tenant_id)

        if assignment is None:
            before = None
            operation = OperationKind.CREATE
            assignment = RoleAssignment(
                principal_id=principal_id,
                role_id=role_id,
                tenant_id=tenant_id,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=expires_at,
                is_active=True,
            )
            db.add(assignment)
        else:
            before = _snapshot(assignment)
            operation = OperationKind.UPDATE
            assignment.is_active = True
            assignment.assigned_by = assigned_by
            assignment.assigned_at = now
            assignment.expires_at = expires_at

        await db.commit()
        await self._after_change(assignment, operation, before, assigned_by, "assign_role", request_id)
        logger.info(
            "Role assigned: user=%s role=%s school=%s by=%s",
            principal_id,
            role_id,
            tenant_id,
            assigned_by,
        )
        return assignment

    async def revoke_role(
        self,
        db: AsyncSession,
        principal_id: uuid.UUID,
        role_id: uuid.UUID,
        *,
        tenant_id: uuid.UUID | None = None,
        revoked_by: uuid.UUID | None = None,
        request_id: str | None = None,
    ) -> bool:
        """Soft-disable an assignment. Returns False if there was nothing active to revoke."""
        assignment = await self.find_assignment(db, principal_id, role_id, tenant_id)
        if assignment is None or not assignment.is_active:
            return False

        before = _snapshot(assignment)
        assignment.is_active = False
        await db.commit()
        await self._after_change(assignment, OperationKind.UPDATE, before, revoked_by, "revoke_role", request_id)
        logger.info("Role revoked: user=%s role=%s school=%s by=%s", principal_id, role_id, tenant_id, revoked_by)
        return True

    async def expire_role(
        self,
        db: AsyncSession,
        principal_id: uuid.UUID,
        role_id: uuid.UUID,
        at: datetime,
        *,
        tenant_id: uuid.UUID | None = None,
        actor_id: uuid.UUID | None = None,
        request_id: str | None = None,
    ) -> bool:
        """Set an administrative expiry. Returns False if no assignment exists."""
        assignment = await self.find_assignment(db, principal_id, role_id, tenant_id)
        if assignment is None:
            return False

        before = _snapshot(assignment)
        assignment.expires_at = at
        await db.commit()
        await self._after_change(assignment, OperationKind.UPDATE, before, actor_id, "expire_role", request_id)
        logger.info("Role expiry set: user=%s role=%s school=%s at=%s", principal_id, role_id, tenant_id, at)
        return True

    async def _after_change(
        self,
        assignment: RoleAssignment,
        operation: OperationKind,
        before: dict[str, Any] | None,
        actor_id: uuid.UUID | None,
        action: str,
        request_id: str | None,
    ) -> None:
        await self._access_control.invalidate_permissions(assignment.principal_id)

        if self._pipeline is None:
            return
        context = AuditContext(
            operation=operation,
            table_name=_TABLE,
            record_id=assignment.id,
            actor=PrincipalSnapshot(id=actor_id),
            tenant_id=assignment.tenant_id,
            request_id=request_id,
            occurred_at=self._clock(),
            module="rbac",
            action=action,
        )
        await self._pipeline.record_operation(context, before=before, after=_snapshot(assignment))
