"""Permission store adapter — the only place permission data enters the engine.

Read-only queries against user_roles → roles → role_permissions →
permissions. Only effective assignments are returned: active assignment,
active role, active principal, and no expiry or an expiry in the future.
Unknown principals simply yield no rows; store failures (connection loss,
driver errors, query timeout) raise StoreUnavailableError so a failed read
is never mistaken for "has no permissions".
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolgate.authz.schemas import PermissionTuple
from schoolgate.errors import StoreUnavailableError
from schoolgate.models.base import utcnow
from schoolgate.models.principal import Principal, Tenant
from schoolgate.models.rbac import Permission, PermissionGrant, Role, RoleAssignment

logger = logging.getLogger(__name__)

_SYSTEM_TENANT_NAME = "System"


@dataclass(frozen=True)
class TenantContext:
    """A school (or the global "System" scope) a principal can act in, and as which role."""

    tenant_id: uuid.UUID | None
    tenant_name: str
    role_name: str


class PermissionStore:
    """Loads effective permission rows for a principal."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        query_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._query_timeout = query_timeout
        self._clock = clock

    async def load_permissions(self, principal_id: uuid.UUID) -> list[PermissionTuple]:
        """Return (module, action, tenant, role) rows for every effective assignment.

        Roles without grants come back once with module/action set to None.
        """
        now = self._clock()
        stmt = (
            select(Permission.module, Permission.action, RoleAssignment.tenant_id, Role.name)
            .select_from(RoleAssignment)
            .join(Role, Role.id == RoleAssignment.role_id)
            .join(Principal, Principal.id == RoleAssignment.principal_id)
            .outerjoin(PermissionGrant, PermissionGrant.role_id == Role.id)
            .outerjoin(Permission, Permission.id == PermissionGrant.permission_id)
            .where(
                RoleAssignment.principal_id == principal_id,
                *self._effective_predicates(now),
            )
            .distinct()
        )
        rows = await self._fetch(stmt, principal_id)
        return [
            PermissionTuple(module=module, action=action, tenant_id=tenant_id, role_name=role_name)
            for module, action, tenant_id, role_name in rows
        ]

    async def list_tenant_contexts(self, principal_id: uuid.UUID) -> list[TenantContext]:
        """Schools the principal currently holds a role in (None = global)."""
        now = self._clock()
        stmt = (
            select(RoleAssignment.tenant_id, Tenant.name, Role.name)
            .select_from(RoleAssignment)
            .join(Role, Role.id == RoleAssignment.role_id)
            .join(Principal, Principal.id == RoleAssignment.principal_id)
            .outerjoin(Tenant, Tenant.id == RoleAssignment.tenant_id)
            .where(
                RoleAssignment.principal_id == principal_id,
                *self._effective_predicates(now),
            )
            .distinct()
        )
        rows = await self._fetch(stmt, principal_id)
        contexts = [
            TenantContext(
                tenant_id=tenant_id,
                tenant_name=tenant_name or _SYSTEM_TENANT_NAME,
                role_name=role_name,
            )
            for tenant_id, tenant_name, role_name in rows
        ]
        return sorted(contexts, key=lambda c: (c.tenant_name, c.role_name))

    @staticmethod
    def _effective_predicates(now: datetime) -> list[Any]:
        return [
            RoleAssignment.is_active.is_(True),
            or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now),
            Role.is_active.is_(True),
            Principal.is_active.is_(True),
        ]

    async def _fetch(self, stmt: Any, principal_id: uuid.UUID) -> list[Any]:
        try:
            return await asyncio.wait_for(self._execute(stmt), timeout=self._query_timeout)
        except TimeoutError as exc:
            logger.warning("Permission query timed out for principal %s", principal_id)
            raise StoreUnavailableError("permission store query timed out") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Permission store unavailable for principal %s: %s", principal_id, type(exc).__name__)
            raise StoreUnavailableError("permission store unavailable") from exc

    async def _execute(self, stmt: Any) -> list[Any]:
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.all())
