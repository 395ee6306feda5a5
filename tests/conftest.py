"""Shared fixtures — in-memory SQLite database and RBAC seeding helpers."""

from __future__ import annotations

import uuid
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from schoolgate.models import (
    Base,
    Permission,
    PermissionGrant,
    Principal,
    Role,
    RoleAssignment,
    Tenant,
)


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test, schema created from metadata."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class RbacFactory:
    """Inserts principals, schools, roles and assignments for store-backed tests."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _add(self, obj):
        async with self._session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def principal(self, email: str | None = None, *, is_active: bool = True) -> Principal:
        email = email or f"{uuid.uuid4().hex[:8]}@school.test"
        return await self._add(Principal(id=uuid.uuid4(), email=email, is_active=is_active))

    async def school(self, name: str, code: str | None = None) -> Tenant:
        return await self._add(Tenant(id=uuid.uuid4(), name=name, code=code or name.lower().replace(" ", "-")))

    async def role(self, name: str, *permissions: str, is_active: bool = True) -> Role:
        """Create a role granting ``module.action`` permissions (created on demand)."""
        role = Role(id=uuid.uuid4(), name=name, is_active=is_active)
        async with self._session_factory() as session:
            session.add(role)
            for key in permissions:
                module, action = key.split(".")
                permission = await self._permission(session, module, action)
                session.add(PermissionGrant(role_id=role.id, permission_id=permission.id))
            await session.commit()
        return role

    async def _permission(self, session: AsyncSession, module: str, action: str) -> Permission:
        result = await session.execute(
            select(Permission).where(Permission.module == module, Permission.action == action)
        )
        permission = result.scalar_one_or_none()
        if permission is None:
            permission = Permission(id=uuid.uuid4(), module=module, action=action)
            session.add(permission)
            await session.flush()
        return permission

    async def assign(
        self,
        principal: Principal,
        role: Role,
        school: Tenant | None = None,
        *,
        is_active: bool = True,
        expires_at: datetime | None = None,
    ) -> RoleAssignment:
        return await self._add(
            RoleAssignment(
                id=uuid.uuid4(),
                principal_id=principal.id,
                role_id=role.id,
                tenant_id=school.id if school else None,
                is_active=is_active,
                expires_at=expires_at,
            )
        )


@pytest.fixture
def rbac(session_factory):
    return RbacFactory(session_factory)
