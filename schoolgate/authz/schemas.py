"""Value types flowing through the decision engine.

Requirements are frozen dataclasses validated at construction (they are
built in code, usually at import time). Permission sets and decisions are
frozen Pydantic models: they are serialized into out-of-process caches and
into HTTP 403 bodies.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from schoolgate.authz.identifiers import PermissionKey, RoleMatch, RoleName
from schoolgate.errors import InvalidRequirementError

# ── Permission data ──────────────────────────────────────────────────


class PermissionTuple(BaseModel):
    """One row of effective permission data for a principal.

    ``module``/``action`` are None for a role that is assigned but has no
    grants; such rows still contribute the role name.
    """

    model_config = {"frozen": True}

    module: str | None
    action: str | None
    tenant_id: uuid.UUID | None = None
    role_name: str


class EffectivePermissionSet(BaseModel):
    """Everything a principal can currently do, across all schools."""

    model_config = {"frozen": True}

    principal_id: uuid.UUID
    grants: frozenset[PermissionTuple] = Field(default_factory=frozenset)
    role_names: frozenset[str] = Field(default_factory=frozenset)
    loaded_at: datetime

    @classmethod
    def from_tuples(
        cls,
        principal_id: uuid.UUID,
        rows: Iterable[PermissionTuple],
        loaded_at: datetime,
    ) -> EffectivePermissionSet:
        rows = list(rows)
        return cls(
            principal_id=principal_id,
            grants=frozenset(r for r in rows if r.module is not None and r.action is not None),
            role_names=frozenset(r.role_name for r in rows),
            loaded_at=loaded_at,
        )

    @property
    def has_assignments(self) -> bool:
        return bool(self.role_names)

    def sorted_role_names(self) -> list[str]:
        return sorted(self.role_names)


# ── Requirements ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class PermissionRequirement:
    """Require (module, action), optionally inside one school."""

    module: str
    action: str
    tenant_id: uuid.UUID | None = None
    allow_super_admin_bypass: bool = True

    def __post_init__(self) -> None:
        # Validates the identifiers; raises InvalidRequirementError
        PermissionKey(self.module, self.action)

    @classmethod
    def of(
        cls,
        key: str | PermissionKey,
        tenant_id: uuid.UUID | None = None,
        *,
        allow_super_admin_bypass: bool = True,
    ) -> PermissionRequirement:
        parsed = key if isinstance(key, PermissionKey) else PermissionKey.parse(key)
        return cls(parsed.module, parsed.action, tenant_id, allow_super_admin_bypass)

    def for_tenant(self, tenant_id: uuid.UUID | None) -> PermissionRequirement:
        """Same requirement bound to a request's school."""
        return PermissionRequirement(self.module, self.action, tenant_id, self.allow_super_admin_bypass)

    def describe(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "action": self.action,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
        }


@dataclass(frozen=True)
class RoleRequirement:
    """Require any (or all) of a set of roles. An empty set means public."""

    roles: frozenset[RoleName] = field(default_factory=frozenset)
    match: RoleMatch = RoleMatch.ANY
    allow_super_admin_bypass: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.roles, (str, RoleName)):
            raise InvalidRequirementError("roles must be a collection of role names, not a single string")
        object.__setattr__(self, "roles", frozenset(RoleName.parse(r) for r in self.roles))
        try:
            object.__setattr__(self, "match", RoleMatch(self.match))
        except ValueError:
            raise InvalidRequirementError(f"Invalid role match mode: {self.match!r}") from None

    @classmethod
    def any_of(cls, *roles: RoleName | str, allow_super_admin_bypass: bool = True) -> RoleRequirement:
        return cls(frozenset(RoleName.parse(r) for r in roles), RoleMatch.ANY, allow_super_admin_bypass)

    @classmethod
    def all_of(cls, *roles: RoleName | str, allow_super_admin_bypass: bool = True) -> RoleRequirement:
        return cls(frozenset(RoleName.parse(r) for r in roles), RoleMatch.ALL, allow_super_admin_bypass)

    @property
    def is_public(self) -> bool:
        return not self.roles

    def role_values(self) -> list[str]:
        return sorted(r.value for r in self.roles)

    def describe(self) -> dict[str, Any]:
        return {"roles": self.role_values(), "match": self.match.value}


# A requirement of None is the public, no-check case.
Requirement = PermissionRequirement | RoleRequirement | None

PUBLIC = RoleRequirement()


# ── Decisions ────────────────────────────────────────────────────────


class DecisionReason(BaseModel):
    """Why a decision came out the way it did.

    ``principal_roles`` only ever holds the requesting principal's own role
    names.
    """

    model_config = {"frozen": True}

    code: str
    requirement: dict[str, Any] | None = None
    principal_roles: list[str] = Field(default_factory=list)
    granted_by: str | None = None


class Decision(BaseModel):
    """ALLOW or DENY, with a reason."""

    model_config = {"frozen": True}

    allow: bool
    reason: DecisionReason

    @property
    def denied(self) -> bool:
        return not self.allow
