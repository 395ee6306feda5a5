"""Access decision evaluator — pure functions over a resolved permission set.

No I/O, no caching, no clock. The evaluator trusts the set it is given:
expired or disabled role assignments are filtered out by the store
adapter before a set is ever built.

Decision order:
1. No requirement (or an empty role set) → ALLOW, without looking at the set.
2. Principal has no effective role assignments → DENY.
3. Super-admin bypass (unless the requirement disables it) → ALLOW.
4. Permission or role check proper.
"""

from __future__ import annotations

import uuid

from schoolgate.authz.identifiers import RoleMatch, RoleName
from schoolgate.authz.schemas import (
    Decision,
    DecisionReason,
    EffectivePermissionSet,
    PermissionRequirement,
    PermissionTuple,
    Requirement,
    RoleRequirement,
)
from schoolgate.errors import InvalidRequirementError

# Reason codes
REASON_PUBLIC = "public"
REASON_SUPER_ADMIN_BYPASS = "super_admin_bypass"
REASON_PERMISSION_GRANTED = "permission_granted"
REASON_ROLE_MATCHED = "role_matched"
REASON_NO_ROLE_ASSIGNMENTS = "no_role_assignments"
REASON_MISSING_PERMISSION = "missing_permission"
REASON_MISSING_ROLE = "missing_role"


def decide(
    permission_set: EffectivePermissionSet,
    required: Requirement,
    *,
    super_admin_role: str = RoleName.SUPER_ADMIN.value,
) -> Decision:
    """Return ALLOW/DENY for ``required`` against ``permission_set``."""
    if required is None or (isinstance(required, RoleRequirement) and required.is_public):
        return _allow(REASON_PUBLIC, None, [])

    if not isinstance(required, (PermissionRequirement, RoleRequirement)):
        raise InvalidRequirementError(f"Unsupported requirement type: {type(required).__name__}")

    roles = permission_set.sorted_role_names()
    requirement = required.describe()

    if not permission_set.has_assignments:
        return _deny(REASON_NO_ROLE_ASSIGNMENTS, requirement, roles)

    if required.allow_super_admin_bypass and super_admin_role in permission_set.role_names:
        return _allow(REASON_SUPER_ADMIN_BYPASS, requirement, roles, granted_by=super_admin_role)

    if isinstance(required, PermissionRequirement):
        grant = matching_grant(permission_set, required.module, required.action, required.tenant_id)
        if grant is None:
            return _deny(REASON_MISSING_PERMISSION, requirement, roles)
        return _allow(REASON_PERMISSION_GRANTED, requirement, roles, granted_by=grant.role_name)

    matched = _matched_roles(permission_set, required)
    if matched is None:
        return _deny(REASON_MISSING_ROLE, requirement, roles)
    return _allow(REASON_ROLE_MATCHED, requirement, roles, granted_by=matched)


def matching_grant(
    permission_set: EffectivePermissionSet,
    module: str,
    action: str,
    tenant_id: uuid.UUID | None = None,
) -> PermissionTuple | None:
    """Find the grant satisfying (module, action[, tenant]).

    A global grant (tenant_id None) satisfies every school; a scoped grant
    only its own school; a request without a school accepts any grant.
    Scoped grants are preferred over global ones, then role name order,
    so the result is deterministic.
    """
    candidates = [
        g
        for g in permission_set.grants
        if g.module == module
        and g.action == action
        and (tenant_id is None or g.tenant_id is None or g.tenant_id == tenant_id)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda g: (g.tenant_id is None, g.role_name))


def _matched_roles(permission_set: EffectivePermissionSet, required: RoleRequirement) -> str | None:
    """Return the role that satisfied the requirement, or None."""
    wanted = required.role_values()
    held = [name for name in wanted if name in permission_set.role_names]
    if required.match is RoleMatch.ALL:
        return held[0] if len(held) == len(wanted) else None
    return held[0] if held else None


def _allow(
    code: str,
    requirement: dict | None,
    roles: list[str],
    *,
    granted_by: str | None = None,
) -> Decision:
    return Decision(
        allow=True,
        reason=DecisionReason(code=code, requirement=requirement, principal_roles=roles, granted_by=granted_by),
    )


def _deny(code: str, requirement: dict, roles: list[str]) -> Decision:
    return Decision(
        allow=False,
        reason=DecisionReason(code=code, requirement=requirement, principal_roles=roles),
    )
