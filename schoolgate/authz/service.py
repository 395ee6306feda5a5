"""Access control facade used by the HTTP layer and admin workflows.

    decision = await access_control.authorize(principal_id, PermissionRequirement.of("attendance.write", school_id))
    if decision.denied:
        ...  # 403, do not run the operation

``authorize`` lets StoreUnavailableError propagate: the caller fails
closed. Public requirements are answered without touching the cache.
"""

from __future__ import annotations

import logging
import uuid

from schoolgate.authz.cache import PermissionCache
from schoolgate.authz.evaluator import decide
from schoolgate.authz.identifiers import RoleName
from schoolgate.authz.schemas import (
    Decision,
    EffectivePermissionSet,
    Requirement,
    RoleRequirement,
)
from schoolgate.models.base import utcnow

logger = logging.getLogger(__name__)


class AccessControl:
    """Resolves a principal's permissions through the cache and evaluates requirements."""

    def __init__(self, cache: PermissionCache, *, super_admin_role: str = RoleName.SUPER_ADMIN.value) -> None:
        self._cache = cache
        # Raises InvalidRequirementError for a name outside RoleName
        self._super_admin_role = RoleName.parse(super_admin_role).value

    @property
    def super_admin_role(self) -> str:
        return self._super_admin_role

    async def authorize(self, principal_id: uuid.UUID, required: Requirement) -> Decision:
        """Decide whether ``principal_id`` may proceed. Raises StoreUnavailableError on store failure."""
        if required is None or (isinstance(required, RoleRequirement) and required.is_public):
            return decide(_empty_set(principal_id), required)

        permission_set = await self._cache.get(principal_id)
        decision = decide(permission_set, required, super_admin_role=self._super_admin_role)
        if decision.denied:
            logger.info(
                "Access denied: principal=%s code=%s requirement=%s",
                principal_id,
                decision.reason.code,
                decision.reason.requirement,
            )
        return decision

    async def effective_permissions(self, principal_id: uuid.UUID) -> EffectivePermissionSet:
        return await self._cache.get(principal_id)

    async def invalidate_permissions(self, principal_id: uuid.UUID) -> None:
        """Drop cached permissions. Call right after any role assignment change."""
        await self._cache.invalidate(principal_id)
        logger.info("Permissions invalidated for principal %s", principal_id)


def _empty_set(principal_id: uuid.UUID) -> EffectivePermissionSet:
    return EffectivePermissionSet(principal_id=principal_id, loaded_at=utcnow())
