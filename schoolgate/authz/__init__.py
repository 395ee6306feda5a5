"""Role-based access control — permission store, cache, evaluator and facade."""

from schoolgate.authz.schemas import (
    PUBLIC,
    Decision,
    EffectivePermissionSet,
    PermissionRequirement,
    RoleRequirement,
)
from schoolgate.authz.service import AccessControl

__all__ = [
    "PUBLIC",
    "AccessControl",
    "Decision",
    "EffectivePermissionSet",
    "PermissionRequirement",
    "RoleRequirement",
]
