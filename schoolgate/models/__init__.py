"""SQLAlchemy ORM models for schoolgate.

Import all models here so Base.metadata.create_all() discovers them.
"""

from __future__ import annotations

from schoolgate.models.audit import AuditLog, DataAccessLog, SystemEventLog
from schoolgate.models.base import Base
from schoolgate.models.enums import (
    AccessType,
    EventCategory,
    OperationKind,
    RecordClass,
    Severity,
)
from schoolgate.models.principal import Principal, Tenant
from schoolgate.models.rbac import Permission, PermissionGrant, Role, RoleAssignment

__all__ = [
    # Base
    "Base",
    # Models
    "Principal",
    "Tenant",
    "Role",
    "Permission",
    "PermissionGrant",
    "RoleAssignment",
    "AuditLog",
    "DataAccessLog",
    "SystemEventLog",
    # Enums
    "OperationKind",
    "AccessType",
    "EventCategory",
    "Severity",
    "RecordClass",
]
