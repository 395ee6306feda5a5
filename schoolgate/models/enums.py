"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin so they serialize to the plain strings stored in
the audit tables.
"""

from __future__ import annotations

from enum import Enum


class OperationKind(str, Enum):
    """What kind of operation an AuditRecord describes."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS = "ACCESS"


class AccessType(str, Enum):
    """Read-path access recorded in a DataAccessRecord."""

    READ = "READ"
    SEARCH = "SEARCH"
    EXPORT = "EXPORT"
    BULK_READ = "BULK_READ"


class EventCategory(str, Enum):
    """SystemEvent category."""

    SECURITY = "SECURITY"
    ADMIN = "ADMIN"
    MAINTENANCE = "MAINTENANCE"


class Severity(str, Enum):
    """SystemEvent severity, lowest to highest."""

    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecordClass(str, Enum):
    """Audit record classes with independent retention windows."""

    AUDIT_LOG = "audit_logs"
    DATA_ACCESS = "data_access_logs"
    SYSTEM_EVENT = "system_events"
