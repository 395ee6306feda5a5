"""Exception taxonomy for the authorization engine and audit pipeline."""

from __future__ import annotations


class SchoolGateError(Exception):
    """Base class for all schoolgate errors."""


class StoreUnavailableError(SchoolGateError):
    """The relational store could not be reached or the query timed out.

    Raised by the permission store adapter and propagated through the cache
    and ``authorize``. Callers must treat it as DENY.
    """


class InvalidRequirementError(SchoolGateError, ValueError):
    """A malformed access requirement was passed to the evaluator.

    A programming error, never shown to end users.
    """


class AuditWriteFailedError(SchoolGateError):
    """An audit, data-access or system-event row could not be persisted.

    Only used inside the audit writer; it never reaches business callers.
    """
