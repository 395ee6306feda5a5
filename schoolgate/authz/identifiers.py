"""Tagged identifiers for roles and permissions.

The store persists role names and (module, action) pairs as strings. Inside
the engine they are handled through these types so a typo in a required
role or permission fails loudly at definition time instead of silently
producing a DENY (or an ALLOW) at request time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from schoolgate.errors import InvalidRequirementError

_IDENTIFIER = re.compile(r"^[a-z][a-z0-9_]*$")


class RoleName(str, Enum):
    """Built-in role names, as stored in roles.name."""

    SUPER_ADMIN = "Super Admin"
    ADMIN = "Admin"
    TEACHER = "Teacher"
    ACCOUNTANT = "Accountant"
    STUDENT = "Student"
    PARENT = "Parent"
    RECEPTIONIST = "Receptionist"
    LIBRARIAN = "Librarian"

    @classmethod
    def parse(cls, raw: RoleName | str) -> RoleName:
        """Coerce a value or member name into a RoleName.

        Accepts the stored value ("Super Admin") or the member name
        ("SUPER_ADMIN").
        """
        if isinstance(raw, RoleName):
            return raw
        try:
            return cls(raw)
        except ValueError:
            pass
        try:
            return cls[str(raw).upper()]
        except KeyError:
            raise InvalidRequirementError(f"Unknown role name: {raw!r}") from None


class RoleMatch(str, Enum):
    """Whether a role requirement needs any one or all of its roles."""

    ANY = "any"
    ALL = "all"


@dataclass(frozen=True)
class PermissionKey:
    """A validated (module, action) pair, e.g. ``attendance.write``."""

    module: str
    action: str

    def __post_init__(self) -> None:
        for part, value in (("module", self.module), ("action", self.action)):
            if not isinstance(value, str) or not _IDENTIFIER.match(value):
                raise InvalidRequirementError(f"Invalid permission {part}: {value!r}")

    @classmethod
    def parse(cls, raw: str) -> PermissionKey:
        """Parse ``"module.action"``."""
        module, sep, action = str(raw).partition(".")
        if not sep:
            raise InvalidRequirementError(f"Permission must look like 'module.action', got {raw!r}")
        return cls(module=module, action=action)

    def __str__(self) -> str:
        return f"{self.module}.{self.action}"
