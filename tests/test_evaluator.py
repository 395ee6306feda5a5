"""Tests for schoolgate/authz/evaluator.py and the requirement types."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from schoolgate.authz.evaluator import (
    REASON_MISSING_PERMISSION,
    REASON_MISSING_ROLE,
    REASON_NO_ROLE_ASSIGNMENTS,
    REASON_PERMISSION_GRANTED,
    REASON_PUBLIC,
    REASON_ROLE_MATCHED,
    REASON_SUPER_ADMIN_BYPASS,
    decide,
    matching_grant,
)
from schoolgate.authz.identifiers import PermissionKey, RoleMatch, RoleName
from schoolgate.authz.schemas import (
    PUBLIC,
    EffectivePermissionSet,
    PermissionRequirement,
    PermissionTuple,
    RoleRequirement,
)
from schoolgate.errors import InvalidRequirementError

SCHOOL_A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
SCHOOL_B = uuid.UUID("00000000-0000-0000-0000-00000000000b")
LOADED_AT = datetime(2024, 1, 1, tzinfo=UTC)


def make_set(*rows: tuple[str | None, str | None, uuid.UUID | None, str]) -> EffectivePermissionSet:
    tuples = [PermissionTuple(module=m, action=a, tenant_id=t, role_name=r) for m, a, t, r in rows]
    return EffectivePermissionSet.from_tuples(uuid.uuid4(), tuples, LOADED_AT)


EMPTY = make_set()
TEACHER_A = make_set(("attendance", "write", SCHOOL_A, "Teacher"))
GLOBAL_ACCOUNTANT = make_set(("fees", "read", None, "Accountant"))
SUPER_ADMIN = make_set((None, None, None, "Super Admin"))


# ── Public requirements ──────────────────────────────────────────────


class TestPublicRequirements:
    @pytest.mark.parametrize("required", [None, PUBLIC, RoleRequirement()])
    def test_allows_principal_without_roles(self, required):
        decision = decide(EMPTY, required)
        assert decision.allow
        assert decision.reason.code == REASON_PUBLIC


# ── Permission checks ────────────────────────────────────────────────


class TestPermissionChecks:
    def test_teacher_allowed_in_own_school(self):
        decision = decide(TEACHER_A, PermissionRequirement("attendance", "write", SCHOOL_A))
        assert decision.allow
        assert decision.reason.code == REASON_PERMISSION_GRANTED
        assert decision.reason.granted_by == "Teacher"

    def test_teacher_denied_in_other_school(self):
        decision = decide(TEACHER_A, PermissionRequirement("attendance", "write", SCHOOL_B))
        assert decision.denied
        assert decision.reason.code == REASON_MISSING_PERMISSION
        assert decision.reason.principal_roles == ["Teacher"]
        assert decision.reason.requirement == {
            "module": "attendance",
            "action": "write",
            "tenant_id": str(SCHOOL_B),
        }

    def test_no_school_requested_accepts_scoped_grant(self):
        assert decide(TEACHER_A, PermissionRequirement("attendance", "write")).allow

    @pytest.mark.parametrize("school", [SCHOOL_A, SCHOOL_B, None])
    def test_global_grant_allows_every_school(self, school):
        assert decide(GLOBAL_ACCOUNTANT, PermissionRequirement("fees", "read", school)).allow

    def test_action_must_match_exactly(self):
        assert decide(TEACHER_A, PermissionRequirement("attendance", "read", SCHOOL_A)).denied

    def test_module_must_match_exactly(self):
        assert decide(TEACHER_A, PermissionRequirement("grades", "write", SCHOOL_A)).denied

    def test_no_assignments_denied(self):
        decision = decide(EMPTY, PermissionRequirement("attendance", "write"))
        assert decision.denied
        assert decision.reason.code == REASON_NO_ROLE_ASSIGNMENTS
        assert decision.reason.principal_roles == []

    def test_role_without_grants_denied_permission(self):
        decision = decide(make_set((None, None, None, "Parent")), PermissionRequirement("grades", "read"))
        assert decision.reason.code == REASON_MISSING_PERMISSION


class TestMatchingGrant:
    def test_prefers_scoped_grant_over_global(self):
        permissions = make_set(
            ("grades", "read", None, "Admin"),
            ("grades", "read", SCHOOL_A, "Teacher"),
        )
        grant = matching_grant(permissions, "grades", "read", SCHOOL_A)
        assert grant is not None
        assert grant.role_name == "Teacher"

    def test_no_match_returns_none(self):
        assert matching_grant(TEACHER_A, "fees", "read") is None


# ── Super-admin bypass ───────────────────────────────────────────────


class TestSuperAdminBypass:
    @pytest.mark.parametrize(
        "required",
        [
            PermissionRequirement("attendance", "write", SCHOOL_A),
            PermissionRequirement("settings", "manage", SCHOOL_B),
            RoleRequirement.any_of(RoleName.TEACHER),
            RoleRequirement.all_of(RoleName.TEACHER, RoleName.ACCOUNTANT),
        ],
    )
    def test_bypass_allows_everything(self, required):
        decision = decide(SUPER_ADMIN, required)
        assert decision.allow
        assert decision.reason.code == REASON_SUPER_ADMIN_BYPASS
        assert decision.reason.granted_by == "Super Admin"

    def test_bypass_can_be_disabled(self):
        required = PermissionRequirement("settings", "manage", allow_super_admin_bypass=False)
        decision = decide(SUPER_ADMIN, required)
        assert decision.denied
        assert decision.reason.code == REASON_MISSING_PERMISSION

    def test_custom_super_admin_role_name(self):
        root = make_set((None, None, None, "Root"))
        required = PermissionRequirement("settings", "manage")
        assert decide(root, required).denied
        assert decide(root, required, super_admin_role="Root").allow


# ── Role checks ──────────────────────────────────────────────────────


class TestRoleChecks:
    def test_any_matches_one_role(self):
        decision = decide(TEACHER_A, RoleRequirement.any_of("Teacher", "Admin"))
        assert decision.allow
        assert decision.reason.code == REASON_ROLE_MATCHED
        assert decision.reason.granted_by == "Teacher"

    def test_any_denied_without_overlap(self):
        decision = decide(TEACHER_A, RoleRequirement.any_of(RoleName.ADMIN, RoleName.ACCOUNTANT))
        assert decision.denied
        assert decision.reason.code == REASON_MISSING_ROLE
        assert decision.reason.requirement == {"roles": ["Accountant", "Admin"], "match": "any"}

    def test_all_requires_every_role(self):
        both = make_set((None, None, None, "Teacher"), (None, None, None, "Accountant"))
        required = RoleRequirement.all_of(RoleName.TEACHER, RoleName.ACCOUNTANT)
        assert decide(both, required).allow
        assert decide(TEACHER_A, required).denied

    def test_deny_reason_lists_only_own_roles(self):
        decision = decide(GLOBAL_ACCOUNTANT, RoleRequirement.any_of(RoleName.LIBRARIAN))
        assert decision.reason.principal_roles == ["Accountant"]


# ── Requirement validation ───────────────────────────────────────────


class TestRequirementValidation:
    def test_unsupported_requirement_type_raises(self):
        with pytest.raises(InvalidRequirementError):
            decide(TEACHER_A, "attendance.write")  # type: ignore[arg-type]

    def test_unknown_role_name_raises(self):
        with pytest.raises(InvalidRequirementError, match="Unknown role"):
            RoleRequirement.any_of("Teachr")

    def test_bare_string_roles_rejected(self):
        with pytest.raises(InvalidRequirementError):
            RoleRequirement("Teacher")  # type: ignore[arg-type]

    def test_invalid_match_mode_rejected(self):
        with pytest.raises(InvalidRequirementError):
            RoleRequirement(frozenset({RoleName.ADMIN}), "some")  # type: ignore[arg-type]

    @pytest.mark.parametrize("module, action", [("", "write"), ("Attendance", "write"), ("attendance", "wr ite")])
    def test_malformed_permission_rejected(self, module, action):
        with pytest.raises(InvalidRequirementError):
            PermissionRequirement(module, action)

    def test_permission_key_parse(self):
        key = PermissionKey.parse("fees.collect")
        assert (key.module, key.action) == ("fees", "collect")
        assert str(key) == "fees.collect"

    def test_permission_key_parse_requires_dot(self):
        with pytest.raises(InvalidRequirementError):
            PermissionKey.parse("fees")

    def test_role_name_accepts_member_name(self):
        assert RoleName.parse("SUPER_ADMIN") is RoleName.SUPER_ADMIN

    def test_invalid_requirement_is_value_error(self):
        with pytest.raises(ValueError):
            PermissionKey.parse("nodot")

    def test_role_match_coerced_from_string(self):
        assert RoleRequirement(frozenset({"Admin"}), "all").match is RoleMatch.ALL
