"""Tests for schoolgate/api/deps.py — route guards over AccessControl.

Covers:
- 401 without a principal, 403 body on DENY, fail-closed 403 on store errors
- school id taken from the path or the query string
- DENY outcomes queued as ACCESS audit records
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from schoolgate.api.deps import (
    get_request_context,
    require_admin,
    require_permission,
    require_role,
    require_super_admin,
)
from schoolgate.authz.schemas import Decision, EffectivePermissionSet, PermissionTuple
from schoolgate.authz.service import AccessControl
from schoolgate.errors import InvalidRequirementError, StoreUnavailableError

SCHOOL_A = uuid.uuid4()
SCHOOL_B = uuid.uuid4()
TEACHER = uuid.uuid4()
ADMIN = uuid.uuid4()
NOBODY = uuid.uuid4()


class FakeCache:
    def __init__(self, sets: dict[uuid.UUID, EffectivePermissionSet], *, fail: bool = False) -> None:
        self._sets = sets
        self._fail = fail

    async def get(self, principal_id):
        if self._fail:
            raise StoreUnavailableError("database unreachable")
        return self._sets.get(
            principal_id, EffectivePermissionSet(principal_id=principal_id, loaded_at=datetime.now(UTC))
        )

    async def invalidate(self, principal_id):
        self._sets.pop(principal_id, None)

    async def clear(self):
        self._sets.clear()


def _set(principal_id, *rows):
    tuples = [PermissionTuple(module=m, action=a, tenant_id=t, role_name=r) for m, a, t, r in rows]
    return EffectivePermissionSet.from_tuples(principal_id, tuples, datetime.now(UTC))


def make_app(cache, pipeline=None, *, super_admin_role="Super Admin") -> FastAPI:
    app = FastAPI()
    app.state.access_control = AccessControl(cache, super_admin_role=super_admin_role)
    app.state.audit_pipeline = pipeline

    @app.middleware("http")
    async def fake_authentication(request: Request, call_next):
        raw = request.headers.get("x-principal-id")
        if raw:
            request.state.principal_id = raw
        return await call_next(request)

    @app.get("/schools/{school_id}/attendance")
    async def attendance(
        school_id: uuid.UUID,
        decision: Decision = Depends(require_permission("attendance", "write")),  # noqa: B008
    ):
        return {"granted_by": decision.reason.granted_by}

    @app.get("/reports")
    async def reports(decision: Decision = Depends(require_permission("attendance", "write"))):  # noqa: B008
        return {"ok": True}

    @app.get("/admin", dependencies=[Depends(require_admin())])
    async def admin_page():
        return {"ok": True}

    @app.get("/root", dependencies=[Depends(require_super_admin())])
    async def root_page():
        return {"ok": True}

    @app.get("/staff", dependencies=[Depends(require_role("Teacher", "Librarian"))])
    async def staff_page():
        return {"ok": True}

    @app.get("/context")
    async def context(request: Request):
        ctx = get_request_context(request)
        return {"request_id": ctx.request_id, "user_agent": ctx.user_agent}

    return app


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.record_decision_denied = AsyncMock()
    return pipeline


@pytest.fixture
def client(pipeline):
    cache = FakeCache(
        {
            TEACHER: _set(TEACHER, ("attendance", "write", SCHOOL_A, "Teacher")),
            ADMIN: _set(ADMIN, (None, None, None, "Admin")),
        }
    )
    return TestClient(make_app(cache, pipeline))


def _as(principal_id) -> dict[str, str]:
    return {"X-Principal-Id": str(principal_id)}


class TestAuthentication:
    def test_missing_principal_is_401(self, client):
        resp = client.get(f"/schools/{SCHOOL_A}/attendance")
        assert resp.status_code == 401

    def test_malformed_principal_is_401(self, client):
        resp = client.get(f"/schools/{SCHOOL_A}/attendance", headers={"X-Principal-Id": "not-a-uuid"})
        assert resp.status_code == 401


class TestPermissionGuard:
    def test_allowed_in_own_school(self, client):
        resp = client.get(f"/schools/{SCHOOL_A}/attendance", headers=_as(TEACHER))
        assert resp.status_code == 200
        assert resp.json() == {"granted_by": "Teacher"}

    def test_denied_in_other_school(self, client, pipeline):
        resp = client.get(f"/schools/{SCHOOL_B}/attendance", headers=_as(TEACHER))

        assert resp.status_code == 403
        detail = resp.json()["detail"]
        assert detail["message"] == "Insufficient permissions"
        assert detail["required"] == {"module": "attendance", "action": "write", "tenant_id": str(SCHOOL_B)}
        assert detail["user_roles"] == ["Teacher"]
        pipeline.record_decision_denied.assert_awaited_once()
        kwargs = pipeline.record_decision_denied.await_args.kwargs
        assert kwargs["tenant_id"] == SCHOOL_B
        assert kwargs["path"] == f"/schools/{SCHOOL_B}/attendance"

    def test_school_from_query_string(self, client):
        assert client.get(f"/reports?school_id={SCHOOL_A}", headers=_as(TEACHER)).status_code == 200
        assert client.get(f"/reports?school_id={SCHOOL_B}", headers=_as(TEACHER)).status_code == 403

    def test_invalid_school_id_is_400(self, client):
        resp = client.get("/reports?school_id=nope", headers=_as(TEACHER))
        assert resp.status_code == 400

    def test_principal_without_roles_denied(self, client):
        resp = client.get(f"/schools/{SCHOOL_A}/attendance", headers=_as(NOBODY))
        assert resp.status_code == 403
        assert resp.json()["detail"]["user_roles"] == []

    def test_store_unavailable_fails_closed(self, pipeline):
        client = TestClient(make_app(FakeCache({}, fail=True), pipeline))

        resp = client.get(f"/schools/{SCHOOL_A}/attendance", headers=_as(TEACHER))

        assert resp.status_code == 403
        assert resp.json() == {"detail": "Request denied"}
        assert "database" not in resp.text

    def test_malformed_permission_rejected_at_definition(self):
        with pytest.raises(InvalidRequirementError):
            require_permission("Attendance", "write")


class TestRoleGuards:
    def test_admin_preset_allows_admin(self, client):
        assert client.get("/admin", headers=_as(ADMIN)).status_code == 200

    def test_admin_preset_denies_teacher(self, client):
        resp = client.get("/admin", headers=_as(TEACHER))
        assert resp.status_code == 403
        assert resp.json()["detail"]["required"] == {"roles": ["Admin", "Super Admin"], "match": "any"}

    def test_super_admin_preset_denies_admin(self, client):
        assert client.get("/root", headers=_as(ADMIN)).status_code == 403

    def test_any_of_roles(self, client):
        assert client.get("/staff", headers=_as(TEACHER)).status_code == 200
        assert client.get("/staff", headers=_as(ADMIN)).status_code == 403

    def test_presets_follow_configured_super_admin_role(self, pipeline):
        root = uuid.uuid4()
        cache = FakeCache(
            {
                ADMIN: _set(ADMIN, (None, None, None, "Admin")),
                root: _set(root, (None, None, None, "Super Admin")),
            }
        )
        client = TestClient(make_app(cache, pipeline, super_admin_role="ADMIN"))

        assert client.get("/root", headers=_as(ADMIN)).status_code == 200
        resp = client.get("/root", headers=_as(root))
        assert resp.status_code == 403
        assert resp.json()["detail"]["required"] == {"roles": ["Admin"], "match": "any"}
        assert client.get("/admin", headers=_as(root)).status_code == 403

    def test_unknown_super_admin_role_rejected(self):
        with pytest.raises(InvalidRequirementError):
            AccessControl(FakeCache({}), super_admin_role="Headmaster")


class TestRequestContext:
    def test_reads_correlation_headers(self, client):
        resp = client.get("/context", headers={"X-Request-Id": "abc-123", "User-Agent": "pytest-agent"})
        assert resp.json() == {"request_id": "abc-123", "user_agent": "pytest-agent"}
