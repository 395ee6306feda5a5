"""FastAPI dependencies that guard routes with access decisions.

Usage:
    @router.post("/schools/{school_id}/attendance")
    async def mark_attendance(
        school_id: uuid.UUID,
        decision: Decision = Depends(require_permission("attendance", "write")),
    ):
        ...

The principal id comes from ``request.state.principal_id`` (set by the
authentication layer in front of these routes); the school comes from the
``school_id`` path or query parameter. Responses:
- 401 when no principal is attached to the request
- 403 with ``{message, required, user_roles}`` on DENY
- 403 "Request denied" when permissions cannot be loaded (fail closed)

Every DENY is queued as an ACCESS audit record.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from schoolgate.audit.pipeline import AuditPipeline
from schoolgate.audit.schemas import PrincipalSnapshot
from schoolgate.authz.identifiers import PermissionKey, RoleMatch, RoleName
from schoolgate.authz.schemas import Decision, PermissionRequirement, RoleRequirement
from schoolgate.authz.service import AccessControl
from schoolgate.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

DecisionDependency = Callable[[Request], Awaitable[Decision]]


@dataclass(frozen=True)
class RequestContext:
    """Correlation data copied onto audit records."""

    request_id: str | None
    ip_address: str | None
    user_agent: str | None


def get_request_context(request: Request) -> RequestContext:
    request_id = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
    client_ip = request.client.host if request.client else None
    return RequestContext(
        request_id=request_id,
        ip_address=client_ip,
        user_agent=request.headers.get("user-agent"),
    )


def get_access_control(request: Request) -> AccessControl:
    return request.app.state.access_control


def get_audit_pipeline(request: Request) -> AuditPipeline | None:
    return getattr(request.app.state, "audit_pipeline", None)


def get_principal_id(request: Request) -> uuid.UUID:
    """Authenticated principal id, or 401."""
    raw = getattr(request.state, "principal_id", None)
    if raw is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        return raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required") from None


def get_tenant_id(request: Request) -> uuid.UUID | None:
    """School the request targets, from the path first, then the query string."""
    raw = request.path_params.get("school_id") or request.query_params.get("school_id")
    if raw is None:
        return None
    try:
        return raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid school_id") from None


async def authorize_request(
    request: Request,
    requirement: PermissionRequirement | RoleRequirement,
) -> Decision:
    """Run one access check for the current request; raise on anything but ALLOW."""
    principal_id = get_principal_id(request)
    access_control = get_access_control(request)

    try:
        decision = await access_control.authorize(principal_id, requirement)
    except StoreUnavailableError:
        logger.error("Access check failed closed for principal %s on %s", principal_id, request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Request denied") from None

    if decision.denied:
        await _record_denial(request, principal_id, decision, requirement)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": "Insufficient permissions",
                "required": decision.reason.requirement,
                "user_roles": decision.reason.principal_roles,
            },
        )

    request.state.granted_role = decision.reason.granted_by
    return decision


async def _record_denial(
    request: Request,
    principal_id: uuid.UUID,
    decision: Decision,
    requirement: PermissionRequirement | RoleRequirement,
) -> None:
    pipeline = get_audit_pipeline(request)
    if pipeline is None:
        return
    ctx = get_request_context(request)
    await pipeline.record_decision_denied(
        PrincipalSnapshot(id=principal_id, email=getattr(request.state, "principal_email", None)),
        decision.reason.requirement,
        decision.reason.code,
        tenant_id=requirement.tenant_id if isinstance(requirement, PermissionRequirement) else None,
        request_id=ctx.request_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        path=request.url.path,
    )


# ── Dependency factories ─────────────────────────────────────────────


def require_permission(
    module: str,
    action: str,
    *,
    allow_super_admin_bypass: bool = True,
) -> DecisionDependency:
    """Guard a route with (module, action) in the request's school."""
    key = PermissionKey(module, action)

    async def dependency(request: Request) -> Decision:
        requirement = PermissionRequirement.of(
            key,
            get_tenant_id(request),
            allow_super_admin_bypass=allow_super_admin_bypass,
        )
        return await authorize_request(request, requirement)

    dependency.__name__ = f"require_permission_{key.module}_{key.action}"
    return dependency


def require_role(
    *roles: RoleName | str,
    match: RoleMatch = RoleMatch.ANY,
    allow_super_admin_bypass: bool = True,
) -> DecisionDependency:
    """Guard a route with a role check (any or all of ``roles``)."""
    requirement = RoleRequirement(frozenset(roles), match, allow_super_admin_bypass)

    async def dependency(request: Request) -> Decision:
        return await authorize_request(request, requirement)

    return dependency


def require_super_admin() -> DecisionDependency:
    """Only the configured super-admin role passes."""

    async def dependency(request: Request) -> Decision:
        super_admin = get_access_control(request).super_admin_role
        return await authorize_request(request, RoleRequirement.any_of(super_admin))

    return dependency


def require_admin() -> DecisionDependency:
    """Admin or the configured super-admin role."""

    async def dependency(request: Request) -> Decision:
        super_admin = get_access_control(request).super_admin_role
        return await authorize_request(request, RoleRequirement.any_of(super_admin, RoleName.ADMIN))

    return dependency
