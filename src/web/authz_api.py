"""
Authorization API

Decision queries for the calling user plus the hierarchy-guarded role and
permission mutations. Every mutation is audited; refused role changes are
audited as failures so the security monitor can flag escalation attempts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from audit.entry import ChangeSet
from audit.event_types import AuditAction, AuditResource, AuditResult
from core.container import SecurityCore
from rbac.enums import Action, Resource, Scope

from .dependencies import AuthContext, get_core, raise_for_denial, request_info, require_auth, require_permission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/authz", tags=["authorization"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PermissionCheckRequest(BaseModel):
    resource: str
    action: str
    state_id: Optional[str] = None
    campus_id: Optional[str] = None
    target_user_id: Optional[str] = None
    resource_owner_id: Optional[str] = None


class RoleAssignmentRequest(BaseModel):
    role_name: str = Field(..., min_length=1, max_length=50)


class GrantPermissionRequest(BaseModel):
    permission_name: str = Field(..., min_length=1, max_length=100)
    scope_override: Optional[Scope] = None
    expires_at: Optional[datetime] = None


class RevokePermissionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# =============================================================================
# DECISION QUERIES
# =============================================================================

@router.post("/check")
async def check_permission(
    body: PermissionCheckRequest,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Evaluate one resource:action for the caller, MFA gate included."""
    decision = await core.engine.authorize(
        ctx.user_id,
        body.resource,
        body.action,
        ctx.access_context(
            state_id=body.state_id,
            campus_id=body.campus_id,
            target_user_id=body.target_user_id,
            resource_owner_id=body.resource_owner_id,
        ),
    )
    return decision.to_dict()


@router.get("/permissions")
async def effective_permissions(
    state_id: Optional[str] = None,
    campus_id: Optional[str] = None,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    permissions = await core.engine.get_effective_permissions(
        ctx.user_id, ctx.access_context(state_id=state_id, campus_id=campus_id)
    )
    return {
        "userId": ctx.user_id,
        "permissions": [p.to_dict() for p in sorted(permissions.values(), key=lambda p: p.key)],
    }


@router.get("/hierarchy")
async def role_hierarchy(
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    highest = await core.hierarchy.get_user_highest_role(ctx.user_id)
    roles = await run_in_threadpool(core.roles.list_active)
    return {
        "roles": [role.to_summary().to_dict() for role in roles],
        "currentRole": highest.to_summary().to_dict() if highest else None,
    }


@router.get("/can-manage/{target_id}")
async def can_manage_user(
    target_id: str,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return (await core.hierarchy.can_manage_user(ctx.user_id, target_id)).to_dict()


@router.get("/can-assign")
async def can_assign_role(
    role_name: str,
    target_id: Optional[str] = None,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    return (await core.hierarchy.can_assign_role(ctx.user_id, role_name, target_id)).to_dict()


@router.get("/assignable-roles")
async def assignable_roles(
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, List[Dict[str, Any]]]:
    roles = await core.hierarchy.get_assignable_roles(ctx.user_id)
    return {"roles": [role.to_dict() for role in roles]}


# =============================================================================
# USER ROLE MUTATIONS
# =============================================================================

def _audit_role_change(core, ctx, request, action, target_id, role_name, decision, before, after):
    core.audit.log(
        action,
        actor_id=ctx.user_id,
        resource=AuditResource.USER,
        resource_id=target_id,
        target_user_id=target_id,
        result=AuditResult.SUCCESS if decision.allowed else AuditResult.FAILURE,
        description=f"{action.value} {role_name} for user {target_id}",
        error_message=None if decision.allowed else decision.reason,
        request=request_info(request, body={"role_name": role_name}),
        session_id=ctx.session_id,
        changes=ChangeSet(before={"roles": before}, after={"roles": after}) if decision.allowed else None,
        metadata={"role": role_name, "code": decision.code.value},
    )


@router.post("/users/{target_id}/roles")
async def assign_role(
    target_id: str,
    body: RoleAssignmentRequest,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Give a user an additional role strictly below the caller's authority."""
    target = await run_in_threadpool(core.store.get_user, target_id)
    before = list(target.role_names) if target else []
    decision = await core.hierarchy.assign_role(ctx.user_id, target_id, body.role_name)
    after = list((await run_in_threadpool(core.store.get_user, target_id)).role_names) if decision.allowed else before
    _audit_role_change(core, ctx, request, AuditAction.ROLE_ASSIGNED, target_id, body.role_name,
                       decision, before, after)
    raise_for_denial(decision)
    return {"success": True, "roles": after}


@router.delete("/users/{target_id}/roles/{role_name}")
async def remove_role(
    target_id: str,
    role_name: str,
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    target = await run_in_threadpool(core.store.get_user, target_id)
    before = list(target.role_names) if target else []
    decision = await core.hierarchy.remove_role(ctx.user_id, target_id, role_name)
    after = list((await run_in_threadpool(core.store.get_user, target_id)).role_names) if decision.allowed else before
    _audit_role_change(core, ctx, request, AuditAction.ROLE_REMOVED, target_id, role_name,
                       decision, before, after)
    raise_for_denial(decision)
    return {"success": True, "roles": after}


# =============================================================================
# ROLE <-> PERMISSION MAPPINGS
# =============================================================================

@router.get("/roles/{role_name}/permissions")
async def list_role_permissions(
    role_name: str,
    include_inactive: bool = False,
    ctx: AuthContext = Depends(require_permission(Resource.ROLES, Action.READ)),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    mappings = await run_in_threadpool(
        core.permissions.list_role_permissions, role_name, include_inactive=include_inactive
    )
    return {
        "role": role_name,
        "permissions": [
            {
                "permission": m.permission_name,
                "granted": m.granted,
                "isActive": m.is_active,
                "scopeOverride": m.scope_override.value if m.scope_override else None,
                "expiresAt": m.expires_at.isoformat() if m.expires_at else None,
            }
            for m in mappings
        ],
    }


@router.post("/roles/{role_name}/permissions")
async def grant_permission(
    role_name: str,
    body: GrantPermissionRequest,
    request: Request,
    ctx: AuthContext = Depends(require_permission(Resource.ROLES, Action.UPDATE)),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    assignment = await run_in_threadpool(
        core.permissions.grant_permission,
        role_name,
        body.permission_name,
        granted_by=ctx.user_id,
        scope_override=body.scope_override,
        expires_at=body.expires_at,
    )
    core.audit.log(
        AuditAction.PERMISSION_GRANTED,
        actor_id=ctx.user_id,
        resource=AuditResource.ROLE,
        resource_id=role_name,
        description=f"Permission {body.permission_name} granted to role {role_name}",
        request=request_info(request, body=body.model_dump(mode="json")),
        session_id=ctx.session_id,
        mfa_verified=True,
    )
    return {"success": True, "assignmentId": assignment.assignment_id}


@router.delete("/roles/{role_name}/permissions/{permission_name}")
async def revoke_permission(
    role_name: str,
    permission_name: str,
    request: Request,
    body: Optional[RevokePermissionRequest] = None,
    ctx: AuthContext = Depends(require_permission(Resource.ROLES, Action.UPDATE)),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    reason = body.reason if body else None
    await run_in_threadpool(
        core.permissions.revoke_permission, role_name, permission_name, revoked_by=ctx.user_id, reason=reason
    )
    core.audit.log(
        AuditAction.PERMISSION_REVOKED,
        actor_id=ctx.user_id,
        resource=AuditResource.ROLE,
        resource_id=role_name,
        description=f"Permission {permission_name} revoked from role {role_name}",
        request=request_info(request),
        session_id=ctx.session_id,
        mfa_verified=True,
        metadata={"reason": reason},
    )
    return {"success": True}
