"""
Authentication API

Login with account lockout and throttling, logout, administrative unlock
and password policy checks.

Login order:
1. auth rate limit per client IP (429 + Retry-After)
2. account lock check per email (423 + lockTimeRemaining)
3. bcrypt password check; the threshold failure locks the account
4. on success: counters and the auth limiter are reset, a session token
   capped at the highest role's max session duration is issued and the
   MFA requirement is reported

Logout revokes the token's session id and clears its MFA verification.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from audit.event_types import AuditAction, AuditResource, AuditResult
from core.container import SecurityCore
from rbac.models import UserAccount
from security.exceptions import AccountLockedError
from security.password_policy import policy_description, validate_password
from security.passwords import verify_password
from security.rate_limiter import AUTH_RULE, rate_limit_key
from security.tokens import SessionClaims

from .dependencies import (
    AuthContext,
    client_ip,
    ensure_can_manage,
    get_core,
    request_info,
    require_auth,
    require_escalation,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user_id: str
    session_id: str
    mfa_required: bool
    mfa_enrolled: bool


class UnlockRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)


class PasswordCheckRequest(BaseModel):
    password: str = Field(..., max_length=256)
    name: Optional[str] = None
    email: Optional[str] = None
    role_names: List[str] = Field(default_factory=list)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    core: SecurityCore = Depends(get_core),
):
    """Authenticate with email and password."""
    ip = client_ip(request)
    throttle_key = rate_limit_key(None, ip)
    email = body.email.strip().lower()
    snapshot = request_info(request, body={"email": email, "password": body.password})

    # Counters and bcrypt block, so they run off the event loop
    user, valid = await run_in_threadpool(_check_credentials, core, throttle_key, email, body.password)

    if not valid:
        status = await run_in_threadpool(core.lockout.record_failure, email)
        core.audit.log(
            AuditAction.LOGIN_FAILED,
            actor_id=user.user_id if user else None,
            resource=AuditResource.SESSION,
            result=AuditResult.FAILURE,
            description=f"Failed login for {email}",
            error_message="Invalid credentials",
            request=snapshot,
            metadata={"attempts": status.attempts},
        )
        if status.locked:
            core.audit.log(
                AuditAction.ACCOUNT_LOCKED,
                target_user_id=user.user_id if user else None,
                resource=AuditResource.USER,
                description=f"Account {email} locked after {status.attempts} failed logins",
                request=snapshot,
                metadata={"lockTimeRemaining": status.lock_time_remaining},
            )
            raise AccountLockedError(status.reason, lock_time_remaining=status.lock_time_remaining)

        return JSONResponse(
            status_code=401,
            content={
                "success": False,
                "error": "Invalid email or password",
                "code": "INVALID_CREDENTIALS",
                "attemptsRemaining": status.attempts_remaining,
            },
        )

    await run_in_threadpool(core.lockout.record_success, email)
    await run_in_threadpool(core.throttle.reset, throttle_key)

    # Highest role's session cap shortens the token, never lengthens it
    highest = await core.hierarchy.get_user_highest_role(user.user_id)
    max_minutes = highest.capabilities.max_session_duration if highest else None
    token = core.tokens.issue(user.user_id, max_minutes=max_minutes)
    claims = await run_in_threadpool(core.tokens.decode, token)
    mfa_required, _ = core.mfa.role_requirement(user)
    mfa_enrolled = await run_in_threadpool(core.mfa.has_active_mfa, user)

    core.audit.log(
        AuditAction.LOGIN,
        actor_id=user.user_id,
        resource=AuditResource.SESSION,
        resource_id=claims.session_id,
        description=f"User {user.user_id} logged in",
        request=snapshot,
        session_id=claims.session_id,
        metadata={"session_minutes": core.tokens.lifetime_minutes(max_minutes)},
    )
    logger.info(f"[AUTH] Login for user {user.user_id}")

    return LoginResponse(
        token=token,
        user_id=user.user_id,
        session_id=claims.session_id,
        mfa_required=mfa_required,
        mfa_enrolled=mfa_enrolled,
    )


def _check_credentials(
    core: SecurityCore,
    throttle_key: str,
    email: str,
    password: str,
) -> Tuple[Optional[UserAccount], bool]:
    core.throttle.check(AUTH_RULE.name, throttle_key)
    core.lockout.check(email)

    user = core.store.find_user_by_email(email)
    valid = (
        user is not None
        and user.is_active
        and verify_password(password, user.password_hash or "")
    )
    return user, valid


@router.post("/logout")
async def logout(
    request: Request,
    ctx: AuthContext = Depends(require_auth),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """End the session: the token is revoked and its MFA verification cleared."""
    claims = SessionClaims(user_id=ctx.user_id, session_id=ctx.session_id, expires_at=ctx.expires_at)
    await run_in_threadpool(core.tokens.revoke, claims)
    await run_in_threadpool(core.mfa.end_session, ctx.session_id)

    core.audit.log(
        AuditAction.LOGOUT,
        actor_id=ctx.user_id,
        resource=AuditResource.SESSION,
        resource_id=ctx.session_id,
        request=request_info(request),
        session_id=ctx.session_id,
    )
    return {"success": True}


@router.get("/lockout-status")
async def lockout_status(
    email: str,
    ctx: AuthContext = Depends(require_escalation("unlock_account")),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    status = await run_in_threadpool(core.lockout.status, email.strip().lower())
    return status.to_dict()


@router.post("/unlock")
async def unlock_account(
    body: UnlockRequest,
    request: Request,
    ctx: AuthContext = Depends(require_escalation("unlock_account")),
    core: SecurityCore = Depends(get_core),
) -> Dict[str, Any]:
    """Clear failed-attempt counters and any lock for an account the caller outranks."""
    email = body.email.strip().lower()
    user = await run_in_threadpool(core.store.find_user_by_email, email)
    if user is None:
        raise HTTPException(404, "User not found")
    await ensure_can_manage(core, ctx, user.user_id, "unlock_account")

    await run_in_threadpool(core.lockout.admin_unlock, email, ctx.user_id)
    core.audit.log(
        AuditAction.ACCOUNT_UNLOCKED,
        actor_id=ctx.user_id,
        resource=AuditResource.USER,
        resource_id=user.user_id,
        target_user_id=user.user_id,
        description=f"Account {email} unlocked by administrator",
        request=request_info(request, body={"email": email}),
        session_id=ctx.session_id,
    )
    return {"success": True, "message": "Account unlocked"}


@router.post("/password/validate")
async def check_password(body: PasswordCheckRequest) -> Dict[str, Any]:
    """Evaluate a candidate password against the policy."""
    result = validate_password(body.password, name=body.name, email=body.email, role_names=body.role_names)
    return result.to_dict()


@router.get("/password/policy")
async def password_policy() -> Dict[str, Any]:
    return policy_description()
