"""
FastAPI dependencies for the security API.

Usage in endpoints:
    @router.get("/bookings/{booking_id}")
    async def get_booking(ctx: AuthContext = Depends(require_permission("bookings", "read"))):
        ...

    @router.delete("/users/{user_id}")
    async def delete_user(ctx: AuthContext = Depends(require_escalation("delete_user"))):
        ...

The bearer token's ``sid`` claim is the session id used by the MFA gate.
Denials raise AccessDeniedError / MFARequiredError, rendered by web.errors.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from audit.service import request_snapshot
from core.container import SecurityCore
from rbac.conditions import ip_matches
from rbac.enums import DenialCode
from rbac.models import AccessContext
from security.exceptions import AccessDeniedError, InvalidTokenError, MFARequiredError

_bearer = HTTPBearer(auto_error=False)

MFA_DENIALS = frozenset({
    DenialCode.MFA_SETUP_REQUIRED,
    DenialCode.MFA_VERIFICATION_REQUIRED,
    DenialCode.MFA_VERIFICATION_EXPIRED,
})


@dataclass
class AuthContext:
    """Authenticated caller of one request."""
    user_id: str
    session_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    expires_at: Optional[datetime] = None

    def access_context(self, **facts: Any) -> AccessContext:
        return AccessContext(ip_address=self.ip_address, session_id=self.session_id, **facts)


def get_core(request: Request) -> SecurityCore:
    return request.app.state.security_core


def _trusted_proxies(request: Request) -> List[str]:
    core = getattr(request.app.state, "security_core", None)
    if core is None:
        return []
    return list(core.security.trusted_proxies)


def client_ip(request: Request) -> Optional[str]:
    """
    Client address, trusting proxy headers only from known proxies.

    X-Forwarded-For is read only when the direct peer is a trusted proxy;
    the rightmost entry that is not itself a trusted proxy is the client.
    """
    direct_ip = request.client.host if request.client else None
    trusted = _trusted_proxies(request)

    if direct_ip and trusted and ip_matches(direct_ip, trusted):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
            for ip in reversed(ips):
                if not ip_matches(ip, trusted):
                    return ip
            if ips:
                # Every hop is a trusted proxy
                return ips[0]
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return direct_ip


def request_info(request: Request, body: Any = None) -> Dict[str, Any]:
    """Raw request snapshot for audit entries; the audit logger masks it."""
    return request_snapshot(
        method=request.method,
        path=request.url.path,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        headers=dict(request.headers),
        body=body,
        query=dict(request.query_params),
    )


async def require_auth(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    core: SecurityCore = Depends(get_core),
) -> AuthContext:
    """
    Decode the bearer session token.

    Raises:
        InvalidTokenError: missing, malformed, expired or revoked token (401)
    """
    if credentials is None:
        raise InvalidTokenError("Authentication required")
    claims = await run_in_threadpool(core.tokens.decode, credentials.credentials)
    ctx = AuthContext(
        user_id=claims.user_id,
        session_id=claims.session_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        expires_at=claims.expires_at,
    )
    request.state.user_id = ctx.user_id
    return ctx


def raise_for_denial(decision) -> None:
    """Turn a denial value into the matching request-level exception."""
    if decision.allowed:
        return
    if decision.code in MFA_DENIALS:
        raise MFARequiredError(decision.reason, code=decision.code.value)
    raise AccessDeniedError(decision.reason, code=decision.code.value, requires_mfa=getattr(decision, "requires_mfa", False))


def require_permission(resource: Any, action: Any) -> Callable:
    """
    Require the full authorization gate (permission, scope, conditions, MFA).

    ``state_id``, ``campus_id`` and ``owner_id`` query parameters are passed
    through as request facts.
    """
    async def dependency(
        request: Request,
        ctx: AuthContext = Depends(require_auth),
        core: SecurityCore = Depends(get_core),
    ) -> AuthContext:
        params = request.query_params
        decision = await core.engine.authorize(
            ctx.user_id,
            resource,
            action,
            ctx.access_context(
                state_id=params.get("state_id"),
                campus_id=params.get("campus_id"),
                resource_owner_id=params.get("owner_id"),
            ),
        )
        raise_for_denial(decision)
        return ctx

    return dependency


def require_escalation(operation: str) -> Callable:
    """Require a hierarchy level at or above the operation's threshold."""
    async def dependency(
        ctx: AuthContext = Depends(require_auth),
        core: SecurityCore = Depends(get_core),
    ) -> AuthContext:
        decision = await core.hierarchy.check_escalation(ctx.user_id, operation)
        if not decision.allowed:
            core.audit.record_access_denied(
                user_id=ctx.user_id,
                resource="users",
                action=operation,
                decision=decision,
                ip_address=ctx.ip_address,
                session_id=ctx.session_id,
            )
        raise_for_denial(decision)
        return ctx

    return dependency


async def ensure_can_manage(
    core: SecurityCore,
    ctx: AuthContext,
    target_id: str,
    operation: str,
) -> None:
    """
    Require the caller to outrank ``target_id`` before acting on that account.

    Raises:
        AccessDeniedError: HIERARCHY_VIOLATION or INVALID_ROLE (403)
    """
    decision = await core.hierarchy.can_manage_user(ctx.user_id, target_id)
    if not decision.allowed:
        core.audit.record_access_denied(
            user_id=ctx.user_id,
            resource="users",
            action=operation,
            decision=decision,
            ip_address=ctx.ip_address,
            session_id=ctx.session_id,
            target_user_id=target_id,
        )
    raise_for_denial(decision)
