"""
Authorization Engine - evaluates one (resource, action, context) request.

Steps:
1. Resolve the effective permission (most permissive across roles)
2. Scope check against the request context
3. Condition check (hours, weekdays, IP lists) and role IP ranges
4. Flag requires_mfa; the MFA gate itself is applied by ``authorize``
   or by the caller through MFAEnforcer

Expected denials are returned as AccessDecision values. Store or cache
failures and timeouts fail closed with AUTHORIZATION_UNAVAILABLE.

Usage:
    engine = AuthorizationEngine(store, roles, resolver)
    decision = await engine.has_permission(user_id, "bookings", "approve",
                                           AccessContext(state_id="TS"))
    if not decision.allowed:
        raise HTTPException(403, decision.reason)
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .catalog import RoleCatalog
from .conditions import check_conditions, check_ip_ranges, check_scope
from .enums import Action, DenialCode, Resource
from .models import AccessContext, AccessDecision, EffectivePermission, UserAccount, permission_key
from .resolver import PermissionResolver, held_role_names
from .store import AuthorizationStore

logger = logging.getLogger(__name__)

DEFAULT_MFA_REQUIRED_ACTIONS = frozenset({
    "users:delete",
    "users:manage",
    "roles:create",
    "roles:update",
    "roles:delete",
    "settings:update",
    "payments:approve",
})


class AuthorizationEngine:
    """Decision API consumed by every domain handler."""

    def __init__(
        self,
        store: AuthorizationStore,
        roles: RoleCatalog,
        resolver: PermissionResolver,
        mfa: Any = None,
        audit: Any = None,
        decision_timeout: float = 2.0,
        mfa_required_actions: Optional[Iterable[str]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._store = store
        self._roles = roles
        self._resolver = resolver
        self._mfa = mfa
        self._audit = audit
        self._timeout = decision_timeout
        self._mfa_actions = frozenset(mfa_required_actions or DEFAULT_MFA_REQUIRED_ACTIONS)
        self._clock = clock

    # =========================================================================
    # DECISION API
    # =========================================================================

    async def has_permission(
        self,
        user_id: str,
        resource: Any,
        action: Any,
        context: Optional[AccessContext] = None,
    ) -> AccessDecision:
        """
        Evaluate a request without the MFA gate.

        Returns:
            AccessDecision with allowed, reason, code and requires_mfa
        """
        context = context or AccessContext()
        now = context.now or self._clock()
        try:
            user, effective = await asyncio.wait_for(
                asyncio.to_thread(self._load, user_id, resource, action, context, now),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Authorization lookup timed out for user {user_id} after {self._timeout}s")
            return AccessDecision.deny(
                DenialCode.AUTHORIZATION_UNAVAILABLE,
                "Authorization service unavailable",
            )
        except Exception as e:
            logger.error(f"Authorization lookup failed for user {user_id}: {e}")
            return AccessDecision.deny(
                DenialCode.AUTHORIZATION_UNAVAILABLE,
                "Authorization service unavailable",
            )

        return self.evaluate(user, effective, resource, action, context, now)

    async def authorize(
        self,
        user_id: str,
        resource: Any,
        action: Any,
        context: Optional[AccessContext] = None,
    ) -> AccessDecision:
        """
        Full gate: permission decision followed by the MFA requirement.

        The verdict is handed to the audit logger without awaiting the write.
        """
        context = context or AccessContext()
        now = context.now or self._clock()
        context = context.at(now)
        decision = await self.has_permission(user_id, resource, action, context)

        if decision.allowed and self._mfa is not None:
            decision = await self._apply_mfa_gate(user_id, decision, context, now)

        if self._audit is not None and not decision.allowed:
            self._audit.record_access_denied(
                user_id=user_id,
                resource=_value(resource),
                action=_value(action),
                decision=decision,
                ip_address=context.ip_address,
                session_id=context.session_id,
            )
        return decision

    async def get_effective_permissions(
        self,
        user_id: str,
        context: Optional[AccessContext] = None,
    ) -> Dict[str, EffectivePermission]:
        """Resolved permission map; empty when the user or store is unavailable."""
        context = context or AccessContext()
        now = context.now or self._clock()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._resolve_all, user_id, context, now),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(f"Effective permission lookup failed for user {user_id}: {e!r}")
            return {}

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def evaluate(
        self,
        user: Optional[UserAccount],
        effective: Optional[EffectivePermission],
        resource: Any,
        action: Any,
        context: AccessContext,
        now: datetime,
    ) -> AccessDecision:
        """Pure evaluation of an already resolved grant."""
        if user is None:
            return AccessDecision.deny(DenialCode.USER_NOT_FOUND, "User not found")
        if not user.is_active:
            return AccessDecision.deny(DenialCode.USER_INACTIVE, "User account is inactive")

        if effective is None:
            logger.debug(f"Permission not found: {permission_key(resource, action)} for user {user.user_id}")
            return AccessDecision.deny(DenialCode.PERMISSION_NOT_FOUND, "Permission not found")

        reason = check_scope(user, effective, context)
        if reason:
            return AccessDecision.deny(DenialCode.SCOPE_MISMATCH, reason, effective)

        reason = check_conditions(effective.conditions, context, now)
        if reason:
            return AccessDecision.deny(DenialCode.CONDITION_FAILED, reason, effective)

        source_role = self._roles.get_role(effective.source_role)
        if source_role is not None:
            reason = check_ip_ranges(source_role.capabilities.allowed_ip_ranges, context.ip_address)
            if reason:
                return AccessDecision.deny(DenialCode.CONDITION_FAILED, reason, effective)

        requires_mfa = effective.permission.requires_mfa or effective.key in self._mfa_actions
        return AccessDecision.grant(effective, requires_mfa=requires_mfa)

    def _load(
        self,
        user_id: str,
        resource: Any,
        action: Any,
        context: AccessContext,
        now: datetime,
    ) -> Tuple[Optional[UserAccount], Optional[EffectivePermission]]:
        user = self._store.get_user(user_id)
        if user is None:
            return None, None
        effective = self._resolver.get_effective_permission(
            user,
            permission_key(resource, action),
            state_id=context.state_id or user.state_id,
            campus_id=context.campus_id or user.campus_id,
            now=now,
        )
        return user, effective

    def _resolve_all(self, user_id: str, context: AccessContext, now: datetime) -> Dict[str, EffectivePermission]:
        user = self._store.get_user(user_id)
        if user is None:
            return {}
        return self._resolver.resolve(
            user,
            state_id=context.state_id or user.state_id,
            campus_id=context.campus_id or user.campus_id,
            now=now,
        )

    async def _apply_mfa_gate(
        self,
        user_id: str,
        decision: AccessDecision,
        context: AccessContext,
        now: datetime,
    ) -> AccessDecision:
        try:
            user = await asyncio.wait_for(
                asyncio.to_thread(self._store.get_user, user_id),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(f"MFA gate lookup failed for user {user_id}: {e!r}")
            return AccessDecision.deny(DenialCode.AUTHORIZATION_UNAVAILABLE, "Authorization service unavailable")
        if user is None:
            return AccessDecision.deny(DenialCode.USER_NOT_FOUND, "User not found")

        role_gated = any(
            role.requires_mfa
            for role in (self._roles.get_role(name) for name in held_role_names(user, self._roles.hierarchy().roles))
            if role is not None
        )
        if not (decision.requires_mfa or role_gated):
            return decision

        gate = self._mfa.check_requirement(
            user,
            action_requires_mfa=decision.requires_mfa,
            session_id=context.session_id,
            now=now,
        )
        if gate.satisfied:
            return AccessDecision(
                allowed=True,
                reason=decision.reason,
                code=decision.code,
                requires_mfa=True,
                permission_name=decision.permission_name,
                scope=decision.scope,
            )
        return AccessDecision(
            allowed=False,
            reason=gate.reason,
            code=gate.code,
            requires_mfa=True,
            permission_name=decision.permission_name,
            scope=decision.scope,
        )


def _value(item: Any) -> str:
    return item.value if isinstance(item, (Resource, Action)) else str(item)
