"""
Permission Resolver - reduces a user's role mappings to one grant per key.

For every role the user holds, usable mappings (active, granted, unexpired,
not excluded for the requested state/campus) are collected. Mappings are
merged per ``resource:action`` keeping the most permissive scope, so a user
holding two roles gets the union of their capability.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .cache import CacheConfig, InvalidationHub, PermissionCache
from .catalog import RoleCatalog
from .models import EffectivePermission, UserAccount
from .store import AuthorizationStore

logger = logging.getLogger(__name__)

# Pre-hierarchy role strings still present on old accounts
LEGACY_ROLE_MAP = {
    "admin": "super_admin",
    "user": "member",
}


def held_role_names(user: UserAccount, active_roles: Dict[str, object]) -> List[str]:
    """Active role names a user holds, primary first, with legacy fallback."""
    names = [name for name in user.held_roles() if name in active_roles]
    if not names and user.legacy_role:
        mapped = LEGACY_ROLE_MAP.get(user.legacy_role)
        if mapped and mapped in active_roles:
            names = [mapped]
    return names


@dataclass(frozen=True)
class ResolvedPermissions:
    """Cached resolution result. valid_until is the earliest contributing expiry."""
    permissions: Dict[str, EffectivePermission]
    role_names: List[str]
    valid_until: Optional[datetime] = None

    def is_current(self, now: datetime) -> bool:
        return self.valid_until is None or now < self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permissions": {key: p.to_cache_dict() for key, p in self.permissions.items()},
            "role_names": list(self.role_names),
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedPermissions":
        valid_until = data.get("valid_until")
        return cls(
            permissions={
                key: EffectivePermission.from_cache_dict(value)
                for key, value in (data.get("permissions") or {}).items()
            },
            role_names=list(data.get("role_names") or []),
            valid_until=datetime.fromisoformat(valid_until) if valid_until else None,
        )


class PermissionResolver:
    """Resolve and cache the effective permission map for a user."""

    def __init__(
        self,
        store: AuthorizationStore,
        roles: RoleCatalog,
        cache: Optional[PermissionCache] = None,
        hub: Optional[InvalidationHub] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._roles = roles
        self._cache = cache or PermissionCache(
            CacheConfig(), clock=clock, encode=ResolvedPermissions.to_dict, decode=ResolvedPermissions.from_dict
        )
        hub = hub or roles.hub
        hub.subscribe(self._on_invalidate)

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    def _on_invalidate(self, scope: str, scope_id: Optional[str]) -> None:
        if scope == "user" and scope_id:
            self._cache.invalidate_user(scope_id)
        else:
            self._cache.invalidate_global()

    def resolve(
        self,
        user: UserAccount,
        state_id: Optional[str] = None,
        campus_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, EffectivePermission]:
        """Return ``resource:action`` -> most permissive applicable grant."""
        now = now or datetime.utcnow()
        cached = self._cache.get(user.user_id, state_id, campus_id)
        if cached is not None and cached.is_current(now):
            return cached.permissions

        resolved = self._resolve_uncached(user, state_id, campus_id, now)
        self._cache.set(user.user_id, resolved, state_id, campus_id)
        return resolved.permissions

    def get_effective_permission(
        self,
        user: UserAccount,
        key: str,
        state_id: Optional[str] = None,
        campus_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[EffectivePermission]:
        return self.resolve(user, state_id, campus_id, now).get(key)

    def _resolve_uncached(
        self,
        user: UserAccount,
        state_id: Optional[str],
        campus_id: Optional[str],
        now: datetime,
    ) -> ResolvedPermissions:
        snapshot = self._roles.hierarchy()
        role_names = held_role_names(user, snapshot.roles)
        if not role_names:
            logger.debug(f"User {user.user_id} holds no active roles")
            return ResolvedPermissions(permissions={}, role_names=[])

        order = {name: index for index, name in enumerate(role_names)}
        assignments = sorted(
            self._store.list_assignments(role_names),
            key=lambda a: (order.get(a.role_name, len(order)), a.permission_name),
        )

        permission_cache = {}
        effective: Dict[str, EffectivePermission] = {}
        valid_until: Optional[datetime] = None

        for assignment in assignments:
            if not assignment.is_usable(now):
                continue
            if not assignment.applies_to(state_id, campus_id):
                continue

            permission = permission_cache.get(assignment.permission_name)
            if permission is None:
                permission = self._store.get_permission(assignment.permission_name)
                permission_cache[assignment.permission_name] = permission
            if permission is None or not permission.is_active:
                continue

            if assignment.expires_at is not None:
                if valid_until is None or assignment.expires_at < valid_until:
                    valid_until = assignment.expires_at

            candidate = EffectivePermission(
                permission=permission,
                scope=assignment.effective_scope(permission),
                conditions=assignment.conditions_override or permission.conditions,
                source_role=assignment.role_name,
            )
            current = effective.get(permission.key)
            if current is None or candidate.scope.outranks(current.scope):
                effective[permission.key] = candidate

        logger.debug(
            f"Resolved {len(effective)} permissions for user {user.user_id} "
            f"from roles {role_names}"
        )
        return ResolvedPermissions(permissions=effective, role_names=role_names, valid_until=valid_until)
