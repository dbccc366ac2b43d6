"""
Role and Permission Catalogs.

RoleCatalog keeps a TTL-cached hierarchy snapshot (name -> level, scope,
capabilities) and guards system roles. PermissionCatalog owns the
role <-> permission mappings: grant, revoke, expiry cleanup.

Every mutation notifies the InvalidationHub so resolved permission and
hierarchy caches are cleared immediately.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .cache import InvalidationHub, TTLCache
from .enums import Action, Resource, RiskLevel, Scope
from .models import (
    Permission,
    PermissionConditions,
    Role,
    RoleAssignment,
    ScopeRestriction,
)
from .store import AuthorizationStore
from security.exceptions import NotFoundError, SystemRoleProtectedError

logger = logging.getLogger(__name__)

AUTOMATIC_EXPIRATION_REASON = "Automatic expiration"

_HIERARCHY_KEY = "hierarchy"


@dataclass(frozen=True)
class HierarchySnapshot:
    """Immutable view of the active role set."""
    roles: Dict[str, Role]
    duplicate_levels: Dict[int, List[str]]

    def level_of(self, role_name: str) -> Optional[int]:
        role = self.roles.get(role_name)
        return role.hierarchy_level if role else None


# =============================================================================
# ROLE CATALOG
# =============================================================================

class RoleCatalog:
    """Active roles with a cached hierarchy."""

    def __init__(
        self,
        store: AuthorizationStore,
        hub: Optional[InvalidationHub] = None,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._hub = hub or InvalidationHub()
        self._cache = TTLCache(maxsize=4, ttl_seconds=ttl_seconds, clock=clock)
        self._hub.subscribe(self._on_invalidate)

    @property
    def hub(self) -> InvalidationHub:
        return self._hub

    def _on_invalidate(self, scope: str, scope_id: Optional[str]) -> None:
        if scope == "global":
            self._cache.clear()

    def hierarchy(self) -> HierarchySnapshot:
        snapshot = self._cache.get(_HIERARCHY_KEY)
        if snapshot is not None:
            return snapshot

        roles = {role.name: role for role in self._store.list_roles(active_only=True)}
        by_level: Dict[int, List[str]] = defaultdict(list)
        for role in roles.values():
            by_level[role.hierarchy_level].append(role.name)
        duplicates = {level: sorted(names) for level, names in by_level.items() if len(names) > 1}
        if duplicates:
            # Data-integrity warning only; resolution continues
            logger.warning(f"Duplicate hierarchy levels in active roles: {duplicates}")

        snapshot = HierarchySnapshot(roles=roles, duplicate_levels=duplicates)
        self._cache.set(_HIERARCHY_KEY, snapshot)
        return snapshot

    def get_role(self, name: str) -> Optional[Role]:
        return self.hierarchy().roles.get(name)

    def list_active(self) -> List[Role]:
        return sorted(self.hierarchy().roles.values(), key=lambda r: r.hierarchy_level)

    def roles_requiring_mfa(self) -> List[str]:
        return [role.name for role in self.list_active() if role.requires_mfa]

    def save_role(self, role: Role) -> Role:
        saved = self._store.save_role(role)
        logger.info(f"Role saved: {role.name} (level {role.hierarchy_level})")
        self._hub.notify("global")
        return saved

    def delete_role(self, name: str) -> None:
        role = self._store.get_role(name)
        if role is None:
            raise NotFoundError(f"Role not found: {name}")
        if role.is_system_role:
            raise SystemRoleProtectedError(f"System role cannot be deleted: {name}")
        self._store.delete_role(name)
        logger.info(f"Role deleted: {name}")
        self._hub.notify("global")

    def deactivate_role(self, name: str) -> Role:
        role = self._store.get_role(name)
        if role is None:
            raise NotFoundError(f"Role not found: {name}")
        role.is_active = False
        return self.save_role(role)

    def stats(self) -> Dict[str, int]:
        snapshot = self.hierarchy()
        return {
            "active_roles": len(snapshot.roles),
            "duplicate_levels": len(snapshot.duplicate_levels),
        }


# =============================================================================
# PERMISSION CATALOG
# =============================================================================

class PermissionCatalog:
    """Permission definitions and the role <-> permission mapping store."""

    def __init__(self, store: AuthorizationStore, hub: Optional[InvalidationHub] = None):
        self._store = store
        self._hub = hub or InvalidationHub()

    def define_permission(
        self,
        resource: Resource,
        action: Action,
        scope: Scope,
        risk_level: RiskLevel = RiskLevel.LOW,
        requires_mfa: bool = False,
        requires_approval: bool = False,
        conditions: Optional[PermissionConditions] = None,
        description: str = "",
        is_system_permission: bool = False,
    ) -> Permission:
        permission = Permission(
            resource=resource,
            action=action,
            scope=scope,
            risk_level=risk_level,
            requires_mfa=requires_mfa,
            requires_approval=requires_approval,
            conditions=conditions or PermissionConditions(),
            description=description,
            is_system_permission=is_system_permission,
        )
        existing = self._store.get_permission(permission.name)
        if existing is not None:
            permission.permission_id = existing.permission_id
        self._store.save_permission(permission)
        self._hub.notify("global")
        return permission

    def get_permission(self, name: str) -> Optional[Permission]:
        return self._store.get_permission(name)

    def grant_permission(
        self,
        role_name: str,
        permission_name: str,
        granted_by: Optional[str] = None,
        scope_override: Optional[Scope] = None,
        conditions_override: Optional[PermissionConditions] = None,
        state_restrictions: Optional[List[ScopeRestriction]] = None,
        campus_restrictions: Optional[List[ScopeRestriction]] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> RoleAssignment:
        """
        Grant a permission to a role.

        Upserts the unique (role, permission) mapping; re-granting a revoked
        mapping clears its revoke fields.
        """
        if self._store.get_role(role_name) is None:
            raise NotFoundError(f"Role not found: {role_name}")
        if self._store.get_permission(permission_name) is None:
            raise NotFoundError(f"Permission not found: {permission_name}")

        assignment = self._store.get_assignment(role_name, permission_name)
        if assignment is None:
            assignment = RoleAssignment(
                role_name=role_name,
                permission_name=permission_name,
                granted_by=granted_by,
                granted_at=now or datetime.utcnow(),
            )
        else:
            assignment.regrant(granted_by, now)

        assignment.scope_override = scope_override
        assignment.conditions_override = conditions_override
        assignment.state_restrictions = list(state_restrictions or [])
        assignment.campus_restrictions = list(campus_restrictions or [])
        assignment.expires_at = expires_at

        saved = self._store.save_assignment(assignment)
        logger.info(f"Permission {permission_name} granted to role {role_name} by {granted_by}")
        self._hub.notify("global")
        return saved

    def revoke_permission(
        self,
        role_name: str,
        permission_name: str,
        revoked_by: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RoleAssignment:
        assignment = self._store.get_assignment(role_name, permission_name)
        if assignment is None:
            raise NotFoundError(f"Mapping not found: {role_name} -> {permission_name}")

        assignment.revoke(revoked_by, reason, now)
        saved = self._store.save_assignment(assignment)
        logger.info(f"Permission {permission_name} revoked from role {role_name} by {revoked_by}: {reason}")
        self._hub.notify("global")
        return saved

    def list_role_permissions(self, role_name: str, include_inactive: bool = False) -> List[RoleAssignment]:
        return self._store.list_assignments([role_name], include_inactive=include_inactive)

    def cleanup_expired_permissions(self, now: Optional[datetime] = None) -> int:
        """Revoke every active mapping whose expiry has passed."""
        now = now or datetime.utcnow()
        expired = [
            a for a in self._store.list_assignments(include_inactive=False)
            if a.granted and a.is_expired(now)
        ]
        for assignment in expired:
            assignment.revoke("system", AUTOMATIC_EXPIRATION_REASON, now)
            self._store.save_assignment(assignment)

        if expired:
            logger.info(f"Revoked {len(expired)} expired role permissions")
            self._hub.notify("global")
        return len(expired)
