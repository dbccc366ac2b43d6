"""
Role-Based Access Control for the lodge platform.

Seven-tier role hierarchy (lower level = more authority):
    1 super_admin      - Supreme, global
    2 national_admin   - National
    3 state_admin      - State
    4 mclo_admin       - Campus
    5 finance_treasurer- Departmental
    6 member           - Basic
    7 auditor          - Observer

Permissions are merged across a user's roles keeping the most permissive
scope per resource:action (global > national > state > campus > personal
> own_records).

Usage:
    from rbac import AuthorizationEngine, AccessContext

    decision = await engine.has_permission(user_id, "bookings", "approve",
                                           AccessContext(state_id="TS"))
"""

from .enums import (
    Scope,
    RiskLevel,
    Resource,
    Action,
    FieldAccess,
    DenialCode,
)
from .models import (
    Role,
    RoleCapabilities,
    RoleSummary,
    Permission,
    PermissionConditions,
    RoleAssignment,
    ScopeRestriction,
    UserAccount,
    EffectivePermission,
    AccessContext,
    AccessDecision,
    permission_key,
)
from .store import AuthorizationStore, InMemoryAuthorizationStore
from .cache import CacheConfig, InvalidationHub, InvalidationListener, PermissionCache, TTLCache
from .catalog import PermissionCatalog, RoleCatalog
from .resolver import PermissionResolver, ResolvedPermissions
from .engine import AuthorizationEngine
from .hierarchy import HierarchyDecision, RoleHierarchyManager
from .seed import SYSTEM_ROLES, ROLE_PERMISSION_MAP, seed_defaults

__all__ = [
    "Scope",
    "RiskLevel",
    "Resource",
    "Action",
    "FieldAccess",
    "DenialCode",
    "Role",
    "RoleCapabilities",
    "RoleSummary",
    "Permission",
    "PermissionConditions",
    "RoleAssignment",
    "ScopeRestriction",
    "UserAccount",
    "EffectivePermission",
    "AccessContext",
    "AccessDecision",
    "permission_key",
    "AuthorizationStore",
    "InMemoryAuthorizationStore",
    "CacheConfig",
    "InvalidationHub",
    "InvalidationListener",
    "PermissionCache",
    "TTLCache",
    "PermissionCatalog",
    "RoleCatalog",
    "PermissionResolver",
    "ResolvedPermissions",
    "AuthorizationEngine",
    "HierarchyDecision",
    "RoleHierarchyManager",
    "SYSTEM_ROLES",
    "ROLE_PERMISSION_MAP",
    "seed_defaults",
]
