"""
RBAC domain models - plain dataclasses shared by the stores, resolver and engine.

Objects:
- Role: authority tier with hierarchy level, scope and capabilities
- Permission: (resource, action, scope) grant with conditions and risk
- RoleAssignment: role <-> permission mapping with overrides and audit fields
- UserAccount: the consumed user view (roles, home state/campus, MFA flag)
- EffectivePermission / AccessContext / AccessDecision: resolver and engine I/O
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from .enums import (
    Action,
    DenialCode,
    FieldAccess,
    Resource,
    RiskLevel,
    Scope,
)


# Authority label per hierarchy level
AUTHORITY_LABELS = {
    1: "Supreme",
    2: "National",
    3: "State",
    4: "Campus",
    5: "Departmental",
    6: "Basic",
    7: "Observer",
}

_ACTION_LABELS = {
    Action.CREATE: "Create",
    Action.READ: "View",
    Action.UPDATE: "Edit",
    Action.DELETE: "Delete",
    Action.APPROVE: "Approve",
    Action.EXPORT: "Export",
    Action.MANAGE: "Manage",
    Action.MODERATE: "Moderate",
}


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# ROLE
# =============================================================================

@dataclass
class RoleCapabilities:
    """Flags and limits attached to a role."""
    can_manage_users: bool = False
    can_manage_roles: bool = False
    can_view_audit_logs: bool = False
    can_export_data: bool = False
    can_manage_settings: bool = False
    requires_mfa: bool = False
    max_session_duration: int = 480  # minutes
    allowed_ip_ranges: List[str] = field(default_factory=list)


@dataclass
class Role:
    """An authority tier. Lower hierarchy_level means more authority."""
    name: str
    display_name: str
    hierarchy_level: int
    scope: Scope
    description: str = ""
    capabilities: RoleCapabilities = field(default_factory=RoleCapabilities)
    default_permissions: List[str] = field(default_factory=list)
    is_system_role: bool = False
    is_active: bool = True
    role_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not 1 <= self.hierarchy_level <= 7:
            raise ValueError(f"hierarchy_level must be between 1 and 7, got {self.hierarchy_level}")
        if self.scope == Scope.OWN_RECORDS:
            raise ValueError("Roles cannot carry the own_records scope")

    @property
    def requires_mfa(self) -> bool:
        return self.capabilities.requires_mfa

    @property
    def authority(self) -> str:
        return AUTHORITY_LABELS.get(self.hierarchy_level, "Unknown")

    def to_summary(self) -> "RoleSummary":
        return RoleSummary(
            name=self.name,
            display_name=self.display_name,
            hierarchy_level=self.hierarchy_level,
            scope=self.scope,
            authority=self.authority,
            requires_mfa=self.requires_mfa,
        )


@dataclass(frozen=True)
class RoleSummary:
    """Public view of a role returned by the assignable-roles query."""
    name: str
    display_name: str
    hierarchy_level: int
    scope: Scope
    authority: str
    requires_mfa: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "hierarchy_level": self.hierarchy_level,
            "scope": self.scope.value,
            "authority": self.authority,
            "requires_mfa": self.requires_mfa,
        }


# =============================================================================
# PERMISSION
# =============================================================================

@dataclass
class PermissionConditions:
    """
    Runtime conditions evaluated on every check.

    allowed_hours is an inclusive (start, end) hour pair and may wrap
    around midnight (22, 6). allowed_days holds lowercase weekday names.
    IP lists accept single addresses or CIDR ranges.
    """
    allowed_hours: Optional[Tuple[int, int]] = None
    allowed_days: List[str] = field(default_factory=list)
    allowed_ips: List[str] = field(default_factory=list)
    blocked_ips: List[str] = field(default_factory=list)
    field_restrictions: Dict[str, FieldAccess] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.allowed_hours
            or self.allowed_days
            or self.allowed_ips
            or self.blocked_ips
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed_hours": list(self.allowed_hours) if self.allowed_hours else None,
            "allowed_days": list(self.allowed_days),
            "allowed_ips": list(self.allowed_ips),
            "blocked_ips": list(self.blocked_ips),
            "field_restrictions": {k: v.value for k, v in self.field_restrictions.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PermissionConditions":
        if not data:
            return cls()
        hours = data.get("allowed_hours")
        return cls(
            allowed_hours=(int(hours[0]), int(hours[1])) if hours else None,
            allowed_days=[d.lower() for d in data.get("allowed_days") or []],
            allowed_ips=list(data.get("allowed_ips") or []),
            blocked_ips=list(data.get("blocked_ips") or []),
            field_restrictions={
                k: FieldAccess(v) for k, v in (data.get("field_restrictions") or {}).items()
            },
        )


@dataclass
class Permission:
    """A grantable (resource, action, scope) triple."""
    resource: Resource
    action: Action
    scope: Scope
    name: str = ""
    display_name: str = ""
    description: str = ""
    conditions: PermissionConditions = field(default_factory=PermissionConditions)
    risk_level: RiskLevel = RiskLevel.LOW
    requires_mfa: bool = False
    requires_approval: bool = False
    is_system_permission: bool = False
    is_active: bool = True
    permission_id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if not self.name:
            self.name = self.generate_name(self.resource, self.action, self.scope)
        if not self.display_name:
            self.display_name = self.generate_display_name(self.resource, self.action, self.scope)

    @property
    def key(self) -> str:
        """Resolution key shared by all scopes of the same grant."""
        return permission_key(self.resource, self.action)

    @staticmethod
    def generate_name(resource: Resource, action: Action, scope: Scope) -> str:
        return f"{resource.value}_{action.value}_{scope.value}"

    @staticmethod
    def generate_display_name(resource: Resource, action: Action, scope: Scope) -> str:
        resource_label = resource.value.replace("_", " ").title()
        scope_label = "Own" if scope == Scope.OWN_RECORDS else scope.value.title()
        return f"{_ACTION_LABELS[action]} {resource_label} ({scope_label})"

    def get_field_access(self, field_name: str) -> FieldAccess:
        return self.conditions.field_restrictions.get(field_name, FieldAccess.READ)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource.value,
            "action": self.action.value,
            "scope": self.scope.value,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "conditions": self.conditions.to_dict(),
            "risk_level": self.risk_level.value,
            "requires_mfa": self.requires_mfa,
            "requires_approval": self.requires_approval,
            "is_system_permission": self.is_system_permission,
            "is_active": self.is_active,
            "permission_id": self.permission_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Permission":
        return cls(
            resource=Resource(data["resource"]),
            action=Action(data["action"]),
            scope=Scope(data["scope"]),
            name=data.get("name", ""),
            display_name=data.get("display_name", ""),
            description=data.get("description", ""),
            conditions=PermissionConditions.from_dict(data.get("conditions")),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
            requires_mfa=bool(data.get("requires_mfa", False)),
            requires_approval=bool(data.get("requires_approval", False)),
            is_system_permission=bool(data.get("is_system_permission", False)),
            is_active=bool(data.get("is_active", True)),
            permission_id=data.get("permission_id") or _new_id(),
        )


def permission_key(resource: Any, action: Any) -> str:
    resource_value = resource.value if isinstance(resource, Resource) else str(resource)
    action_value = action.value if isinstance(action, Action) else str(action)
    return f"{resource_value}:{action_value}"


# =============================================================================
# ROLE ASSIGNMENT (ROLE <-> PERMISSION MAPPING)
# =============================================================================

@dataclass
class ScopeRestriction:
    """A per-state or per-campus allow/deny entry on a mapping."""
    code: str
    allowed: bool = True


@dataclass
class RoleAssignment:
    """
    Many-to-many link between a role and a permission.

    Usable only when active, granted and not expired.
    """
    role_name: str
    permission_name: str
    scope_override: Optional[Scope] = None
    conditions_override: Optional[PermissionConditions] = None
    state_restrictions: List[ScopeRestriction] = field(default_factory=list)
    campus_restrictions: List[ScopeRestriction] = field(default_factory=list)
    granted: bool = True
    is_active: bool = True
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    granted_at: datetime = field(default_factory=datetime.utcnow)
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    assignment_id: str = field(default_factory=_new_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.granted and not self.is_expired(now)

    def applies_to(self, state_id: Optional[str] = None, campus_id: Optional[str] = None) -> bool:
        """False when an explicit restriction excludes the given state or campus."""
        if state_id:
            for restriction in self.state_restrictions:
                if restriction.code == state_id and not restriction.allowed:
                    return False
        if campus_id:
            for restriction in self.campus_restrictions:
                if restriction.code == campus_id and not restriction.allowed:
                    return False
        return True

    def effective_scope(self, permission: Permission) -> Scope:
        return self.scope_override or permission.scope

    def revoke(self, revoked_by: Optional[str], reason: Optional[str], now: Optional[datetime] = None) -> None:
        self.granted = False
        self.is_active = False
        self.revoked_by = revoked_by
        self.revoked_at = now or datetime.utcnow()
        self.revoke_reason = reason

    def regrant(self, granted_by: Optional[str], now: Optional[datetime] = None) -> None:
        self.granted = True
        self.is_active = True
        self.granted_by = granted_by
        self.granted_at = now or datetime.utcnow()
        self.revoked_by = None
        self.revoked_at = None
        self.revoke_reason = None


# =============================================================================
# USER (CONSUMED)
# =============================================================================

@dataclass
class UserAccount:
    """
    The user view this core consumes.

    ``legacy_role`` holds the pre-hierarchy role string (admin/user) for
    accounts that were never migrated to role references.
    """
    user_id: str
    email: str = ""
    full_name: str = ""
    role_names: List[str] = field(default_factory=list)
    primary_role: Optional[str] = None
    legacy_role: Optional[str] = None
    state_id: Optional[str] = None
    campus_id: Optional[str] = None
    mfa_enabled: bool = False
    is_active: bool = True
    password_hash: Optional[str] = field(default=None, repr=False)

    def held_roles(self) -> List[str]:
        """Primary role first, then the rest without duplicates."""
        names: List[str] = []
        if self.primary_role:
            names.append(self.primary_role)
        for name in self.role_names:
            if name not in names:
                names.append(name)
        return names


# =============================================================================
# RESOLVER / ENGINE I/O
# =============================================================================

@dataclass(frozen=True)
class EffectivePermission:
    """The single most permissive grant for one resource:action key."""
    permission: Permission
    scope: Scope
    conditions: PermissionConditions
    source_role: str

    @property
    def key(self) -> str:
        return self.permission.key

    @property
    def name(self) -> str:
        return self.permission.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "permission": self.permission.name,
            "scope": self.scope.value,
            "risk_level": self.permission.risk_level.value,
            "requires_mfa": self.permission.requires_mfa,
            "source_role": self.source_role,
        }

    def to_cache_dict(self) -> Dict[str, Any]:
        """Full JSON-safe form for the shared cache."""
        return {
            "permission": self.permission.to_dict(),
            "scope": self.scope.value,
            "conditions": self.conditions.to_dict(),
            "source_role": self.source_role,
        }

    @classmethod
    def from_cache_dict(cls, data: Dict[str, Any]) -> "EffectivePermission":
        return cls(
            permission=Permission.from_dict(data["permission"]),
            scope=Scope(data["scope"]),
            conditions=PermissionConditions.from_dict(data.get("conditions")),
            source_role=data["source_role"],
        )


@dataclass
class AccessContext:
    """Request-side facts an authorization check is evaluated against."""
    state_id: Optional[str] = None
    campus_id: Optional[str] = None
    target_user_id: Optional[str] = None
    resource_owner_id: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    now: Optional[datetime] = None

    def at(self, now: datetime) -> "AccessContext":
        return replace(self, now=now)


@dataclass(frozen=True)
class AccessDecision:
    """Verdict of a single authorization check. Denials are values, never raised."""
    allowed: bool
    reason: str
    code: DenialCode
    requires_mfa: bool = False
    permission_name: Optional[str] = None
    scope: Optional[Scope] = None

    @classmethod
    def grant(
        cls,
        effective: EffectivePermission,
        requires_mfa: bool,
        reason: str = "Access granted",
    ) -> "AccessDecision":
        return cls(
            allowed=True,
            reason=reason,
            code=DenialCode.GRANTED,
            requires_mfa=requires_mfa,
            permission_name=effective.name,
            scope=effective.scope,
        )

    @classmethod
    def deny(
        cls,
        code: DenialCode,
        reason: str,
        effective: Optional[EffectivePermission] = None,
    ) -> "AccessDecision":
        return cls(
            allowed=False,
            reason=reason,
            code=code,
            requires_mfa=False,
            permission_name=effective.name if effective else None,
            scope=effective.scope if effective else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "code": self.code.value,
            "requires_mfa": self.requires_mfa,
            "permission": self.permission_name,
            "scope": self.scope.value if self.scope else None,
        }
