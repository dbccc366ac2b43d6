"""
System role and permission seed data.

Seven system roles from super_admin (level 1) to auditor (level 7) and
the default permission catalog with role mappings. ``seed_defaults`` is
idempotent: existing roles, permissions and mappings are left untouched.
"""

import logging
from typing import Dict, List, Tuple

from .catalog import PermissionCatalog, RoleCatalog
from .enums import Action, Resource, RiskLevel, Scope
from .models import Permission, Role, RoleCapabilities
from .store import AuthorizationStore

logger = logging.getLogger(__name__)


# =============================================================================
# SYSTEM ROLES
# =============================================================================

SYSTEM_ROLES: List[Role] = [
    Role(
        name="super_admin",
        display_name="Super Admin",
        hierarchy_level=1,
        scope=Scope.GLOBAL,
        description="Full system access across the entire platform.",
        capabilities=RoleCapabilities(
            can_manage_users=True,
            can_manage_roles=True,
            can_view_audit_logs=True,
            can_export_data=True,
            can_manage_settings=True,
            requires_mfa=True,
            max_session_duration=240,
        ),
        is_system_role=True,
    ),
    Role(
        name="national_admin",
        display_name="National Admin",
        hierarchy_level=2,
        scope=Scope.NATIONAL,
        description="National content, finances and aggregated state data.",
        capabilities=RoleCapabilities(
            can_manage_users=True,
            can_view_audit_logs=True,
            can_export_data=True,
            requires_mfa=True,
            max_session_duration=360,
        ),
        is_system_role=True,
    ),
    Role(
        name="state_admin",
        display_name="State Admin",
        hierarchy_level=3,
        scope=Scope.STATE,
        description="State chapter data and local property approvals.",
        capabilities=RoleCapabilities(
            can_manage_users=True,
            can_view_audit_logs=True,
            can_export_data=True,
            max_session_duration=480,
        ),
        is_system_role=True,
    ),
    Role(
        name="mclo_admin",
        display_name="MCLO Admin",
        hierarchy_level=4,
        scope=Scope.CAMPUS,
        description="Campus-level member lists and local reporting.",
        capabilities=RoleCapabilities(max_session_duration=480),
        is_system_role=True,
    ),
    Role(
        name="finance_treasurer",
        display_name="Finance/Treasurer",
        hierarchy_level=5,
        scope=Scope.PERSONAL,
        description="Views and approves transactions, revenue-sharing reports.",
        capabilities=RoleCapabilities(can_export_data=True, max_session_duration=480),
        is_system_role=True,
    ),
    Role(
        name="member",
        display_name="Member",
        hierarchy_level=6,
        scope=Scope.PERSONAL,
        description="Standard member access.",
        capabilities=RoleCapabilities(max_session_duration=720),
        is_system_role=True,
    ),
    Role(
        name="auditor",
        display_name="Auditor/Read-Only",
        hierarchy_level=7,
        scope=Scope.PERSONAL,
        description="Read-only access to audit logs and reports.",
        capabilities=RoleCapabilities(can_view_audit_logs=True, max_session_duration=480),
        is_system_role=True,
    ),
]


# =============================================================================
# SYSTEM PERMISSIONS
# =============================================================================

# (resource, action, scope, risk, requires_mfa, description)
_PERMISSION_ROWS: List[Tuple[Resource, Action, Scope, RiskLevel, bool, str]] = [
    (Resource.USERS, Action.CREATE, Scope.GLOBAL, RiskLevel.HIGH, True, "Create new users across all levels"),
    (Resource.USERS, Action.READ, Scope.GLOBAL, RiskLevel.MEDIUM, False, "View all users across the platform"),
    (Resource.USERS, Action.READ, Scope.STATE, RiskLevel.LOW, False, "View users within own state"),
    (Resource.USERS, Action.READ, Scope.CAMPUS, RiskLevel.LOW, False, "View users within own campus"),
    (Resource.USERS, Action.UPDATE, Scope.GLOBAL, RiskLevel.HIGH, True, "Edit any user profile"),
    (Resource.USERS, Action.UPDATE, Scope.STATE, RiskLevel.MEDIUM, False, "Edit users within own state"),
    (Resource.USERS, Action.DELETE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Delete any user account"),
    (Resource.USERS, Action.MANAGE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Full user management capabilities"),
    (Resource.ROLES, Action.CREATE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Create new roles and permissions"),
    (Resource.ROLES, Action.READ, Scope.GLOBAL, RiskLevel.MEDIUM, False, "View all roles and their permissions"),
    (Resource.ROLES, Action.UPDATE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Modify existing roles and permissions"),
    (Resource.ROLES, Action.DELETE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Delete roles (non-system only)"),
    (Resource.BOOKINGS, Action.CREATE, Scope.PERSONAL, RiskLevel.LOW, False, "Create personal booking requests"),
    (Resource.BOOKINGS, Action.READ, Scope.GLOBAL, RiskLevel.MEDIUM, False, "View all booking records"),
    (Resource.BOOKINGS, Action.READ, Scope.STATE, RiskLevel.LOW, False, "View bookings within own state"),
    (Resource.BOOKINGS, Action.READ, Scope.OWN_RECORDS, RiskLevel.LOW, False, "View personal booking history"),
    (Resource.BOOKINGS, Action.UPDATE, Scope.GLOBAL, RiskLevel.HIGH, False, "Modify any booking record"),
    (Resource.BOOKINGS, Action.APPROVE, Scope.GLOBAL, RiskLevel.HIGH, False, "Approve booking requests globally"),
    (Resource.BOOKINGS, Action.APPROVE, Scope.STATE, RiskLevel.MEDIUM, False, "Approve bookings within own state"),
    (Resource.PAYMENTS, Action.CREATE, Scope.PERSONAL, RiskLevel.LOW, False, "Submit payment records"),
    (Resource.PAYMENTS, Action.READ, Scope.GLOBAL, RiskLevel.HIGH, False, "View all payment records"),
    (Resource.PAYMENTS, Action.READ, Scope.STATE, RiskLevel.MEDIUM, False, "View payments within own state"),
    (Resource.PAYMENTS, Action.READ, Scope.OWN_RECORDS, RiskLevel.LOW, False, "View personal payment history"),
    (Resource.PAYMENTS, Action.APPROVE, Scope.GLOBAL, RiskLevel.HIGH, True, "Approve payment records globally"),
    (Resource.PAYMENTS, Action.EXPORT, Scope.GLOBAL, RiskLevel.HIGH, False, "Export payment data and reports"),
    (Resource.CONTENT, Action.CREATE, Scope.GLOBAL, RiskLevel.MEDIUM, False, "Create content across all levels"),
    (Resource.CONTENT, Action.READ, Scope.GLOBAL, RiskLevel.LOW, False, "View all content on the platform"),
    (Resource.CONTENT, Action.UPDATE, Scope.GLOBAL, RiskLevel.MEDIUM, False, "Edit any content"),
    (Resource.CONTENT, Action.DELETE, Scope.GLOBAL, RiskLevel.HIGH, False, "Delete any content"),
    (Resource.AUDIT_LOGS, Action.READ, Scope.GLOBAL, RiskLevel.HIGH, False, "Access to all audit logs"),
    (Resource.REPORTS, Action.READ, Scope.GLOBAL, RiskLevel.MEDIUM, False, "Access to all system reports"),
    (Resource.REPORTS, Action.READ, Scope.STATE, RiskLevel.LOW, False, "Access to state-level reports"),
    (Resource.REPORTS, Action.EXPORT, Scope.GLOBAL, RiskLevel.MEDIUM, False, "Export system reports"),
    (Resource.SETTINGS, Action.READ, Scope.GLOBAL, RiskLevel.MEDIUM, False, "View system-wide settings"),
    (Resource.SETTINGS, Action.UPDATE, Scope.GLOBAL, RiskLevel.CRITICAL, True, "Modify system-wide settings"),
]


def system_permissions() -> List[Permission]:
    return [
        Permission(
            resource=resource,
            action=action,
            scope=scope,
            risk_level=risk,
            requires_mfa=requires_mfa,
            description=description,
            is_system_permission=True,
        )
        for resource, action, scope, risk, requires_mfa, description in _PERMISSION_ROWS
    ]


ROLE_PERMISSION_MAP: Dict[str, List[str]] = {
    "super_admin": [
        "users_create_global", "users_read_global", "users_update_global", "users_delete_global",
        "users_manage_global",
        "roles_create_global", "roles_read_global", "roles_update_global", "roles_delete_global",
        "bookings_read_global", "bookings_update_global", "bookings_approve_global",
        "payments_read_global", "payments_approve_global", "payments_export_global",
        "content_create_global", "content_read_global", "content_update_global", "content_delete_global",
        "audit_logs_read_global", "reports_read_global", "reports_export_global",
        "settings_read_global", "settings_update_global",
    ],
    "national_admin": [
        "users_read_global", "users_update_state",
        "bookings_read_global", "bookings_approve_global",
        "payments_read_global", "payments_approve_global", "payments_export_global",
        "content_create_global", "content_read_global", "content_update_global",
        "audit_logs_read_global", "reports_read_global", "reports_export_global",
    ],
    "state_admin": [
        "users_read_state", "users_update_state",
        "bookings_read_state", "bookings_approve_state",
        "payments_read_state",
        "content_read_global", "content_update_global",
        "reports_read_state",
    ],
    "mclo_admin": [
        "users_read_campus",
        "bookings_create_personal", "bookings_read_state",
        "content_read_global",
        "reports_read_state",
    ],
    "finance_treasurer": [
        "payments_read_global", "payments_approve_global", "payments_export_global",
        "bookings_read_global",
        "reports_read_global", "reports_export_global",
    ],
    "member": [
        "bookings_create_personal", "bookings_read_own_records",
        "payments_create_personal", "payments_read_own_records",
        "content_read_global",
    ],
    "auditor": [
        "audit_logs_read_global",
        "reports_read_global",
        "users_read_global",
        "bookings_read_global",
        "payments_read_global",
    ],
}


def seed_defaults(
    store: AuthorizationStore,
    roles: RoleCatalog,
    permissions: PermissionCatalog,
) -> Dict[str, int]:
    """Create missing system roles, permissions and default mappings."""
    created = {"roles": 0, "permissions": 0, "mappings": 0}

    for role in SYSTEM_ROLES:
        if store.get_role(role.name) is None:
            role_copy = Role(
                name=role.name,
                display_name=role.display_name,
                hierarchy_level=role.hierarchy_level,
                scope=role.scope,
                description=role.description,
                capabilities=RoleCapabilities(**vars(role.capabilities)),
                default_permissions=list(ROLE_PERMISSION_MAP.get(role.name, [])),
                is_system_role=True,
            )
            roles.save_role(role_copy)
            created["roles"] += 1

    for permission in system_permissions():
        if store.get_permission(permission.name) is None:
            store.save_permission(permission)
            created["permissions"] += 1

    for role_name, permission_names in ROLE_PERMISSION_MAP.items():
        for permission_name in permission_names:
            if store.get_assignment(role_name, permission_name) is None:
                permissions.grant_permission(role_name, permission_name, granted_by="system")
                created["mappings"] += 1

    logger.info(
        f"Seeded {created['roles']} roles, {created['permissions']} permissions, "
        f"{created['mappings']} mappings"
    )
    return created
