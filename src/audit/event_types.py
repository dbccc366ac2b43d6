"""
Audit vocabulary - actions, resources and results.

Action values are persisted, so renaming a member is a data migration.
"""

from enum import Enum


class AuditAction(str, Enum):
    """Every action kind that produces an audit entry."""

    # Authentication
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
    MFA_SETUP = "mfa_setup"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    MFA_DISABLED = "mfa_disabled"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"

    # User management
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    USER_ROLE_CHANGED = "user_role_changed"
    USER_PERMISSIONS_CHANGED = "user_permissions_changed"
    USER_SUSPENDED = "user_suspended"
    USER_ACTIVATED = "user_activated"

    # Roles and permissions
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"

    # Bookings
    BOOKING_CREATED = "booking_created"
    BOOKING_UPDATED = "booking_updated"
    BOOKING_APPROVED = "booking_approved"
    BOOKING_CANCELLED = "booking_cancelled"

    # Payments
    PAYMENT_CREATED = "payment_created"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"

    # Content
    CONTENT_CREATED = "content_created"
    CONTENT_UPDATED = "content_updated"
    CONTENT_DELETED = "content_deleted"
    CONTENT_PUBLISHED = "content_published"

    # System
    SETTINGS_UPDATED = "settings_updated"
    SYSTEM_BACKUP = "system_backup"
    SYSTEM_RESTORE = "system_restore"
    DATA_EXPORT = "data_export"
    BULK_OPERATION = "bulk_operation"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"

    # Security
    SECURITY_BREACH_DETECTED = "security_breach_detected"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    PRIVILEGE_ESCALATION_ATTEMPT = "privilege_escalation_attempt"


class AuditResource(str, Enum):
    """Kinds of object an audited action touches."""
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    BOOKING = "booking"
    PAYMENT = "payment"
    CONTENT = "content"
    POST = "post"
    CATEGORY = "category"
    ACCOMMODATION = "accommodation"
    SETTINGS = "settings"
    SYSTEM = "system"
    SESSION = "session"
    MFA_DEVICE = "mfa_device"
    AUDIT_LOG = "audit_log"
    API_KEY = "api_key"
    NOTIFICATION = "notification"
    REPORT = "report"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    PENDING = "pending"


# Actions reported by the security-events view
SECURITY_EVENT_ACTIONS = frozenset({
    AuditAction.LOGIN_FAILED,
    AuditAction.SECURITY_BREACH_DETECTED,
    AuditAction.SUSPICIOUS_ACTIVITY,
    AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT,
    AuditAction.PRIVILEGE_ESCALATION_ATTEMPT,
    AuditAction.RATE_LIMIT_EXCEEDED,
    AuditAction.MFA_FAILED,
})

# Payment entries always carry the financial-data flag
FINANCIAL_ACTIONS = frozenset({
    AuditAction.PAYMENT_CREATED,
    AuditAction.PAYMENT_APPROVED,
    AuditAction.PAYMENT_REJECTED,
})

# Entries about a person's account data are GDPR relevant
PERSONAL_DATA_ACTIONS = frozenset({
    AuditAction.USER_CREATED,
    AuditAction.USER_UPDATED,
    AuditAction.USER_DELETED,
    AuditAction.DATA_EXPORT,
})


def resource_for(resource: str) -> AuditResource:
    """
    Map an authorization resource (plural, e.g. ``bookings``) to its audit
    resource. Unknown names fall back to SYSTEM.
    """
    name = (resource or "").lower()
    if name == "categories":
        return AuditResource.CATEGORY
    for candidate in (name, name[:-1]):
        try:
            return AuditResource(candidate)
        except ValueError:
            continue
    return AuditResource.SYSTEM
