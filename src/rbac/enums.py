"""
Closed enumerations for the authorization core.

Scope and risk level carry an explicit total order so that every
comparison goes through one ranking function instead of ad hoc
string-to-number maps.
"""

from enum import Enum
from typing import Optional


# =============================================================================
# SCOPE
# =============================================================================

class Scope(str, Enum):
    """
    Breadth of records a permission or role applies to.

    Ordered global > national > state > campus > personal > own_records.
    """
    GLOBAL = "global"
    NATIONAL = "national"
    STATE = "state"
    CAMPUS = "campus"
    PERSONAL = "personal"
    OWN_RECORDS = "own_records"

    @property
    def rank(self) -> int:
        """Numeric breadth, higher is more permissive."""
        return SCOPE_RANK[self]

    def outranks(self, other: "Scope") -> bool:
        """True when this scope is strictly more permissive than ``other``."""
        return self.rank > other.rank

    @classmethod
    def most_permissive(cls, first: "Scope", second: "Scope") -> "Scope":
        return second if second.outranks(first) else first


SCOPE_RANK = {
    Scope.GLOBAL: 5,
    Scope.NATIONAL: 4,
    Scope.STATE: 3,
    Scope.CAMPUS: 2,
    Scope.PERSONAL: 1,
    Scope.OWN_RECORDS: 0,
}

# Roles never carry own_records
ROLE_SCOPES = (Scope.GLOBAL, Scope.NATIONAL, Scope.STATE, Scope.CAMPUS, Scope.PERSONAL)


# =============================================================================
# RISK LEVEL
# =============================================================================

class RiskLevel(str, Enum):
    """Risk classification shared by permissions and audit entries."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank

    @classmethod
    def max(cls, first: "RiskLevel", second: "RiskLevel") -> "RiskLevel":
        return first if first.rank >= second.rank else second


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


# =============================================================================
# RESOURCES AND ACTIONS
# =============================================================================

class Resource(str, Enum):
    """Domain nouns that permissions are granted on."""
    USERS = "users"
    ROLES = "roles"
    PERMISSIONS = "permissions"
    BOOKINGS = "bookings"
    PAYMENTS = "payments"
    CONTENT = "content"
    EVENTS = "events"
    RESOURCES = "resources"
    REPORTS = "reports"
    AUDIT_LOGS = "audit_logs"
    SETTINGS = "settings"
    NOTIFICATIONS = "notifications"
    COMMUNITIES = "communities"
    PRODUCTS = "products"
    CATEGORIES = "categories"
    SERVICES = "services"
    DONATIONS = "donations"
    MESSAGES = "messages"
    QURAN_CLASSES = "quran_classes"
    LECTURES = "lectures"
    BLOGS = "blogs"


class Action(str, Enum):
    """Verbs that permissions are granted for."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    EXPORT = "export"
    MANAGE = "manage"
    MODERATE = "moderate"


class FieldAccess(str, Enum):
    """Per-field restriction carried by a permission."""
    READ = "read"
    WRITE = "write"
    NONE = "none"


# =============================================================================
# DENIAL CODES
# =============================================================================

class DenialCode(str, Enum):
    """Machine codes attached to every structural denial."""
    GRANTED = "GRANTED"
    PERMISSION_NOT_FOUND = "PERMISSION_NOT_FOUND"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    CONDITION_FAILED = "CONDITION_FAILED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_INACTIVE = "USER_INACTIVE"
    AUTHORIZATION_UNAVAILABLE = "AUTHORIZATION_UNAVAILABLE"
    HIERARCHY_VIOLATION = "HIERARCHY_VIOLATION"
    INVALID_ROLE = "INVALID_ROLE"
    ESCALATION_REQUIRED = "ESCALATION_REQUIRED"
    MFA_SETUP_REQUIRED = "MFA_SETUP_REQUIRED"
    MFA_VERIFICATION_REQUIRED = "MFA_VERIFICATION_REQUIRED"
    MFA_VERIFICATION_EXPIRED = "MFA_VERIFICATION_EXPIRED"


def parse_scope(value: Optional[str]) -> Optional[Scope]:
    """Convert a stored value to a Scope, None for unknown values."""
    if value is None:
        return None
    if isinstance(value, Scope):
        return value
    try:
        return Scope(value)
    except ValueError:
        return None
