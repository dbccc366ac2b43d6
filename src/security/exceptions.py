"""
Security exceptions.

These cover operational failures and request-level blocks that abort an
HTTP request. Expected authorization denials are returned as decision
values, not raised.
"""

from typing import Optional


class SecurityError(Exception):
    """Base class for security core errors."""

    code = "SECURITY_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(SecurityError):
    """A referenced role, permission, user or device does not exist."""
    code = "NOT_FOUND"


class SystemRoleProtectedError(SecurityError):
    """Attempt to delete a system role."""
    code = "SYSTEM_ROLE_PROTECTED"


class AuthorizationUnavailableError(SecurityError):
    """Role or permission lookup failed or timed out."""
    code = "AUTHORIZATION_UNAVAILABLE"


class InvalidTokenError(SecurityError):
    """Session token missing, malformed or expired."""
    code = "INVALID_TOKEN"


class AccountLockedError(SecurityError):
    """Account is inside its lock window."""
    code = "ACCOUNT_LOCKED"

    def __init__(self, message: str, lock_time_remaining: int):
        super().__init__(message)
        self.lock_time_remaining = lock_time_remaining


class DeviceLockedError(SecurityError):
    """MFA device is inside its lock window."""
    code = "DEVICE_LOCKED"

    def __init__(self, message: str, lock_time_remaining: int):
        super().__init__(message)
        self.lock_time_remaining = lock_time_remaining


class RateLimitExceededError(SecurityError):
    """Request throttled by a sliding-window limit."""
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after: int, limit: int = 0):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit


class AccessDeniedError(SecurityError):
    """Raised by HTTP dependencies to turn a denial value into a 403."""
    code = "ACCESS_DENIED"

    def __init__(self, message: str, code: Optional[str] = None, requires_mfa: bool = False):
        super().__init__(message, code)
        self.requires_mfa = requires_mfa


class MFARequiredError(SecurityError):
    """Raised by HTTP dependencies when the MFA gate is not satisfied."""
    code = "MFA_VERIFICATION_REQUIRED"
