"""
Security module for the lodge platform.

Provides MFA device lifecycle and enforcement, account lockout, rate
limiting, password policy, session tokens and sanitized logging.
"""

from .exceptions import (
    SecurityError,
    NotFoundError,
    SystemRoleProtectedError,
    AuthorizationUnavailableError,
    InvalidTokenError,
    AccountLockedError,
    DeviceLockedError,
    RateLimitExceededError,
    AccessDeniedError,
    MFARequiredError,
)

__all__ = [
    "SecurityError",
    "NotFoundError",
    "SystemRoleProtectedError",
    "AuthorizationUnavailableError",
    "InvalidTokenError",
    "AccountLockedError",
    "DeviceLockedError",
    "RateLimitExceededError",
    "AccessDeniedError",
    "MFARequiredError",
]
