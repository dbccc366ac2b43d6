"""SQLAlchemy implementations of the security core stores."""

from .authorization_repository import SQLAuthorizationStore
from .mfa_device_repository import SQLDeviceStore

__all__ = [
    "SQLAuthorizationStore",
    "SQLDeviceStore",
]
