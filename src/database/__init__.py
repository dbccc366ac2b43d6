"""
Database layer for the lodge security core.

This module provides:
- SQLAlchemy ORM models for roles, permissions, mappings, users and MFA devices
- Engine and session management
- Store implementations shared with the in-memory backends
"""

from .models import (
    Base,
    JSONB,
    RoleRecord,
    PermissionRecord,
    RolePermissionRecord,
    UserRecord,
    MFADeviceRecord,
)
from .connection import (
    create_db_engine,
    get_engine,
    get_session_factory,
    make_session_factory,
    get_db_session,
    init_db,
    close_engine,
)
from .repositories import SQLAuthorizationStore, SQLDeviceStore

__all__ = [
    "Base",
    "JSONB",
    "RoleRecord",
    "PermissionRecord",
    "RolePermissionRecord",
    "UserRecord",
    "MFADeviceRecord",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "get_db_session",
    "init_db",
    "close_engine",
    "SQLAuthorizationStore",
    "SQLDeviceStore",
]
