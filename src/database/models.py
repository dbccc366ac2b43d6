"""
SQLAlchemy ORM Models for the lodge security core.

Tables:
- roles: authority tiers (hierarchy level 1-7, scope, capabilities)
- permissions: (resource, action, scope) grants with conditions
- role_permissions: role <-> permission mappings, unique per pair
- users: the consumed account view (roles, home state/campus, MFA flag)
- mfa_devices: second factors with their lock state and counters

Audit entries are not stored here; see audit.storage.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


# Cross-database compatible JSON type
# Uses JSONB on PostgreSQL, JSON on SQLite/others
class JSONB(TypeDecorator):
    """A portable JSONB type that works with both PostgreSQL and SQLite."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_JSONB())
        else:
            return dialect.type_descriptor(JSON())


Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# ROLES AND PERMISSIONS
# =============================================================================

class RoleRecord(Base):
    """Authority tier. Lower hierarchy_level means more authority."""
    __tablename__ = "roles"

    role_id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    hierarchy_level = Column(Integer, nullable=False, index=True)
    scope = Column(String(20), nullable=False)

    capabilities = Column(JSONB, nullable=False, default=dict, comment="RoleCapabilities flags and limits")
    default_permissions = Column(JSONB, nullable=False, default=list)

    is_system_role = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("hierarchy_level BETWEEN 1 AND 7", name="ck_role_hierarchy_level"),
        CheckConstraint("scope <> 'own_records'", name="ck_role_scope"),
    )


class PermissionRecord(Base):
    """Grantable (resource, action, scope) triple."""
    __tablename__ = "permissions"

    permission_id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)

    resource = Column(String(50), nullable=False)
    action = Column(String(20), nullable=False)
    scope = Column(String(20), nullable=False)

    conditions = Column(JSONB, nullable=True, comment="Hours, weekdays, IP lists, field restrictions")
    risk_level = Column(String(10), nullable=False, default="low")
    requires_mfa = Column(Boolean, nullable=False, default=False)
    requires_approval = Column(Boolean, nullable=False, default=False)
    is_system_permission = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_permission_resource_action", "resource", "action"),
    )


class RolePermissionRecord(Base):
    """Role <-> permission mapping with overrides, restrictions and grant audit fields."""
    __tablename__ = "role_permissions"

    assignment_id = Column(String(36), primary_key=True, default=_uuid)
    role_name = Column(String(50), ForeignKey("roles.name", ondelete="CASCADE"), nullable=False)
    permission_name = Column(String(100), ForeignKey("permissions.name", ondelete="CASCADE"), nullable=False)

    scope_override = Column(String(20), nullable=True)
    conditions_override = Column(JSONB, nullable=True)
    state_restrictions = Column(JSONB, nullable=False, default=list)
    campus_restrictions = Column(JSONB, nullable=False, default=list)

    granted = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    granted_by = Column(String(36), nullable=True)
    granted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    revoked_by = Column(String(36), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("role_name", "permission_name", name="uq_role_permission"),
        Index("ix_role_permission_active", "role_name", "is_active"),
    )


# =============================================================================
# USERS (CONSUMED)
# =============================================================================

class UserRecord(Base):
    """Account data the security core reads; owned by the user service."""
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(200), nullable=True)

    role_names = Column(JSONB, nullable=False, default=list)
    primary_role = Column(String(50), nullable=True)
    legacy_role = Column(String(20), nullable=True, comment="Pre-hierarchy role string (admin/user)")

    state_id = Column(String(36), nullable=True, index=True)
    campus_id = Column(String(36), nullable=True, index=True)

    mfa_enabled = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String(255), nullable=True)


# =============================================================================
# MFA DEVICES
# =============================================================================

class MFADeviceRecord(Base):
    """Second factor. ``secret`` holds the TOTP seed and is never returned by the API."""
    __tablename__ = "mfa_devices"

    device_id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    device_type = Column(String(20), nullable=False)
    device_name = Column(String(100), nullable=False)

    secret = Column(String(64), nullable=True)
    phone_number = Column(String(30), nullable=True)
    email_address = Column(String(255), nullable=True)
    backup_codes = Column(JSONB, nullable=False, default=list, comment="SHA-256 hashes with used flags")

    is_primary = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="unverified")
    verified = Column(Boolean, nullable=False, default=False)
    locked_until = Column(DateTime, nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    usage_count = Column(Integer, nullable=False, default=0)

    last_used = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    challenge_hash = Column(String(64), nullable=True)
    challenge_expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_mfa_device_user_status", "user_id", "status"),
    )
