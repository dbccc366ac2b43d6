"""Authorization Repository Implementation.

SQLAlchemy implementation of rbac.store.AuthorizationStore over the
roles, permissions, role_permissions and users tables. Each call runs in
its own short transaction so the store is safe to share across threads.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from rbac.enums import Action, Resource, RiskLevel, Scope
from rbac.models import (
    Permission,
    PermissionConditions,
    Role,
    RoleAssignment,
    RoleCapabilities,
    ScopeRestriction,
    UserAccount,
)
from rbac.store import AuthorizationStore
from security.exceptions import NotFoundError

from ..models import PermissionRecord, RolePermissionRecord, RoleRecord, UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# RECORD <-> MODEL CONVERSION
# =============================================================================

def _role_from_record(record: RoleRecord) -> Role:
    return Role(
        name=record.name,
        display_name=record.display_name,
        hierarchy_level=record.hierarchy_level,
        scope=Scope(record.scope),
        description=record.description or "",
        capabilities=RoleCapabilities(**(record.capabilities or {})),
        default_permissions=list(record.default_permissions or []),
        is_system_role=record.is_system_role,
        is_active=record.is_active,
        role_id=record.role_id,
        created_at=record.created_at,
    )


def _apply_role(record: RoleRecord, role: Role) -> None:
    record.name = role.name
    record.display_name = role.display_name
    record.description = role.description
    record.hierarchy_level = role.hierarchy_level
    record.scope = role.scope.value
    record.capabilities = asdict(role.capabilities)
    record.default_permissions = list(role.default_permissions)
    record.is_system_role = role.is_system_role
    record.is_active = role.is_active
    record.created_at = role.created_at


def _permission_from_record(record: PermissionRecord) -> Permission:
    return Permission(
        resource=Resource(record.resource),
        action=Action(record.action),
        scope=Scope(record.scope),
        name=record.name,
        display_name=record.display_name,
        description=record.description or "",
        conditions=PermissionConditions.from_dict(record.conditions),
        risk_level=RiskLevel(record.risk_level),
        requires_mfa=record.requires_mfa,
        requires_approval=record.requires_approval,
        is_system_permission=record.is_system_permission,
        is_active=record.is_active,
        permission_id=record.permission_id,
    )


def _apply_permission(record: PermissionRecord, permission: Permission) -> None:
    record.name = permission.name
    record.display_name = permission.display_name
    record.description = permission.description
    record.resource = permission.resource.value
    record.action = permission.action.value
    record.scope = permission.scope.value
    record.conditions = permission.conditions.to_dict()
    record.risk_level = permission.risk_level.value
    record.requires_mfa = permission.requires_mfa
    record.requires_approval = permission.requires_approval
    record.is_system_permission = permission.is_system_permission
    record.is_active = permission.is_active


def _restrictions(data) -> List[ScopeRestriction]:
    return [ScopeRestriction(code=r["code"], allowed=r.get("allowed", True)) for r in data or []]


def _assignment_from_record(record: RolePermissionRecord) -> RoleAssignment:
    return RoleAssignment(
        role_name=record.role_name,
        permission_name=record.permission_name,
        scope_override=Scope(record.scope_override) if record.scope_override else None,
        conditions_override=PermissionConditions.from_dict(record.conditions_override)
        if record.conditions_override else None,
        state_restrictions=_restrictions(record.state_restrictions),
        campus_restrictions=_restrictions(record.campus_restrictions),
        granted=record.granted,
        is_active=record.is_active,
        expires_at=record.expires_at,
        granted_by=record.granted_by,
        granted_at=record.granted_at,
        revoked_by=record.revoked_by,
        revoked_at=record.revoked_at,
        revoke_reason=record.revoke_reason,
        assignment_id=record.assignment_id,
    )


def _apply_assignment(record: RolePermissionRecord, assignment: RoleAssignment) -> None:
    record.role_name = assignment.role_name
    record.permission_name = assignment.permission_name
    record.scope_override = assignment.scope_override.value if assignment.scope_override else None
    record.conditions_override = assignment.conditions_override.to_dict() if assignment.conditions_override else None
    record.state_restrictions = [asdict(r) for r in assignment.state_restrictions]
    record.campus_restrictions = [asdict(r) for r in assignment.campus_restrictions]
    record.granted = assignment.granted
    record.is_active = assignment.is_active
    record.expires_at = assignment.expires_at
    record.granted_by = assignment.granted_by
    record.granted_at = assignment.granted_at
    record.revoked_by = assignment.revoked_by
    record.revoked_at = assignment.revoked_at
    record.revoke_reason = assignment.revoke_reason


def _user_from_record(record: UserRecord) -> UserAccount:
    return UserAccount(
        user_id=record.user_id,
        email=record.email,
        full_name=record.full_name or "",
        role_names=list(record.role_names or []),
        primary_role=record.primary_role,
        legacy_role=record.legacy_role,
        state_id=record.state_id,
        campus_id=record.campus_id,
        mfa_enabled=record.mfa_enabled,
        is_active=record.is_active,
        password_hash=record.password_hash,
    )


def _apply_user(record: UserRecord, user: UserAccount) -> None:
    record.email = user.email
    record.full_name = user.full_name
    record.role_names = list(user.role_names)
    record.primary_role = user.primary_role
    record.legacy_role = user.legacy_role
    record.state_id = user.state_id
    record.campus_id = user.campus_id
    record.mfa_enabled = user.mfa_enabled
    record.is_active = user.is_active
    record.password_hash = user.password_hash


# =============================================================================
# STORE
# =============================================================================

class SQLAuthorizationStore(AuthorizationStore):
    """
    Database-backed authorization store.

    Models are detached copies; callers must save to persist changes.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Initialize repository with a session factory.

        Args:
            session_factory: SQLAlchemy sessionmaker bound to the security database.
        """
        self._session_factory = session_factory

    # Roles

    def get_role(self, name: str) -> Optional[Role]:
        with self._session_factory() as session:
            record = session.scalars(select(RoleRecord).where(RoleRecord.name == name)).first()
            return _role_from_record(record) if record else None

    def list_roles(self, active_only: bool = True) -> List[Role]:
        query = select(RoleRecord).order_by(RoleRecord.hierarchy_level)
        if active_only:
            query = query.where(RoleRecord.is_active.is_(True))
        with self._session_factory() as session:
            return [_role_from_record(r) for r in session.scalars(query)]

    def save_role(self, role: Role) -> Role:
        with self._session_factory.begin() as session:
            record = session.scalars(select(RoleRecord).where(RoleRecord.name == role.name)).first()
            if record is None:
                record = RoleRecord(role_id=role.role_id)
                session.add(record)
            _apply_role(record, role)
        return role

    def delete_role(self, name: str) -> bool:
        with self._session_factory.begin() as session:
            session.execute(delete(RolePermissionRecord).where(RolePermissionRecord.role_name == name))
            result = session.execute(delete(RoleRecord).where(RoleRecord.name == name))
            return result.rowcount > 0

    # Permissions

    def get_permission(self, name: str) -> Optional[Permission]:
        with self._session_factory() as session:
            record = session.scalars(select(PermissionRecord).where(PermissionRecord.name == name)).first()
            return _permission_from_record(record) if record else None

    def list_permissions(self, active_only: bool = True) -> List[Permission]:
        query = select(PermissionRecord)
        if active_only:
            query = query.where(PermissionRecord.is_active.is_(True))
        with self._session_factory() as session:
            return [_permission_from_record(r) for r in session.scalars(query)]

    def save_permission(self, permission: Permission) -> Permission:
        with self._session_factory.begin() as session:
            record = session.scalars(
                select(PermissionRecord).where(PermissionRecord.name == permission.name)
            ).first()
            if record is None:
                record = PermissionRecord(permission_id=permission.permission_id)
                session.add(record)
            _apply_permission(record, permission)
        return permission

    # Role <-> permission mappings

    def get_assignment(self, role_name: str, permission_name: str) -> Optional[RoleAssignment]:
        with self._session_factory() as session:
            record = session.scalars(
                select(RolePermissionRecord).where(
                    RolePermissionRecord.role_name == role_name,
                    RolePermissionRecord.permission_name == permission_name,
                )
            ).first()
            return _assignment_from_record(record) if record else None

    def save_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        with self._session_factory.begin() as session:
            record = session.scalars(
                select(RolePermissionRecord).where(
                    RolePermissionRecord.role_name == assignment.role_name,
                    RolePermissionRecord.permission_name == assignment.permission_name,
                ).with_for_update()
            ).first()
            if record is None:
                record = RolePermissionRecord(assignment_id=assignment.assignment_id)
                session.add(record)
            else:
                # Unique (role, permission) pair keeps its identity
                assignment.assignment_id = record.assignment_id
            _apply_assignment(record, assignment)
        return assignment

    def list_assignments(
        self,
        role_names: Optional[Iterable[str]] = None,
        include_inactive: bool = False,
    ) -> List[RoleAssignment]:
        query = select(RolePermissionRecord)
        if role_names is not None:
            query = query.where(RolePermissionRecord.role_name.in_(list(role_names)))
        if not include_inactive:
            query = query.where(RolePermissionRecord.is_active.is_(True))
        with self._session_factory() as session:
            return [_assignment_from_record(r) for r in session.scalars(query)]

    # Users

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._session_factory() as session:
            record = session.get(UserRecord, user_id)
            return _user_from_record(record) if record else None

    def save_user(self, user: UserAccount) -> UserAccount:
        with self._session_factory.begin() as session:
            record = session.get(UserRecord, user.user_id)
            if record is None:
                record = UserRecord(user_id=user.user_id)
                session.add(record)
            _apply_user(record, user)
        return user

    def update_user(self, user_id: str, mutate: Callable[[UserAccount], T]) -> T:
        with self._session_factory.begin() as session:
            record = session.scalars(
                select(UserRecord)
                .where(UserRecord.user_id == user_id)
                .with_for_update()
            ).first()
            if record is None:
                raise NotFoundError(f"User not found: {user_id}")
            user = _user_from_record(record)
            result = mutate(user)
            _apply_user(record, user)
            return result

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._session_factory() as session:
            record = session.scalars(
                select(UserRecord).where(func.lower(UserRecord.email) == email.strip().lower())
            ).first()
            return _user_from_record(record) if record else None
