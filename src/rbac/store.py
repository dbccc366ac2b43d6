"""
Authorization Store

Abstract persistence for roles, permissions, role-permission mappings
and the consumed user view, plus a thread-safe in-memory backend.

The SQLAlchemy backend lives in database.repositories and implements the
same interface.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from security.exceptions import NotFoundError

from .models import Permission, Role, RoleAssignment, UserAccount

T = TypeVar("T")


class AuthorizationStore(ABC):
    """Abstract base class for authorization storage backends."""

    # Roles

    @abstractmethod
    def get_role(self, name: str) -> Optional[Role]:
        pass

    @abstractmethod
    def list_roles(self, active_only: bool = True) -> List[Role]:
        pass

    @abstractmethod
    def save_role(self, role: Role) -> Role:
        pass

    @abstractmethod
    def delete_role(self, name: str) -> bool:
        pass

    # Permissions

    @abstractmethod
    def get_permission(self, name: str) -> Optional[Permission]:
        pass

    @abstractmethod
    def list_permissions(self, active_only: bool = True) -> List[Permission]:
        pass

    @abstractmethod
    def save_permission(self, permission: Permission) -> Permission:
        pass

    # Role <-> permission mappings

    @abstractmethod
    def get_assignment(self, role_name: str, permission_name: str) -> Optional[RoleAssignment]:
        pass

    @abstractmethod
    def save_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        """Insert or replace the mapping for its (role, permission) pair."""
        pass

    @abstractmethod
    def list_assignments(
        self,
        role_names: Optional[Iterable[str]] = None,
        include_inactive: bool = False,
    ) -> List[RoleAssignment]:
        pass

    # Users

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        pass

    @abstractmethod
    def save_user(self, user: UserAccount) -> UserAccount:
        pass

    @abstractmethod
    def update_user(self, user_id: str, mutate: Callable[[UserAccount], T]) -> T:
        """
        Apply ``mutate`` to the stored user atomically and persist it.

        Raises:
            NotFoundError: If the user does not exist
        """
        pass

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        return None


class InMemoryAuthorizationStore(AuthorizationStore):
    """
    In-memory store for tests and single-instance deployments.

    Values are copied on the way in and out so callers must save to persist.
    """

    def __init__(self):
        self._roles: Dict[str, Role] = {}
        self._permissions: Dict[str, Permission] = {}
        self._assignments: Dict[Tuple[str, str], RoleAssignment] = {}
        self._users: Dict[str, UserAccount] = {}
        self._lock = threading.RLock()

    def get_role(self, name: str) -> Optional[Role]:
        with self._lock:
            return copy.deepcopy(self._roles.get(name))

    def list_roles(self, active_only: bool = True) -> List[Role]:
        with self._lock:
            roles = [r for r in self._roles.values() if r.is_active or not active_only]
            return copy.deepcopy(sorted(roles, key=lambda r: r.hierarchy_level))

    def save_role(self, role: Role) -> Role:
        with self._lock:
            self._roles[role.name] = copy.deepcopy(role)
        return role

    def delete_role(self, name: str) -> bool:
        with self._lock:
            return self._roles.pop(name, None) is not None

    def get_permission(self, name: str) -> Optional[Permission]:
        with self._lock:
            return copy.deepcopy(self._permissions.get(name))

    def list_permissions(self, active_only: bool = True) -> List[Permission]:
        with self._lock:
            perms = [p for p in self._permissions.values() if p.is_active or not active_only]
            return copy.deepcopy(perms)

    def save_permission(self, permission: Permission) -> Permission:
        with self._lock:
            self._permissions[permission.name] = copy.deepcopy(permission)
        return permission

    def get_assignment(self, role_name: str, permission_name: str) -> Optional[RoleAssignment]:
        with self._lock:
            return copy.deepcopy(self._assignments.get((role_name, permission_name)))

    def save_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        key = (assignment.role_name, assignment.permission_name)
        with self._lock:
            existing = self._assignments.get(key)
            if existing is not None:
                # Unique (role, permission) pair keeps its identity
                assignment.assignment_id = existing.assignment_id
            self._assignments[key] = copy.deepcopy(assignment)
        return assignment

    def list_assignments(
        self,
        role_names: Optional[Iterable[str]] = None,
        include_inactive: bool = False,
    ) -> List[RoleAssignment]:
        wanted = set(role_names) if role_names is not None else None
        with self._lock:
            results = [
                a for a in self._assignments.values()
                if (wanted is None or a.role_name in wanted)
                and (include_inactive or a.is_active)
            ]
            return copy.deepcopy(results)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._lock:
            return copy.deepcopy(self._users.get(user_id))

    def save_user(self, user: UserAccount) -> UserAccount:
        with self._lock:
            self._users[user.user_id] = copy.deepcopy(user)
        return user

    def update_user(self, user_id: str, mutate: Callable[[UserAccount], T]) -> T:
        with self._lock:
            stored = self._users.get(user_id)
            if stored is None:
                raise NotFoundError(f"User not found: {user_id}")
            working = copy.deepcopy(stored)
            result = mutate(working)
            self._users[user_id] = working
            return result

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        email = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email:
                    return copy.deepcopy(user)
        return None
