"""
Role Hierarchy Manager - authority reasoning between users and roles.

Authority is a strict partial order on hierarchy levels (lower number =
more authority). It can only be exercised downward; managing yourself is
the single exception.

Operations:
- get_user_highest_role: lowest level among held roles (+ primary role)
- can_manage_user: self, or strictly lower level than the target
- can_assign_role: strictly lower level than the role, and able to manage
  the target when one is given
- get_assignable_roles: active roles strictly below the user's level
- check_escalation: minimum level for sensitive account operations
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .catalog import RoleCatalog
from .enums import DenialCode
from .models import Role, RoleSummary, UserAccount
from .resolver import held_role_names
from .store import AuthorizationStore
from security.exceptions import AuthorizationUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "member"

# Highest hierarchy level number allowed to perform the operation
ESCALATION_REQUIREMENTS: Dict[str, int] = {
    "delete_user": 2,
    "suspend_account": 3,
    "reset_mfa": 2,
    "unlock_account": 3,
    "change_role": 2,
    "access_audit_logs": 2,
}


def required_level_for(operation: str) -> Optional[int]:
    """Highest level number allowed to perform ``operation``, None if unrestricted."""
    return ESCALATION_REQUIREMENTS.get(operation)


@dataclass(frozen=True)
class HierarchyDecision:
    """Verdict of an authority check."""
    allowed: bool
    reason: str
    code: DenialCode = DenialCode.GRANTED

    @classmethod
    def deny(cls, code: DenialCode, reason: str) -> "HierarchyDecision":
        return cls(allowed=False, reason=reason, code=code)

    def to_dict(self) -> Dict[str, object]:
        return {"allowed": self.allowed, "reason": self.reason, "code": self.code.value}


class RoleHierarchyManager:
    """Who may manage or promote whom."""

    def __init__(
        self,
        store: AuthorizationStore,
        roles: RoleCatalog,
        lookup_timeout: float = 2.0,
    ):
        self._store = store
        self._roles = roles
        self._timeout = lookup_timeout

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_user_highest_role(self, user_id: str) -> Optional[Role]:
        user = await self._get_user(user_id)
        if user is None:
            return None
        return self.highest_role_for(user)

    def highest_role_for(self, user: UserAccount) -> Optional[Role]:
        snapshot = self._roles.hierarchy()
        names = held_role_names(user, snapshot.roles)
        if not names and DEFAULT_ROLE in snapshot.roles:
            names = [DEFAULT_ROLE]
        candidates = [snapshot.roles[name] for name in names]
        if not candidates:
            return None
        return min(candidates, key=lambda role: role.hierarchy_level)

    async def can_manage_user(self, manager_id: str, target_id: str) -> HierarchyDecision:
        if manager_id == target_id:
            return HierarchyDecision(allowed=True, reason="Self-management allowed")

        manager_role = await self.get_user_highest_role(manager_id)
        target_role = await self.get_user_highest_role(target_id)
        if manager_role is None or target_role is None:
            return HierarchyDecision.deny(DenialCode.INVALID_ROLE, "Unable to determine user roles")

        if manager_role.hierarchy_level < target_role.hierarchy_level:
            return HierarchyDecision(allowed=True, reason="Manager has higher authority")

        logger.debug(
            f"Hierarchy violation: {manager_id} ({manager_role.name}) -> "
            f"{target_id} ({target_role.name})"
        )
        return HierarchyDecision.deny(
            DenialCode.HIERARCHY_VIOLATION,
            f"Insufficient authority: {manager_role.display_name} cannot manage {target_role.display_name}",
        )

    async def can_assign_role(
        self,
        assigner_id: str,
        role_name: str,
        target_id: Optional[str] = None,
    ) -> HierarchyDecision:
        assigner_role = await self.get_user_highest_role(assigner_id)
        role = self._roles.get_role(role_name)
        if assigner_role is None or role is None:
            return HierarchyDecision.deny(DenialCode.INVALID_ROLE, "Invalid roles")

        if assigner_role.hierarchy_level >= role.hierarchy_level:
            return HierarchyDecision.deny(
                DenialCode.HIERARCHY_VIOLATION,
                f"Cannot assign role with equal or higher authority: {role.display_name}",
            )

        if target_id is not None:
            manage = await self.can_manage_user(assigner_id, target_id)
            if not manage.allowed:
                return HierarchyDecision.deny(manage.code, f"Cannot manage target user: {manage.reason}")

        return HierarchyDecision(allowed=True, reason="Role assignment allowed")

    async def get_assignable_roles(self, user_id: str) -> List[RoleSummary]:
        highest = await self.get_user_highest_role(user_id)
        if highest is None:
            return []
        return [
            role.to_summary()
            for role in self._roles.list_active()
            if role.hierarchy_level > highest.hierarchy_level
        ]

    async def check_escalation(self, user_id: str, operation: str) -> HierarchyDecision:
        required = required_level_for(operation)
        if required is None:
            return HierarchyDecision(allowed=True, reason="No escalation required")

        highest = await self.get_user_highest_role(user_id)
        if highest is None or highest.hierarchy_level > required:
            return HierarchyDecision.deny(
                DenialCode.ESCALATION_REQUIRED,
                f"Operation '{operation}' requires hierarchy level {required} or higher",
            )
        return HierarchyDecision(allowed=True, reason="Sufficient authority")

    # =========================================================================
    # USER ROLE MUTATIONS
    # =========================================================================

    async def assign_role(self, assigner_id: str, target_id: str, role_name: str) -> HierarchyDecision:
        decision = await self.can_assign_role(assigner_id, role_name, target_id)
        if not decision.allowed:
            return decision

        def add_role(target: UserAccount) -> None:
            if role_name not in target.role_names:
                target.role_names.append(role_name)
            if target.primary_role is None:
                target.primary_role = role_name

        await self._update_user(target_id, add_role)
        self._roles.hub.notify("user", target_id)
        logger.info(f"Role {role_name} assigned to {target_id} by {assigner_id}")
        return decision

    async def remove_role(self, remover_id: str, target_id: str, role_name: str) -> HierarchyDecision:
        decision = await self.can_assign_role(remover_id, role_name, target_id)
        if not decision.allowed:
            return decision

        levels = {name: role.hierarchy_level for name, role in self._roles.hierarchy().roles.items()}

        def drop_role(target: UserAccount) -> None:
            target.role_names = [name for name in target.role_names if name != role_name]
            if target.primary_role == role_name:
                remaining = [name for name in target.role_names if name in levels]
                target.primary_role = min(remaining, key=levels.__getitem__) if remaining else None

        await self._update_user(target_id, drop_role)
        self._roles.hub.notify("user", target_id)
        logger.info(f"Role {role_name} removed from {target_id} by {remover_id}")
        return decision

    # =========================================================================
    # STORE ACCESS
    # =========================================================================

    async def _get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._store.get_user, user_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"User lookup timed out for {user_id}")
            raise AuthorizationUnavailableError("User lookup timed out") from e

    async def _update_user(self, user_id: str, mutate: Callable[[UserAccount], None]) -> None:
        """Read-modify-write one user under the store's atomic update."""
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._store.update_user, user_id, mutate),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"User update timed out for {user_id}")
            raise AuthorizationUnavailableError("User update timed out") from e
