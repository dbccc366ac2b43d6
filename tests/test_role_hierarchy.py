"""
Tests for role hierarchy reasoning.

Authority flows strictly downward: a user may manage or assign only
what sits below their highest role, with self-management as the single
exception. Sensitive operations need a minimum level.
"""

import asyncio
import threading

import pytest

import rbac.hierarchy as hierarchy_module
from rbac.enums import DenialCode
from rbac.hierarchy import ESCALATION_REQUIREMENTS, required_level_for
from security.exceptions import AuthorizationUnavailableError, NotFoundError
from support import add_user


class TestHighestRole:
    """Tests for get_user_highest_role."""

    @pytest.mark.asyncio
    async def test_lowest_level_wins(self, core):
        """Holding member and state_admin makes state_admin the highest."""
        user = add_user(core, "dual", "member")
        user.role_names.append("state_admin")
        core.store.save_user(user)

        role = await core.hierarchy.get_user_highest_role("dual")
        assert role.name == "state_admin"

    @pytest.mark.asyncio
    async def test_user_without_roles_defaults_to_member(self, core):
        """Accounts with no usable role count as members."""
        add_user(core, "nobody")
        role = await core.hierarchy.get_user_highest_role("nobody")
        assert role.name == "member"

    @pytest.mark.asyncio
    async def test_missing_user(self, core):
        """Unknown users have no role."""
        assert await core.hierarchy.get_user_highest_role("ghost") is None


class TestCanManageUser:
    """Tests for can_manage_user."""

    @pytest.mark.asyncio
    async def test_self_management(self, core, users):
        """Everyone may manage themselves."""
        decision = await core.hierarchy.can_manage_user("member", "member")
        assert decision.allowed
        assert decision.reason == "Self-management allowed"

    @pytest.mark.asyncio
    async def test_higher_manages_lower(self, core, users):
        """A state admin manages a member."""
        decision = await core.hierarchy.can_manage_user("state", "member")
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_lower_cannot_manage_higher(self, core, users):
        """A member cannot manage a state admin."""
        decision = await core.hierarchy.can_manage_user("member", "state")
        assert not decision.allowed
        assert decision.code == DenialCode.HIERARCHY_VIOLATION
        assert decision.reason.startswith("Insufficient authority")

    @pytest.mark.asyncio
    async def test_peers_cannot_manage_each_other(self, core, users):
        """Equal levels are not enough."""
        add_user(core, "state2", "state_admin", state_id="KN")
        decision = await core.hierarchy.can_manage_user("state", "state2")
        assert decision.code == DenialCode.HIERARCHY_VIOLATION

    @pytest.mark.asyncio
    async def test_unknown_target(self, core, users):
        """An unknown target cannot be reasoned about."""
        decision = await core.hierarchy.can_manage_user("super", "ghost")
        assert decision.code == DenialCode.INVALID_ROLE
        assert decision.reason == "Unable to determine user roles"


class TestCanAssignRole:
    """Tests for can_assign_role and get_assignable_roles."""

    @pytest.mark.asyncio
    async def test_assign_lower_role(self, core, users):
        """A national admin assigns state_admin."""
        decision = await core.hierarchy.can_assign_role("national", "state_admin")
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_cannot_assign_own_level(self, core, users):
        """A state admin cannot create another state admin."""
        decision = await core.hierarchy.can_assign_role("state", "state_admin")
        assert decision.code == DenialCode.HIERARCHY_VIOLATION
        assert decision.reason == "Cannot assign role with equal or higher authority: State Admin"

    @pytest.mark.asyncio
    async def test_cannot_assign_to_unmanageable_target(self, core, users):
        """The target must be manageable too."""
        decision = await core.hierarchy.can_assign_role("state", "member", target_id="national")
        assert not decision.allowed
        assert decision.code == DenialCode.HIERARCHY_VIOLATION

    @pytest.mark.asyncio
    async def test_unknown_role(self, core, users):
        """Unknown roles are invalid."""
        decision = await core.hierarchy.can_assign_role("super", "grand_wizard")
        assert decision.code == DenialCode.INVALID_ROLE
        assert decision.reason == "Invalid roles"

    @pytest.mark.asyncio
    async def test_assignable_roles_strictly_below(self, core, users):
        """A state admin may assign levels 4 through 7."""
        roles = await core.hierarchy.get_assignable_roles("state")
        assert [r.name for r in roles] == ["mclo_admin", "finance_treasurer", "member", "auditor"]
        assert all(r.hierarchy_level > 3 for r in roles)

    @pytest.mark.asyncio
    async def test_auditor_assigns_nothing(self, core, users):
        """Level 7 has nothing below it."""
        assert await core.hierarchy.get_assignable_roles("auditor") == []


class TestEscalation:
    """Tests for check_escalation."""

    def test_requirement_table(self):
        """Thresholds for sensitive operations."""
        assert required_level_for("delete_user") == 2
        assert required_level_for("unlock_account") == 3
        assert required_level_for("view_dashboard") is None
        assert set(ESCALATION_REQUIREMENTS) >= {"delete_user", "reset_mfa", "change_role", "access_audit_logs"}

    @pytest.mark.asyncio
    async def test_sufficient_level(self, core, users):
        """A national admin may delete users."""
        decision = await core.hierarchy.check_escalation("national", "delete_user")
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_insufficient_level(self, core, users):
        """A state admin may not delete users."""
        decision = await core.hierarchy.check_escalation("state", "delete_user")
        assert decision.code == DenialCode.ESCALATION_REQUIRED
        assert decision.reason == "Operation 'delete_user' requires hierarchy level 2 or higher"

    @pytest.mark.asyncio
    async def test_unknown_operation_allowed(self, core, users):
        """Operations without a threshold need no escalation."""
        decision = await core.hierarchy.check_escalation("member", "view_dashboard")
        assert decision.allowed


class TestRoleMutations:
    """Tests for assign_role and remove_role."""

    @pytest.mark.asyncio
    async def test_assign_role_persists_and_invalidates(self, core, users, clock):
        """The new role's grants are visible straight away."""
        core.resolver.resolve(users["member"], now=clock.now)

        decision = await core.hierarchy.assign_role("national", "member", "auditor")
        assert decision.allowed

        stored = core.store.get_user("member")
        assert stored.role_names == ["member", "auditor"]
        assert stored.primary_role == "member"
        assert "audit_logs:read" in core.resolver.resolve(stored, now=clock.now)

    @pytest.mark.asyncio
    async def test_assign_role_denied_leaves_user_untouched(self, core, users):
        """A refused assignment changes nothing."""
        decision = await core.hierarchy.assign_role("member", "auditor", "state_admin")
        assert not decision.allowed
        assert core.store.get_user("auditor").role_names == ["auditor"]

    @pytest.mark.asyncio
    async def test_remove_primary_role_promotes_next(self, core, users):
        """Removing the primary role promotes the strongest remaining role."""
        user = core.store.get_user("member")
        user.role_names = ["mclo_admin", "member"]
        user.primary_role = "mclo_admin"
        core.store.save_user(user)

        decision = await core.hierarchy.remove_role("state", "member", "mclo_admin")
        assert decision.allowed
        stored = core.store.get_user("member")
        assert stored.role_names == ["member"]
        assert stored.primary_role == "member"

    @pytest.mark.asyncio
    async def test_assign_to_missing_user(self, core, users):
        """A missing target has no role to compare against."""
        decision = await core.hierarchy.assign_role("super", "ghost", "member")
        assert decision.code == DenialCode.INVALID_ROLE

    @pytest.mark.asyncio
    async def test_target_vanishing_mid_assignment(self, core, users, monkeypatch):
        """A target deleted between the check and the write is an error."""
        original = core.hierarchy.can_assign_role

        async def check_then_delete(*args, **kwargs):
            decision = await original(*args, **kwargs)
            core.store._users.pop("member")
            return decision

        monkeypatch.setattr(core.hierarchy, "can_assign_role", check_then_delete)
        with pytest.raises(NotFoundError):
            await core.hierarchy.assign_role("super", "member", "auditor")

    @pytest.mark.asyncio
    async def test_lookup_timeout_raises(self, core, users, monkeypatch):
        """A timed out user lookup surfaces as unavailable."""
        async def timed_out(awaitable, timeout):
            awaitable.close()
            raise asyncio.TimeoutError()

        monkeypatch.setattr(hierarchy_module.asyncio, "wait_for", timed_out)
        with pytest.raises(AuthorizationUnavailableError):
            await core.hierarchy.get_user_highest_role("member")


class TestConcurrentUserUpdates:
    """Role and flag changes racing on the same account."""

    @pytest.mark.asyncio
    async def test_concurrent_assignments_keep_both_roles(self, core, users):
        """Two admins assigning different roles at once both persist."""
        await asyncio.gather(
            core.hierarchy.assign_role("super", "member", "auditor"),
            core.hierarchy.assign_role("national", "member", "mclo_admin"),
        )

        roles = core.store.get_user("member").role_names
        assert sorted(roles) == ["auditor", "mclo_admin", "member"]

    @pytest.mark.asyncio
    async def test_assign_and_remove_interleaved(self, core, users):
        """Concurrent add and remove on different roles keep each other's effect."""
        await core.hierarchy.assign_role("super", "member", "auditor")

        await asyncio.gather(
            core.hierarchy.remove_role("super", "member", "auditor"),
            core.hierarchy.assign_role("national", "member", "mclo_admin"),
        )

        assert sorted(core.store.get_user("member").role_names) == ["mclo_admin", "member"]

    def test_update_user_from_threads(self, core, users):
        """Every thread's mutation survives the read-modify-write."""
        workers = 8
        barrier = threading.Barrier(workers)

        def add(index):
            def mutate(user):
                user.role_names.append(f"custom_{index}")

            barrier.wait()
            core.store.update_user("member", mutate)

        threads = [threading.Thread(target=add, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        roles = core.store.get_user("member").role_names
        assert sorted(r for r in roles if r.startswith("custom_")) == sorted(f"custom_{i}" for i in range(workers))

    def test_update_missing_user(self, core):
        with pytest.raises(NotFoundError):
            core.store.update_user("nobody", lambda user: None)

    def test_failed_mutation_leaves_user_unchanged(self, core, users):
        """An exception inside the mutation discards the partial change."""
        def explode(user):
            user.role_names.append("auditor")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            core.store.update_user("member", explode)
        assert core.store.get_user("member").role_names == ["member"]
