"""
Tests for the role and permission catalogs, seeding and the caches.
"""

import json
import threading
from datetime import timedelta

import pytest

from rbac import ROLE_PERMISSION_MAP, SYSTEM_ROLES, seed_defaults
from rbac.cache import CacheConfig, InvalidationHub, InvalidationListener, PermissionCache, TTLCache
from rbac.catalog import AUTOMATIC_EXPIRATION_REASON
from rbac.enums import Action, Resource, Scope
from rbac.models import Role
from security.exceptions import NotFoundError, SystemRoleProtectedError
from support import StringRedis


class TestSeeding:
    """Tests for the system role and permission seed."""

    def test_seven_system_roles(self, core):
        """Levels 1 through 7, one role each."""
        roles = core.roles.list_active()
        assert [r.hierarchy_level for r in roles] == [1, 2, 3, 4, 5, 6, 7]
        assert all(r.is_system_role for r in roles)

    def test_mfa_required_roles(self, core):
        """Only the two top tiers require MFA."""
        assert core.roles.roles_requiring_mfa() == ["super_admin", "national_admin"]

    def test_seed_is_idempotent(self, core):
        """Seeding twice creates nothing new."""
        created = seed_defaults(core.store, core.roles, core.permissions)
        assert created == {"roles": 0, "permissions": 0, "mappings": 0}

    def test_every_mapped_permission_exists(self, core):
        """The role map references only seeded permissions."""
        for names in ROLE_PERMISSION_MAP.values():
            for name in names:
                assert core.store.get_permission(name) is not None, name

    def test_seed_roles_match_definitions(self):
        """The module-level definitions cover all seven tiers."""
        assert {r.name for r in SYSTEM_ROLES} == set(ROLE_PERMISSION_MAP)


class TestRoleModel:
    """Tests for role validation."""

    def test_level_out_of_range(self):
        """Hierarchy levels are 1..7."""
        with pytest.raises(ValueError):
            Role("overlord", "Overlord", 0, Scope.GLOBAL)
        with pytest.raises(ValueError):
            Role("guest", "Guest", 8, Scope.PERSONAL)

    def test_roles_cannot_be_own_records(self):
        """own_records is a permission scope only."""
        with pytest.raises(ValueError):
            Role("self", "Self", 6, Scope.OWN_RECORDS)

    def test_summary(self, core):
        """Summaries carry the authority label."""
        summary = core.roles.get_role("mclo_admin").to_summary().to_dict()
        assert summary["authority"] == "Campus"
        assert summary["scope"] == "campus"
        assert summary["requires_mfa"] is False


class TestRoleCatalog:
    """Tests for role mutations and the hierarchy snapshot."""

    def test_system_role_cannot_be_deleted(self, core):
        """System roles are protected."""
        with pytest.raises(SystemRoleProtectedError):
            core.roles.delete_role("member")

    def test_delete_custom_role(self, core):
        """Custom roles can be deleted and drop out of the hierarchy."""
        core.roles.save_role(Role("event_host", "Event Host", 6, Scope.CAMPUS))
        assert core.roles.get_role("event_host") is not None

        core.roles.delete_role("event_host")
        assert core.roles.get_role("event_host") is None

    def test_delete_unknown_role(self, core):
        """Unknown roles raise NotFoundError."""
        with pytest.raises(NotFoundError):
            core.roles.delete_role("grand_wizard")

    def test_duplicate_levels_reported(self, core):
        """Two active roles on one level are a data-integrity warning."""
        core.roles.save_role(Role("event_host", "Event Host", 6, Scope.CAMPUS))
        snapshot = core.roles.hierarchy()
        assert snapshot.duplicate_levels == {6: ["event_host", "member"]}
        assert core.roles.stats()["duplicate_levels"] == 1

    def test_deactivated_role_leaves_hierarchy(self, core):
        """Inactive roles are not part of the snapshot."""
        core.roles.save_role(Role("event_host", "Event Host", 6, Scope.CAMPUS))
        core.roles.deactivate_role("event_host")
        assert "event_host" not in core.roles.hierarchy().roles


class TestPermissionCatalog:
    """Tests for grant, revoke and expiry of role permissions."""

    def test_grant_unknown_role(self, core):
        """Granting to a missing role fails."""
        with pytest.raises(NotFoundError):
            core.permissions.grant_permission("grand_wizard", "content_read_global")

    def test_grant_unknown_permission(self, core):
        """Granting a missing permission fails."""
        with pytest.raises(NotFoundError):
            core.permissions.grant_permission("member", "moon_launch_global")

    def test_revoke_unknown_mapping(self, core):
        """Revoking a mapping that never existed fails."""
        with pytest.raises(NotFoundError):
            core.permissions.revoke_permission("member", "settings_update_global")

    def test_revoke_then_regrant(self, core, clock):
        """Re-granting keeps the mapping identity and clears revoke fields."""
        original = core.store.get_assignment("member", "content_read_global")

        revoked = core.permissions.revoke_permission(
            "member", "content_read_global", revoked_by="super", reason="cleanup", now=clock.now
        )
        assert not revoked.granted
        assert revoked.revoke_reason == "cleanup"
        assert core.permissions.list_role_permissions("member", include_inactive=False) != []
        assert "content_read_global" not in {
            a.permission_name for a in core.permissions.list_role_permissions("member")
        }

        regranted = core.permissions.grant_permission("member", "content_read_global", granted_by="super")
        assert regranted.granted and regranted.is_active
        assert regranted.revoked_by is None
        assert regranted.revoke_reason is None
        assert regranted.assignment_id == original.assignment_id

    def test_inactive_mappings_listed_on_request(self, core):
        """include_inactive returns revoked mappings too."""
        core.permissions.revoke_permission("member", "content_read_global", revoked_by="super")
        names = {a.permission_name for a in core.permissions.list_role_permissions("member", include_inactive=True)}
        assert "content_read_global" in names

    def test_cleanup_expired_permissions(self, core, clock):
        """Expired mappings are revoked with the automatic reason."""
        core.permissions.grant_permission("member", "reports_read_state", expires_at=clock.now + timedelta(hours=1))
        core.permissions.grant_permission("member", "reports_export_global", expires_at=clock.now + timedelta(days=2))

        assert core.permissions.cleanup_expired_permissions(clock.now) == 0
        assert core.permissions.cleanup_expired_permissions(clock.now + timedelta(hours=1)) == 1

        expired = core.store.get_assignment("member", "reports_read_state")
        assert not expired.granted
        assert expired.revoke_reason == AUTOMATIC_EXPIRATION_REASON
        assert core.store.get_assignment("member", "reports_export_global").granted

    def test_define_permission_keeps_identity(self, core):
        """Redefining a permission updates it in place."""
        first = core.permissions.define_permission(Resource.EVENTS, Action.READ, Scope.GLOBAL)
        second = core.permissions.define_permission(
            Resource.EVENTS, Action.READ, Scope.GLOBAL, description="Updated"
        )
        assert second.permission_id == first.permission_id
        assert core.permissions.get_permission("events_read_global").description == "Updated"


class TestTTLCache:
    """Tests for the process-level cache."""

    def test_entries_expire(self):
        """Values disappear after the TTL."""
        now = [1000.0]
        cache = TTLCache(maxsize=10, ttl_seconds=300, clock=lambda: now[0])
        cache.set("k", "v")
        now[0] += 300
        assert cache.get("k") == "v"
        now[0] += 1
        assert cache.get("k") is None

    def test_lru_eviction(self):
        """The least recently used key is evicted at capacity."""
        cache = TTLCache(maxsize=2, ttl_seconds=300, clock=lambda: 0.0)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_invalidate_prefix(self):
        """Prefix invalidation removes only matching keys."""
        cache = TTLCache(clock=lambda: 0.0)
        cache.set("user:1:state:-", 1)
        cache.set("user:1:state:LA", 2)
        cache.set("user:2:state:-", 3)
        assert cache.invalidate_prefix("user:1:") == 2
        assert cache.stats()["size"] == 1


class TestPermissionCacheRedis:
    """Tests for the shared Redis layer."""

    def test_invalidate_user_deletes_shared_keys(self, mock_redis_client):
        """User invalidation deletes that user's shared keys only."""
        mock_redis_client.scan_iter.return_value = iter(["rbac:perms:user:u1:state:-:campus:-"])
        cache = PermissionCache(CacheConfig(), redis_client=mock_redis_client, clock=lambda: 0.0)

        cache.invalidate_user("u1")

        mock_redis_client.scan_iter.assert_called_once_with(match="rbac:perms:user:u1:*")
        mock_redis_client.delete.assert_called_once_with("rbac:perms:user:u1:state:-:campus:-")
        mock_redis_client.publish.assert_not_called()

    def test_redis_errors_are_misses(self, mock_redis_client):
        """A failing Redis read falls back to recomputation."""
        mock_redis_client.get.side_effect = ConnectionError("redis down")
        cache = PermissionCache(CacheConfig(), redis_client=mock_redis_client, clock=lambda: 0.0)
        assert cache.get("u1") is None

    def test_unreadable_entry_is_a_miss(self, mock_redis_client):
        """Entries that are not JSON are ignored, never unpickled."""
        mock_redis_client.get.return_value = b"\x80\x04\x95garbage"
        cache = PermissionCache(CacheConfig(), redis_client=mock_redis_client, clock=lambda: 0.0)
        assert cache.get("u1") is None

    def test_process_hit_skips_redis(self, mock_redis_client):
        """Process-level hits never reach Redis."""
        cache = PermissionCache(CacheConfig(), redis_client=mock_redis_client, clock=lambda: 0.0)
        cache.set("u1", {"k": "v"})
        assert cache.get("u1") == {"k": "v"}
        mock_redis_client.get.assert_not_called()
        mock_redis_client.setex.assert_called_once_with(
            "rbac:perms:user:u1:state:-:campus:-", 300, json.dumps({"k": "v"})
        )


class TestInvalidationHub:
    """Tests for the invalidation fan-out."""

    def test_failing_listener_does_not_block_others(self):
        """One broken listener does not stop delivery."""
        hub = InvalidationHub()
        received = []

        def broken(scope, scope_id):
            raise RuntimeError("boom")

        hub.subscribe(broken)
        hub.subscribe(lambda scope, scope_id: received.append((scope, scope_id)))
        hub.notify("user", "u1")
        assert received == [("user", "u1")]

    def test_notify_publishes(self):
        """Local notifications are announced to other workers."""
        redis_client = StringRedis()
        hub = InvalidationHub(redis_client, channel="lodge:rbac:invalidate")

        hub.notify("user", "u1")

        channel, message = redis_client.published[0]
        assert channel == "lodge:rbac:invalidate"
        payload = json.loads(message)
        assert (payload["scope"], payload["scope_id"], payload["origin"]) == ("user", "u1", hub.origin)

    def test_own_messages_ignored(self):
        """A worker does not replay its own notifications."""
        redis_client = StringRedis()
        hub = InvalidationHub(redis_client)
        received = []
        hub.subscribe(lambda scope, scope_id: received.append(scope))
        hub.notify("global")

        assert hub.handle_message(redis_client.published[0][1]) is False
        assert received == ["global"]

    def test_foreign_messages_delivered_without_republishing(self):
        """Remote notifications run local listeners and are not echoed back."""
        redis_client = StringRedis()
        hub = InvalidationHub(redis_client)
        received = []
        hub.subscribe(lambda scope, scope_id: received.append((scope, scope_id)))

        message = json.dumps({"scope": "user", "scope_id": "u2", "origin": "other"}).encode()
        assert hub.handle_message(message) is True

        assert received == [("user", "u2")]
        assert redis_client.published == []

    @pytest.mark.parametrize("payload", [b"not json", "{}", None])
    def test_malformed_messages_ignored(self, payload):
        hub = InvalidationHub(StringRedis())
        assert hub.handle_message(payload) is False


class TestInvalidationListener:
    """Tests for the background pub/sub subscriber."""

    def test_requires_redis(self):
        with pytest.raises(ValueError):
            InvalidationListener(InvalidationHub())

    def test_delivers_published_messages(self, mock_redis_client):
        """Messages read from the subscription reach the hub's listeners."""
        delivered = threading.Event()
        received = []
        hub = InvalidationHub(mock_redis_client, channel="lodge:rbac:invalidate")

        def record(scope, scope_id):
            received.append((scope, scope_id))
            delivered.set()

        hub.subscribe(record)
        message = {
            "type": "message",
            "data": json.dumps({"scope": "user", "scope_id": "u9", "origin": "other"}).encode(),
        }
        pubsub = mock_redis_client.pubsub.return_value
        pubsub.get_message.side_effect = lambda timeout: message if not received else None

        listener = InvalidationListener(hub, poll_timeout=0.01)
        listener.start()
        try:
            assert delivered.wait(2.0)
        finally:
            listener.stop()

        assert received[0] == ("user", "u9")
        mock_redis_client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
        pubsub.subscribe.assert_called_once_with("lodge:rbac:invalidate")
        pubsub.close.assert_called_once()
        assert not listener.running

    def test_subscription_errors_keep_listening(self, mock_redis_client):
        """A dropped connection is logged and polling continues."""
        hub = InvalidationHub(mock_redis_client)
        delivered = threading.Event()
        hub.subscribe(lambda scope, scope_id: delivered.set())
        calls = []

        def get_message(timeout):
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("redis down")
            if len(calls) == 2:
                return {"type": "message", "data": json.dumps({"scope": "global", "origin": "other"})}
            return None

        mock_redis_client.pubsub.return_value.get_message.side_effect = get_message

        listener = InvalidationListener(hub, poll_timeout=0.01)
        listener.start()
        try:
            assert delivered.wait(2.0)
        finally:
            listener.stop()
