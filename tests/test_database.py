"""
Tests for the SQLAlchemy stores.

Runs the seeded security core against an in-memory SQLite database so the
same flows that the memory backends serve are exercised through the ORM.
"""

from datetime import timedelta

import pytest

from config.settings import DatabaseSettings, Settings
from core.container import build_security_core
from database import SQLAuthorizationStore, SQLDeviceStore, create_db_engine, init_db, make_session_factory
from rbac.enums import Scope
from rbac.models import ScopeRestriction
from security import mfa as codes
from security.exceptions import NotFoundError
from security.mfa_device import DeviceStatus, DeviceType
from support import add_user, enroll_authenticator, wrong_code


@pytest.fixture
def engine():
    engine = create_db_engine(DatabaseSettings(url="sqlite://"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_core(engine, security_settings, clock):
    core = build_security_core(
        Settings(environment="test"),
        security=security_settings,
        session_factory=make_session_factory(engine),
        clock=clock,
        monotonic=clock.monotonic,
    )
    yield core
    core.shutdown()


class TestEngineSetup:
    """Tests for engine creation."""

    def test_sqlite_detection(self):
        """SQLite URLs are recognised."""
        assert DatabaseSettings(url="sqlite://").is_sqlite
        assert not DatabaseSettings(url="postgresql://lodge@db/lodge").is_sqlite

    def test_memory_database_shares_connection(self, engine):
        """Tables created once are visible to later sessions."""
        store = SQLAuthorizationStore(make_session_factory(engine))
        assert store.list_roles() == []


class TestSQLAuthorizationStore:
    """Tests for roles, permissions, mappings and users in SQL."""

    def test_seeded_catalog(self, sql_core):
        """Seeding writes the seven system roles."""
        assert isinstance(sql_core.store, SQLAuthorizationStore)
        assert [r.name for r in sql_core.store.list_roles()] == [
            "super_admin", "national_admin", "state_admin", "mclo_admin",
            "finance_treasurer", "member", "auditor",
        ]

    def test_user_round_trip(self, sql_core):
        """Users persist with roles and scope ids; email lookup ignores case."""
        add_user(sql_core, "amina", "mclo_admin", state_id="LA", campus_id="UNILAG", email="Amina@Lodge.test")

        stored = sql_core.store.find_user_by_email("amina@lodge.TEST")
        assert stored.user_id == "amina"
        assert stored.role_names == ["mclo_admin"]
        assert stored.campus_id == "UNILAG"
        assert sql_core.store.get_user("nobody") is None

    def test_update_user_in_one_transaction(self, sql_core):
        """update_user reads, mutates and writes a user atomically."""
        add_user(sql_core, "amina", "member")

        def promote(user):
            user.role_names.append("mclo_admin")
            return len(user.role_names)

        assert sql_core.store.update_user("amina", promote) == 2
        assert sql_core.store.get_user("amina").role_names == ["member", "mclo_admin"]

        with pytest.raises(NotFoundError):
            sql_core.store.update_user("nobody", promote)

    def test_assignment_keeps_identity(self, sql_core):
        """Re-saving a mapping keeps its id and restrictions."""
        original = sql_core.store.get_assignment("member", "content_read_global")
        sql_core.permissions.revoke_permission("member", "content_read_global", revoked_by="super")
        regranted = sql_core.permissions.grant_permission(
            "member",
            "content_read_global",
            state_restrictions=[ScopeRestriction("KN", allowed=False)],
        )

        stored = sql_core.store.get_assignment("member", "content_read_global")
        assert regranted.assignment_id == original.assignment_id
        assert stored.granted
        assert stored.state_restrictions == [ScopeRestriction("KN", allowed=False)]

    def test_resolution_through_sql(self, sql_core, clock):
        """The resolver merges grants read from the database."""
        user = add_user(sql_core, "dual", "member", state_id="LA")
        user.role_names.append("state_admin")
        sql_core.store.save_user(user)

        permissions = sql_core.resolver.resolve(sql_core.store.get_user("dual"), now=clock.now)
        assert permissions["bookings:read"].scope == Scope.STATE

    def test_delete_role_drops_mappings(self, sql_core):
        """Deleting a role removes its mappings too."""
        from rbac.models import Role

        sql_core.roles.save_role(Role("event_host", "Event Host", 6, Scope.CAMPUS))
        sql_core.permissions.grant_permission("event_host", "content_read_global")
        sql_core.roles.delete_role("event_host")

        assert sql_core.store.get_role("event_host") is None
        assert sql_core.store.list_assignments(["event_host"], include_inactive=True) == []


class TestSQLDeviceStore:
    """Tests for MFA devices in SQL."""

    def test_enrollment_persists(self, sql_core, clock):
        """Verified devices reload as active primaries."""
        add_user(sql_core, "treasurer", "finance_treasurer")
        data = enroll_authenticator(sql_core, "treasurer", clock)

        assert isinstance(sql_core.devices, SQLDeviceStore)
        device = sql_core.devices.get(data["device_id"])
        assert device.is_primary
        assert device.status(clock.now) == DeviceStatus.ACTIVE
        assert device.remaining_backup_codes() == 10
        assert sql_core.store.get_user("treasurer").mfa_enabled

    def test_lock_and_backup_state_persist(self, sql_core, clock):
        """Lock expiry and consumed backup codes survive a reload."""
        add_user(sql_core, "treasurer", "finance_treasurer")
        data = enroll_authenticator(sql_core, "treasurer", clock)

        assert sql_core.mfa.verify("treasurer", data["backup_codes"][0]).success
        bad = wrong_code(data["secret"], clock)
        for _ in range(5):
            result = sql_core.mfa.verify("treasurer", bad)
        assert result.code == codes.DEVICE_LOCKED

        device = sql_core.devices.get(data["device_id"])
        assert device.status(clock.now) == DeviceStatus.LOCKED
        assert device.state.locked_until == clock.now + timedelta(minutes=30)
        assert device.failed_attempts == 0
        assert device.remaining_backup_codes() == 9
        assert device.status(clock.now + timedelta(minutes=30)) == DeviceStatus.ACTIVE

    def test_removal_and_cleanup(self, sql_core, clock):
        """Removed devices are deleted; stale setups are swept."""
        add_user(sql_core, "member", "member")
        data = enroll_authenticator(sql_core, "member", clock)
        assert sql_core.mfa.remove_device("member", data["device_id"]).success
        assert sql_core.devices.get(data["device_id"]) is None

        sql_core.mfa.setup_device("member", DeviceType.AUTHENTICATOR_APP, "Phone")
        assert sql_core.mfa.cleanup_unverified_devices(clock.now + timedelta(hours=25)) == 1
        assert sql_core.devices.list_for_user("member") == []

    def test_update_missing_device(self, sql_core):
        """Updating an unknown device raises NotFoundError."""
        with pytest.raises(NotFoundError):
            sql_core.devices.update("missing", lambda d: None)
