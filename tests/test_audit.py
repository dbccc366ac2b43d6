"""
Tests for the audit trail: risk classification, masking, signatures,
fire-and-forget writes, storage backends, retention and the security
monitor.
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from audit import (
    AlertThresholds,
    AuditAction,
    AuditFilter,
    AuditLogEntry,
    AuditLogger,
    AuditResource,
    AuditResult,
    ChangeSet,
    InMemoryAuditStorage,
    SecurityMonitor,
    SQLiteAuditStorage,
    compute_risk_level,
    is_suspicious_request,
    request_snapshot,
)
from audit.event_types import resource_for
from rbac.enums import DenialCode, RiskLevel
from security.data_sanitizer import MASKED


@pytest.fixture
def audit(clock):
    logger = AuditLogger(InMemoryAuditStorage(), clock=clock)
    yield logger
    logger.shutdown()


@pytest.fixture
def monitored(audit):
    monitor = SecurityMonitor(audit)
    audit.monitor = monitor
    return audit, monitor


class TestRiskClassification:
    """Tests for action-derived risk levels."""

    @pytest.mark.parametrize("action,expected", [
        (AuditAction.USER_DELETED, RiskLevel.CRITICAL),
        (AuditAction.PRIVILEGE_ESCALATION_ATTEMPT, RiskLevel.CRITICAL),
        (AuditAction.PERMISSION_GRANTED, RiskLevel.HIGH),
        (AuditAction.DATA_EXPORT, RiskLevel.HIGH),
        (AuditAction.MFA_SETUP, RiskLevel.MEDIUM),
        (AuditAction.PAYMENT_APPROVED, RiskLevel.MEDIUM),
        (AuditAction.LOGIN, RiskLevel.LOW),
        (AuditAction.BOOKING_CREATED, RiskLevel.LOW),
    ])
    def test_base_levels(self, action, expected):
        """The level follows the action kind."""
        assert compute_risk_level(action)[0] == expected

    def test_suspicious_body_raises_to_high(self):
        """An injection-looking body lifts a low action to HIGH."""
        level, indicators = compute_risk_level(AuditAction.CONTENT_CREATED, {"title": "<script>alert(1)</script>"})
        assert level == RiskLevel.HIGH
        assert indicators == ["suspicious_pattern"]

    def test_suspicious_body_never_lowers(self):
        """Critical stays critical."""
        level, _ = compute_risk_level(AuditAction.USER_DELETED, "1 UNION SELECT password FROM users")
        assert level == RiskLevel.CRITICAL

    def test_benign_bodies(self):
        """Ordinary text is not suspicious."""
        assert not is_suspicious_request({"note": "Arriving Friday evening, two guests"})
        assert not is_suspicious_request(None)
        assert is_suspicious_request("DROP TABLE bookings")

    def test_resource_mapping(self):
        """Plural authorization resources map to audit resources."""
        assert resource_for("bookings") == AuditResource.BOOKING
        assert resource_for("categories") == AuditResource.CATEGORY
        assert resource_for("settings") == AuditResource.SETTINGS
        assert resource_for("spaceships") == AuditResource.SYSTEM


class TestAuditLogEntry:
    """Tests for signatures, retention and serialization."""

    def test_signature_detects_tampering(self, clock):
        """Editing a signed field breaks integrity."""
        entry = AuditLogEntry(timestamp=clock.now, actor_id="u1", action=AuditAction.LOGIN)
        assert entry.verify_integrity()

        entry.actor_id = "u2"
        assert not entry.verify_integrity()

    def test_risk_adjustments_keep_signature(self, clock):
        """Risk level and indicators are outside the signature."""
        entry = AuditLogEntry(timestamp=clock.now, action=AuditAction.LOGIN)
        entry.risk_level = RiskLevel.HIGH
        entry.threat_indicators.append("manual_review")
        assert entry.verify_integrity()

    def test_seven_year_retention(self, clock):
        """Retention defaults to seven years after the event."""
        entry = AuditLogEntry(timestamp=clock.now)
        assert entry.retention_date == clock.now + timedelta(days=7 * 365)
        assert not entry.is_expired(clock.now + timedelta(days=7 * 365 - 1))
        assert entry.is_expired(clock.now + timedelta(days=7 * 365))

    def test_dict_round_trip_keeps_signature(self, clock):
        """A deserialized entry still verifies."""
        entry = AuditLogEntry(
            timestamp=clock.now,
            actor_id="u1",
            action=AuditAction.USER_UPDATED,
            changes=ChangeSet(before={"name": "A"}, after={"name": "B"}),
        )
        restored = AuditLogEntry.from_dict(entry.to_dict())
        assert restored.signature_hash == entry.signature_hash
        assert restored.verify_integrity()

    def test_changed_fields(self):
        """Only differing keys are reported."""
        changes = ChangeSet(before={"a": 1, "b": 2}, after={"a": 1, "b": 3, "c": 4})
        assert changes.changed_fields() == ["b", "c"]

    def test_summary(self, clock):
        """Summaries read like a log line."""
        entry = AuditLogEntry(timestamp=clock.now, actor_id="u1", action=AuditAction.LOGIN, description="Signed in")
        assert entry.get_summary() == "[2024-03-13 10:00:00] login (success, low) by user:u1 - Signed in"


class TestAuditLogger:
    """Tests for building, masking and writing entries."""

    def test_entry_is_masked_and_flagged(self, audit):
        """Credentials in the request are masked before storage."""
        entry = audit.build_entry(
            AuditAction.USER_CREATED,
            actor_id="super",
            resource=AuditResource.USER,
            request=request_snapshot(
                method="POST",
                path="/api/users",
                ip_address="10.0.0.1",
                headers={"Authorization": "Bearer abc", "Accept": "application/json"},
                body={"email": "new@lodge.test", "password": "Lodge#Secure2024"},
            ),
            changes=ChangeSet(after={"password_hash": "$2b$12$xyz", "state_id": "LA"}),
        )
        assert entry.request["headers"]["Authorization"] == MASKED
        assert entry.request["body"]["password"] == MASKED
        assert entry.changes.after["password_hash"] == MASKED
        assert entry.changes.after["state_id"] == "LA"
        assert entry.pii_involved and entry.gdpr_relevant
        assert not entry.financial_data
        assert entry.risk_level == RiskLevel.MEDIUM

    def test_payment_entries_are_financial(self, audit):
        """Payment actions carry the financial flag."""
        entry = audit.build_entry(AuditAction.PAYMENT_APPROVED, resource=AuditResource.PAYMENT)
        assert entry.financial_data

    def test_log_is_fire_and_forget(self, audit, clock):
        """log returns the id at once; flush waits for the write."""
        entry_id = audit.log(AuditAction.LOGIN, actor_id="u1")
        assert entry_id
        assert audit.flush()

        stored = audit.get_entry(entry_id)
        assert stored.actor_id == "u1"
        assert stored.timestamp == clock.now

    def test_sink_failure_never_reaches_caller(self, clock):
        """A failing storage is logged and swallowed."""
        storage = MagicMock()
        storage.save.side_effect = OSError("disk full")
        audit = AuditLogger(storage, clock=clock)
        try:
            assert audit.log(AuditAction.LOGIN, actor_id="u1")
            assert audit.flush()
            assert audit.log_sync(AuditAction.LOGIN, actor_id="u1") is None
        finally:
            audit.shutdown()

    def test_log_after_shutdown(self, clock):
        """Writes submitted after shutdown are dropped without raising."""
        audit = AuditLogger(InMemoryAuditStorage(), clock=clock)
        audit.shutdown()
        assert audit.log(AuditAction.LOGIN, actor_id="u1")

    def test_access_denied_classification(self, audit):
        """Hierarchy denials are escalation attempts, others unauthorized access."""
        scope_denial = SimpleNamespace(code=DenialCode.SCOPE_MISMATCH, reason="Scope mismatch", requires_mfa=False)
        hierarchy_denial = SimpleNamespace(code=DenialCode.HIERARCHY_VIOLATION, reason="Insufficient authority")

        first = audit.record_access_denied("member", "bookings", "approve", scope_denial, ip_address="10.0.0.9")
        second = audit.record_access_denied("member", "users", "update", hierarchy_denial)
        audit.flush()

        unauthorized = audit.get_entry(first)
        assert unauthorized.action == AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT
        assert unauthorized.resource == AuditResource.BOOKING
        assert unauthorized.result == AuditResult.FAILURE
        assert unauthorized.ip_address == "10.0.0.9"
        assert unauthorized.metadata["denial_code"] == "SCOPE_MISMATCH"
        assert unauthorized.risk_level == RiskLevel.CRITICAL

        assert audit.get_entry(second).action == AuditAction.PRIVILEGE_ESCALATION_ATTEMPT

    def test_query_pagination(self, audit, clock):
        """Pages are newest first with totals."""
        for i in range(7):
            audit.log_sync(AuditAction.BOOKING_CREATED, actor_id="member", resource_id=f"b{i}")
            clock.advance(minutes=1)

        page = audit.query(AuditFilter(actor_id="member"), page=3, limit=3)
        assert page["pagination"] == {"page": 3, "limit": 3, "total": 7, "pages": 3}
        assert [e["resource_id"] for e in page["entries"]] == ["b0"]

        first = audit.query(AuditFilter(actor_id="member"), page=1, limit=3)
        assert [e["resource_id"] for e in first["entries"]] == ["b6", "b5", "b4"]

    def test_query_masks_output(self, audit):
        """Entries are masked again on the way out."""
        entry = audit.build_entry(AuditAction.LOGIN, description="token Bearer abc.def.ghi")
        audit.storage.save(entry)
        data = audit.query()["entries"][0]
        assert "abc.def.ghi" not in data["description"]

    def test_security_events_and_statistics(self, audit, clock):
        """Security views count only security actions."""
        audit.log_sync(AuditAction.LOGIN, actor_id="u1")
        audit.log_sync(AuditAction.LOGIN_FAILED, target_user_id="u1", result=AuditResult.FAILURE)
        audit.log_sync(AuditAction.RATE_LIMIT_EXCEEDED, request={"ip_address": "10.0.0.1"})

        events = audit.get_security_events()
        assert {e["action"] for e in events} == {"login_failed", "rate_limit_exceeded"}

        stats = audit.get_statistics()
        assert stats["total"] == 3
        assert stats["security_events"] == 2
        assert stats["by_action"]["login"] == 1

    def test_post_write_adjustments(self, audit):
        """Risk level and indicators can be raised after the write."""
        entry = audit.log_sync(AuditAction.LOGIN, actor_id="u1")
        assert audit.update_risk_level(entry.entry_id, RiskLevel.HIGH)
        assert audit.add_threat_indicator(entry.entry_id, "impossible_travel")

        stored = audit.get_entry(entry.entry_id)
        assert stored.risk_level == RiskLevel.HIGH
        assert stored.threat_indicators == ["impossible_travel"]
        assert stored.verify_integrity()
        assert not audit.update_risk_level("missing", RiskLevel.LOW)

    def test_retention_cleanup(self, clock):
        """Entries past retention are deleted, newer ones kept."""
        audit = AuditLogger(InMemoryAuditStorage(), retention_days=30, clock=clock)
        try:
            audit.log_sync(AuditAction.LOGIN, actor_id="old")
            clock.advance(days=10)
            audit.log_sync(AuditAction.LOGIN, actor_id="new")

            assert audit.cleanup_expired_logs(clock.now + timedelta(days=19)) == 0
            assert audit.cleanup_expired_logs(clock.now + timedelta(days=20)) == 1
            assert [e["actor_id"] for e in audit.query()["entries"]] == ["new"]
        finally:
            audit.shutdown()


class TestSQLiteAuditStorage:
    """Tests for the SQLite backend."""

    @pytest.fixture
    def storage(self, tmp_path):
        return SQLiteAuditStorage(str(tmp_path / "audit" / "lodge_audit.db"))

    def test_round_trip_verifies(self, storage, clock):
        """Stored entries come back intact and signed."""
        audit = AuditLogger(storage, clock=clock)
        try:
            entry = audit.log_sync(
                AuditAction.ROLE_ASSIGNED,
                actor_id="super",
                target_user_id="member",
                resource=AuditResource.ROLE,
                metadata={"role": "auditor"},
                request=request_snapshot(method="POST", path="/api/authz/roles/assign", ip_address="10.0.0.1"),
            )
            stored = storage.get(entry.entry_id)
            assert stored.metadata == {"role": "auditor"}
            assert stored.ip_address == "10.0.0.1"
            assert stored.verify_integrity()
        finally:
            audit.shutdown()

    def test_filters_and_counts(self, storage, clock):
        """Filters translate to SQL conditions."""
        audit = AuditLogger(storage, clock=clock)
        try:
            audit.log_sync(AuditAction.LOGIN, actor_id="a")
            audit.log_sync(AuditAction.LOGIN_FAILED, actor_id="a", result=AuditResult.FAILURE)
            audit.log_sync(AuditAction.LOGIN, actor_id="b")

            assert storage.count(AuditFilter(actor_id="a")) == 2
            assert storage.count(AuditFilter(result=AuditResult.FAILURE)) == 1
            assert storage.count(AuditFilter(actions=frozenset())) == 0
            assert storage.count(AuditFilter(start_date=clock.now + timedelta(seconds=1))) == 0
            assert storage.statistics()["by_action"] == {"login": 2, "login_failed": 1}
        finally:
            audit.shutdown()

    def test_update_and_retention(self, storage, clock):
        """update_security and delete_expired work in SQL."""
        entry = AuditLogEntry(timestamp=clock.now, action=AuditAction.LOGIN, retention_date=clock.now + timedelta(days=1))
        storage.save(entry)

        assert storage.update_security(entry.entry_id, threat_indicator="tor_exit_node")
        assert storage.update_security(entry.entry_id, threat_indicator="tor_exit_node")
        assert storage.get(entry.entry_id).threat_indicators == ["tor_exit_node"]
        assert not storage.update_security("missing", risk_level=RiskLevel.HIGH)

        assert storage.delete_expired(clock.now) == 0
        assert storage.delete_expired(clock.now + timedelta(days=1)) == 1


class TestSecurityMonitor:
    """Tests for threshold alerts."""

    def test_brute_force_alert(self, monitored, clock):
        """Five failed logins in 15 minutes raise one alert."""
        audit, monitor = monitored
        alerts = []
        monitor.add_alert_callback(alerts.append)

        for _ in range(4):
            audit.log_sync(AuditAction.LOGIN_FAILED, target_user_id="member", result=AuditResult.FAILURE)
            clock.advance(minutes=2)
        assert alerts == []

        audit.log_sync(AuditAction.LOGIN_FAILED, target_user_id="member", result=AuditResult.FAILURE)
        assert [a.alert_type for a in alerts] == ["brute_force_attack"]

        stored = audit.storage.query(AuditFilter(action=AuditAction.SUSPICIOUS_ACTIVITY))
        assert len(stored) == 1
        assert stored[0].risk_level == RiskLevel.HIGH
        assert "brute_force" in stored[0].threat_indicators

    def test_spread_out_failures_do_not_alert(self, monitored, clock):
        """Failures outside the window are forgotten."""
        audit, monitor = monitored
        alerts = []
        monitor.add_alert_callback(alerts.append)

        for _ in range(6):
            audit.log_sync(AuditAction.LOGIN_FAILED, target_user_id="member", result=AuditResult.FAILURE)
            clock.advance(minutes=4)
        assert alerts == []

    def test_escalation_alert_on_refused_role_change(self, monitored):
        """A failed role assignment is a critical breach alert."""
        audit, monitor = monitored
        audit.log_sync(
            AuditAction.ROLE_ASSIGNED,
            actor_id="member",
            target_user_id="state",
            result=AuditResult.FAILURE,
        )

        breaches = audit.storage.query(AuditFilter(action=AuditAction.SECURITY_BREACH_DETECTED))
        assert len(breaches) == 1
        assert breaches[0].risk_level == RiskLevel.CRITICAL
        assert breaches[0].metadata["targetUser"] == "state"

    def test_successful_role_change_is_quiet(self, monitored):
        """Successful changes never alert."""
        audit, monitor = monitored
        assert monitor.observe(audit.build_entry(AuditAction.ROLE_ASSIGNED, actor_id="super")) is None

    def test_mass_lockout(self, monitored):
        """Five lockouts across accounts within an hour alert."""
        audit, monitor = monitored
        for i in range(5):
            alert = monitor.observe(audit.build_entry(AuditAction.ACCOUNT_LOCKED, target_user_id=f"u{i}"))
        assert alert.alert_type == "mass_account_lockout"

    def test_excessive_exports(self, clock):
        """Thresholds are configurable."""
        audit = AuditLogger(InMemoryAuditStorage(), clock=clock)
        try:
            monitor = SecurityMonitor(audit, AlertThresholds(data_exports=2))
            monitor.observe(audit.build_entry(AuditAction.DATA_EXPORT, actor_id="treasurer"))
            alert = monitor.observe(audit.build_entry(AuditAction.DATA_EXPORT, actor_id="treasurer"))
            assert alert.alert_type == "excessive_data_export"
            assert alert.metadata == {"exportCount": 2}
        finally:
            audit.shutdown()

    def test_broken_callback_is_contained(self, monitored):
        """A failing callback does not stop alerting."""
        audit, monitor = monitored
        received = []

        def broken(alert):
            raise RuntimeError("pager offline")

        monitor.add_alert_callback(broken)
        monitor.add_alert_callback(received.append)
        audit.log_sync(AuditAction.PRIVILEGE_ESCALATION_ATTEMPT, actor_id="member", result=AuditResult.FAILURE)
        assert [a.alert_type for a in received] == ["privilege_escalation"]

    def test_security_stats(self, monitored, clock):
        """Summary counts cover the requested hours."""
        audit, monitor = monitored
        audit.log_sync(AuditAction.LOGIN, actor_id="u1")
        audit.log_sync(AuditAction.LOGIN_FAILED, target_user_id="u1", result=AuditResult.FAILURE)

        stats = monitor.get_security_stats(hours=1, now=clock.now)
        assert stats["totalEvents"] == 2
        assert stats["failedLogins"] == 1
        assert stats["successfulLogins"] == 1
        assert stats["securityEvents"] == 1
