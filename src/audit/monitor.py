"""
Security monitor - threshold alerts over the audit stream.

The audit logger hands every stored entry to ``observe``. Sliding windows
keyed per user (or per IP when no user is known) raise an alert once a
threshold is reached:

- failed logins: 5 per 15 minutes per user
- data exports: 5 per 24 hours per user
- account lockouts: 5 per hour across all accounts
- privilege escalation: any attempt

Alerts are written back as ``security_breach_detected`` or
``suspicious_activity`` entries and passed to registered callbacks. A
window is cleared when it fires, so a sustained attack alerts once per
threshold rather than on every event.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from rbac.enums import RiskLevel
from security.secure_logger import get_logger, log_security_event

from .entry import AuditLogEntry
from .event_types import SECURITY_EVENT_ACTIONS, AuditAction, AuditResource, AuditResult
from .storage import AuditFilter

logger = get_logger(__name__)

# Failed role or permission changes count as escalation attempts
_ESCALATION_ACTIONS = frozenset({
    AuditAction.USER_ROLE_CHANGED,
    AuditAction.PERMISSION_GRANTED,
    AuditAction.ROLE_ASSIGNED,
})

_ALERT_ACTIONS = frozenset({
    AuditAction.SECURITY_BREACH_DETECTED,
    AuditAction.SUSPICIOUS_ACTIVITY,
})


@dataclass(frozen=True)
class AlertThresholds:
    failed_logins: int = 5
    failed_login_window: timedelta = timedelta(minutes=15)
    data_exports: int = 5
    data_export_window: timedelta = timedelta(hours=24)
    account_lockouts: int = 5
    account_lockout_window: timedelta = timedelta(hours=1)


@dataclass
class SecurityAlert:
    alert_type: str
    description: str
    action: AuditAction
    risk_level: RiskLevel
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    indicators: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type,
            "description": self.description,
            "action": self.action.value,
            "severity": self.risk_level.value,
            "userId": self.user_id,
            "ipAddress": self.ip_address,
            "indicators": list(self.indicators),
            "metadata": dict(self.metadata),
        }


class SecurityMonitor:
    """Turns bursts of audit entries into security alerts."""

    def __init__(self, audit: Any, thresholds: Optional[AlertThresholds] = None):
        self._audit = audit
        self.thresholds = thresholds or AlertThresholds()
        self._windows: Dict[str, Deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[SecurityAlert], None]] = []

    def add_alert_callback(self, callback: Callable[[SecurityAlert], None]) -> None:
        self._callbacks.append(callback)

    # =========================================================================
    # OBSERVATION
    # =========================================================================

    def observe(self, entry: AuditLogEntry) -> Optional[SecurityAlert]:
        """Feed one stored entry; returns the alert it triggered, if any."""
        if entry.action in _ALERT_ACTIONS:
            return None

        alert = None
        if entry.action == AuditAction.LOGIN_FAILED:
            alert = self._check_failed_login(entry)
        elif entry.action == AuditAction.DATA_EXPORT:
            alert = self._check_data_export(entry)
        elif entry.action == AuditAction.ACCOUNT_LOCKED:
            alert = self._check_lockouts(entry)
        elif entry.action == AuditAction.PRIVILEGE_ESCALATION_ATTEMPT or (
            entry.action in _ESCALATION_ACTIONS and entry.result == AuditResult.FAILURE
        ):
            alert = self._escalation_alert(entry)

        if alert is not None:
            self.trigger_alert(alert)
        return alert

    def _count(self, key: str, at: datetime, window: timedelta) -> int:
        with self._lock:
            events = self._windows[key]
            events.append(at)
            cutoff = at - window
            while events and events[0] <= cutoff:
                events.popleft()
            return len(events)

    def _fire(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _check_failed_login(self, entry: AuditLogEntry) -> Optional[SecurityAlert]:
        principal = entry.target_user_id or entry.actor_id
        key = f"login_failed:user:{principal}" if principal else f"login_failed:ip:{entry.ip_address}"
        count = self._count(key, entry.timestamp, self.thresholds.failed_login_window)
        if count < self.thresholds.failed_logins:
            return None
        self._fire(key)
        source = f"user {principal}" if principal else f"IP {entry.ip_address}"
        return SecurityAlert(
            alert_type="brute_force_attack",
            description=f"Brute force attack detected against {source}: {count} failed login attempts in 15 minutes",
            action=AuditAction.SUSPICIOUS_ACTIVITY,
            risk_level=RiskLevel.HIGH,
            user_id=principal,
            ip_address=entry.ip_address,
            indicators=["brute_force", "failed_authentication"],
            metadata={"attemptCount": count},
        )

    def _check_data_export(self, entry: AuditLogEntry) -> Optional[SecurityAlert]:
        key = f"data_export:{entry.actor_id}"
        count = self._count(key, entry.timestamp, self.thresholds.data_export_window)
        if count < self.thresholds.data_exports:
            return None
        self._fire(key)
        return SecurityAlert(
            alert_type="excessive_data_export",
            description=f"Excessive data exports by user {entry.actor_id}: {count} exports in 24 hours",
            action=AuditAction.SUSPICIOUS_ACTIVITY,
            risk_level=RiskLevel.HIGH,
            user_id=entry.actor_id,
            ip_address=entry.ip_address,
            indicators=["data_exfiltration", "excessive_exports"],
            metadata={"exportCount": count},
        )

    def _check_lockouts(self, entry: AuditLogEntry) -> Optional[SecurityAlert]:
        key = "account_locked"
        count = self._count(key, entry.timestamp, self.thresholds.account_lockout_window)
        if count < self.thresholds.account_lockouts:
            return None
        self._fire(key)
        return SecurityAlert(
            alert_type="mass_account_lockout",
            description=f"Mass account lockout detected: {count} accounts locked in 1 hour",
            action=AuditAction.SECURITY_BREACH_DETECTED,
            risk_level=RiskLevel.HIGH,
            indicators=["mass_lockout", "potential_attack"],
            metadata={"lockoutCount": count},
        )

    def _escalation_alert(self, entry: AuditLogEntry) -> SecurityAlert:
        return SecurityAlert(
            alert_type="privilege_escalation",
            description=f"Failed privilege escalation attempt by user {entry.actor_id or 'unknown'}",
            action=AuditAction.SECURITY_BREACH_DETECTED,
            risk_level=RiskLevel.CRITICAL,
            user_id=entry.actor_id,
            ip_address=entry.ip_address,
            indicators=["privilege_escalation", "unauthorized_access"],
            metadata={
                "action": entry.action.value,
                "targetUser": entry.target_user_id,
                "sourceEntry": entry.entry_id,
            },
        )

    # =========================================================================
    # ALERTING
    # =========================================================================

    def trigger_alert(self, alert: SecurityAlert) -> None:
        """Record the alert as an audit entry and notify callbacks."""
        log_security_event(logger, alert.alert_type, "CRITICAL", alert.to_dict())

        entry = self._audit.log_sync(
            alert.action,
            actor_id=alert.user_id,
            resource=AuditResource.SYSTEM,
            result=AuditResult.SUCCESS,
            description=alert.description,
            request={"ip_address": alert.ip_address},
            threat_indicators=alert.indicators,
            metadata=alert.metadata,
        )
        # Severity chosen by the detector may exceed the action's base level
        if entry is not None and alert.risk_level.rank > entry.risk_level.rank:
            self._audit.update_risk_level(entry.entry_id, alert.risk_level)

        for callback in self._callbacks:
            try:
                callback(alert)
            except Exception as e:
                logger.error(f"Error in alert callback: {e!r}")

    # =========================================================================
    # REPORTING
    # =========================================================================

    def get_security_stats(self, hours: int = 24, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summary counts for the last ``hours`` hours."""
        storage = self._audit.storage
        now = now or datetime.utcnow()
        window = AuditFilter(start_date=now - timedelta(hours=hours), end_date=now)
        stats = storage.statistics(window.start_date, window.end_date)
        by_action = stats.get("by_action", {})
        by_risk = stats.get("by_risk_level", {})
        return {
            "totalEvents": stats.get("total", 0),
            "securityEvents": storage.count(
                AuditFilter(actions=SECURITY_EVENT_ACTIONS, start_date=window.start_date, end_date=now)
            ),
            "failedLogins": by_action.get(AuditAction.LOGIN_FAILED.value, 0),
            "successfulLogins": by_action.get(AuditAction.LOGIN.value, 0),
            "highRiskEvents": by_risk.get(RiskLevel.HIGH.value, 0) + by_risk.get(RiskLevel.CRITICAL.value, 0),
        }
