"""
Audit trail for the lodge platform.

Append-only, HMAC-signed entries with computed risk levels, masked
request snapshots, a fire-and-forget writer and a retention sweep.

    from audit import AuditLogger, AuditAction, SQLiteAuditStorage

    audit = AuditLogger(SQLiteAuditStorage("./data/lodge_audit.db"))
    audit.log(AuditAction.LOGIN, actor_id=user_id)
"""

from .event_types import AuditAction, AuditResource, AuditResult, SECURITY_EVENT_ACTIONS
from .entry import AuditLogEntry, ChangeSet, DEFAULT_RETENTION_DAYS
from .risk import compute_risk_level, is_suspicious_request
from .storage import AuditFilter, AuditStorage, InMemoryAuditStorage, SQLiteAuditStorage
from .service import AuditLogger, get_audit_logger, reset_audit_logger, request_snapshot
from .monitor import AlertThresholds, SecurityAlert, SecurityMonitor

__all__ = [
    "AuditAction",
    "AuditResource",
    "AuditResult",
    "SECURITY_EVENT_ACTIONS",
    "AuditLogEntry",
    "ChangeSet",
    "DEFAULT_RETENTION_DAYS",
    "compute_risk_level",
    "is_suspicious_request",
    "AuditFilter",
    "AuditStorage",
    "InMemoryAuditStorage",
    "SQLiteAuditStorage",
    "AuditLogger",
    "get_audit_logger",
    "reset_audit_logger",
    "request_snapshot",
    "AlertThresholds",
    "SecurityAlert",
    "SecurityMonitor",
]
