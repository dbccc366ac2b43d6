"""
Risk classification for audit entries.

The level is derived from the action kind, never chosen by the caller.
A request body that looks like an injection attempt raises the level to
at least HIGH and adds the ``suspicious_pattern`` threat indicator.
"""

import json
import re
from typing import Any, List, Optional, Tuple

from rbac.enums import RiskLevel

from .event_types import AuditAction

CRITICAL_ACTIONS = frozenset({
    AuditAction.USER_DELETED,
    AuditAction.ROLE_DELETED,
    AuditAction.SECURITY_BREACH_DETECTED,
    AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT,
    AuditAction.PRIVILEGE_ESCALATION_ATTEMPT,
})

HIGH_RISK_ACTIONS = frozenset({
    AuditAction.USER_ROLE_CHANGED,
    AuditAction.PERMISSION_GRANTED,
    AuditAction.PERMISSION_REVOKED,
    AuditAction.SETTINGS_UPDATED,
    AuditAction.DATA_EXPORT,
    AuditAction.SYSTEM_BACKUP,
})

MEDIUM_RISK_ACTIONS = frozenset({
    AuditAction.USER_CREATED,
    AuditAction.USER_UPDATED,
    AuditAction.MFA_SETUP,
    AuditAction.PASSWORD_CHANGED,
    AuditAction.PAYMENT_APPROVED,
    AuditAction.CONTENT_DELETED,
})

SUSPICIOUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\balert\s*\(", re.IGNORECASE),
    re.compile(r"\beval\s*\(", re.IGNORECASE),
    re.compile(r"union.*select", re.IGNORECASE),
    re.compile(r"drop.*table", re.IGNORECASE),
    re.compile(r"insert.*into", re.IGNORECASE),
)

SUSPICIOUS_PATTERN_INDICATOR = "suspicious_pattern"


def base_risk_level(action: AuditAction) -> RiskLevel:
    if action in CRITICAL_ACTIONS:
        return RiskLevel.CRITICAL
    if action in HIGH_RISK_ACTIONS:
        return RiskLevel.HIGH
    if action in MEDIUM_RISK_ACTIONS:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _flatten(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, default=str)
    except (TypeError, ValueError):
        return str(body)


def is_suspicious_request(body: Any) -> bool:
    """True when the raw request body matches an injection-style pattern."""
    text = _flatten(body)
    if not text:
        return False
    return any(pattern.search(text) for pattern in SUSPICIOUS_PATTERNS)


def compute_risk_level(
    action: AuditAction,
    request_body: Any = None,
    threat_indicators: Optional[List[str]] = None,
) -> Tuple[RiskLevel, List[str]]:
    """
    Classify an entry.

    Returns:
        (risk level, threat indicators including any added here)
    """
    level = base_risk_level(action)
    indicators = list(threat_indicators or [])
    if is_suspicious_request(request_body):
        level = RiskLevel.max(level, RiskLevel.HIGH)
        if SUSPICIOUS_PATTERN_INDICATOR not in indicators:
            indicators.append(SUSPICIOUS_PATTERN_INDICATOR)
    return level, indicators
