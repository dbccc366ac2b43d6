"""
Audit log entry.

Entries are append-only. The HMAC signature covers every field except
``risk_level`` and ``threat_indicators``, the two values a security analyst may
adjust after the write, so any other edit makes ``verify_integrity`` fail.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import hashlib
import hmac
import json
import os
import uuid
import warnings

from rbac.enums import RiskLevel

from .event_types import AuditAction, AuditResource, AuditResult

# Seven years
DEFAULT_RETENTION_DAYS = 7 * 365

_is_production = os.environ.get("APP_ENVIRONMENT", "").lower() in ("production", "prod", "staging")


def _get_hmac_key() -> bytes:
    """Get HMAC key from environment. Required in production."""
    key = os.environ.get("AUDIT_HMAC_KEY")
    if key:
        if len(key) < 32:
            raise ValueError("AUDIT_HMAC_KEY must be at least 32 characters")
        return key.encode("utf-8")

    if _is_production:
        raise RuntimeError(
            "CRITICAL: AUDIT_HMAC_KEY environment variable is required in production. "
            "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )

    warnings.warn(
        "AUDIT_HMAC_KEY not set - using insecure development default. "
        "Set AUDIT_HMAC_KEY for production.",
        UserWarning
    )
    return b"lodge-audit-dev-only-insecure-key"


@dataclass
class ChangeSet:
    """Before/after snapshot of an updated record."""
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    def is_empty(self) -> bool:
        return self.before is None and self.after is None

    def changed_fields(self) -> List[str]:
        before = self.before or {}
        after = self.after or {}
        return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))

    def to_dict(self) -> Dict[str, Any]:
        return {"before": self.before, "after": self.after}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChangeSet":
        data = data or {}
        return cls(before=data.get("before"), after=data.get("after"))


@dataclass
class AuditLogEntry:
    """One audited action or failed attempt."""

    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    # Who did what to which object
    actor_id: Optional[str] = None
    action: AuditAction = AuditAction.LOGIN
    resource: AuditResource = AuditResource.SYSTEM
    resource_id: Optional[str] = None
    target_user_id: Optional[str] = None
    result: AuditResult = AuditResult.SUCCESS
    description: str = ""
    error_message: Optional[str] = None

    # Masked request snapshot: method, path, ip_address, user_agent, headers, body, query
    request: Dict[str, Any] = field(default_factory=dict)

    # Security context
    session_id: Optional[str] = None
    token_id: Optional[str] = None
    mfa_verified: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    threat_indicators: List[str] = field(default_factory=list)

    changes: ChangeSet = field(default_factory=ChangeSet)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Compliance
    pii_involved: bool = False
    financial_data: bool = False
    gdpr_relevant: bool = False
    retention_date: Optional[datetime] = None

    signature_hash: Optional[str] = None

    def __post_init__(self):
        if self.retention_date is None:
            self.retention_date = self.timestamp + timedelta(days=DEFAULT_RETENTION_DAYS)
        if not self.signature_hash:
            self.signature_hash = self._generate_signature()

    @property
    def ip_address(self) -> Optional[str]:
        return self.request.get("ip_address")

    def _generate_signature(self) -> str:
        """Generate HMAC signature over the immutable fields."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "action": self.action.value,
            "resource": self.resource.value,
            "resource_id": self.resource_id,
            "target_user_id": self.target_user_id,
            "result": self.result.value,
            "description": self.description,
            "error_message": self.error_message,
            "request": self.request,
            "session_id": self.session_id,
            "token_id": self.token_id,
            "mfa_verified": self.mfa_verified,
            "changes": self.changes.to_dict(),
            "metadata": self.metadata,
            "pii_involved": self.pii_involved,
            "financial_data": self.financial_data,
            "gdpr_relevant": self.gdpr_relevant,
            "retention_date": self.retention_date.isoformat() if self.retention_date else None,
        }
        content = json.dumps(data, sort_keys=True, default=str)
        return hmac.new(
            _get_hmac_key(),
            content.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    def verify_integrity(self) -> bool:
        """Verify the entry has not been tampered with."""
        expected = self._generate_signature()
        return hmac.compare_digest(self.signature_hash or "", expected)

    def is_expired(self, now: datetime) -> bool:
        return self.retention_date is not None and self.retention_date <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "action": self.action.value,
            "resource": self.resource.value,
            "resource_id": self.resource_id,
            "target_user_id": self.target_user_id,
            "result": self.result.value,
            "description": self.description,
            "error_message": self.error_message,
            "request": self.request,
            "security_context": {
                "session_id": self.session_id,
                "token_id": self.token_id,
                "mfa_verified": self.mfa_verified,
                "risk_level": self.risk_level.value,
                "threat_indicators": list(self.threat_indicators),
            },
            "changes": self.changes.to_dict(),
            "metadata": self.metadata,
            "compliance": {
                "pii_involved": self.pii_involved,
                "financial_data": self.financial_data,
                "gdpr_relevant": self.gdpr_relevant,
                "retention_date": self.retention_date.isoformat() if self.retention_date else None,
            },
            "signature_hash": self.signature_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        context = data.get("security_context") or {}
        compliance = data.get("compliance") or {}
        retention = compliance.get("retention_date")
        return cls(
            entry_id=data.get("entry_id", str(uuid.uuid4())),
            timestamp=datetime.fromisoformat(data["timestamp"]) if isinstance(data.get("timestamp"), str) else data.get("timestamp", datetime.utcnow()),
            actor_id=data.get("actor_id"),
            action=AuditAction(data["action"]),
            resource=AuditResource(data.get("resource", AuditResource.SYSTEM.value)),
            resource_id=data.get("resource_id"),
            target_user_id=data.get("target_user_id"),
            result=AuditResult(data.get("result", AuditResult.SUCCESS.value)),
            description=data.get("description", ""),
            error_message=data.get("error_message"),
            request=data.get("request") or {},
            session_id=context.get("session_id"),
            token_id=context.get("token_id"),
            mfa_verified=bool(context.get("mfa_verified", False)),
            risk_level=RiskLevel(context.get("risk_level", RiskLevel.LOW.value)),
            threat_indicators=list(context.get("threat_indicators") or []),
            changes=ChangeSet.from_dict(data.get("changes")),
            metadata=data.get("metadata") or {},
            pii_involved=bool(compliance.get("pii_involved", False)),
            financial_data=bool(compliance.get("financial_data", False)),
            gdpr_relevant=bool(compliance.get("gdpr_relevant", False)),
            retention_date=datetime.fromisoformat(retention) if isinstance(retention, str) else retention,
            signature_hash=data.get("signature_hash"),
        )

    def get_summary(self) -> str:
        """Generate human-readable summary of the entry."""
        parts = [
            f"[{self.timestamp.strftime('%Y-%m-%d %H:%M:%S')}]",
            f"{self.action.value}",
            f"({self.result.value}, {self.risk_level.value})",
        ]
        if self.actor_id:
            parts.append(f"by user:{self.actor_id}")
        if self.description:
            parts.append(f"- {self.description}")
        return " ".join(parts)
