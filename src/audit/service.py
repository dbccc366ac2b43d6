"""
Audit Logger

Records every mutating action and every failed attempt as an append-only,
signed, risk-classified entry.

Writes are fire-and-forget: ``log`` builds and masks the entry on the
caller's thread, hands the write to a small worker pool and returns the
entry id at once. Sink failures are logged here and never reach the
caller; audit is observability, not a transactional participant.

Usage:
    from audit import AuditLogger, AuditAction, request_snapshot

    audit = AuditLogger(InMemoryAuditStorage())
    audit.log(AuditAction.ROLE_ASSIGNED, actor_id="u1", target_user_id="u2",
              request=request_snapshot(method="POST", path="/api/users/u2/roles"))
"""

import time
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from rbac.enums import DenialCode, RiskLevel
from security.data_sanitizer import DataSanitizer, get_sanitizer
from security.secure_logger import get_logger

from .entry import DEFAULT_RETENTION_DAYS, AuditLogEntry, ChangeSet
from .event_types import (
    FINANCIAL_ACTIONS,
    PERSONAL_DATA_ACTIONS,
    SECURITY_EVENT_ACTIONS,
    AuditAction,
    AuditResource,
    AuditResult,
    resource_for,
)
from .risk import compute_risk_level
from .storage import AuditFilter, AuditStorage, InMemoryAuditStorage

logger = get_logger(__name__)

_ESCALATION_CODES = frozenset({
    DenialCode.HIERARCHY_VIOLATION,
    DenialCode.ESCALATION_REQUIRED,
    DenialCode.INVALID_ROLE,
})


def request_snapshot(
    method: Optional[str] = None,
    path: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    headers: Optional[Dict[str, Any]] = None,
    body: Any = None,
    query: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Raw request details; masking happens when the entry is built."""
    snapshot: Dict[str, Any] = {
        "method": method,
        "path": path,
        "ip_address": ip_address,
        "user_agent": user_agent,
    }
    if headers:
        snapshot["headers"] = dict(headers)
    if body is not None:
        snapshot["body"] = body
    if query:
        snapshot["query"] = dict(query)
    return snapshot


class AuditLogger:
    """Non-blocking audit sink with query, statistics and retention."""

    def __init__(
        self,
        storage: Optional[AuditStorage] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        write_timeout: float = 2.0,
        max_workers: int = 2,
        sanitizer: Optional[DataSanitizer] = None,
        monitor: Any = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._storage = storage or InMemoryAuditStorage()
        self.retention_days = retention_days
        self.write_timeout = write_timeout
        self._sanitizer = sanitizer or get_sanitizer()
        self._clock = clock
        self.monitor = monitor
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def storage(self) -> AuditStorage:
        return self._storage

    # =========================================================================
    # CORE LOGGING
    # =========================================================================

    def build_entry(
        self,
        action: AuditAction,
        actor_id: Optional[str] = None,
        resource: AuditResource = AuditResource.SYSTEM,
        resource_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
        result: AuditResult = AuditResult.SUCCESS,
        description: str = "",
        error_message: Optional[str] = None,
        request: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        token_id: Optional[str] = None,
        mfa_verified: bool = False,
        changes: Optional[ChangeSet] = None,
        metadata: Optional[Dict[str, Any]] = None,
        threat_indicators: Optional[List[str]] = None,
        pii_involved: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> AuditLogEntry:
        """Classify, mask and sign an entry without storing it."""
        now = now or self._clock()
        raw_request = request or {}
        risk_level, indicators = compute_risk_level(action, raw_request.get("body"), threat_indicators)

        if pii_involved is None:
            pii_involved = resource == AuditResource.USER or action in PERSONAL_DATA_ACTIONS
        financial = resource == AuditResource.PAYMENT or action in FINANCIAL_ACTIONS

        return AuditLogEntry(
            timestamp=now,
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            target_user_id=target_user_id,
            result=result,
            description=description,
            error_message=error_message,
            request=self._mask_request(raw_request),
            session_id=session_id,
            token_id=token_id,
            mfa_verified=mfa_verified,
            risk_level=risk_level,
            threat_indicators=indicators,
            changes=self._mask_changes(changes),
            metadata=self._sanitizer.sanitize_dict(metadata or {}),
            pii_involved=pii_involved,
            financial_data=financial,
            gdpr_relevant=pii_involved,
            retention_date=now + timedelta(days=self.retention_days),
        )

    def log(self, action: AuditAction, **fields: Any) -> Optional[str]:
        """
        Record an entry without waiting for the write.

        Accepts the keyword arguments of ``build_entry``.

        Returns:
            The entry id, or None if the entry could not be built
        """
        try:
            entry = self.build_entry(action, **fields)
        except Exception as e:
            logger.error(f"Audit entry for {getattr(action, 'value', action)} could not be built: {e!r}")
            return None
        self._submit(entry)
        return entry.entry_id

    def log_sync(self, action: AuditAction, **fields: Any) -> Optional[AuditLogEntry]:
        """Record an entry on the calling thread. Used by maintenance jobs."""
        try:
            entry = self.build_entry(action, **fields)
        except Exception as e:
            logger.error(f"Audit entry for {getattr(action, 'value', action)} could not be built: {e!r}")
            return None
        return entry if self._write(entry) else None

    def record_access_denied(
        self,
        user_id: Optional[str],
        resource: str,
        action: str,
        decision: Any,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
    ) -> Optional[str]:
        """Record a denied authorization decision."""
        code = getattr(decision, "code", None)
        audit_action = (
            AuditAction.PRIVILEGE_ESCALATION_ATTEMPT
            if code in _ESCALATION_CODES
            else AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT
        )
        return self.log(
            audit_action,
            actor_id=user_id,
            resource=resource_for(resource),
            target_user_id=target_user_id,
            result=AuditResult.FAILURE,
            description=f"Access denied: {resource}:{action}",
            error_message=getattr(decision, "reason", None),
            request=request_snapshot(ip_address=ip_address),
            session_id=session_id,
            metadata={
                "permission": f"{resource}:{action}",
                "denial_code": getattr(code, "value", code),
                "requires_mfa": bool(getattr(decision, "requires_mfa", False)),
            },
        )

    def _submit(self, entry: AuditLogEntry) -> None:
        try:
            future = self._executor.submit(self._write, entry)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Audit write for {entry.entry_id} dropped: {e}")
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _write(self, entry: AuditLogEntry) -> bool:
        started = time.monotonic()
        try:
            self._storage.save(entry)
        except Exception as e:
            logger.error(f"Audit sink error for {entry.action.value} ({entry.entry_id}): {e!r}")
            return False

        elapsed = time.monotonic() - started
        if elapsed > self.write_timeout:
            logger.warning(f"Slow audit write: {elapsed:.2f}s for {entry.entry_id}")

        self._emit(entry)

        if self.monitor is not None:
            try:
                self.monitor.observe(entry)
            except Exception as e:
                logger.error(f"Security monitor failed on {entry.entry_id}: {e!r}")
        return True

    def _emit(self, entry: AuditLogEntry) -> None:
        message = f"AUDIT: {entry.get_summary()}"
        if entry.risk_level == RiskLevel.CRITICAL:
            logger.critical(message)
        elif entry.risk_level == RiskLevel.HIGH:
            logger.warning(message)
        else:
            logger.info(message)

    def _mask_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        masked = {k: v for k, v in request.items() if v is not None}
        if "headers" in masked:
            masked["headers"] = self._sanitizer.sanitize_headers(masked["headers"])
        if "body" in masked:
            masked["body"] = self._sanitizer.sanitize_value(masked["body"])
        if "query" in masked:
            masked["query"] = self._sanitizer.sanitize_dict(masked["query"])
        return masked

    def _mask_changes(self, changes: Optional[ChangeSet]) -> ChangeSet:
        if changes is None:
            return ChangeSet()
        return ChangeSet(
            before=self._sanitizer.sanitize_dict(changes.before) if changes.before else changes.before,
            after=self._sanitizer.sanitize_dict(changes.after) if changes.after else changes.after,
        )

    # =========================================================================
    # QUERY
    # =========================================================================

    def query(
        self,
        filters: Optional[AuditFilter] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Paginated, masked entries, newest first."""
        page = max(1, page)
        limit = max(1, min(limit, 500))
        entries = self._storage.query(filters, limit=limit, offset=(page - 1) * limit)
        total = self._storage.count(filters)
        return {
            "entries": [self.mask_entry(e) for e in entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def mask_entry(self, entry: AuditLogEntry) -> Dict[str, Any]:
        """Serialized entry with sensitive fields masked."""
        data = entry.to_dict()
        data["request"] = self._mask_request(data.get("request") or {})
        data["metadata"] = self._sanitizer.sanitize_dict(data.get("metadata") or {})
        changes = data.get("changes") or {}
        data["changes"] = {
            side: self._sanitizer.sanitize_dict(value) if isinstance(value, dict) else value
            for side, value in changes.items()
        }
        if data.get("description"):
            data["description"] = self._sanitizer.sanitize_string(data["description"])
        return data

    def get_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        return self._storage.get(entry_id)

    def get_security_events(self, since: Optional[datetime] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Security-relevant entries since ``since`` (default: last 24 hours)."""
        since = since or self._clock() - timedelta(hours=24)
        entries = self._storage.query(
            AuditFilter(actions=SECURITY_EVENT_ACTIONS, start_date=since),
            limit=limit,
        )
        return [self.mask_entry(e) for e in entries]

    def get_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Counts per action, risk level and result for the period (default: last 30 days)."""
        end_date = end_date or self._clock()
        start_date = start_date or end_date - timedelta(days=30)
        stats = self._storage.statistics(start_date, end_date)
        stats["security_events"] = self._storage.count(
            AuditFilter(actions=SECURITY_EVENT_ACTIONS, start_date=start_date, end_date=end_date)
        )
        stats["period"] = {"start": start_date.isoformat(), "end": end_date.isoformat()}
        return stats

    # =========================================================================
    # POST-WRITE UPDATES AND RETENTION
    # =========================================================================

    def add_threat_indicator(self, entry_id: str, indicator: str) -> bool:
        updated = self._storage.update_security(entry_id, threat_indicator=indicator)
        if updated:
            logger.warning(f"Threat indicator '{indicator}' added to audit entry {entry_id}")
        return updated

    def update_risk_level(self, entry_id: str, risk_level: RiskLevel) -> bool:
        updated = self._storage.update_security(entry_id, risk_level=RiskLevel(risk_level))
        if updated:
            logger.warning(f"Risk level of audit entry {entry_id} set to {RiskLevel(risk_level).value}")
        return updated

    def cleanup_expired_logs(self, now: Optional[datetime] = None) -> int:
        """Delete entries past their retention date."""
        now = now or self._clock()
        removed = self._storage.delete_expired(now)
        if removed:
            logger.info(f"Removed {removed} audit entries past retention")
        return removed

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait for queued writes. True if all finished within the timeout.

        Writes queued by the monitor while draining are waited for too.
        """
        deadline = time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = list(self._pending)
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)


# Global logger accessor
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(storage: Optional[AuditStorage] = None) -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        _audit_logger = AuditLogger(storage)

    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global instance (for testing)."""
    global _audit_logger

    if _audit_logger is not None:
        _audit_logger.shutdown(wait_for_pending=False)
    _audit_logger = None
