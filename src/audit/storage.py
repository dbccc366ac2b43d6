"""
Audit storage backends.

Supports:
- In-memory storage for testing
- SQLite for production with indexed querying and a retention sweep

Entries are append-only: the only update path is ``update_security``,
which may raise the risk level or append a threat indicator.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from rbac.enums import RiskLevel

from .entry import AuditLogEntry, ChangeSet
from .event_types import AuditAction, AuditResource, AuditResult


@dataclass(frozen=True)
class AuditFilter:
    """Query filters; unset fields match everything."""
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    actions: Optional[FrozenSet[AuditAction]] = None
    resource: Optional[AuditResource] = None
    resource_id: Optional[str] = None
    result: Optional[AuditResult] = None
    risk_level: Optional[RiskLevel] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.actor_id and entry.actor_id != self.actor_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.resource and entry.resource != self.resource:
            return False
        if self.resource_id and entry.resource_id != self.resource_id:
            return False
        if self.result and entry.result != self.result:
            return False
        if self.risk_level and entry.risk_level != self.risk_level:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


def empty_statistics() -> Dict[str, Any]:
    return {"total": 0, "by_action": {}, "by_risk_level": {}, "by_result": {}}


class AuditStorage(ABC):
    """Abstract base class for audit storage backends."""

    @abstractmethod
    def save(self, entry: AuditLogEntry) -> str:
        """Save an audit entry. Returns entry_id."""
        pass

    @abstractmethod
    def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        pass

    @abstractmethod
    def query(self, filters: Optional[AuditFilter] = None, limit: int = 100, offset: int = 0) -> List[AuditLogEntry]:
        """Entries matching filters, newest first."""
        pass

    @abstractmethod
    def count(self, filters: Optional[AuditFilter] = None) -> int:
        pass

    @abstractmethod
    def statistics(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts per action, risk level and result inside the date range."""
        pass

    @abstractmethod
    def update_security(
        self,
        entry_id: str,
        risk_level: Optional[RiskLevel] = None,
        threat_indicator: Optional[str] = None,
    ) -> bool:
        """Adjust the risk level and/or append a threat indicator. False if the entry is missing."""
        pass

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Delete entries whose retention date has passed. Returns the number removed."""
        pass


class InMemoryAuditStorage(AuditStorage):
    """
    In-memory audit storage for testing.

    Thread-safe but not persistent.
    """

    def __init__(self):
        self._entries: Dict[str, AuditLogEntry] = {}
        self._lock = threading.Lock()

    def save(self, entry: AuditLogEntry) -> str:
        with self._lock:
            self._entries[entry.entry_id] = copy.deepcopy(entry)
        return entry.entry_id

    def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def _matching(self, filters: Optional[AuditFilter]) -> List[AuditLogEntry]:
        filters = filters or AuditFilter()
        with self._lock:
            results = [copy.deepcopy(e) for e in self._entries.values() if filters.matches(e)]
        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results

    def query(self, filters=None, limit=100, offset=0):
        return self._matching(filters)[offset:offset + limit]

    def count(self, filters=None):
        return len(self._matching(filters))

    def statistics(self, start_date=None, end_date=None):
        entries = self._matching(AuditFilter(start_date=start_date, end_date=end_date))
        stats = empty_statistics()
        stats["total"] = len(entries)
        stats["by_action"] = dict(Counter(e.action.value for e in entries))
        stats["by_risk_level"] = dict(Counter(e.risk_level.value for e in entries))
        stats["by_result"] = dict(Counter(e.result.value for e in entries))
        return stats

    def update_security(self, entry_id, risk_level=None, threat_indicator=None):
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            if risk_level is not None:
                entry.risk_level = risk_level
            if threat_indicator and threat_indicator not in entry.threat_indicators:
                entry.threat_indicators.append(threat_indicator)
            return True

    def delete_expired(self, now):
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        with self._lock:
            self._entries.clear()


class SQLiteAuditStorage(AuditStorage):
    """
    SQLite-based audit storage.

    Features:
    - Persistent storage with indexes on actor, action, risk level and retention
    - Thread-local connections; ``timeout`` bounds how long a write waits on a lock
    - JSON columns for the request snapshot, changes and metadata
    """

    def __init__(self, db_path: str = "./data/lodge_audit.db", timeout: float = 2.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                check_same_thread=False,
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def _init_db(self) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                entry_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,

                actor_id TEXT,
                action TEXT NOT NULL,
                resource TEXT NOT NULL,
                resource_id TEXT,
                target_user_id TEXT,
                result TEXT NOT NULL,
                description TEXT,
                error_message TEXT,

                request JSON,

                session_id TEXT,
                token_id TEXT,
                mfa_verified INTEGER NOT NULL DEFAULT 0,
                risk_level TEXT NOT NULL,
                threat_indicators JSON,

                changes JSON,
                metadata JSON,

                pii_involved INTEGER NOT NULL DEFAULT 0,
                financial_data INTEGER NOT NULL DEFAULT 0,
                gdpr_relevant INTEGER NOT NULL DEFAULT 0,
                retention_date TEXT,

                signature_hash TEXT
            )
        """)

        indexes = [
            ("idx_audit_timestamp", "timestamp"),
            ("idx_audit_actor", "actor_id, timestamp"),
            ("idx_audit_action", "action, timestamp"),
            ("idx_audit_resource", "resource, resource_id"),
            ("idx_audit_risk", "risk_level, timestamp"),
            ("idx_audit_retention", "retention_date"),
        ]
        for index_name, columns in indexes:
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS {index_name}
                ON audit_log({columns})
            """)

        conn.commit()

    def save(self, entry: AuditLogEntry) -> str:
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO audit_log (
                entry_id, timestamp,
                actor_id, action, resource, resource_id, target_user_id,
                result, description, error_message,
                request,
                session_id, token_id, mfa_verified, risk_level, threat_indicators,
                changes, metadata,
                pii_involved, financial_data, gdpr_relevant, retention_date,
                signature_hash
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.entry_id,
            entry.timestamp.isoformat(),
            entry.actor_id,
            entry.action.value,
            entry.resource.value,
            entry.resource_id,
            entry.target_user_id,
            entry.result.value,
            entry.description,
            entry.error_message,
            json.dumps(entry.request, default=str),
            entry.session_id,
            entry.token_id,
            1 if entry.mfa_verified else 0,
            entry.risk_level.value,
            json.dumps(entry.threat_indicators),
            json.dumps(entry.changes.to_dict(), default=str) if not entry.changes.is_empty() else None,
            json.dumps(entry.metadata, default=str) if entry.metadata else None,
            1 if entry.pii_involved else 0,
            1 if entry.financial_data else 0,
            1 if entry.gdpr_relevant else 0,
            entry.retention_date.isoformat() if entry.retention_date else None,
            entry.signature_hash,
        ))
        conn.commit()
        return entry.entry_id

    def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        cursor = self._get_connection().execute(
            "SELECT * FROM audit_log WHERE entry_id = ?",
            (entry_id,)
        )
        row = cursor.fetchone()
        if row:
            return self._row_to_entry(row)
        return None

    def _row_to_entry(self, row: sqlite3.Row) -> AuditLogEntry:
        return AuditLogEntry(
            entry_id=row["entry_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            actor_id=row["actor_id"],
            action=AuditAction(row["action"]),
            resource=AuditResource(row["resource"]),
            resource_id=row["resource_id"],
            target_user_id=row["target_user_id"],
            result=AuditResult(row["result"]),
            description=row["description"] or "",
            error_message=row["error_message"],
            request=json.loads(row["request"]) if row["request"] else {},
            session_id=row["session_id"],
            token_id=row["token_id"],
            mfa_verified=bool(row["mfa_verified"]),
            risk_level=RiskLevel(row["risk_level"]),
            threat_indicators=json.loads(row["threat_indicators"]) if row["threat_indicators"] else [],
            changes=ChangeSet.from_dict(json.loads(row["changes"]) if row["changes"] else None),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            pii_involved=bool(row["pii_involved"]),
            financial_data=bool(row["financial_data"]),
            gdpr_relevant=bool(row["gdpr_relevant"]),
            retention_date=datetime.fromisoformat(row["retention_date"]) if row["retention_date"] else None,
            signature_hash=row["signature_hash"],
        )

    def _where(self, filters: Optional[AuditFilter]) -> Tuple[str, List[Any]]:
        filters = filters or AuditFilter()
        clause = " WHERE 1=1"
        params: List[Any] = []

        if filters.actor_id:
            clause += " AND actor_id = ?"
            params.append(filters.actor_id)
        if filters.action:
            clause += " AND action = ?"
            params.append(filters.action.value)
        if filters.actions is not None:
            if not filters.actions:
                clause += " AND 1=0"
            else:
                clause += f" AND action IN ({', '.join('?' for _ in filters.actions)})"
                params.extend(sorted(a.value for a in filters.actions))
        if filters.resource:
            clause += " AND resource = ?"
            params.append(filters.resource.value)
        if filters.resource_id:
            clause += " AND resource_id = ?"
            params.append(filters.resource_id)
        if filters.result:
            clause += " AND result = ?"
            params.append(filters.result.value)
        if filters.risk_level:
            clause += " AND risk_level = ?"
            params.append(filters.risk_level.value)
        if filters.start_date:
            clause += " AND timestamp >= ?"
            params.append(filters.start_date.isoformat())
        if filters.end_date:
            clause += " AND timestamp <= ?"
            params.append(filters.end_date.isoformat())
        return clause, params

    def query(self, filters=None, limit=100, offset=0):
        clause, params = self._where(filters)
        sql = "SELECT * FROM audit_log" + clause + " ORDER BY timestamp DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        cursor = self._get_connection().execute(sql, params)
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def count(self, filters=None):
        clause, params = self._where(filters)
        cursor = self._get_connection().execute("SELECT COUNT(*) FROM audit_log" + clause, params)
        return cursor.fetchone()[0]

    def statistics(self, start_date=None, end_date=None):
        clause, params = self._where(AuditFilter(start_date=start_date, end_date=end_date))
        conn = self._get_connection()
        stats = empty_statistics()
        for column, key in (("action", "by_action"), ("risk_level", "by_risk_level"), ("result", "by_result")):
            cursor = conn.execute(
                f"SELECT {column}, COUNT(*) FROM audit_log{clause} GROUP BY {column}",
                params,
            )
            stats[key] = {row[0]: row[1] for row in cursor.fetchall()}
        stats["total"] = sum(stats["by_result"].values())
        return stats

    def update_security(self, entry_id, risk_level=None, threat_indicator=None):
        conn = self._get_connection()
        row = conn.execute(
            "SELECT threat_indicators FROM audit_log WHERE entry_id = ?",
            (entry_id,)
        ).fetchone()
        if row is None:
            return False

        if risk_level is not None:
            conn.execute(
                "UPDATE audit_log SET risk_level = ? WHERE entry_id = ?",
                (risk_level.value, entry_id),
            )
        if threat_indicator:
            indicators = json.loads(row["threat_indicators"]) if row["threat_indicators"] else []
            if threat_indicator not in indicators:
                indicators.append(threat_indicator)
                conn.execute(
                    "UPDATE audit_log SET threat_indicators = ? WHERE entry_id = ?",
                    (json.dumps(indicators), entry_id),
                )
        conn.commit()
        return True

    def delete_expired(self, now):
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM audit_log WHERE retention_date IS NOT NULL AND retention_date <= ?",
            (now.isoformat(),),
        )
        conn.commit()
        return cursor.rowcount
