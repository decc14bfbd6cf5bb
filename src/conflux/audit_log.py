"""
Audit log of conflict resolutions

Pattern: Database-backed audit trail, one entry per closed conflict, recording
who chose which strategy and which fields changed from the server baseline.
"""

import sqlite3
import json
import uuid
import threading
from pathlib import Path
from datetime import datetime
from typing import Hashable, Iterable, List, Optional, Union

from .models import AuditEntry, ResolutionStrategy


class ResolutionAuditLog:
    """
    Audit log for conflict resolutions

    Features:
    - Record every resolution with strategy, actor and changed fields
    - Query by conflict, by entity table, or most recent first
    - Thread-safe database operations
    - ":memory:" databases for tests and ephemeral services

    Usage:
        audit = ResolutionAuditLog(db_path)
        entry = audit.record(
            conflict_id="c-1",
            entity_table="products",
            record_id=42,
            strategy=ResolutionStrategy.MERGE,
            changed_fields=["name"],
            actor="operator-7",
        )
        audit.get_by_conflict("c-1")
    """

    def __init__(self, db_path: Union[Path, str] = ":memory:", enable_wal: bool = True):
        """
        Initialize ResolutionAuditLog.

        Args:
            db_path: Path to SQLite database file (default: in-memory)
            enable_wal: Enable WAL mode for file databases (default: True)
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0
        )
        self._db_lock = threading.Lock()

        if enable_wal and isinstance(self.db_path, Path):
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._db_lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS resolution_audit (
                    id TEXT PRIMARY KEY,
                    conflict_id TEXT NOT NULL,
                    entity_table TEXT NOT NULL,
                    record_key TEXT NOT NULL,  -- JSON-encoded record id
                    strategy TEXT NOT NULL,
                    changed_fields TEXT NOT NULL,  -- JSON array
                    actor TEXT,
                    resolved_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_resolution_audit_conflict ON resolution_audit(conflict_id);
                CREATE INDEX IF NOT EXISTS idx_resolution_audit_table ON resolution_audit(entity_table);
                CREATE INDEX IF NOT EXISTS idx_resolution_audit_resolved_at ON resolution_audit(resolved_at);
            """)

    def record(
        self,
        conflict_id: str,
        entity_table: str,
        record_id: Hashable,
        strategy: ResolutionStrategy,
        changed_fields: Iterable[str],
        resolved_at: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> AuditEntry:
        """
        Write an audit entry for a resolution.

        Args:
            conflict_id: Resolved conflict
            entity_table: Table of the contended record
            record_id: Id of the contended record
            strategy: Strategy applied
            changed_fields: Fields whose final value differs from the server snapshot
            resolved_at: Resolution time (default: now)
            actor: Optional operator or service that chose the strategy

        Returns:
            AuditEntry object
        """
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            conflict_id=conflict_id,
            entity_table=entity_table,
            record_id=record_id,
            strategy=strategy,
            changed_fields=sorted(changed_fields),
            resolved_at=resolved_at or datetime.now(),
            actor=actor,
        )

        with self._db_lock:
            self._conn.execute(
                """
                INSERT INTO resolution_audit
                (id, conflict_id, entity_table, record_key, strategy, changed_fields, actor, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (entry.id, entry.conflict_id, entry.entity_table, json.dumps(entry.record_id),
                 entry.strategy.value, json.dumps(entry.changed_fields), entry.actor,
                 entry.resolved_at.isoformat())
            )

        return entry

    def get_by_conflict(self, conflict_id: str) -> List[AuditEntry]:
        """Entries for one conflict (at most one in practice)."""
        return self._query("WHERE conflict_id = ? ORDER BY resolved_at ASC", (conflict_id,))

    def get_by_table(self, entity_table: str, limit: int = 100) -> List[AuditEntry]:
        """Entries for an entity table, most recent first."""
        return self._query(
            "WHERE entity_table = ? ORDER BY resolved_at DESC LIMIT ?", (entity_table, limit)
        )

    def get_recent(self, limit: int = 100) -> List[AuditEntry]:
        """Most recent entries first."""
        return self._query("ORDER BY resolved_at DESC LIMIT ?", (limit,))

    def _query(self, clause: str, params: tuple) -> List[AuditEntry]:
        with self._db_lock:
            cursor = self._conn.execute(
                f"""
                SELECT id, conflict_id, entity_table, record_key, strategy,
                       changed_fields, actor, resolved_at
                FROM resolution_audit
                {clause}
                """,
                params
            )
            rows = cursor.fetchall()

        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: tuple) -> AuditEntry:
        """Convert database row to AuditEntry"""
        return AuditEntry(
            id=row[0],
            conflict_id=row[1],
            entity_table=row[2],
            record_id=json.loads(row[3]),
            strategy=ResolutionStrategy(row[4]),
            changed_fields=json.loads(row[5]),
            actor=row[6],
            resolved_at=datetime.fromisoformat(row[7]),
        )

    def close(self) -> None:
        """Close database connection"""
        with self._db_lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


__all__ = ["ResolutionAuditLog"]
