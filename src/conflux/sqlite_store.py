"""
SQLite-backed conflict store

Durable implementation of the conflict store contract for collaborators that
need conflicts to survive a restart (the CLI uses it).

Pattern:
- Persistent connection with thread lock
- WAL mode for concurrent access
- Partial unique index so a record can hold only one open conflict
- Snapshots stored as JSON
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Hashable, Iterator, List, Optional, Tuple, Union

from .errors import (
    AlreadyResolvedError,
    ConflictNotFoundError,
    DuplicateOpenConflictError,
)
from .models import ConflictRecord, ConflictStatus, Resolution, Version, VersionedSnapshot
from .store import BaseConflictStore, check_server_version, prepare_for_insert, supersedes

logger = logging.getLogger(__name__)

_COLUMNS = "id, local, server, detected_at, status, resolution"


class SQLiteConflictStore(BaseConflictStore):
    """
    Conflict store persisted in a SQLite database.

    Field values must be JSON-serializable.

    Usage:
        with SQLiteConflictStore(base_path / "conflicts.sqlite") as store:
            record = store.add(ConflictRecord(local=local, server=server))
            store.list_by_status(ConflictStatus.UNRESOLVED)
    """

    def __init__(self, db_path: Union[Path, str], enable_wal: bool = True):
        """
        Initialize SQLiteConflictStore.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            enable_wal: Enable WAL mode for concurrent writes (default: True)
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._enable_wal = enable_wal and isinstance(self.db_path, Path)

        # isolation_level=None: autocommit, transactions are explicit
        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            isolation_level=None,
            timeout=30.0
        )
        self._db_lock = threading.Lock()

        self._init_schema()

    def _init_schema(self) -> None:
        """Initialize database schema for conflicts"""
        if self._enable_wal:
            self._conn.execute("PRAGMA journal_mode=WAL")

        with self._db_lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS conflicts (
                    id TEXT PRIMARY KEY,
                    entity_table TEXT NOT NULL,
                    record_key TEXT NOT NULL,  -- JSON-encoded record id
                    local TEXT NOT NULL,  -- JSON snapshot
                    server TEXT NOT NULL,  -- JSON snapshot
                    detected_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'unresolved',
                    resolution TEXT  -- JSON
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_conflicts_open_record
                    ON conflicts(entity_table, record_key) WHERE status = 'unresolved';
                CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflicts(status);
                CREATE INDEX IF NOT EXISTS idx_conflicts_detected_at ON conflicts(detected_at);
            """)

    def add(self, conflict: ConflictRecord) -> ConflictRecord:
        record = prepare_for_insert(conflict)

        with self._db_lock:
            self._insert_locked(record)

        logger.info(f"Stored conflict {record.id} for {record.entity_table}/{record.record_id}")
        conflict.id = record.id
        conflict.detected_at = record.detected_at
        return record

    def _insert_locked(self, record: ConflictRecord) -> None:
        if record.is_open:
            existing = self._find_open_locked(record.entity_table, record.record_id)
            if existing is not None:
                raise DuplicateOpenConflictError(existing.id, record.entity_table, record.record_id)
        try:
            self._conn.execute(
                """
                INSERT INTO conflicts
                (id, entity_table, record_key, local, server, detected_at, status, resolution)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.entity_table,
                    json.dumps(record.record_id),
                    json.dumps(record.local.to_dict()),
                    json.dumps(record.server.to_dict()),
                    record.detected_at.isoformat(),
                    record.status.value,
                    json.dumps(record.resolution.to_dict()) if record.resolution else None,
                )
            )
        except sqlite3.IntegrityError as e:
            # Another connection to the same file inserted first
            existing = self._find_open_locked(record.entity_table, record.record_id)
            if existing is not None:
                raise DuplicateOpenConflictError(
                    existing.id, record.entity_table, record.record_id
                ) from e
            raise

    @contextmanager
    def _immediate_transaction(self) -> Iterator[None]:
        """Hold the database write lock so read-check-write spans connections."""
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    def add_or_merge(self, conflict: ConflictRecord) -> Tuple[ConflictRecord, bool]:
        with self._db_lock, self._immediate_transaction():
            existing = self._find_open_locked(conflict.entity_table, conflict.record_id)
            if existing is None:
                record = prepare_for_insert(conflict)
                self._insert_locked(record)
                conflict.id = record.id
                conflict.detected_at = record.detected_at
                created, folded = True, False
            elif supersedes(conflict.server, existing.server):
                existing.replace_server(conflict.server)
                self._conn.execute(
                    "UPDATE conflicts SET server = ? WHERE id = ? AND status = 'unresolved'",
                    (json.dumps(existing.server.to_dict()), existing.id)
                )
                record = existing
                created, folded = False, True
            else:
                record = existing
                created, folded = False, False

        if created:
            logger.info(f"Stored conflict {record.id} for {record.entity_table}/{record.record_id}")
        elif folded:
            logger.info(
                f"Folded newer server snapshot (version {conflict.server.version}) "
                f"into open conflict {record.id}"
            )
        else:
            logger.info(
                f"Ignored server snapshot version {conflict.server.version} older than "
                f"version {record.server.version} of open conflict {record.id}"
            )
        return record, created

    def get(self, conflict_id: str) -> ConflictRecord:
        with self._db_lock:
            cursor = self._conn.execute(
                f"SELECT {_COLUMNS} FROM conflicts WHERE id = ?",
                (conflict_id,)
            )
            row = cursor.fetchone()

        if not row:
            raise ConflictNotFoundError(conflict_id)
        return self._row_to_conflict(row)

    def list_by_status(self, status: Optional[ConflictStatus] = None) -> List[ConflictRecord]:
        query = f"SELECT {_COLUMNS} FROM conflicts"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY detected_at ASC, rowid ASC"

        with self._db_lock:
            rows = self._conn.execute(query, params).fetchall()

        return [self._row_to_conflict(row) for row in rows]

    def find_open(self, entity_table: str, record_id: Hashable) -> Optional[ConflictRecord]:
        with self._db_lock:
            return self._find_open_locked(entity_table, record_id)

    def _find_open_locked(self, entity_table: str, record_id: Hashable) -> Optional[ConflictRecord]:
        cursor = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM conflicts
            WHERE entity_table = ? AND record_key = ? AND status = 'unresolved'
            """,
            (entity_table, json.dumps(record_id))
        )
        row = cursor.fetchone()
        return self._row_to_conflict(row) if row else None

    def mark_resolved(self, conflict_id: str, resolution: Resolution,
                      expected_server_version: Optional[Version] = None) -> ConflictRecord:
        with self._db_lock, self._immediate_transaction():
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM conflicts WHERE id = ?",
                (conflict_id,)
            ).fetchone()
            if not row:
                raise ConflictNotFoundError(conflict_id)
            record = self._row_to_conflict(row)
            if not record.is_open:
                raise AlreadyResolvedError(conflict_id)
            check_server_version(record, expected_server_version)

            self._conn.execute(
                """
                UPDATE conflicts
                SET status = 'resolved', resolution = ?
                WHERE id = ? AND status = 'unresolved'
                """,
                (json.dumps(resolution.to_dict()), conflict_id)
            )

        record.status = ConflictStatus.RESOLVED
        record.resolution = resolution
        return record

    def count(self, status: Optional[ConflictStatus] = None) -> int:
        """Count stored conflicts, optionally by status."""
        with self._db_lock:
            if status is None:
                row = self._conn.execute("SELECT COUNT(*) FROM conflicts").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM conflicts WHERE status = ?", (status.value,)
                ).fetchone()
        return row[0]

    def _row_to_conflict(self, row: tuple) -> ConflictRecord:
        """Convert database row to ConflictRecord"""
        conflict_id, local_json, server_json, detected_at, status, resolution_json = row
        return ConflictRecord(
            id=conflict_id,
            local=VersionedSnapshot.from_dict(json.loads(local_json)),
            server=VersionedSnapshot.from_dict(json.loads(server_json)),
            detected_at=datetime.fromisoformat(detected_at),
            status=ConflictStatus(status),
            resolution=Resolution.from_dict(json.loads(resolution_json)) if resolution_json else None,
        )

    def close(self) -> None:
        """Close database connection"""
        with self._db_lock:
            self._conn.close()


__all__ = ["SQLiteConflictStore"]
