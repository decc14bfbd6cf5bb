"""
Conflict record storage

Holds detected conflicts keyed by id, enforces at most one open conflict per
record and hands out detached copies so callers never alias stored state.

Usage:
    store = ConflictStore()
    record = store.add(ConflictRecord(local=local, server=server))
    open_conflicts = store.list_by_status(ConflictStatus.UNRESOLVED)
    store.mark_resolved(record.id, resolution)
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Hashable, List, Optional, Tuple

from .errors import (
    AlreadyResolvedError,
    ConflictNotFoundError,
    DuplicateOpenConflictError,
    MismatchedEntityError,
    StaleConflictError,
)
from .models import ConflictRecord, ConflictStatus, Resolution, Version, VersionedSnapshot

logger = logging.getLogger(__name__)


class BaseConflictStore(ABC):
    """
    Contract between the resolution core and a conflict store.

    Implementations must make add/add_or_merge an atomic check-and-insert and
    mark_resolved an atomic compare-and-swap on the status.
    """

    @abstractmethod
    def add(self, conflict: ConflictRecord) -> ConflictRecord:
        """
        Insert a conflict, assigning id and detected_at when unset.

        Raises:
            DuplicateOpenConflictError: If the record already has an open conflict
        """

    @abstractmethod
    def add_or_merge(self, conflict: ConflictRecord) -> Tuple[ConflictRecord, bool]:
        """
        Insert a conflict, or fold its server snapshot into the open one.

        Returns:
            (stored record, True if a new conflict was created)
        """

    @abstractmethod
    def get(self, conflict_id: str) -> ConflictRecord:
        """
        Raises:
            ConflictNotFoundError: If the id is unknown
        """

    @abstractmethod
    def list_by_status(self, status: Optional[ConflictStatus] = None) -> List[ConflictRecord]:
        """Copies of matching conflicts ordered by detected_at ascending."""

    @abstractmethod
    def find_open(self, entity_table: str, record_id: Hashable) -> Optional[ConflictRecord]:
        """The open conflict for a record, if any."""

    @abstractmethod
    def mark_resolved(self, conflict_id: str, resolution: Resolution,
                      expected_server_version: Optional[Version] = None) -> ConflictRecord:
        """
        Close an open conflict.

        Args:
            expected_server_version: When given, the stored server snapshot must
                still be at this version

        Raises:
            ConflictNotFoundError: If the id is unknown
            AlreadyResolvedError: If the stored conflict is already resolved
            StaleConflictError: If the stored server version differs from the expected one
        """

    def __contains__(self, conflict_id: str) -> bool:
        try:
            self.get(conflict_id)
        except ConflictNotFoundError:
            return False
        return True

    def close(self) -> None:
        """Release resources held by the store."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def supersedes(candidate: VersionedSnapshot, current: VersionedSnapshot) -> bool:
    """
    Whether a reported server snapshot should replace the stored one.

    Older versions never replace newer ones; versions that cannot be ordered
    (mixed types) fall back to the most recent report.
    """
    try:
        return not candidate.version < current.version
    except TypeError:
        return True


def check_server_version(record: ConflictRecord, expected_server_version: Optional[Version]) -> None:
    if expected_server_version is not None and record.server.version != expected_server_version:
        raise StaleConflictError(record.id, expected_server_version, record.server.version)


def prepare_for_insert(conflict: ConflictRecord) -> ConflictRecord:
    """Validate a new conflict and fill in id/detected_at."""
    if conflict.local.key != conflict.server.key:
        raise MismatchedEntityError(conflict.local.key, conflict.server.key)
    record = conflict.copy()
    if not record.id:
        record.id = str(uuid.uuid4())
    if record.detected_at is None:
        record.detected_at = datetime.now()
    return record


class ConflictStore(BaseConflictStore):
    """
    In-memory conflict store keyed by conflict id.

    Thread-safe: one lock guards the id map and the open-conflict index, so
    concurrent detections for the same record cannot both insert.
    """

    def __init__(self):
        self._records: Dict[str, ConflictRecord] = {}
        # (entity_table, record_id) -> id of the open conflict
        self._open: Dict[Tuple[str, Hashable], str] = {}
        self._lock = threading.RLock()

    def add(self, conflict: ConflictRecord) -> ConflictRecord:
        record = prepare_for_insert(conflict)

        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Conflict id already stored: {record.id}")
            if record.is_open:
                existing_id = self._open.get(record.key)
                if existing_id is not None:
                    raise DuplicateOpenConflictError(existing_id, record.entity_table, record.record_id)
                self._open[record.key] = record.id
            self._records[record.id] = record

        logger.info(f"Stored conflict {record.id} for {record.entity_table}/{record.record_id}")
        # Write back the assigned identity
        conflict.id = record.id
        conflict.detected_at = record.detected_at
        return record.copy()

    def add_or_merge(self, conflict: ConflictRecord) -> Tuple[ConflictRecord, bool]:
        with self._lock:
            existing_id = self._open.get(conflict.key)
            if existing_id is None:
                return self.add(conflict), True

            existing = self._records[existing_id]
            if not supersedes(conflict.server, existing.server):
                logger.info(
                    f"Ignored server snapshot version {conflict.server.version} older than "
                    f"version {existing.server.version} of open conflict {existing_id}"
                )
                return existing.copy(), False
            existing.replace_server(conflict.server)

        logger.info(
            f"Folded newer server snapshot (version {conflict.server.version}) "
            f"into open conflict {existing_id}"
        )
        return existing.copy(), False

    def get(self, conflict_id: str) -> ConflictRecord:
        with self._lock:
            record = self._records.get(conflict_id)
            if record is None:
                raise ConflictNotFoundError(conflict_id)
            return record.copy()

    def list_by_status(self, status: Optional[ConflictStatus] = None) -> List[ConflictRecord]:
        with self._lock:
            matching = [
                record.copy() for record in self._records.values()
                if status is None or record.status == status
            ]
        matching.sort(key=lambda r: r.detected_at)
        return matching

    def find_open(self, entity_table: str, record_id: Hashable) -> Optional[ConflictRecord]:
        with self._lock:
            conflict_id = self._open.get((entity_table, record_id))
            if conflict_id is None:
                return None
            return self._records[conflict_id].copy()

    def mark_resolved(self, conflict_id: str, resolution: Resolution,
                      expected_server_version: Optional[Version] = None) -> ConflictRecord:
        with self._lock:
            record = self._records.get(conflict_id)
            if record is None:
                raise ConflictNotFoundError(conflict_id)
            if not record.is_open:
                raise AlreadyResolvedError(conflict_id)
            check_server_version(record, expected_server_version)

            record.status = ConflictStatus.RESOLVED
            record.resolution = resolution
            self._open.pop(record.key, None)
            return record.copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = ["BaseConflictStore", "ConflictStore", "prepare_for_insert", "supersedes"]
