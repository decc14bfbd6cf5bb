"""
Error taxonomy for conflict detection and resolution.

Every error carries the identifiers needed to render an actionable message
(conflict id, entity key, field names).
"""

from typing import Any, Hashable, Iterable, List, Optional


class ConfluxError(Exception):
    """Base class for all conflux errors."""
    pass


class MismatchedEntityError(ConfluxError):
    """Raised when two snapshots of different records are compared."""

    def __init__(self, local_key: tuple, server_key: tuple):
        self.local_key = local_key
        self.server_key = server_key
        super().__init__(
            f"Cannot compare snapshots of different records: "
            f"local={local_key!r}, server={server_key!r}"
        )


class AlreadyResolvedError(ConfluxError):
    """Raised when resolving a conflict that is no longer open."""

    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Conflict already resolved: {conflict_id}")


class IncompleteMergeError(ConfluxError):
    """Raised when merge selections do not cover exactly the diffed fields."""

    def __init__(
        self,
        conflict_id: str,
        missing: Iterable[str] = (),
        extra: Iterable[str] = (),
        duplicate: Iterable[str] = (),
    ):
        self.conflict_id = conflict_id
        self.missing: List[str] = sorted(missing)
        self.extra: List[str] = sorted(extra)
        self.duplicate: List[str] = sorted(duplicate)

        parts = []
        if self.missing:
            parts.append(f"missing selections for {', '.join(self.missing)}")
        if self.extra:
            parts.append(f"unexpected selections for {', '.join(self.extra)}")
        if self.duplicate:
            parts.append(f"duplicate selections for {', '.join(self.duplicate)}")
        super().__init__(f"Incomplete merge for conflict {conflict_id}: {'; '.join(parts)}")


class UnsupportedBatchStrategyError(ConfluxError):
    """Raised when a strategy that needs per-conflict input is used in a batch."""

    def __init__(self, strategy: Any):
        self.strategy = strategy
        value = getattr(strategy, "value", strategy)
        super().__init__(
            f"Strategy '{value}' cannot be applied in batch; resolve conflicts individually"
        )


class DuplicateOpenConflictError(ConfluxError):
    """Raised when a record already has an unresolved conflict."""

    def __init__(self, existing_id: str, entity_table: str, record_id: Hashable):
        self.existing_id = existing_id
        self.entity_table = entity_table
        self.record_id = record_id
        super().__init__(
            f"Record {entity_table}/{record_id} already has an open conflict: {existing_id}"
        )


class ConflictNotFoundError(ConfluxError):
    """Raised when a conflict id is unknown to the store."""

    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Conflict not found: {conflict_id}")


class NoDivergenceError(ConfluxError):
    """Raised when a conflict is reported for snapshots with no field differences."""

    def __init__(self, entity_table: str, record_id: Hashable, conflict_id: Optional[str] = None):
        self.entity_table = entity_table
        self.record_id = record_id
        self.conflict_id = conflict_id
        super().__init__(
            f"Snapshots of {entity_table}/{record_id} have no differing fields; "
            "nothing to resolve"
        )


class StaleConflictError(ConfluxError):
    """Raised when the stored server snapshot moved on while a resolution was computed."""

    def __init__(self, conflict_id: str, expected_version: Any, stored_version: Any):
        self.conflict_id = conflict_id
        self.expected_version = expected_version
        self.stored_version = stored_version
        super().__init__(
            f"Conflict {conflict_id} was updated to server version {stored_version!r} "
            f"(resolution computed against {expected_version!r}); fetch it and retry"
        )


__all__ = [
    "ConfluxError",
    "MismatchedEntityError",
    "AlreadyResolvedError",
    "IncompleteMergeError",
    "UnsupportedBatchStrategyError",
    "DuplicateOpenConflictError",
    "ConflictNotFoundError",
    "NoDivergenceError",
    "StaleConflictError",
]
