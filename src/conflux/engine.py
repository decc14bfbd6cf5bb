"""
Resolution engine for optimistic-concurrency conflicts.

Applies one of three strategies to an open conflict:

LOCAL_WINS:  the final values are the local snapshot's fields, verbatim.
SERVER_WINS: the final values are the server snapshot's fields, verbatim.
MERGE:       the server snapshot is the baseline; every diffed field is
             overwritten with a caller-supplied selection. Selections must
             name exactly the diffed fields.

Resolution is a one-time, all-or-nothing transition. Every precondition is
checked before anything is mutated, and the check-then-mutate step is
serialized per conflict id. When bound to a store, the status change goes
through the store's compare-and-swap so that two holders of copies of the
same conflict cannot both resolve it. The final values are computed from the
stored record, so a server snapshot folded in after the caller fetched its
copy is never reverted.
"""

import copy
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from .audit_log import ResolutionAuditLog
from .differ import values_differ
from .errors import AlreadyResolvedError, IncompleteMergeError
from .models import (
    UNDEFINED,
    ConflictRecord,
    ConflictStatus,
    MergeSelection,
    Resolution,
    ResolutionStrategy,
    ResolvedEntity,
)
from .notifications import NotificationHub
from .store import BaseConflictStore

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _coerce_strategy(strategy: Union[ResolutionStrategy, str]) -> ResolutionStrategy:
    if isinstance(strategy, ResolutionStrategy):
        return strategy
    return ResolutionStrategy.from_string(strategy)


def _normalize_selections(
    selections: Union[None, Iterable[MergeSelection], Dict[str, Any]]
) -> List[MergeSelection]:
    if selections is None:
        return []
    if isinstance(selections, dict):
        return MergeSelection.from_mapping(selections)
    return list(selections)


def merge_fields(conflict: ConflictRecord, selections: List[MergeSelection]) -> Dict[str, Any]:
    """
    Build the merged field map for a conflict.

    Raises:
        IncompleteMergeError: If selection names are not exactly the diffed fields
    """
    diffs = conflict.field_diffs
    counts = Counter(selection.field_name for selection in selections)
    chosen = set(counts)

    missing = diffs - chosen
    extra = chosen - diffs
    duplicate = [name for name, count in counts.items() if count > 1]
    if missing or extra or duplicate:
        raise IncompleteMergeError(conflict.id, missing=missing, extra=extra, duplicate=duplicate)

    merged = dict(conflict.server.fields)
    for selection in selections:
        if selection.chosen_value is UNDEFINED:
            merged.pop(selection.field_name, None)
        else:
            merged[selection.field_name] = selection.chosen_value
    return merged


class ResolutionEngine:
    """
    Resolves conflicts and records the outcome.

    Args:
        store: Optional store whose copy of the conflict is closed alongside
               the caller's object
        audit_log: Optional audit trail written for each resolution
        hub: Optional notification hub told about each resolution
    """

    def __init__(
        self,
        store: Optional[BaseConflictStore] = None,
        audit_log: Optional[ResolutionAuditLog] = None,
        hub: Optional[NotificationHub] = None,
    ):
        self.store = store
        self.audit_log = audit_log
        self.hub = hub
        self._locks = _KeyedLocks()

    def resolve(
        self,
        conflict: ConflictRecord,
        strategy: Union[ResolutionStrategy, str],
        selections: Union[None, Iterable[MergeSelection], Dict[str, Any]] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResolvedEntity:
        """
        Resolve an open conflict.

        Args:
            conflict: Conflict to close; mutated in place on success
            strategy: LOCAL_WINS, SERVER_WINS or MERGE (enum or name)
            selections: MergeSelections (or a {field: value} mapping), MERGE only
            actor: Optional operator or service recorded in the audit trail
            now: Resolution timestamp (default: current time)

        Returns:
            ResolvedEntity with the final field values for the caller to persist

        Raises:
            AlreadyResolvedError: If the conflict is already resolved
            IncompleteMergeError: If MERGE selections miss or exceed the diffed fields
            StaleConflictError: If the stored server snapshot changed while resolving
            ValueError: If the conflict has no id or selections accompany a non-merge strategy
        """
        if not conflict.id:
            raise ValueError("Conflict has no id; add it to a store before resolving")

        strategy = _coerce_strategy(strategy)
        selection_list = _normalize_selections(selections)
        if strategy != ResolutionStrategy.MERGE and selection_list:
            raise ValueError(f"Selections are only accepted with the merge strategy, got '{strategy}'")

        with self._locks.hold(conflict.id):
            if not conflict.is_open:
                raise AlreadyResolvedError(conflict.id)

            # The stored record may hold a newer server snapshot than the caller's copy
            current = self.store.get(conflict.id) if self.store is not None else conflict
            if not current.is_open:
                raise AlreadyResolvedError(conflict.id)

            if strategy == ResolutionStrategy.LOCAL_WINS:
                fields = dict(current.local.fields)
            elif strategy == ResolutionStrategy.SERVER_WINS:
                fields = dict(current.server.fields)
            else:
                fields = merge_fields(current, selection_list)

            resolution = Resolution(
                strategy=strategy,
                merged_fields=copy.deepcopy(fields),
                resolved_at=now or datetime.now(),
                actor=actor,
            )

            if self.store is not None:
                self.store.mark_resolved(
                    conflict.id, resolution, expected_server_version=current.server.version
                )
                if current.server != conflict.server:
                    conflict.replace_server(current.server)

            conflict.status = ConflictStatus.RESOLVED
            conflict.resolution = resolution

        logger.info(
            f"Resolved conflict {conflict.id} ({conflict.entity_table}/{conflict.record_id}) "
            f"with {strategy.value}"
        )

        audit_entry = None
        if self.audit_log is not None:
            audit_entry = self.audit_log.record(
                conflict_id=conflict.id,
                entity_table=conflict.entity_table,
                record_id=conflict.record_id,
                strategy=strategy,
                changed_fields=self._changed_fields(conflict, fields),
                resolved_at=resolution.resolved_at,
                actor=actor,
            )

        if self.hub is not None:
            self.hub.notify_resolved(conflict)

        return ResolvedEntity(
            conflict_id=conflict.id,
            entity_table=conflict.entity_table,
            record_id=conflict.record_id,
            fields=copy.deepcopy(fields),
            strategy=strategy,
            resolved_at=resolution.resolved_at,
            base_version=conflict.server.version,
            audit=audit_entry,
        )

    @staticmethod
    def _changed_fields(conflict: ConflictRecord, fields: Dict[str, Any]) -> List[str]:
        """Fields whose final value differs from the server baseline."""
        server = conflict.server
        names = set(fields) | set(server.fields)
        return sorted(
            name for name in names
            if values_differ(fields.get(name, UNDEFINED), server.get(name))
        )


__all__ = ["ResolutionEngine", "merge_fields"]
