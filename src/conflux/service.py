"""
Conflict service: the entry points the write path and operator tools call.

Wires a store, the resolution engine, the batch resolver, the notification
hub and the auto-resolution policies together.

Usage:
    service = ConflictService()
    service.subscribe(my_alerting_bridge)

    # write path, after a failed version check
    conflict = service.report_conflict(local_snapshot, server_snapshot)

    # operator
    entity = service.resolve(conflict.id, ResolutionStrategy.MERGE, {"name": "Acme Corp"})
    write_path.save(entity.fields, expected_version=entity.base_version)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .audit_log import ResolutionAuditLog
from .batch import BatchOutcome, BatchResolver
from .config import ConfluxConfig
from .differ import diff, is_stale
from .engine import ResolutionEngine
from .errors import ConflictNotFoundError, NoDivergenceError
from .event_bus import EventBus, WebhookDispatcher
from .models import (
    AuditEntry,
    ConflictRecord,
    ConflictStatus,
    MergeSelection,
    ResolutionStrategy,
    ResolvedEntity,
    VersionedSnapshot,
)
from .notifications import EventBusBridge, NotificationHub
from .policies import PolicyRegistry
from .sqlite_store import SQLiteConflictStore
from .store import BaseConflictStore, ConflictStore

logger = logging.getLogger(__name__)

ConflictRef = Union[ConflictRecord, str]


@dataclass
class ConflictStats:
    """Summary counters over the store."""
    total: int = 0
    unresolved: int = 0
    resolved: int = 0
    resolved_today: int = 0
    average_resolution_seconds: Optional[float] = None
    by_strategy: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "total": self.total,
            "unresolved": self.unresolved,
            "resolved": self.resolved,
            "resolved_today": self.resolved_today,
            "average_resolution_seconds": self.average_resolution_seconds,
            "by_strategy": dict(self.by_strategy),
        }


class ConflictService:
    """
    Facade over detection, querying and resolution of conflicts.

    Args:
        store: Conflict store (default: in-memory ConflictStore)
        audit_log: Optional resolution audit trail
        policies: Auto-resolution policies (default: prompt for every table)
        bus: Optional EventBus that receives conflict events
    """

    def __init__(
        self,
        store: Optional[BaseConflictStore] = None,
        audit_log: Optional[ResolutionAuditLog] = None,
        policies: Optional[PolicyRegistry] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store if store is not None else ConflictStore()
        self.audit_log = audit_log
        self.policies = policies or PolicyRegistry()
        self.hub = NotificationHub()
        self.engine = ResolutionEngine(store=self.store, audit_log=audit_log, hub=self.hub)
        self.batch = BatchResolver(self.engine)
        self.bus = bus
        self._dispatcher: Optional[WebhookDispatcher] = None
        if bus is not None:
            self.hub.subscribe(EventBusBridge(bus))

    @classmethod
    def from_config(cls, config: ConfluxConfig) -> "ConflictService":
        """
        Build a service from loaded configuration.

        Raises:
            ValueError: If the configuration is malformed
        """
        config.validate()
        if config.store_backend == "sqlite":
            store: BaseConflictStore = SQLiteConflictStore(config.store_path)
        else:
            store = ConflictStore()

        audit_log = ResolutionAuditLog(config.audit_path) if config.audit_enabled else None

        bus = None
        dispatcher = None
        if config.webhook_url:
            bus = EventBus()
            dispatcher = WebhookDispatcher(config.webhook_url, bus=bus)

        service = cls(store=store, audit_log=audit_log, policies=config.policies, bus=bus)
        if dispatcher is not None:
            dispatcher.start()
            service._dispatcher = dispatcher
        logger.debug(f"ConflictService configured from {config.base_path} ({config.store_backend} store)")
        return service

    # ==================== Detection ====================

    def report_conflict(self, local: VersionedSnapshot, server: VersionedSnapshot) -> ConflictRecord:
        """
        Record a conflict after a failed version check.

        A report for a record that already has an open conflict folds the new
        server snapshot into it and returns the existing conflict. New
        conflicts are announced to subscribers and then handed to the
        table's auto-resolution policy.

        Raises:
            MismatchedEntityError: If the snapshots belong to different records
            NoDivergenceError: If the snapshots have no differing fields
        """
        diffs = diff(local, server)
        if not diffs:
            raise NoDivergenceError(local.entity_table, local.record_id)

        record, created = self.store.add_or_merge(ConflictRecord(local=local, server=server))
        if not created:
            return record

        logger.info(
            f"Conflict {record.id} detected on {record.entity_table}/{record.record_id}: "
            f"{', '.join(sorted(diffs))}"
        )
        self.hub.notify_detected(record)

        policy = self.policies.policy_for(record.entity_table)
        if policy.strategy is not None:
            self.engine.resolve(record, policy.strategy, actor=f"policy:{policy.value}")
        return record

    def detect(self, local: VersionedSnapshot, server: VersionedSnapshot) -> Optional[ConflictRecord]:
        """
        Run the version check and report a conflict when it fails.

        Returns:
            The reported conflict, or None when the versions match or the
            snapshots do not differ in any field
        """
        if not is_stale(local, server):
            return None
        if not diff(local, server):
            logger.debug(
                f"Version mismatch on {local.entity_table}/{local.record_id} "
                "without field differences; not a conflict"
            )
            return None
        return self.report_conflict(local, server)

    # ==================== Queries ====================

    def get(self, conflict_id: str) -> ConflictRecord:
        """
        Raises:
            ConflictNotFoundError: If the id is unknown
        """
        return self.store.get(conflict_id)

    def list_by_status(
        self, status: Union[ConflictStatus, str, None] = None
    ) -> List[ConflictRecord]:
        """Conflicts with the given status (all when None), oldest first."""
        if isinstance(status, str):
            status = ConflictStatus.from_string(status)
        return self.store.list_by_status(status)

    # ==================== Resolution ====================

    def _fetch(self, conflict: ConflictRef) -> ConflictRecord:
        if isinstance(conflict, ConflictRecord):
            return conflict
        return self.store.get(conflict)

    def resolve(
        self,
        conflict: ConflictRef,
        strategy: Union[ResolutionStrategy, str],
        selections: Union[None, Iterable[MergeSelection], Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> ResolvedEntity:
        """Resolve one conflict (record or id); see ResolutionEngine.resolve."""
        return self.engine.resolve(self._fetch(conflict), strategy, selections, actor=actor)

    def resolve_all(
        self,
        conflicts: Optional[Iterable[ConflictRef]],
        strategy: Union[ResolutionStrategy, str],
        actor: Optional[str] = None,
    ) -> List[BatchOutcome]:
        """
        Resolve many conflicts with LOCAL_WINS or SERVER_WINS.

        Args:
            conflicts: Records or ids; None means every open conflict

        Ids that cannot be found are reported as failed outcomes.
        """
        if conflicts is None:
            records = self.store.list_by_status(ConflictStatus.UNRESOLVED)
            return self.batch.resolve_all(records, strategy, actor=actor)

        outcomes: List[Optional[BatchOutcome]] = []
        records = []
        for ref in conflicts:
            try:
                records.append(self._fetch(ref))
                outcomes.append(None)
            except ConflictNotFoundError as e:
                outcomes.append(BatchOutcome(conflict_id=e.conflict_id, error=e))

        resolved = iter(self.batch.resolve_all(records, strategy, actor=actor))
        return [outcome if outcome is not None else next(resolved) for outcome in outcomes]

    def expire_stale(
        self,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[BatchOutcome]:
        """
        Resolve open conflicts older than the maximum age with SERVER_WINS.

        Args:
            max_age_seconds: Override for the configured maximum age
            now: Reference time (default: current time)
        """
        now = now or datetime.now()
        stale = [
            record for record in self.store.list_by_status(ConflictStatus.UNRESOLVED)
            if self.policies.is_expired(record, now=now, max_age_seconds=max_age_seconds)
        ]
        if not stale:
            return []

        logger.info(f"Expiring {len(stale)} stale conflicts to server values")
        return self.batch.resolve_all(stale, ResolutionStrategy.SERVER_WINS, actor="expiry", now=now)

    # ==================== Observers ====================

    def subscribe(self, bridge: Any) -> Any:
        """Register an observer with on_conflict_detected/on_conflict_resolved."""
        return self.hub.subscribe(bridge)

    def unsubscribe(self, bridge: Any) -> bool:
        return self.hub.unsubscribe(bridge)

    # ==================== Reporting ====================

    def stats(self, now: Optional[datetime] = None) -> ConflictStats:
        """Counters and average time-to-resolution over all stored conflicts."""
        now = now or datetime.now()
        records = self.store.list_by_status()

        result = ConflictStats(total=len(records))
        durations = []
        for record in records:
            if record.is_open:
                result.unresolved += 1
                continue
            result.resolved += 1
            resolution = record.resolution
            strategy = resolution.strategy.value
            result.by_strategy[strategy] = result.by_strategy.get(strategy, 0) + 1
            if resolution.resolved_at.date() == now.date():
                result.resolved_today += 1
            if record.detected_at is not None:
                durations.append((resolution.resolved_at - record.detected_at).total_seconds())

        if durations:
            result.average_resolution_seconds = sum(durations) / len(durations)
        return result

    def history(self, conflict_id: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        """Audit entries for one conflict, or the most recent ones."""
        if self.audit_log is None:
            return []
        if conflict_id:
            return self.audit_log.get_by_conflict(conflict_id)
        return self.audit_log.get_recent(limit)

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.stop()
        self.store.close()
        if self.audit_log is not None:
            self.audit_log.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


__all__ = ["ConflictService", "ConflictStats"]
