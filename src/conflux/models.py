"""
Data model for optimistic-concurrency conflicts.

A ConflictRecord pairs the snapshot a client held when it attempted a write
(local) with the snapshot currently persisted (server). It moves one way,
UNRESOLVED -> RESOLVED, and carries the resolution once closed.
"""

import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Hashable, List, Mapping, Optional, Tuple, Union


class _Undefined:
    """Marker for a field that is absent from a snapshot."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return "UNDEFINED"


UNDEFINED = _Undefined()

Version = Union[int, str, date, datetime]


class ConflictStatus(str, Enum):
    """Lifecycle states of a conflict."""
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"

    @classmethod
    def from_string(cls, status: str) -> "ConflictStatus":
        """Parse a status name (case-insensitive)."""
        try:
            return cls(status.lower())
        except ValueError:
            raise ValueError(
                f"Invalid conflict status '{status}'. Must be one of: unresolved, resolved"
            )

    def __str__(self) -> str:
        return self.value


class ResolutionStrategy(str, Enum):
    """
    Rules for producing the final field values of a conflicting record

    - LOCAL_WINS: keep the values the initiating actor submitted
    - SERVER_WINS: keep the currently persisted values
    - MERGE: field-by-field selection supplied by the caller
    """
    LOCAL_WINS = "local"
    SERVER_WINS = "server"
    MERGE = "merge"

    @classmethod
    def from_string(cls, strategy: str) -> "ResolutionStrategy":
        """
        Convert string to ResolutionStrategy

        Accepts the short names (local, server, merge) as well as the
        enum names (local_wins, server_wins), case-insensitive.

        Raises:
            ValueError: If strategy is invalid
        """
        strategy_lower = strategy.lower()
        if strategy_lower in ("local", "local_wins"):
            return cls.LOCAL_WINS
        elif strategy_lower in ("server", "server_wins"):
            return cls.SERVER_WINS
        elif strategy_lower == "merge":
            return cls.MERGE
        else:
            raise ValueError(
                f"Invalid resolution strategy '{strategy}'. "
                "Must be one of: local, server, merge"
            )

    def __str__(self) -> str:
        return self.value


def _version_to_json(version: Version) -> Any:
    # datetime is a date subclass, so it is checked first
    if isinstance(version, datetime):
        return {"$datetime": version.isoformat()}
    if isinstance(version, date):
        return {"$date": version.isoformat()}
    return version


def _version_from_json(value: Any) -> Version:
    if isinstance(value, dict) and "$datetime" in value:
        return datetime.fromisoformat(value["$datetime"])
    if isinstance(value, dict) and "$date" in value:
        return date.fromisoformat(value["$date"])
    return value


@dataclass(frozen=True)
class VersionedSnapshot:
    """A versioned copy of one record's field values."""
    entity_table: str
    record_id: Hashable
    fields: Mapping[str, Any]
    version: Version

    @property
    def key(self) -> Tuple[str, Hashable]:
        return (self.entity_table, self.record_id)

    def get(self, field_name: str) -> Any:
        """Value of a field, or UNDEFINED when the snapshot lacks it."""
        return self.fields.get(field_name, UNDEFINED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "fields": dict(self.fields),
            "version": _version_to_json(self.version),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionedSnapshot":
        return cls(
            entity_table=data["entity_table"],
            record_id=data["record_id"],
            fields=dict(data.get("fields") or {}),
            version=_version_from_json(data.get("version")),
        )


@dataclass(frozen=True)
class Resolution:
    """How and when a conflict was closed."""
    strategy: ResolutionStrategy
    merged_fields: Dict[str, Any]
    resolved_at: datetime
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "strategy": self.strategy.value,
            "merged_fields": dict(self.merged_fields),
            "resolved_at": self.resolved_at.isoformat(),
            "actor": self.actor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resolution":
        return cls(
            strategy=ResolutionStrategy(data["strategy"]),
            merged_fields=dict(data.get("merged_fields") or {}),
            resolved_at=datetime.fromisoformat(data["resolved_at"]),
            actor=data.get("actor"),
        )


@dataclass
class ConflictRecord:
    """
    A detected divergence between a client's snapshot and the persisted one.

    Attributes:
        id: Unique identifier, assigned at detection time
        local: Snapshot held by the initiating actor
        server: Snapshot currently persisted
        detected_at: When the version check failed
        status: UNRESOLVED until the resolution engine closes it
        resolution: Populated only once status is RESOLVED
    """
    local: VersionedSnapshot
    server: VersionedSnapshot
    id: Optional[str] = None
    detected_at: Optional[datetime] = None
    status: ConflictStatus = ConflictStatus.UNRESOLVED
    resolution: Optional[Resolution] = None
    _field_diffs: Optional[FrozenSet[str]] = field(default=None, repr=False, compare=False)

    @property
    def entity_table(self) -> str:
        return self.server.entity_table

    @property
    def record_id(self) -> Hashable:
        return self.server.record_id

    @property
    def key(self) -> Tuple[str, Hashable]:
        return self.server.key

    @property
    def is_open(self) -> bool:
        return self.status == ConflictStatus.UNRESOLVED

    @property
    def field_diffs(self) -> FrozenSet[str]:
        """Names of fields whose local and server values differ (computed once)."""
        if self._field_diffs is None:
            from .differ import diff
            self._field_diffs = diff(self.local, self.server)
        return self._field_diffs

    def replace_server(self, server: VersionedSnapshot) -> None:
        """Fold a newer server snapshot into this conflict."""
        self.server = server
        self._field_diffs = None

    def copy(self) -> "ConflictRecord":
        """Detached deep copy (no aliasing of field maps)."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "local": self.local.to_dict(),
            "server": self.server.to_dict(),
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "field_diffs": sorted(self.field_diffs),
            "status": self.status.value,
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }


@dataclass(frozen=True)
class MergeSelection:
    """The value chosen for one diffed field during a merge."""
    field_name: str
    chosen_value: Any

    @classmethod
    def take_local(cls, conflict: ConflictRecord, field_name: str) -> "MergeSelection":
        return cls(field_name, conflict.local.get(field_name))

    @classmethod
    def take_server(cls, conflict: ConflictRecord, field_name: str) -> "MergeSelection":
        return cls(field_name, conflict.server.get(field_name))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> List["MergeSelection"]:
        return [cls(name, value) for name, value in values.items()]


@dataclass
class AuditEntry:
    """Audit trail entry written for every resolution"""
    id: str
    conflict_id: str
    entity_table: str
    record_id: Hashable
    strategy: ResolutionStrategy
    changed_fields: List[str]
    resolved_at: datetime
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "conflict_id": self.conflict_id,
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "strategy": self.strategy.value,
            "changed_fields": list(self.changed_fields),
            "resolved_at": self.resolved_at.isoformat(),
            "actor": self.actor,
        }


@dataclass
class ResolvedEntity:
    """
    Final field values produced by a resolution.

    The caller persists `fields` against `base_version`; the core never
    performs the write itself.
    """
    conflict_id: str
    entity_table: str
    record_id: Hashable
    fields: Dict[str, Any]
    strategy: ResolutionStrategy
    resolved_at: datetime
    base_version: Version
    audit: Optional[AuditEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "conflict_id": self.conflict_id,
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "fields": dict(self.fields),
            "strategy": self.strategy.value,
            "resolved_at": self.resolved_at.isoformat(),
            "base_version": _version_to_json(self.base_version),
            "audit_id": self.audit.id if self.audit else None,
        }


__all__ = [
    "UNDEFINED",
    "Version",
    "ConflictStatus",
    "ResolutionStrategy",
    "VersionedSnapshot",
    "Resolution",
    "ConflictRecord",
    "MergeSelection",
    "AuditEntry",
    "ResolvedEntity",
]
