"""
Event type definitions for conflict state transitions.

- ConflictDetectedEvent: a write failed its version check and a conflict was recorded
- ConflictResolvedEvent: a conflict was closed with a strategy

Events carry enough context for an alerting subsystem (toast, desktop
notification, SMS) to render a message without querying the store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Hashable


@dataclass
class ConflictDetectedEvent:
    """Event emitted when a conflict is recorded."""
    conflict_id: str
    entity_table: str
    record_id: Hashable
    field_diffs: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "conflict.detected"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "conflict_id": self.conflict_id,
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "field_diffs": self.field_diffs,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": self.metadata or {}
        }


@dataclass
class ConflictResolvedEvent:
    """Event emitted when a conflict is resolved."""
    conflict_id: str
    entity_table: str
    record_id: Hashable
    strategy: str
    actor: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    event_type: str = "conflict.resolved"
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_type": self.event_type,
            "conflict_id": self.conflict_id,
            "entity_table": self.entity_table,
            "record_id": self.record_id,
            "strategy": self.strategy,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": self.metadata or {}
        }


__all__ = [
    "ConflictDetectedEvent",
    "ConflictResolvedEvent",
]
