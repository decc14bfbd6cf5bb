"""
conflux - optimistic-concurrency conflict resolution

Detects divergence between a client's snapshot of a record and the persisted
one, and closes each conflict exactly once with local-wins, server-wins or a
field-level merge.
"""

__version__ = "0.1.0"

from .models import (
    UNDEFINED,
    AuditEntry,
    ConflictRecord,
    ConflictStatus,
    MergeSelection,
    Resolution,
    ResolutionStrategy,
    ResolvedEntity,
    VersionedSnapshot,
)
from .errors import (
    AlreadyResolvedError,
    ConflictNotFoundError,
    ConfluxError,
    DuplicateOpenConflictError,
    IncompleteMergeError,
    MismatchedEntityError,
    NoDivergenceError,
    StaleConflictError,
    UnsupportedBatchStrategyError,
)
from .differ import canonicalize, diff, is_stale
from .store import BaseConflictStore, ConflictStore
from .sqlite_store import SQLiteConflictStore
from .engine import ResolutionEngine
from .batch import BatchOutcome, BatchResolver
from .notifications import EventBusBridge, NotificationBridge, NotificationHub
from .event_bus import EventBus, WebhookDispatcher
from .audit_log import ResolutionAuditLog
from .policies import ConflictPolicy, PolicyRegistry
from .config import ConfluxConfig
from .service import ConflictService, ConflictStats

__all__ = [
    "__version__",
    # Model
    "UNDEFINED",
    "AuditEntry",
    "ConflictRecord",
    "ConflictStatus",
    "MergeSelection",
    "Resolution",
    "ResolutionStrategy",
    "ResolvedEntity",
    "VersionedSnapshot",
    # Errors
    "ConfluxError",
    "AlreadyResolvedError",
    "ConflictNotFoundError",
    "DuplicateOpenConflictError",
    "IncompleteMergeError",
    "MismatchedEntityError",
    "NoDivergenceError",
    "StaleConflictError",
    "UnsupportedBatchStrategyError",
    # Core
    "canonicalize",
    "diff",
    "is_stale",
    "BaseConflictStore",
    "ConflictStore",
    "SQLiteConflictStore",
    "ResolutionEngine",
    "BatchOutcome",
    "BatchResolver",
    # Observers
    "NotificationBridge",
    "NotificationHub",
    "EventBusBridge",
    "EventBus",
    "WebhookDispatcher",
    # Services
    "ResolutionAuditLog",
    "ConflictPolicy",
    "PolicyRegistry",
    "ConfluxConfig",
    "ConflictService",
    "ConflictStats",
]
