"""
Batch resolution of conflicts with an unconditional strategy.

Conflicts are independent records, so a batch is not a transaction: each
conflict is resolved on its own and a failure on one is reported in its
outcome without stopping or undoing the others.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .engine import ResolutionEngine
from .errors import ConfluxError, UnsupportedBatchStrategyError
from .models import ConflictRecord, ResolutionStrategy, ResolvedEntity

logger = logging.getLogger(__name__)

BATCH_STRATEGIES = (ResolutionStrategy.LOCAL_WINS, ResolutionStrategy.SERVER_WINS)


@dataclass
class BatchOutcome:
    """
    Result of resolving one conflict within a batch.

    Exactly one of entity/error is set.
    """
    conflict_id: Optional[str]
    entity: Optional[ResolvedEntity] = None
    error: Optional[ConfluxError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "conflict_id": self.conflict_id,
            "outcome": "success" if self.succeeded else "failure",
            "entity": self.entity.to_dict() if self.entity else None,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
        }


class BatchResolver:
    """Applies LOCAL_WINS or SERVER_WINS to many conflicts, in input order."""

    def __init__(self, engine: ResolutionEngine):
        self.engine = engine

    def resolve_all(
        self,
        conflicts: Iterable[ConflictRecord],
        strategy: Union[ResolutionStrategy, str],
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[BatchOutcome]:
        """
        Resolve every conflict with the same strategy.

        Args:
            conflicts: Conflicts to resolve, in the order to process them
            strategy: LOCAL_WINS or SERVER_WINS
            actor: Optional operator recorded in the audit trail
            now: Resolution timestamp shared by the batch (default: per-item current time)

        Returns:
            One BatchOutcome per input conflict, in input order

        Raises:
            UnsupportedBatchStrategyError: If strategy is MERGE
        """
        if not isinstance(strategy, ResolutionStrategy):
            strategy = ResolutionStrategy.from_string(strategy)
        if strategy not in BATCH_STRATEGIES:
            raise UnsupportedBatchStrategyError(strategy)

        outcomes = []
        for conflict in conflicts:
            try:
                entity = self.engine.resolve(conflict, strategy, actor=actor, now=now)
            except ConfluxError as e:
                logger.warning(f"Batch {strategy.value}: conflict {conflict.id} failed: {e}")
                outcomes.append(BatchOutcome(conflict_id=conflict.id, error=e))
            else:
                outcomes.append(BatchOutcome(conflict_id=conflict.id, entity=entity))

        succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
        logger.info(
            f"Batch {strategy.value}: {succeeded}/{len(outcomes)} conflicts resolved"
        )
        return outcomes


__all__ = ["BatchOutcome", "BatchResolver", "BATCH_STRATEGIES"]
