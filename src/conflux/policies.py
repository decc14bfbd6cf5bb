"""
Auto-resolution policies for newly detected conflicts.

Each entity table is assigned one of:

- PROMPT: leave the conflict open for an operator to resolve
- SERVER: resolve immediately, keeping the persisted values
- CLIENT: resolve immediately, keeping the submitted values

Open PROMPT conflicts fall back to the server values once they grow older
than the configured maximum age (see ConflictService.expire_stale).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .models import ConflictRecord, ResolutionStrategy

DEFAULT_MAX_AGE_SECONDS = 30


class ConflictPolicy(str, Enum):
    """What happens to a conflict right after detection."""
    PROMPT = "prompt"
    SERVER = "server"
    CLIENT = "client"

    @classmethod
    def from_string(cls, policy: str) -> "ConflictPolicy":
        """
        Raises:
            ValueError: If policy is invalid
        """
        try:
            return cls(policy.lower())
        except ValueError:
            raise ValueError(
                f"Invalid conflict policy '{policy}'. Must be one of: prompt, server, client"
            )

    @property
    def strategy(self) -> Optional[ResolutionStrategy]:
        """Strategy applied automatically, or None when an operator decides."""
        if self == ConflictPolicy.SERVER:
            return ResolutionStrategy.SERVER_WINS
        if self == ConflictPolicy.CLIENT:
            return ResolutionStrategy.LOCAL_WINS
        return None

    def __str__(self) -> str:
        return self.value


@dataclass
class PolicyRegistry:
    """Per-table conflict policies with a default."""
    default: ConflictPolicy = ConflictPolicy.PROMPT
    tables: Dict[str, ConflictPolicy] = field(default_factory=dict)
    max_age_seconds: Optional[float] = DEFAULT_MAX_AGE_SECONDS

    def policy_for(self, entity_table: str) -> ConflictPolicy:
        return self.tables.get(entity_table, self.default)

    def set_policy(self, entity_table: str, policy: ConflictPolicy) -> None:
        self.tables[entity_table] = policy

    def is_expired(self, conflict: ConflictRecord, now: Optional[datetime] = None,
                   max_age_seconds: Optional[float] = None) -> bool:
        """True when an open conflict has waited longer than the maximum age."""
        max_age = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        if max_age is None or not conflict.is_open or conflict.detected_at is None:
            return False
        now = now or datetime.now()
        return now - conflict.detected_at > timedelta(seconds=max_age)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]],
                  max_age_seconds: Optional[float] = DEFAULT_MAX_AGE_SECONDS) -> "PolicyRegistry":
        """
        Build from the `policies` section of the config file.

        Example:
            {"default": "prompt", "tables": {"orders": "server"}}
        """
        data = data or {}
        default = ConflictPolicy.from_string(str(data.get("default", ConflictPolicy.PROMPT.value)))
        table_data = data.get("tables") or {}
        if not isinstance(table_data, dict):
            raise ValueError(f"Policy tables must map table names to policies, got {table_data!r}")
        tables = {
            str(table): ConflictPolicy.from_string(str(policy))
            for table, policy in table_data.items()
        }
        return cls(default=default, tables=tables, max_age_seconds=max_age_seconds)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "default": self.default.value,
            "tables": {table: policy.value for table, policy in self.tables.items()},
        }


__all__ = ["ConflictPolicy", "PolicyRegistry", "DEFAULT_MAX_AGE_SECONDS"]
