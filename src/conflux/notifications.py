"""
Notification bridge between the resolution core and alerting collaborators.

The core calls the hub synchronously right after each store mutation. Bridges
own asynchronous delivery; anything a bridge raises is logged and dropped so
that a misbehaving observer can never undo or block a transition.
"""

import logging
from threading import Lock
from typing import Any, List

from .event_bus import EventBus
from .events import ConflictDetectedEvent, ConflictResolvedEvent
from .models import ConflictRecord

logger = logging.getLogger(__name__)


class NotificationBridge:
    """
    Observer of conflict transitions.

    Subclass and override either hook. Any object exposing the two methods
    can be subscribed as well.
    """

    def on_conflict_detected(self, conflict: ConflictRecord) -> None:
        pass

    def on_conflict_resolved(self, conflict: ConflictRecord) -> None:
        pass


class NotificationHub:
    """Fans conflict transitions out to subscribed bridges."""

    def __init__(self):
        self._bridges: List[Any] = []
        self._lock = Lock()

    def subscribe(self, bridge: Any) -> Any:
        """
        Register a bridge.

        Raises:
            TypeError: If the bridge lacks on_conflict_detected/on_conflict_resolved
        """
        for hook in ("on_conflict_detected", "on_conflict_resolved"):
            if not callable(getattr(bridge, hook, None)):
                raise TypeError(f"Notification bridge {bridge!r} has no callable {hook}()")

        with self._lock:
            if bridge not in self._bridges:
                self._bridges.append(bridge)
        logger.debug(f"Subscribed notification bridge {type(bridge).__name__}")
        return bridge

    def unsubscribe(self, bridge: Any) -> bool:
        with self._lock:
            if bridge in self._bridges:
                self._bridges.remove(bridge)
                return True
        return False

    def notify_detected(self, conflict: ConflictRecord) -> None:
        self._dispatch("on_conflict_detected", conflict)

    def notify_resolved(self, conflict: ConflictRecord) -> None:
        self._dispatch("on_conflict_resolved", conflict)

    def _dispatch(self, hook: str, conflict: ConflictRecord) -> None:
        with self._lock:
            bridges = list(self._bridges)

        for bridge in bridges:
            try:
                getattr(bridge, hook)(conflict.copy())
            except Exception as e:
                logger.error(
                    f"Notification bridge {type(bridge).__name__}.{hook} failed "
                    f"for conflict {conflict.id}: {e}",
                    exc_info=True
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._bridges)


class EventBusBridge(NotificationBridge):
    """Republishes conflict transitions as events on an EventBus."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    def on_conflict_detected(self, conflict: ConflictRecord) -> None:
        self.bus.publish(ConflictDetectedEvent(
            conflict_id=conflict.id,
            entity_table=conflict.entity_table,
            record_id=conflict.record_id,
            field_diffs=sorted(conflict.field_diffs),
            timestamp=conflict.detected_at,
        ))

    def on_conflict_resolved(self, conflict: ConflictRecord) -> None:
        resolution = conflict.resolution
        self.bus.publish(ConflictResolvedEvent(
            conflict_id=conflict.id,
            entity_table=conflict.entity_table,
            record_id=conflict.record_id,
            strategy=resolution.strategy.value,
            actor=resolution.actor,
            timestamp=resolution.resolved_at,
        ))


__all__ = ["NotificationBridge", "NotificationHub", "EventBusBridge"]
