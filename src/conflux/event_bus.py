"""
EventBus for in-process pub/sub of conflict transitions.

Alerting collaborators subscribe to 'conflict.detected' / 'conflict.resolved'
(or '*' for everything) and react without the resolution core knowing about
them.

Usage:
    bus = EventBus()
    bus.subscribe('conflict.detected', lambda event: print(event.conflict_id))
    bus.subscribe('*', log_event)

    bus.publish(ConflictDetectedEvent(conflict_id="c-1", entity_table="products", record_id=7))
"""

from typing import Callable, Dict, List, Any, Optional
from threading import Lock, Thread
import logging
import time

import requests

logger = logging.getLogger(__name__)


class EventBus:
    """
    Thread-safe in-process event bus for pub/sub.

    Supports:
    - subscribe(event_type, callback): Register callbacks for specific event types
    - publish(event): Emit events to all matching subscribers
    - Wildcard subscription: subscribe('*', callback) receives all events
    """

    def __init__(self):
        """Initialize empty event bus with thread safety."""
        # event_type -> list of callbacks
        self._subscribers: Dict[str, List[Callable[[Any], None]]] = {}
        self._lock = Lock()

    def subscribe(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event type to listen for (e.g., 'conflict.detected')
                       Use '*' to subscribe to all event types
            callback: Function called with event object when event occurs
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
            logger.debug(f"Subscribed to {event_type}: {getattr(callback, '__name__', 'callback')}")

    def unsubscribe(self, event_type: str, callback: Callable[[Any], None]) -> bool:
        """
        Unsubscribe a callback from an event type.

        Returns:
            True if callback was found and removed, False otherwise
        """
        with self._lock:
            callbacks = self._subscribers.get(event_type)
            if not callbacks or callback not in callbacks:
                return False
            callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[event_type]
            logger.debug(f"Unsubscribed from {event_type}")
            return True

    def publish(self, event: Any) -> None:
        """
        Publish an event to all matching subscribers.

        Subscriber exceptions are logged and never reach the publisher.

        Args:
            event: Event object (must have 'event_type' attribute)
        """
        if not hasattr(event, 'event_type'):
            logger.warning(f"Event missing 'event_type' attribute: {type(event).__name__}")
            return

        event_type = event.event_type

        # Copy so callbacks run without holding the lock
        with self._lock:
            specific_subscribers = list(self._subscribers.get(event_type, []))
            wildcard_subscribers = list(self._subscribers.get('*', []))

        for callback in specific_subscribers + wildcard_subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in subscriber callback for {event_type}: {e}", exc_info=True)

        logger.debug(f"Published {event_type} to {len(specific_subscribers) + len(wildcard_subscribers)} subscribers")

    def clear(self) -> None:
        """Clear all subscriptions."""
        with self._lock:
            self._subscribers.clear()

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        """
        Get count of subscribers.

        Args:
            event_type: Optional event type to count. If None, returns total.
        """
        with self._lock:
            if event_type:
                return len(self._subscribers.get(event_type, []))
            return sum(len(subs) for subs in self._subscribers.values())


class WebhookDispatcher:
    """
    Forwards bus events to an HTTP endpoint.

    Each delivery runs in a background thread with retry and exponential
    backoff, so a slow or failing endpoint never blocks a conflict transition.

    Usage:
        dispatcher = WebhookDispatcher(
            webhook_url="https://alerts.example.com/conflicts",
            bus=service.bus,
            event_types=['conflict.detected'],
        )
        dispatcher.start()
        dispatcher.stop()
    """

    def __init__(
        self,
        webhook_url: str,
        bus: EventBus,
        event_types: Optional[List[str]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize webhook dispatcher.

        Args:
            webhook_url: Target URL for webhook POST requests
            bus: Bus whose events are forwarded
            event_types: Event types to forward (None = all events)
            headers: Optional HTTP headers to include in requests
            timeout: HTTP request timeout in seconds
            max_retries: Maximum number of retry attempts
            retry_delay: Initial delay between retries (exponential backoff)
        """
        self.webhook_url = webhook_url
        self.event_types = event_types or ['*']
        self.headers = headers or {}
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._event_bus = bus
        self._active = False
        self._callbacks_registered: List[str] = []

    def _send_webhook(self, event: Any) -> None:
        """POST one event, retrying with exponential backoff."""
        payload = event.to_dict() if hasattr(event, 'to_dict') else {'event_type': event.event_type}
        headers = {
            'Content-Type': 'application/json',
            **self.headers
        }

        for attempt in range(self.max_retries + 1):
            try:
                response = requests.post(
                    self.webhook_url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                logger.debug(
                    f"Webhook delivered: {event.event_type} (status={response.status_code})"
                )
                return
            except requests.RequestException as e:
                if attempt < self.max_retries:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Webhook delivery failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}. "
                        f"Retrying in {delay}s..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"Webhook delivery failed after {self.max_retries + 1} attempts: {e}"
                    )

    def _handle_event(self, event: Any) -> None:
        thread = Thread(target=self._send_webhook, args=(event,), daemon=True)
        thread.start()

    def start(self) -> None:
        """Subscribe to the configured event types."""
        if self._active:
            logger.warning("WebhookDispatcher already started")
            return

        for event_type in self.event_types:
            self._event_bus.subscribe(event_type, self._handle_event)
            self._callbacks_registered.append(event_type)
            logger.info(f"WebhookDispatcher subscribed to {event_type} -> {self.webhook_url}")

        self._active = True

    def stop(self) -> None:
        """Unsubscribe from the bus."""
        if not self._active:
            return

        for event_type in self._callbacks_registered:
            self._event_bus.unsubscribe(event_type, self._handle_event)

        self._callbacks_registered.clear()
        self._active = False
        logger.info("WebhookDispatcher stopped")

    def is_active(self) -> bool:
        return self._active


__all__ = ['EventBus', 'WebhookDispatcher']
