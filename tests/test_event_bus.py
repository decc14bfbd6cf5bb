"""Unit Tests for EventBus and WebhookDispatcher

Tests: subscribe/publish, wildcard subscriptions, callback isolation,
thread safety, webhook delivery and retries
"""
import pytest
import threading
import time
from datetime import datetime
from unittest.mock import Mock, patch

import requests

from conflux.events import ConflictDetectedEvent, ConflictResolvedEvent


def detected_event(conflict_id="c-1"):
    return ConflictDetectedEvent(
        conflict_id=conflict_id,
        entity_table="products",
        record_id=42,
        field_diffs=["name"],
        timestamp=datetime(2024, 1, 1, 12, 0),
    )


class TestEventBusBasics:
    """Tests for core EventBus functionality."""

    def test_instantiation(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        assert bus._subscribers == {}

    def test_subscribe_multiple_callbacks_same_type(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        callback1 = Mock()
        callback2 = Mock()

        bus.subscribe('conflict.detected', callback1)
        bus.subscribe('conflict.detected', callback2)

        assert bus.subscriber_count('conflict.detected') == 2
        assert bus.subscriber_count('conflict.resolved') == 0
        assert bus.subscriber_count() == 2

    def test_unsubscribe(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        callback = Mock()
        bus.subscribe('conflict.detected', callback)

        assert bus.unsubscribe('conflict.detected', callback) is True
        assert 'conflict.detected' not in bus._subscribers
        assert bus.unsubscribe('conflict.detected', callback) is False

    def test_clear(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        bus.subscribe('conflict.detected', Mock())
        bus.subscribe('*', Mock())
        bus.clear()

        assert bus.subscriber_count() == 0


class TestEventBusPublish:
    """Tests for publish()."""

    def test_publish_to_matching_subscribers(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        detected = Mock()
        resolved = Mock()
        bus.subscribe('conflict.detected', detected)
        bus.subscribe('conflict.resolved', resolved)

        event = detected_event()
        bus.publish(event)

        detected.assert_called_once_with(event)
        resolved.assert_not_called()

    def test_wildcard_receives_everything(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        everything = Mock()
        bus.subscribe('*', everything)

        bus.publish(detected_event())
        bus.publish(ConflictResolvedEvent("c-1", "products", 42, strategy="server"))

        assert everything.call_count == 2

    def test_failing_callback_isolated(self):
        """One broken subscriber does not stop the others."""
        from conflux.event_bus import EventBus

        bus = EventBus()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        bus.subscribe('conflict.detected', broken)
        bus.subscribe('conflict.detected', healthy)

        bus.publish(detected_event())

        healthy.assert_called_once()

    def test_event_without_type_ignored(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback)

        bus.publish(object())

        callback.assert_not_called()

    def test_concurrent_publish(self):
        from conflux.event_bus import EventBus

        bus = EventBus()
        received = []
        lock = threading.Lock()

        def callback(event):
            with lock:
                received.append(event.conflict_id)

        bus.subscribe('conflict.detected', callback)

        threads = [
            threading.Thread(target=bus.publish, args=(detected_event(f"c-{i}"),))
            for i in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(received) == sorted(f"c-{i}" for i in range(20))


class TestEvents:
    """Event serialization."""

    def test_detected_to_dict(self):
        data = detected_event().to_dict()
        assert data["event_type"] == "conflict.detected"
        assert data["field_diffs"] == ["name"]
        assert data["timestamp"] == "2024-01-01T12:00:00"
        assert data["metadata"] == {}

    def test_resolved_to_dict(self):
        event = ConflictResolvedEvent("c-1", "products", 42, strategy="merge", actor="ops")
        data = event.to_dict()
        assert data["event_type"] == "conflict.resolved"
        assert data["strategy"] == "merge"
        assert data["actor"] == "ops"


class TestWebhookDispatcher:
    """WebhookDispatcher with requests.post patched out."""

    def wait_for(self, mock, calls=1, timeout=2.0):
        deadline = time.time() + timeout
        while mock.call_count < calls and time.time() < deadline:
            time.sleep(0.01)

    def test_defaults(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        dispatcher = WebhookDispatcher("https://example.com/hook", bus=EventBus())

        assert dispatcher.event_types == ['*']
        assert dispatcher.headers == {}
        assert dispatcher.timeout == 10
        assert dispatcher.max_retries == 3
        assert not dispatcher.is_active()

    def test_bus_is_required(self):
        from conflux import event_bus
        from conflux.event_bus import WebhookDispatcher

        with pytest.raises(TypeError):
            WebhookDispatcher("https://example.com/hook")
        assert not hasattr(event_bus, "get_event_bus")

    def test_dispatchers_on_separate_buses_are_isolated(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        first_bus, second_bus = EventBus(), EventBus()
        WebhookDispatcher("https://example.com/a", first_bus).start()
        WebhookDispatcher("https://example.com/b", second_bus).start()

        with patch("conflux.event_bus.requests.post") as mock_post:
            mock_post.return_value = Mock(status_code=200)
            first_bus.publish(detected_event())
            self.wait_for(mock_post)
            time.sleep(0.05)

        assert mock_post.call_count == 1
        assert mock_post.call_args[0][0] == "https://example.com/a"

    def test_start_and_stop(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        bus = EventBus()
        dispatcher = WebhookDispatcher(
            "https://example.com/hook", event_types=['conflict.detected'], bus=bus
        )

        dispatcher.start()
        assert dispatcher.is_active()
        assert bus.subscriber_count('conflict.detected') == 1

        dispatcher.stop()
        assert not dispatcher.is_active()
        assert bus.subscriber_count() == 0

    def test_delivers_event_payload(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        bus = EventBus()
        dispatcher = WebhookDispatcher(
            "https://example.com/hook",
            headers={'Authorization': 'Bearer t0ken'},
            bus=bus,
        )

        with patch('conflux.event_bus.requests.post') as mock_post:
            mock_post.return_value = Mock(status_code=200)
            dispatcher.start()
            bus.publish(detected_event())
            self.wait_for(mock_post)
            dispatcher.stop()

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://example.com/hook"
        assert kwargs['json']['conflict_id'] == "c-1"
        assert kwargs['headers']['Authorization'] == 'Bearer t0ken'
        assert kwargs['headers']['Content-Type'] == 'application/json'

    def test_retries_then_gives_up(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        dispatcher = WebhookDispatcher(
            "https://example.com/hook", max_retries=2, retry_delay=0.0, bus=EventBus()
        )

        with patch('conflux.event_bus.requests.post') as mock_post:
            mock_post.side_effect = requests.ConnectionError("refused")
            dispatcher._send_webhook(detected_event())

        assert mock_post.call_count == 3

    def test_retry_succeeds(self):
        from conflux.event_bus import EventBus, WebhookDispatcher

        dispatcher = WebhookDispatcher(
            "https://example.com/hook", max_retries=3, retry_delay=0.0, bus=EventBus()
        )

        with patch('conflux.event_bus.requests.post') as mock_post:
            mock_post.side_effect = [requests.Timeout("slow"), Mock(status_code=204)]
            dispatcher._send_webhook(detected_event())

        assert mock_post.call_count == 2
