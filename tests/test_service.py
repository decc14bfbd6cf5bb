"""Tests for ConflictService: detection, queries, resolution, expiry, stats"""
import time
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from conflux.config import ConfluxConfig
from conflux.errors import (
    AlreadyResolvedError,
    ConflictNotFoundError,
    IncompleteMergeError,
    MismatchedEntityError,
    NoDivergenceError,
)
from conflux.event_bus import EventBus
from conflux.models import ConflictRecord, ConflictStatus, ResolutionStrategy, VersionedSnapshot
from conflux.notifications import NotificationBridge
from conflux.policies import ConflictPolicy, PolicyRegistry
from conflux.service import ConflictService
from conflux.sqlite_store import SQLiteConflictStore
from conflux.store import ConflictStore


def snapshots(record_id=1, local=None, server=None, table="products"):
    return (
        VersionedSnapshot(table, record_id, local or {"name": "a", "price": 1}, 1),
        VersionedSnapshot(table, record_id, server or {"name": "b", "price": 1}, 2),
    )


class RecordingBridge(NotificationBridge):
    def __init__(self):
        self.events = []

    def on_conflict_detected(self, conflict):
        self.events.append(("detected", conflict.id, conflict.status))

    def on_conflict_resolved(self, conflict):
        self.events.append(("resolved", conflict.id, conflict.status))


class TestReportConflict:

    def test_report_stores_open_conflict(self, service, acme_local, acme_server):
        conflict = service.report_conflict(acme_local, acme_server)

        assert conflict.id
        assert conflict.field_diffs == frozenset({"name"})
        assert service.get(conflict.id).status == ConflictStatus.UNRESOLVED
        assert [c.id for c in service.list_by_status("unresolved")] == [conflict.id]

    def test_no_divergence_rejected(self, service):
        local, _ = snapshots()
        same = VersionedSnapshot("products", 1, dict(local.fields), 2)

        with pytest.raises(NoDivergenceError):
            service.report_conflict(local, same)
        assert service.list_by_status() == []

    def test_mismatched_records_rejected(self, service):
        with pytest.raises(MismatchedEntityError):
            service.report_conflict(snapshots(record_id=1)[0], snapshots(record_id=2)[1])

    def test_second_report_folds_into_open_conflict(self, service):
        bridge = service.subscribe(RecordingBridge())
        first = service.report_conflict(*snapshots(server={"name": "b", "price": 1}))
        local, _ = snapshots()
        newer = VersionedSnapshot("products", 1, {"name": "c", "price": 2}, 3)

        second = service.report_conflict(local, newer)

        assert second.id == first.id
        assert second.server.version == 3
        assert second.field_diffs == frozenset({"name", "price"})
        assert len(service.list_by_status()) == 1
        assert [e[0] for e in bridge.events] == ["detected"]

    def test_detected_notification(self, service, acme_local, acme_server):
        bridge = service.subscribe(RecordingBridge())
        conflict = service.report_conflict(acme_local, acme_server)
        assert bridge.events == [("detected", conflict.id, ConflictStatus.UNRESOLVED)]

    def test_unsubscribe(self, service, acme_local, acme_server):
        bridge = service.subscribe(RecordingBridge())
        assert service.unsubscribe(bridge)
        service.report_conflict(acme_local, acme_server)
        assert bridge.events == []


class TestDetect:

    def test_matching_versions_are_not_conflicts(self, service):
        local = VersionedSnapshot("products", 1, {"name": "a"}, 5)
        server = VersionedSnapshot("products", 1, {"name": "b"}, 5)
        assert service.detect(local, server) is None

    def test_version_bump_without_changes(self, service):
        local = VersionedSnapshot("products", 1, {"name": "a"}, 5)
        server = VersionedSnapshot("products", 1, {"name": "a"}, 6)
        assert service.detect(local, server) is None

    def test_stale_write_reported(self, service, acme_local, acme_server):
        conflict = service.detect(acme_local, acme_server)
        assert conflict is not None
        assert conflict.id in service.store


class TestPolicies:

    def test_server_policy_resolves_immediately(self, audit_log):
        policies = PolicyRegistry(tables={"orders": ConflictPolicy.SERVER})
        service = ConflictService(audit_log=audit_log, policies=policies)
        bridge = service.subscribe(RecordingBridge())

        conflict = service.report_conflict(*snapshots(table="orders"))

        assert conflict.status == ConflictStatus.RESOLVED
        assert conflict.resolution.strategy == ResolutionStrategy.SERVER_WINS
        assert conflict.resolution.actor == "policy:server"
        assert service.get(conflict.id).status == ConflictStatus.RESOLVED
        assert [e[0] for e in bridge.events] == ["detected", "resolved"]
        assert service.history(conflict.id)[0].actor == "policy:server"

    def test_client_policy_keeps_local_values(self):
        service = ConflictService(policies=PolicyRegistry(default=ConflictPolicy.CLIENT))
        conflict = service.report_conflict(*snapshots())
        assert conflict.resolution.merged_fields == {"name": "a", "price": 1}

    def test_prompt_policy_leaves_open(self, service):
        conflict = service.report_conflict(*snapshots())
        assert conflict.is_open


class TestResolve:

    def test_resolve_by_id(self, service, acme_local, acme_server):
        conflict = service.report_conflict(acme_local, acme_server)

        entity = service.resolve(conflict.id, "merge", {"name": "Acme Corp"}, actor="ops")

        assert entity.fields == {"name": "Acme Corp", "price": 10}
        assert entity.base_version == 4
        assert service.get(conflict.id).status == ConflictStatus.RESOLVED
        assert service.history(conflict.id)[0].changed_fields == []

    def test_resolve_unknown_id(self, service):
        with pytest.raises(ConflictNotFoundError):
            service.resolve("missing", ResolutionStrategy.SERVER_WINS)

    def test_incomplete_merge_leaves_conflict_open(self, service, acme_local, acme_server):
        conflict = service.report_conflict(acme_local, acme_server)

        with pytest.raises(IncompleteMergeError):
            service.resolve(conflict.id, ResolutionStrategy.MERGE, {})

        assert service.get(conflict.id).is_open

    def test_two_copies_resolve_once(self, service, acme_local, acme_server):
        conflict = service.report_conflict(acme_local, acme_server)
        first = service.get(conflict.id)
        second = service.get(conflict.id)

        service.resolve(first, ResolutionStrategy.LOCAL_WINS)
        with pytest.raises(AlreadyResolvedError):
            service.resolve(second, ResolutionStrategy.SERVER_WINS)

    def test_copy_fetched_before_fold_resolves_against_stored_snapshot(self, service):
        local = VersionedSnapshot("products", 1, {"a": 1, "b": 1}, 3)
        conflict = service.report_conflict(local, VersionedSnapshot("products", 1, {"a": 2, "b": 1}, 4))
        before_fold = service.get(conflict.id)
        service.report_conflict(local, VersionedSnapshot("products", 1, {"a": 2, "b": 3}, 5))

        with pytest.raises(IncompleteMergeError) as excinfo:
            service.resolve(before_fold, ResolutionStrategy.MERGE, {"a": 1})
        assert excinfo.value.missing == ["b"]
        assert service.get(conflict.id).is_open

        entity = service.resolve(before_fold, ResolutionStrategy.MERGE, {"a": 1, "b": 3})

        assert entity.fields == {"a": 1, "b": 3}
        assert entity.base_version == 5
        assert service.get(conflict.id).resolution.merged_fields == {"a": 1, "b": 3}

    def test_late_older_report_does_not_roll_back(self, service):
        local = VersionedSnapshot("products", 1, {"a": 1}, 3)
        conflict = service.report_conflict(local, VersionedSnapshot("products", 1, {"a": 3}, 5))

        service.report_conflict(local, VersionedSnapshot("products", 1, {"a": 2}, 4))

        assert service.get(conflict.id).server.version == 5
        assert service.resolve(conflict.id, "server").fields == {"a": 3}

    def test_resolved_notification_after_store_update(self, service, acme_local, acme_server):
        bridge = service.subscribe(RecordingBridge())
        conflict = service.report_conflict(acme_local, acme_server)

        service.resolve(conflict.id, ResolutionStrategy.SERVER_WINS)

        assert bridge.events[-1] == ("resolved", conflict.id, ConflictStatus.RESOLVED)


class TestResolveAll:

    def test_mixed_batch_by_id(self, service):
        a = service.report_conflict(*snapshots(record_id=1))
        b = service.report_conflict(*snapshots(record_id=2))
        service.resolve(a.id, ResolutionStrategy.LOCAL_WINS)

        outcomes = service.resolve_all([a.id, "missing", b.id], ResolutionStrategy.SERVER_WINS)

        assert [o.conflict_id for o in outcomes] == [a.id, "missing", b.id]
        assert isinstance(outcomes[0].error, AlreadyResolvedError)
        assert isinstance(outcomes[1].error, ConflictNotFoundError)
        assert outcomes[2].succeeded
        assert service.get(a.id).resolution.strategy == ResolutionStrategy.LOCAL_WINS

    def test_none_means_every_open_conflict(self, service):
        for record_id in range(3):
            service.report_conflict(*snapshots(record_id=record_id))

        outcomes = service.resolve_all(None, "server")

        assert len(outcomes) == 3
        assert all(o.succeeded for o in outcomes)
        assert service.list_by_status(ConflictStatus.UNRESOLVED) == []


class TestExpireStale:

    def test_expires_old_open_conflicts(self, service):
        now = datetime(2024, 1, 1, 12, 5, 0)
        local, server = snapshots(record_id=1)
        old = service.store.add(ConflictRecord(local, server, detected_at=now - timedelta(seconds=60)))
        local, server = snapshots(record_id=2)
        fresh = service.store.add(ConflictRecord(local, server, detected_at=now - timedelta(seconds=10)))

        outcomes = service.expire_stale(now=now)

        assert [o.conflict_id for o in outcomes] == [old.id]
        expired = service.get(old.id)
        assert expired.resolution.strategy == ResolutionStrategy.SERVER_WINS
        assert expired.resolution.actor == "expiry"
        assert expired.resolution.resolved_at == now
        assert service.get(fresh.id).is_open

    def test_nothing_to_expire(self, service):
        service.report_conflict(*snapshots())
        assert service.expire_stale(max_age_seconds=3600) == []

    def test_override_max_age(self, service):
        conflict = service.report_conflict(*snapshots())
        later = service.get(conflict.id).detected_at + timedelta(seconds=2)
        assert len(service.expire_stale(max_age_seconds=1, now=later)) == 1


class TestStats:

    def test_counts(self, service):
        a = service.report_conflict(*snapshots(record_id=1))
        b = service.report_conflict(*snapshots(record_id=2))
        service.report_conflict(*snapshots(record_id=3))
        service.resolve(a.id, ResolutionStrategy.LOCAL_WINS)
        service.resolve(b.id, ResolutionStrategy.SERVER_WINS)

        stats = service.stats()

        assert stats.total == 3
        assert stats.unresolved == 1
        assert stats.resolved == 2
        assert stats.resolved_today == 2
        assert stats.by_strategy == {"local": 1, "server": 1}
        assert stats.average_resolution_seconds >= 0

    def test_empty(self, service):
        data = service.stats().to_dict()
        assert data["total"] == 0
        assert data["average_resolution_seconds"] is None


class TestFromConfig:

    def test_sqlite_backend(self, tmp_path):
        config = ConfluxConfig.load(tmp_path)
        with ConflictService.from_config(config) as service:
            assert isinstance(service.store, SQLiteConflictStore)
            assert service.audit_log is not None
            conflict = service.report_conflict(*snapshots())

        with ConflictService.from_config(config) as reopened:
            assert reopened.get(conflict.id).is_open

    def test_memory_backend_without_audit(self, tmp_path):
        config = ConfluxConfig.load(tmp_path)
        config.set("store.backend", "memory")
        config.set("audit.enabled", False)

        service = ConflictService.from_config(config)

        assert isinstance(service.store, ConflictStore)
        assert service.audit_log is None
        assert service.history() == []

    def test_malformed_config_rejected(self, tmp_path):
        config = ConfluxConfig.load(tmp_path)
        config.set("notifications", "https://example.com/hook")

        with pytest.raises(ValueError):
            ConflictService.from_config(config)
        assert not config.store_path.exists()

    def test_webhook_dispatch(self, tmp_path):
        config = ConfluxConfig.load(tmp_path)
        config.set("store.backend", "memory")
        config.set("notifications.webhook_url", "https://example.com/hook")

        service = ConflictService.from_config(config)
        assert service._dispatcher.is_active()

        with patch("conflux.event_bus.requests.post") as mock_post:
            mock_post.return_value = Mock(status_code=200)
            service.report_conflict(*snapshots())

            deadline = time.time() + 2.0
            while mock_post.call_count < 1 and time.time() < deadline:
                time.sleep(0.01)

        mock_post.assert_called_once()
        payload = mock_post.call_args[1]["json"]
        assert payload["event_type"] == "conflict.detected"
        assert payload["field_diffs"] == ["name"]

        service.close()
        assert not service._dispatcher.is_active()


class TestEventBusWiring:

    def test_bus_receives_events(self):
        bus = EventBus()
        received = []
        bus.subscribe("*", lambda event: received.append(event.event_type))
        service = ConflictService(bus=bus)

        conflict = service.report_conflict(*snapshots())
        service.resolve(conflict.id, ResolutionStrategy.SERVER_WINS)

        assert received == ["conflict.detected", "conflict.resolved"]
