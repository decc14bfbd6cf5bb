"""Unit Tests for ResolutionAuditLog"""
from datetime import datetime, timedelta

from conflux.audit_log import ResolutionAuditLog
from conflux.models import ResolutionStrategy


BASE = datetime(2024, 1, 1, 12, 0)


class TestResolutionAuditLog:

    def test_record_returns_entry(self, audit_log):
        entry = audit_log.record(
            conflict_id="c-1",
            entity_table="products",
            record_id=42,
            strategy=ResolutionStrategy.MERGE,
            changed_fields=["price", "name"],
            resolved_at=BASE,
            actor="operator-7",
        )

        assert entry.id
        assert entry.changed_fields == ["name", "price"]
        assert entry.actor == "operator-7"

    def test_get_by_conflict(self, audit_log):
        audit_log.record("c-1", "products", 42, ResolutionStrategy.LOCAL_WINS, ["name"], BASE)
        audit_log.record("c-2", "products", 43, ResolutionStrategy.SERVER_WINS, [], BASE)

        entries = audit_log.get_by_conflict("c-1")

        assert len(entries) == 1
        assert entries[0].record_id == 42
        assert entries[0].strategy == ResolutionStrategy.LOCAL_WINS
        assert entries[0].resolved_at == BASE
        assert audit_log.get_by_conflict("missing") == []

    def test_get_by_table(self, audit_log):
        audit_log.record("c-1", "products", 1, ResolutionStrategy.SERVER_WINS, [], BASE)
        audit_log.record("c-2", "orders", "A-1", ResolutionStrategy.SERVER_WINS, [], BASE)

        orders = audit_log.get_by_table("orders")

        assert [e.conflict_id for e in orders] == ["c-2"]
        assert orders[0].record_id == "A-1"

    def test_get_recent_newest_first(self, audit_log):
        for i in range(5):
            audit_log.record(f"c-{i}", "products", i, ResolutionStrategy.SERVER_WINS, [],
                             BASE + timedelta(minutes=i))

        recent = audit_log.get_recent(limit=3)

        assert [e.conflict_id for e in recent] == ["c-4", "c-3", "c-2"]

    def test_persists_to_file(self, tmp_path):
        db_path = tmp_path / "audit" / "audit.sqlite"
        with ResolutionAuditLog(db_path) as log:
            log.record("c-1", "products", 42, ResolutionStrategy.MERGE, ["name"], BASE, actor="ops")

        with ResolutionAuditLog(db_path) as reopened:
            entries = reopened.get_recent()

        assert len(entries) == 1
        assert entries[0].actor == "ops"
        assert entries[0].changed_fields == ["name"]
