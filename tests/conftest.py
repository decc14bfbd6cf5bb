"""Pytest fixtures for conflux tests"""
import pytest
from datetime import datetime


@pytest.fixture
def acme_local():
    """Local snapshot from the product rename scenario."""
    from conflux.models import VersionedSnapshot
    return VersionedSnapshot("products", 42, {"name": "Acme", "price": 10}, version=3)


@pytest.fixture
def acme_server():
    """Server snapshot from the product rename scenario."""
    from conflux.models import VersionedSnapshot
    return VersionedSnapshot("products", 42, {"name": "Acme Corp", "price": 10}, version=4)


@pytest.fixture
def make_conflict():
    """Factory for standalone conflicts with ids assigned."""
    from conflux.models import ConflictRecord, VersionedSnapshot

    counter = {"n": 0}

    def _make(local_fields, server_fields, table="products", record_id=1,
              local_version=1, server_version=2, detected_at=None):
        counter["n"] += 1
        return ConflictRecord(
            id=f"c-{counter['n']}",
            local=VersionedSnapshot(table, record_id, dict(local_fields), local_version),
            server=VersionedSnapshot(table, record_id, dict(server_fields), server_version),
            detected_at=detected_at or datetime(2024, 1, 1, 12, 0, 0),
        )

    return _make


@pytest.fixture
def store():
    """In-memory conflict store."""
    from conflux.store import ConflictStore
    return ConflictStore()


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite conflict store in a temp directory."""
    from conflux.sqlite_store import SQLiteConflictStore
    store = SQLiteConflictStore(tmp_path / "conflicts.sqlite")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    """Each store implementation in turn."""
    from conflux.store import ConflictStore
    from conflux.sqlite_store import SQLiteConflictStore

    if request.param == "memory":
        yield ConflictStore()
    else:
        store = SQLiteConflictStore(tmp_path / "conflicts.sqlite")
        yield store
        store.close()


@pytest.fixture
def audit_log():
    """In-memory resolution audit log."""
    from conflux.audit_log import ResolutionAuditLog
    log = ResolutionAuditLog()
    yield log
    log.close()


@pytest.fixture
def service(audit_log):
    """ConflictService over an in-memory store with an audit trail."""
    from conflux.service import ConflictService
    return ConflictService(audit_log=audit_log)
