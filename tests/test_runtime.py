"""Tests for runtime wiring of the identity store and counters."""

from gatekeeper.service import runtime as runtime_module
from gatekeeper.service.runtime import _mask_url_password, reset_runtime_for_tests
from gatekeeper.storage.memory import MemoryCounterStore, MemoryStore


class RecordingPostgresStore:
    def __init__(self, dsn):
        self.dsn = dsn
        self.closed = False

    def close(self):
        self.closed = True


def test_memory_store_when_flag_set(runtime):
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.counters, MemoryCounterStore)
    # Test runs never load a previous snapshot
    assert runtime.store.fs_root is None


def test_test_mode_alone_still_uses_postgres(monkeypatch):
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.setenv("DATABASE_URL", "postgresql://gate:secret@db:5432/gatekeeper")
    monkeypatch.setattr(runtime_module, "PostgresStore", RecordingPostgresStore)

    runtime = reset_runtime_for_tests()

    assert isinstance(runtime.store, RecordingPostgresStore)
    assert runtime.store.dsn == "postgresql://gate:secret@db:5432/gatekeeper"


def test_database_url_password_masked():
    assert (
        _mask_url_password("postgresql://gate:secret@db:5432/gatekeeper")
        == "postgresql://gate:***@db:5432/gatekeeper"
    )
    assert _mask_url_password("postgresql://db/gatekeeper") == "postgresql://db/gatekeeper"
