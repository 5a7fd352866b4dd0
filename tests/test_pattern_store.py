import sqlite3
import sys
import threading
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from engines.errors import ConcurrentUpdateConflict, PatternNotFoundError, StoreUnavailableError
from models.extraction import Pattern, ValueType
from repositories.pattern_store import InMemoryPatternStore, SqlPatternStore
from services.db import sqlite_connection_factory


def _pattern(pattern_id="p1", supplier="TNB Berhad", field_name="account_number", **kwargs):
    return Pattern(
        pattern_id=pattern_id,
        supplier=supplier,
        field_name=field_name,
        regex=kwargs.pop("regex", r"Account No:\s*(\d+)"),
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryPatternStore()
    return SqlPatternStore(sqlite_connection_factory(tmp_path / "patterns.sqlite"))


def test_create_and_get_round_trip(store):
    created = _pattern(value_type=ValueType.TEXT, description="label", source="manual")
    assert store.create_pattern(created) == "p1"

    loaded = store.get_pattern("p1")
    assert loaded.supplier == "TNB Berhad"
    assert loaded.regex == created.regex
    assert loaded.value_type == ValueType.TEXT
    assert loaded.usage_count == 0
    assert loaded.is_active is True
    assert loaded.version == 1


def test_get_missing_pattern_raises(store):
    with pytest.raises(PatternNotFoundError):
        store.get_pattern("missing")
    with pytest.raises(LookupError):
        store.update_stats("missing", 1, 1)


def test_list_active_patterns_filters(store):
    store.create_pattern(_pattern("a", supplier="TNB Berhad"))
    store.create_pattern(_pattern("b", supplier="Maxis"))
    store.create_pattern(_pattern("c", supplier="Maxis", field_name="phone_number"))
    store.create_pattern(_pattern("d", supplier="Maxis", is_active=False))

    assert {p.pattern_id for p in store.list_active_patterns()} == {"a", "b", "c"}
    assert {p.pattern_id for p in store.list_active_patterns(supplier="Maxis")} == {"b", "c"}
    assert {
        p.pattern_id
        for p in store.list_active_patterns(supplier=["Maxis", "TNB Berhad"], field_name="account_number")
    } == {"a", "b"}
    assert {p.pattern_id for p in store.list_patterns(supplier="Maxis")} == {"b", "c", "d"}


def test_update_stats_increments_and_tracks_confidence(store):
    store.create_pattern(_pattern())

    first = store.update_stats("p1", 1, 1, confidence=0.8)
    assert (first.usage_count, first.success_count) == (1, 1)
    assert first.success_rate == 1.0
    assert first.last_used is not None

    second = store.update_stats("p1", 1, 0, confidence=0.6)
    assert (second.usage_count, second.success_count) == (2, 1)
    assert second.min_confidence == pytest.approx(0.6)
    assert second.max_confidence == pytest.approx(0.8)


def test_update_stats_rejects_invalid_deltas(store):
    store.create_pattern(_pattern())
    with pytest.raises(ValueError):
        store.update_stats("p1", 1, 2)
    with pytest.raises(ValueError):
        store.update_stats("p1", -1, 0)


def test_update_rule_bumps_version(store):
    store.create_pattern(_pattern())
    updated = store.update_rule("p1", r"Acc No:\s*(\d+)", ValueType.INTEGER)
    assert updated.version == 2
    assert updated.regex == r"Acc No:\s*(\d+)"
    assert updated.value_type == ValueType.INTEGER


def test_deactivate_activate_and_delete(store):
    store.create_pattern(_pattern())
    assert store.deactivate("p1").is_active is False
    assert store.list_active_patterns() == []
    assert store.activate("p1").is_active is True
    assert store.delete_pattern("p1") is True
    assert store.delete_pattern("p1") is False


def test_replace_pattern_overwrites_in_place(store):
    store.create_pattern(_pattern())
    replacement = _pattern(
        regex=r"Acc No:\s*(\d+)",
        usage_count=12,
        success_count=11,
        version=3,
        source="import",
    )

    replaced = store.replace_pattern(replacement)

    assert replaced.regex == r"Acc No:\s*(\d+)"
    assert (replaced.usage_count, replaced.success_count) == (12, 11)
    assert replaced.version == 3
    assert store.get_pattern("p1").source == "import"
    assert len(store.list_patterns()) == 1


def test_replace_missing_pattern_raises(store):
    with pytest.raises(PatternNotFoundError):
        store.replace_pattern(_pattern("missing"))
    assert store.list_patterns() == []


def test_concurrent_feedback_never_loses_updates(store):
    store.create_pattern(_pattern())
    workers = 8
    per_worker = 10
    barrier = threading.Barrier(workers)

    def worker():
        barrier.wait()
        for _ in range(per_worker):
            store.update_stats("p1", 1, 1)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = store.get_pattern("p1")
    assert final.usage_count == workers * per_worker
    assert final.success_count == workers * per_worker


def test_in_memory_store_returns_copies():
    store = InMemoryPatternStore([_pattern()])
    loaded = store.get_pattern("p1")
    loaded.usage_count = 99
    assert store.get_pattern("p1").usage_count == 0


class _LockedCursor:
    rowcount = 0

    def execute(self, sql, params=()):
        if sql.lstrip().upper().startswith("UPDATE"):
            raise sqlite3.OperationalError("database is locked")

    def fetchone(self):  # pragma: no cover - never reached
        return None


class _LockedConnection:
    def cursor(self):
        return _LockedCursor()

    def commit(self):
        return None

    def rollback(self):
        return None

    def close(self):
        return None


def test_sql_store_raises_conflict_after_bounded_retries():
    calls = {"count": 0}

    def factory():
        calls["count"] += 1
        return _LockedConnection()

    store = SqlPatternStore(factory, max_retries=3, retry_backoff=0.0)
    store._schema_ready = True

    with pytest.raises(ConcurrentUpdateConflict) as excinfo:
        store.update_stats("p1", 1, 1)
    assert excinfo.value.attempts == 3
    assert calls["count"] == 3


def test_sql_store_wraps_backend_failures():
    def factory():
        raise sqlite3.OperationalError("unable to open database file")

    store = SqlPatternStore(factory)
    with pytest.raises(StoreUnavailableError):
        store.list_active_patterns()
