from __future__ import annotations

import json

from inbox_sweep.stores import (
    InMemoryScheduler,
    JsonFileCache,
    JsonFilePropertyStore,
    MemoryCache,
    PropertyStoreScheduler,
)

from conftest import FakeClock


def test_json_property_store_persists_across_instances(tmp_path):
    path = tmp_path / "acct" / "properties.json"
    JsonFilePropertyStore(path).set("CONTINUATION_STATE_1", "{}")
    JsonFilePropertyStore(path).set("OTHER", "x")

    reopened = JsonFilePropertyStore(path)
    assert reopened.get("CONTINUATION_STATE_1") == "{}"
    assert reopened.list_prefix("CONTINUATION_STATE_") == {"CONTINUATION_STATE_1": "{}"}
    reopened.delete("OTHER")
    assert json.loads(path.read_text(encoding="utf-8")) == {"CONTINUATION_STATE_1": "{}"}


def test_memory_cache_expiry():
    clock = FakeClock(0.0)
    cache = MemoryCache(clock=clock)
    cache.put("k", "v", 10)
    assert cache.get("k") == "v"
    clock.advance(10)
    assert cache.get("k") is None


def test_json_file_cache_expiry(tmp_path):
    clock = FakeClock(0.0)
    cache = JsonFileCache(tmp_path / "cache.json", clock=clock)
    cache.put("a", "1", 5)
    cache.put("b", "2", 50)
    clock.advance(6)

    assert cache.get("a") is None
    assert JsonFileCache(tmp_path / "cache.json", clock=clock).get("b") == "2"
    cache.remove("b")
    assert cache.get("b") is None


def test_in_memory_scheduler_cancel_by_entry_point():
    facility = InMemoryScheduler(clock=FakeClock(0.0))
    facility.arm("continue_processing", 2)
    facility.arm("continue_processing", 2)
    facility.arm("other", 2)

    assert facility.cancel_all("continue_processing") == 2
    assert facility.pending("continue_processing") == []
    assert len(facility.pending("other")) == 1


def test_property_store_scheduler_pops_only_due(tmp_path):
    clock = FakeClock(100.0)
    facility = PropertyStoreScheduler(JsonFilePropertyStore(tmp_path / "p.json"), clock=clock)
    soon = facility.arm("continue_processing", 2)
    facility.arm("other", 600)

    assert facility.pop_due() == []
    clock.advance(5)
    due = facility.pop_due()

    assert [r["id"] for r in due] == [soon]
    assert facility.pending("continue_processing") == []
    assert len(facility.pending("other")) == 1


def test_property_store_scheduler_drops_unreadable_records(tmp_path):
    store = JsonFilePropertyStore(tmp_path / "p.json")
    store.set("SCHEDULE_continue_processing_bad", "{oops")
    facility = PropertyStoreScheduler(store, clock=FakeClock(0.0))

    assert facility.pending("continue_processing") == []
    assert store.get("SCHEDULE_continue_processing_bad") is None
