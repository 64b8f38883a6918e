from __future__ import annotations

import json

import pytest

from inbox_sweep.checkpoint import (
    KEY_PREFIX,
    POINTER_KEY,
    CheckpointSettings,
    CheckpointState,
    CheckpointStore,
)
from inbox_sweep.stores import MemoryPropertyStore

from conftest import FakeClock

HOUR = 3600.0


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def store():
    return MemoryPropertyStore()


@pytest.fixture
def checkpoints(store, clock):
    return CheckpointStore(store, clock=clock)


def _state(**kwargs) -> CheckpointState:
    kwargs.setdefault("total_estimated", 250)
    kwargs.setdefault("start_time", 1_700_000_000.0)
    return CheckpointState(settings=CheckpointSettings(model="gemini-flash"), **kwargs)


def test_save_load_clear(checkpoints, store):
    key = checkpoints.save(_state(processed_count=100, last_processed_id="m-99"))

    assert key.startswith(KEY_PREFIX)
    assert store.get(POINTER_KEY) == key
    loaded = checkpoints.load()
    assert loaded.processed_count == 100
    assert loaded.total_estimated == 250
    assert loaded.last_processed_id == "m-99"
    assert loaded.settings.model == "gemini-flash"

    checkpoints.clear()
    assert checkpoints.load() is None
    assert store.data == {}


def test_save_reuses_the_active_record(checkpoints, store, clock):
    state = _state()
    first = checkpoints.save(state)
    clock.advance(5)
    state.processed_count = 20
    second = checkpoints.save(state)

    assert first == second
    assert len(store.list_prefix(KEY_PREFIX)) == 1


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2]",
        json.dumps({"version": 1, "is_active": True}),
        json.dumps(
            {
                "version": 1,
                "is_active": True,
                "processed_count": -4,
                "total_estimated": 10,
                "start_time": 0,
                "settings": {"model": "m", "processing_mode": "label"},
            }
        ),
    ],
)
def test_invalid_records_are_discarded(checkpoints, store, raw):
    store.set(KEY_PREFIX + "1", raw)
    store.set(POINTER_KEY, KEY_PREFIX + "1")

    assert checkpoints.load() is None
    assert store.data == {}


def test_dangling_pointer(checkpoints, store):
    store.set(POINTER_KEY, KEY_PREFIX + "42")
    assert checkpoints.load() is None
    assert POINTER_KEY not in store.data


def test_legacy_record_is_migrated(checkpoints, store):
    legacy = {
        "isActive": True,
        "processedCount": 40,
        "totalEstimated": 90,
        "startTime": 1_700_000_000_000,
        "lastProcessedId": "thread-7",
        "continuationCount": 2,
        "settings": {"classifierKey": "gemini-flash", "mode": "draft", "prompt1": "p1", "prompt2": "p2"},
    }
    store.set(KEY_PREFIX + "1", json.dumps(legacy))
    store.set(POINTER_KEY, KEY_PREFIX + "1")

    state = checkpoints.load()
    assert state.processed_count == 40
    assert state.start_time == pytest.approx(1_700_000_000.0)
    assert state.settings.processing_mode == "draft"
    assert state.settings.classification_prompt == "p1"
    assert state.continuation_count == 2


def test_sweep_expired_ignores_active_flag(checkpoints, store, clock):
    now_ms = int(clock() * 1000)
    old_active = f"{KEY_PREFIX}{now_ms - int(30 * HOUR * 1000)}"
    recent = f"{KEY_PREFIX}{now_ms - int(1 * HOUR * 1000)}"
    store.set(old_active, json.dumps(_state().to_dict()))
    store.set(recent, json.dumps(_state(is_active=False).to_dict()))
    store.set(POINTER_KEY, old_active)

    removed = checkpoints.sweep_expired(24)

    assert removed == 1
    assert old_active not in store.data
    assert recent in store.data
    assert POINTER_KEY not in store.data


def test_status(checkpoints, clock):
    assert checkpoints.status() == {"active": False}
    checkpoints.save(_state(processed_count=100, start_time=clock() - 90))

    status = checkpoints.status()
    assert status["active"] is True
    assert status["percent"] == 40.0
    assert status["elapsed_seconds"] == pytest.approx(90)
