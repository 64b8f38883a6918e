"""Local implementations of the durable store, volatile cache and scheduler.

The JSON-file variants keep one document per mailbox under
``data/<account>/`` so that a cron-driven ``inbox-sweep tick`` can pick up
where the previous process left off. The in-memory variants serve tests and
one-shot runs.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .interfaces import PropertyStore, SchedulingFacility, VolatileCache
from .utils import load_json, save_json

logger = logging.getLogger("inbox_sweep.stores")

Clock = Callable[[], float]

SCHEDULE_PREFIX = "SCHEDULE_"


class MemoryPropertyStore(PropertyStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def list_prefix(self, prefix: str) -> Dict[str, str]:
        return {k: v for k, v in self.data.items() if k.startswith(prefix)}


class JsonFilePropertyStore(PropertyStore):
    """All keys for one mailbox in a single JSON object on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            logger.warning("Property file %s is not an object; starting empty", self.path)
            return {}
        return data

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        save_json(self.path, data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            save_json(self.path, data)

    def list_prefix(self, prefix: str) -> Dict[str, str]:
        return {k: v for k, v in self._read().items() if k.startswith(prefix)}


class MemoryCache(VolatileCache):
    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock
        self.entries: Dict[str, tuple] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self.entries[key]
            return None
        return value

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self.entries[key] = (value, self.clock() + ttl_seconds)

    def remove(self, key: str) -> None:
        self.entries.pop(key, None)


class JsonFileCache(VolatileCache):
    def __init__(self, path: str | Path, clock: Clock = time.time) -> None:
        self.path = Path(path)
        self.clock = clock

    def _read(self) -> Dict[str, Dict[str, Any]]:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            return {}
        now = self.clock()
        return {
            k: v
            for k, v in data.items()
            if isinstance(v, dict) and float(v.get("expires_at", 0)) > now
        }

    def get(self, key: str) -> Optional[str]:
        entry = self._read().get(key)
        return None if entry is None else entry.get("value")

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        data = self._read()
        data[key] = {"value": value, "expires_at": self.clock() + ttl_seconds}
        save_json(self.path, data)

    def remove(self, key: str) -> None:
        data = self._read()
        data.pop(key, None)
        save_json(self.path, data)


class InMemoryScheduler(SchedulingFacility):
    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock
        self.schedules: Dict[str, Dict[str, Any]] = {}

    def arm(self, entry_point: str, delay_seconds: float) -> str:
        schedule_id = f"trigger_{uuid.uuid4().hex[:12]}"
        self.schedules[schedule_id] = {
            "id": schedule_id,
            "entry_point": entry_point,
            "due_at": self.clock() + delay_seconds,
        }
        return schedule_id

    def cancel_all(self, entry_point: str) -> int:
        doomed = [k for k, v in self.schedules.items() if v["entry_point"] == entry_point]
        for key in doomed:
            del self.schedules[key]
        return len(doomed)

    def pending(self, entry_point: str) -> List[Dict[str, Any]]:
        return [dict(v) for v in self.schedules.values() if v["entry_point"] == entry_point]


class PropertyStoreScheduler(SchedulingFacility):
    """Records armed resumptions in the durable store for a periodic tick to fire."""

    def __init__(self, store: PropertyStore, clock: Clock = time.time) -> None:
        self.store = store
        self.clock = clock

    @staticmethod
    def _prefix(entry_point: str) -> str:
        return f"{SCHEDULE_PREFIX}{entry_point}_"

    def arm(self, entry_point: str, delay_seconds: float) -> str:
        schedule_id = f"trigger_{int(self.clock() * 1000)}_{uuid.uuid4().hex[:6]}"
        record = {
            "id": schedule_id,
            "entry_point": entry_point,
            "due_at": self.clock() + delay_seconds,
            "created_at": self.clock(),
        }
        self.store.set(self._prefix(entry_point) + schedule_id, json.dumps(record))
        logger.debug("Armed %s for %s in %.1fs", schedule_id, entry_point, delay_seconds)
        return schedule_id

    def cancel_all(self, entry_point: str) -> int:
        keys = list(self.store.list_prefix(self._prefix(entry_point)))
        for key in keys:
            self.store.delete(key)
        return len(keys)

    def _records(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for key, raw in self.store.list_prefix(prefix).items():
            try:
                out[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Dropping unreadable schedule record %s", key)
                self.store.delete(key)
        return out

    def pending(self, entry_point: str) -> List[Dict[str, Any]]:
        return list(self._records(self._prefix(entry_point)).values())

    def pop_due(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Remove and return every schedule whose time has come."""
        current = self.clock() if now is None else now
        due = []
        for key, record in self._records(SCHEDULE_PREFIX).items():
            if float(record.get("due_at", 0)) <= current:
                self.store.delete(key)
                due.append(record)
        return sorted(due, key=lambda r: r.get("due_at", 0))
