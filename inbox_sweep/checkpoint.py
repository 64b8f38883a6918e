from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from .interfaces import PropertyStore
from .schema_validator import load_schema, validate

logger = logging.getLogger("inbox_sweep.checkpoint")

CHECKPOINT_VERSION = 1
KEY_PREFIX = "CONTINUATION_STATE_"
POINTER_KEY = "ACTIVE_CONTINUATION_KEY"
STATE_RETENTION_HOURS = 24


@dataclass
class CheckpointSettings:
    model: str
    processing_mode: str = "label"
    classification_prompt: str = ""
    response_prompt: str = ""


@dataclass
class CheckpointState:
    settings: CheckpointSettings
    is_active: bool = True
    processed_count: int = 0
    total_estimated: int = 0
    start_time: float = 0.0
    last_processed_id: Optional[str] = None
    trigger_id: Optional[str] = None
    continuation_count: int = 0
    updated_at: float = 0.0
    version: int = CHECKPOINT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointState":
        settings = CheckpointSettings(**data["settings"])
        fields = {k: v for k, v in data.items() if k != "settings"}
        return cls(settings=settings, **fields)


def _migrate(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Bring older record layouts up to the current version."""
    if "version" in raw:
        return raw
    # Unversioned records used camelCase keys and millisecond timestamps.
    settings = raw.get("settings") or {}
    migrated = {
        "version": CHECKPOINT_VERSION,
        "is_active": bool(raw.get("isActive", False)),
        "processed_count": int(raw.get("processedCount", 0)),
        "total_estimated": int(raw.get("totalEstimated", 0)),
        "start_time": float(raw.get("startTime", 0)) / 1000.0,
        "last_processed_id": raw.get("lastProcessedId"),
        "trigger_id": raw.get("triggerId"),
        "continuation_count": int(raw.get("continuationCount", 0)),
        "updated_at": float(raw.get("startTime", 0)) / 1000.0,
        "settings": {
            "model": str(settings.get("model") or settings.get("classifierKey") or "unknown"),
            "processing_mode": str(settings.get("mode") or settings.get("processingMode") or "label"),
            "classification_prompt": str(settings.get("prompt1") or ""),
            "response_prompt": str(settings.get("prompt2") or ""),
        },
    }
    logger.info("Migrated unversioned checkpoint record to version %d", CHECKPOINT_VERSION)
    return migrated


class CheckpointStore:
    """Single active continuation record per mailbox, plus a pointer key."""

    def __init__(self, store: PropertyStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock
        self.schema = load_schema("checkpoint")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _discard(self, key: str, reason: str) -> None:
        logger.warning("Discarding checkpoint %s: %s", key, reason)
        self.store.delete(key)
        self.store.delete(POINTER_KEY)

    def save(self, state: CheckpointState) -> str:
        key = self.store.get(POINTER_KEY)
        if not key or self.store.get(key) is None:
            key = f"{KEY_PREFIX}{self._now_ms()}"
        state.updated_at = self.clock()
        self.store.set(key, json.dumps(state.to_dict()))
        self.store.set(POINTER_KEY, key)
        logger.debug(
            "Checkpoint saved (%s): %d/%d last=%s",
            key,
            state.processed_count,
            state.total_estimated,
            state.last_processed_id,
        )
        return key

    def load(self) -> Optional[CheckpointState]:
        key = self.store.get(POINTER_KEY)
        if not key:
            return None
        raw = self.store.get(key)
        if raw is None:
            logger.info("Checkpoint pointer %s names a missing record", key)
            self.store.delete(POINTER_KEY)
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._discard(key, f"unparseable JSON ({exc.msg})")
            return None
        if not isinstance(data, dict):
            self._discard(key, "record is not an object")
            return None
        data = _migrate(data)
        check = validate(data, self.schema)
        if not check.valid:
            self._discard(key, "; ".join(check.errors[:3]))
            return None
        return CheckpointState.from_dict(data)

    def clear(self) -> None:
        key = self.store.get(POINTER_KEY)
        if key:
            self.store.delete(key)
        self.store.delete(POINTER_KEY)

    def sweep_expired(self, max_age_hours: float = STATE_RETENTION_HOURS) -> int:
        """Delete every checkpoint record older than the window, active or not."""
        cutoff = self._now_ms() - int(max_age_hours * 3600 * 1000)
        removed = 0
        for key in list(self.store.list_prefix(KEY_PREFIX)):
            try:
                created = int(key[len(KEY_PREFIX) :])
            except ValueError:
                created = 0
            if created < cutoff:
                self.store.delete(key)
                removed += 1

        pointer = self.store.get(POINTER_KEY)
        if pointer and self.store.get(pointer) is None:
            self.store.delete(POINTER_KEY)
        if removed:
            logger.info("Swept %d expired checkpoint record(s)", removed)
        return removed

    def status(self) -> Dict[str, Any]:
        state = self.load()
        if state is None:
            return {"active": False}
        total = state.total_estimated or 0
        return {
            "active": state.is_active,
            "processed": state.processed_count,
            "estimated_total": total,
            "percent": round(100.0 * state.processed_count / total, 1) if total else 0.0,
            "elapsed_seconds": max(0.0, self.clock() - state.start_time),
            "continuations": state.continuation_count,
            "last_processed_id": state.last_processed_id,
            "trigger_id": state.trigger_id,
        }
