from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Iterator, Optional

from .errors import ErrorKind, TriageError
from .interfaces import PropertyStore
from .utils import new_execution_id

logger = logging.getLogger("inbox_sweep.lock")

LOCK_INFO_KEY = "CURRENT_LOCK_INFO"
STALE_LOCK_SECONDS = 300


@dataclass
class LockInfo:
    execution_id: str
    start_time: float
    mode: str


class RunLock:
    """Advisory per-mailbox lock kept in the durable store.

    The store offers no compare-and-set, so this narrows the race between a
    scheduled resumption and a manual run rather than closing it. Locks older
    than ``stale_seconds`` are treated as abandoned.
    """

    def __init__(
        self,
        store: PropertyStore,
        *,
        stale_seconds: float = STALE_LOCK_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.stale_seconds = stale_seconds
        self.clock = clock
        self.held: Optional[LockInfo] = None

    def info(self) -> Optional[LockInfo]:
        raw = self.store.get(LOCK_INFO_KEY)
        if not raw:
            return None
        try:
            info = LockInfo(**json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            logger.warning("Clearing unreadable lock record")
            self.store.delete(LOCK_INFO_KEY)
            return None
        if self.clock() - info.start_time > self.stale_seconds:
            logger.warning(
                "Clearing stale lock held by %s since %.0fs", info.execution_id, info.start_time
            )
            self.store.delete(LOCK_INFO_KEY)
            return None
        return info

    def is_locked(self) -> bool:
        return self.info() is not None

    def acquire(self, mode: str, execution_id: Optional[str] = None) -> LockInfo:
        current = self.info()
        if current is not None:
            raise TriageError(
                ErrorKind.ALREADY_RUNNING,
                f"Sweep already running ({current.mode}, {current.execution_id})",
                {"execution_id": current.execution_id},
            )
        info = LockInfo(
            execution_id=execution_id or new_execution_id(),
            start_time=self.clock(),
            mode=mode,
        )
        self.store.set(LOCK_INFO_KEY, json.dumps(asdict(info)))
        self.held = info
        logger.debug("Lock acquired by %s (%s)", info.execution_id, mode)
        return info

    def release(self) -> None:
        if self.held is None:
            return
        raw = self.store.get(LOCK_INFO_KEY)
        if raw:
            try:
                owner = json.loads(raw).get("execution_id")
            except json.JSONDecodeError:
                owner = None
            if owner in (None, self.held.execution_id):
                self.store.delete(LOCK_INFO_KEY)
        logger.debug("Lock released by %s", self.held.execution_id)
        self.held = None


@contextmanager
def run_lock(lock: RunLock, mode: str, execution_id: Optional[str] = None) -> Iterator[LockInfo]:
    info = lock.acquire(mode, execution_id)
    try:
        yield info
    finally:
        lock.release()
