"""Time budget tracking and the suspend/resume state machine.

A sweep runs Idle -> Running -> Suspended -> Running ... -> Idle. While
Running it checks the quantum between batches; when the safe threshold is
reached with work left, it persists a checkpoint and arms exactly one
resumption of ``continue_processing``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from .checkpoint import CheckpointState, CheckpointStore
from .interfaces import PropertyStore, SchedulingFacility
from .models import WorkItem

logger = logging.getLogger("inbox_sweep.scheduler")

CONTINUATION_ENTRY_POINT = "continue_processing"
CANCEL_FLAG_KEY = "ANALYSIS_CANCELLED"

HOST_LIMIT_SECONDS = 360
SAFE_EXECUTION_SECONDS = 300
WARNING_SECONDS = 240
CONTINUATION_DELAY_SECONDS = 2
MAX_CONTINUATIONS = 20


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class QuantumTimer:
    def __init__(
        self,
        safe_execution_seconds: float = SAFE_EXECUTION_SECONDS,
        *,
        warning_seconds: float = WARNING_SECONDS,
        host_limit_seconds: float = HOST_LIMIT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.safe_execution_seconds = safe_execution_seconds
        self.warning_seconds = warning_seconds
        self.host_limit_seconds = host_limit_seconds
        self.clock = clock
        self.started = clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.safe_execution_seconds - self.elapsed())

    def is_approaching_limit(self) -> bool:
        return self.elapsed() >= self.safe_execution_seconds

    def is_in_warning_zone(self) -> bool:
        return self.elapsed() >= self.warning_seconds

    def log_status(self, operation: str) -> None:
        level = logging.WARNING if self.is_in_warning_zone() else logging.DEBUG
        logger.log(
            level,
            "%s: %s elapsed, %s left before suspend (host limit %s)",
            operation,
            format_duration(self.elapsed()),
            format_duration(self.remaining()),
            format_duration(self.host_limit_seconds),
        )


def remaining_after(items: Sequence[WorkItem], last_processed_id: Optional[str]) -> List[WorkItem]:
    """Suffix of ``items`` strictly after ``last_processed_id``.

    The whole list when the id is unset or no longer present.
    """
    if not last_processed_id:
        return list(items)
    for index, item in enumerate(items):
        if item.id == last_processed_id:
            return list(items[index + 1 :])
    logger.info("Last processed id %s not in work source; starting from the top", last_processed_id)
    return list(items)


class ContinuationScheduler:
    def __init__(
        self,
        checkpoints: CheckpointStore,
        facility: SchedulingFacility,
        store: PropertyStore,
        *,
        entry_point: str = CONTINUATION_ENTRY_POINT,
        continuation_delay_seconds: float = CONTINUATION_DELAY_SECONDS,
        max_continuations: int = MAX_CONTINUATIONS,
    ) -> None:
        self.checkpoints = checkpoints
        self.facility = facility
        self.store = store
        self.entry_point = entry_point
        self.continuation_delay_seconds = continuation_delay_seconds
        self.max_continuations = max_continuations

    def should_suspend(self, timer: QuantumTimer, has_remaining: bool) -> bool:
        return has_remaining and timer.is_approaching_limit()

    def arm_continuation(self, delay_seconds: Optional[float] = None) -> str:
        """Replace any pending resumption with a single new one."""
        delay = self.continuation_delay_seconds if delay_seconds is None else delay_seconds
        cancelled = self.facility.cancel_all(self.entry_point)
        if cancelled:
            logger.debug("Cancelled %d earlier resumption(s)", cancelled)
        schedule_id = self.facility.arm(self.entry_point, delay)
        logger.info("Resumption %s armed in %ss", schedule_id, delay)
        return schedule_id

    def suspend(self, state: CheckpointState) -> Optional[CheckpointState]:
        """Running -> Suspended. Returns None when the continuation cap is hit."""
        if state.continuation_count >= self.max_continuations:
            logger.warning(
                "Reached %d continuations with %d/%d processed; stopping",
                self.max_continuations,
                state.processed_count,
                state.total_estimated,
            )
            self.finish("continuation limit reached")
            return None

        state.is_active = True
        self.checkpoints.save(state)
        state.trigger_id = self.arm_continuation()
        state.continuation_count += 1
        self.checkpoints.save(state)
        logger.info(
            "Suspended at %d/%d (continuation %d)",
            state.processed_count,
            state.total_estimated,
            state.continuation_count,
        )
        return state

    def finish(self, reason: str) -> None:
        """Running -> Idle: drop the checkpoint and any pending resumption."""
        self.checkpoints.clear()
        self.facility.cancel_all(self.entry_point)
        logger.info("Sweep finished: %s", reason)

    def is_cancelled(self) -> bool:
        return (self.store.get(CANCEL_FLAG_KEY) or "").lower() == "true"

    def request_cancel(self) -> None:
        self.store.set(CANCEL_FLAG_KEY, "true")
        logger.info("Cancellation requested")

    def reset_cancel(self) -> None:
        self.store.delete(CANCEL_FLAG_KEY)
