"""Top-level driver for one sweep invocation.

``start_run`` begins a fresh sweep; ``resume_run`` is what the scheduling
facility calls (as ``continue_processing``) after a suspension. Both share
``_process``: redact, guard, classify in batches, apply results, and between
batches decide whether to carry on, suspend or stop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .applier import DraftTracker, ReplyGenerator, ResultApplier
from .batch_classifier import BatchClassifier, calculate_batch_savings
from .checkpoint import CheckpointSettings, CheckpointState, CheckpointStore
from .config import BatchConfig, ClassifierConfig, ContinuationConfig, RedactionConfig
from .errors import classify_error, log_error
from .interfaces import (
    ClassificationService,
    LabelApplier,
    PropertyStore,
    SchedulingFacility,
    VolatileCache,
    WorkSource,
)
from .lock import RunLock, run_lock
from .models import BatchResponse, WorkItem
from .prompt_guard import sanitize
from .redaction import Redactor
from .scheduler import (
    CONTINUATION_ENTRY_POINT,
    ContinuationScheduler,
    QuantumTimer,
    remaining_after,
)
from .utils import new_execution_id

logger = logging.getLogger("inbox_sweep.pipeline")

# entry point name -> SweepPipeline method
ENTRY_POINTS: Dict[str, str] = {CONTINUATION_ENTRY_POINT: "resume_run"}


@dataclass
class TriageContext:
    """Everything one invocation needs, built once and passed down."""

    classifier: ClassifierConfig
    batch: BatchConfig
    continuation: ContinuationConfig
    redaction: RedactionConfig
    store: PropertyStore
    cache: VolatileCache
    facility: SchedulingFacility
    services: Callable[[str], ClassificationService]
    work_source: Optional[WorkSource] = None
    labels: Optional[LabelApplier] = None
    wall_clock: Callable[[], float] = time.time
    monotonic: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    execution_id: str = field(default_factory=new_execution_id)
    account: str = "me"


@dataclass
class RunSummary:
    status: str  # complete | suspended | cancelled | idle | stopped
    execution_id: str
    processed: int = 0
    ok: int = 0
    errors: int = 0
    drafts: int = 0
    processed_total: int = 0
    total_estimated: int = 0
    trigger_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SweepPipeline:
    def __init__(self, ctx: TriageContext) -> None:
        self.ctx = ctx
        cont = ctx.continuation
        self.checkpoints = CheckpointStore(ctx.store, clock=ctx.wall_clock)
        self.scheduler = ContinuationScheduler(
            self.checkpoints,
            ctx.facility,
            ctx.store,
            continuation_delay_seconds=cont.continuation_delay_seconds,
            max_continuations=cont.max_continuations,
        )
        self.lock = RunLock(ctx.store, stale_seconds=cont.lock_stale_seconds, clock=ctx.wall_clock)
        self.redactor = (
            Redactor(ctx.cache, ctx.redaction.mapping_ttl_seconds) if ctx.redaction.enabled else None
        )
        self.drafts = DraftTracker(ctx.cache, clock=ctx.wall_clock)

    # -----------------------------
    # Entry points
    # -----------------------------

    def start_run(self) -> RunSummary:
        """Idle -> Running for a fresh sweep of the mailbox."""
        timer = self._timer()
        with run_lock(self.lock, "start", self.ctx.execution_id):
            self.checkpoints.sweep_expired(self.ctx.continuation.state_retention_hours)
            self.scheduler.reset_cancel()
            self.checkpoints.clear()
            self.ctx.facility.cancel_all(CONTINUATION_ENTRY_POINT)
            return self._guarded(lambda: self._begin(timer))

    def resume_run(self) -> RunSummary:
        """Suspended -> Running, called by the scheduling facility."""
        timer = self._timer()
        with run_lock(self.lock, "continue", self.ctx.execution_id):
            state = self.checkpoints.load()
            if state is None:
                logger.info("No active checkpoint; nothing to resume")
                self.ctx.facility.cancel_all(CONTINUATION_ENTRY_POINT)
                return RunSummary(status="idle", execution_id=self.ctx.execution_id)
            if self.scheduler.is_cancelled():
                self.scheduler.finish("cancelled before resuming")
                self.scheduler.reset_cancel()
                return self._summary("cancelled", state)
            return self._guarded(lambda: self._resume(state, timer))

    def dispatch(self, entry_point: str) -> RunSummary:
        if entry_point not in ENTRY_POINTS:
            raise KeyError(f"Unknown entry point: {entry_point}")
        return getattr(self, ENTRY_POINTS[entry_point])()

    def cancel(self) -> bool:
        """Ask a running sweep to stop; clean up at once when none is running."""
        self.scheduler.request_cancel()
        if self.lock.is_locked():
            logger.info("Sweep in progress; it will stop at the next batch boundary")
            return False
        self.scheduler.finish("cancelled by user")
        self.scheduler.reset_cancel()
        return True

    def status(self) -> Dict[str, Any]:
        info = self.checkpoints.status()
        lock = self.lock.info()
        info["running"] = lock is not None
        if lock is not None:
            info["execution_id"] = lock.execution_id
            info["mode"] = lock.mode
        info["pending_resumptions"] = len(self.ctx.facility.pending(CONTINUATION_ENTRY_POINT))
        info["cancel_requested"] = self.scheduler.is_cancelled()
        return info

    def sweep(self) -> int:
        return self.checkpoints.sweep_expired(self.ctx.continuation.state_retention_hours)

    # -----------------------------
    # Internals
    # -----------------------------

    def _timer(self) -> QuantumTimer:
        cont = self.ctx.continuation
        return QuantumTimer(
            cont.safe_execution_seconds,
            warning_seconds=cont.warning_seconds,
            host_limit_seconds=cont.host_limit_seconds,
            clock=self.ctx.monotonic,
        )

    def _guarded(self, body: Callable[[], RunSummary]) -> RunSummary:
        try:
            return body()
        except Exception as exc:
            err = classify_error(exc, {"execution_id": self.ctx.execution_id})
            log_error(err, logger)
            if not err.recoverable:
                # no checkpoint survives a non-recoverable failure
                self.scheduler.finish(f"aborted ({err.kind.value})")
            elif self.checkpoints.load() is not None:
                self.scheduler.arm_continuation()
            if err is exc:
                raise
            raise err from exc

    def _candidates(self) -> List[WorkItem]:
        if self.ctx.work_source is None or self.ctx.labels is None:
            raise RuntimeError("Mailbox client missing from this context")
        limit = self.ctx.classifier.max_candidates or None
        return self.ctx.work_source.list_candidates(self.ctx.classifier.query, limit)

    def _begin(self, timer: QuantumTimer) -> RunSummary:
        items = self._candidates()
        cfg = self.ctx.classifier
        state = CheckpointState(
            settings=CheckpointSettings(
                model=cfg.model,
                processing_mode=cfg.processing_mode,
                classification_prompt=cfg.classification_prompt,
                response_prompt=cfg.response_prompt,
            ),
            total_estimated=len(items),
            start_time=self.ctx.wall_clock(),
        )
        if not items:
            self.scheduler.finish("nothing to triage")
            return self._summary("complete", state)
        savings = calculate_batch_savings(len(items), self.ctx.batch.max_batch_size)
        logger.info(
            "Starting sweep of %d item(s) in %d batch call(s) (%d calls saved)",
            len(items),
            savings["batch_calls"],
            savings["calls_saved"],
        )
        return self._process(items, state, timer, persisted=False)

    def _resume(self, state: CheckpointState, timer: QuantumTimer) -> RunSummary:
        items = remaining_after(self._candidates(), state.last_processed_id)
        logger.info(
            "Resuming sweep: %d/%d done, %d candidate(s) left",
            state.processed_count,
            state.total_estimated,
            len(items),
        )
        return self._process(items, state, timer, persisted=True)

    def _prepare(self, item: WorkItem) -> WorkItem:
        subject = item.subject or ""
        body = item.body or ""
        if self.redactor is not None:
            subject, body = self.redactor.redact_fields(item.id, subject, body)
        body = sanitize(body, source=item.id) if body.strip() else ""
        subject = sanitize(subject, source=item.id) if subject.strip() else ""
        return WorkItem(id=item.id, subject=subject, body=body, thread_id=item.thread_id)

    def _process(
        self,
        items: List[WorkItem],
        state: CheckpointState,
        timer: QuantumTimer,
        *,
        persisted: bool,
    ) -> RunSummary:
        settings = state.settings
        service = self.ctx.services(settings.model)
        api_key = service.resolve_api_key()
        classifier = BatchClassifier(
            service,
            default_label=self.ctx.classifier.default_label,
            max_batch_size=self.ctx.batch.max_batch_size,
            max_body_chars=self.ctx.batch.max_body_chars,
            batch_delay_seconds=self.ctx.batch.batch_delay_ms / 1000.0,
            sleep=self.ctx.sleep,
            clock=self.ctx.monotonic,
        )
        replies = ReplyGenerator(
            service, self.ctx.labels, self.drafts, settings.response_prompt, self.redactor
        )
        applier = ResultApplier(
            self.ctx.labels,
            processing_mode=settings.processing_mode,
            reply_labels=self.ctx.classifier.reply_labels,
            replies=replies,
            api_key=api_key,
        )

        summary = self._summary("running", state)
        stop: Dict[str, Optional[str]] = {"reason": None}
        def before_batch(batch: List[WorkItem], index: int, total: int) -> bool:
            if self.scheduler.is_cancelled():
                stop["reason"] = "cancelled"
                return False
            if self.scheduler.should_suspend(timer, has_remaining=True):
                stop["reason"] = "suspend"
                return False
            timer.log_status(f"batch {index + 1}/{total}")
            return True

        def on_batch_complete(
            response: BatchResponse, batch: List[WorkItem], index: int, total: int
        ) -> None:
            by_id = {r.id: r for r in response.results}
            for item in batch:
                outcome = applier.apply(item, by_id.get(item.id))
                if self.redactor is not None:
                    self.redactor.clear(item.id)
                summary.processed += 1
                if outcome.ok:
                    summary.ok += 1
                else:
                    summary.errors += 1
                if outcome.draft_id:
                    summary.drafts += 1
            state.processed_count += len(batch)
            state.last_processed_id = batch[-1].id
            if persisted:
                self.checkpoints.save(state)

        classifier.process_all_batches(
            api_key,
            items,
            settings.classification_prompt,
            on_batch_complete=on_batch_complete,
            before_batch=before_batch,
            prepare=self._prepare,
        )

        reason = stop["reason"]
        if reason == "cancelled":
            self.scheduler.finish("cancelled by user")
            self.scheduler.reset_cancel()
            status = "cancelled"
        elif reason == "suspend":
            suspended = self.scheduler.suspend(state)
            status = "suspended" if suspended is not None else "stopped"
        else:
            self.scheduler.finish("work source exhausted")
            status = "complete"

        summary.status = status
        summary.processed_total = state.processed_count
        summary.total_estimated = state.total_estimated
        summary.trigger_id = state.trigger_id if status == "suspended" else None
        logger.info(
            "Run %s %s: %d processed this run (%d ok, %d error), %d/%d overall",
            self.ctx.execution_id,
            status,
            summary.processed,
            summary.ok,
            summary.errors,
            state.processed_count,
            state.total_estimated,
        )
        return summary

    def _summary(self, status: str, state: CheckpointState) -> RunSummary:
        return RunSummary(
            status=status,
            execution_id=self.ctx.execution_id,
            processed_total=state.processed_count,
            total_estimated=state.total_estimated,
        )


