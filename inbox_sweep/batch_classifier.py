"""Batch formation and the classifier round trip.

Items are sent in contiguous batches, each wrapped in delimiter markers so the
model can echo ids back unambiguously. Whatever comes back is reconciled
against the ids that went out: every submitted item gets exactly one result.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import ErrorKind, TriageError, classify_error, log_error
from .interfaces import ClassificationService
from .models import BatchResponse, ClassificationResult, ClassifiedError, ClassifiedOk, WorkItem
from .prompt_guard import build_secure_prompt, validate_response
from .schema_validator import definition_schema, load_schema, parse_json_lenient, validate
from .schemas import BATCH_OUTPUT_DESCRIPTION

logger = logging.getLogger("inbox_sweep.batch")

DELIMITER = "␞"
MAX_BATCH_SIZE = 20
MAX_BODY_CHARS = 1000
BATCH_DELAY_SECONDS = 0.5

EMPTY_CONTENT_REASON = "empty content"
MISSING_REASON = "missing from response"
GUARD_REJECTED_MESSAGE = "response failed injection screening"

Batch = List[WorkItem]
ProgressCallback = Callable[[BatchResponse, Batch, int, int], None]
BatchGate = Callable[[Batch, int, int], bool]
ItemPrepare = Callable[[WorkItem], WorkItem]


def create_batches(items: Sequence[WorkItem], max_size: int = MAX_BATCH_SIZE) -> List[Batch]:
    if max_size < 1:
        raise ValueError("max_size must be at least 1")
    return [list(items[i : i + max_size]) for i in range(0, len(items), max_size)]


def _clean(text: str) -> str:
    return (text or "").replace(DELIMITER, " ")


def _truncate(text: str, limit: int) -> str:
    if limit > 0 and len(text) > limit:
        return text[:limit] + "..."
    return text


def render_batch_items(batch: Sequence[WorkItem], max_body_chars: int = MAX_BODY_CHARS) -> str:
    blocks = []
    for n, item in enumerate(batch, start=1):
        blocks.append(
            "\n".join(
                [
                    f"{DELIMITER}EMAIL_{n}{DELIMITER}",
                    f"ID: {item.id}",
                    f"Subject: {_clean(item.subject)}",
                    f"Body: {_truncate(_clean(item.body), max_body_chars)}",
                    f"{DELIMITER}END_EMAIL_{n}{DELIMITER}",
                ]
            )
        )
    return "\n\n".join(blocks)


def render_batch_prompt(
    batch: Sequence[WorkItem], base_prompt: str, max_body_chars: int = MAX_BODY_CHARS
) -> str:
    """Full request text for one batch. Item text must already be sanitised."""
    if not batch:
        raise ValueError("Cannot render an empty batch")
    instructions = (
        f"{base_prompt.strip()}\n\n"
        f"Each email is enclosed between {DELIMITER}EMAIL_n{DELIMITER} and "
        f"{DELIMITER}END_EMAIL_n{DELIMITER} markers. Classify every one of them.\n\n"
        f"{BATCH_OUTPUT_DESCRIPTION}"
    )
    return build_secure_prompt(
        instructions,
        render_batch_items(batch, max_body_chars),
        context=f"This batch contains {len(batch)} emails.",
        already_sanitized=True,
    )


def calculate_batch_savings(count: int, max_size: int = MAX_BATCH_SIZE) -> Dict[str, Any]:
    batch_calls = math.ceil(count / max_size) if count else 0
    saved = count - batch_calls
    return {
        "individual_calls": count,
        "batch_calls": batch_calls,
        "calls_saved": saved,
        "percent_saved": round(100.0 * saved / count, 1) if count else 0.0,
    }


class BatchClassifier:
    def __init__(
        self,
        service: ClassificationService,
        *,
        default_label: str = "General",
        max_batch_size: int = MAX_BATCH_SIZE,
        max_body_chars: int = MAX_BODY_CHARS,
        batch_delay_seconds: float = BATCH_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.default_label = default_label
        self.max_batch_size = max_batch_size
        self.max_body_chars = max_body_chars
        self.batch_delay_seconds = batch_delay_seconds
        self.sleep = sleep
        self.clock = clock
        self.schema = load_schema("batch_classification")
        self.entry_schema = definition_schema(self.schema, "result")

    def _entries(self, text: str) -> List[Dict[str, Any]]:
        data = parse_json_lenient(text)
        if isinstance(data, list):
            data = {"results": data}
        if not isinstance(data, dict):
            raise TriageError(ErrorKind.INVALID_RESPONSE, "Model JSON was not an object")

        check = validate(data, self.schema)
        if check.valid:
            return data["results"]

        raw_entries = data.get("results")
        if not isinstance(raw_entries, list):
            raise TriageError(
                ErrorKind.INVALID_RESPONSE,
                "Batch response failed schema validation: " + "; ".join(check.errors[:5]),
            )
        kept = []
        for entry in raw_entries:
            entry_check = validate(entry, self.entry_schema)
            if entry_check.valid:
                kept.append(entry)
            else:
                logger.warning("Dropping invalid result entry: %s", "; ".join(entry_check.errors[:3]))
        return kept

    def _reconcile(self, sent: Sequence[WorkItem], entries: List[Dict[str, Any]]) -> Dict[str, ClassificationResult]:
        expected = {item.id for item in sent}
        by_id: Dict[str, Dict[str, Any]] = {}
        extras = 0
        for entry in entries:
            entry_id = str(entry.get("id", ""))
            if entry_id not in expected:
                extras += 1
                continue
            by_id.setdefault(entry_id, entry)
        if extras:
            logger.debug("Ignoring %d result(s) for ids that were not submitted", extras)

        results: Dict[str, ClassificationResult] = {}
        missing = 0
        for item in sent:
            entry = by_id.get(item.id)
            if entry is None:
                missing += 1
                results[item.id] = ClassifiedOk(item.id, self.default_label, 0.0, MISSING_REASON)
                continue
            label = str(entry["label"]).strip()
            reasoning = str(entry.get("reasoning") or "")
            if not (validate_response(reasoning) and validate_response(label)):
                results[item.id] = ClassifiedError(item.id, GUARD_REJECTED_MESSAGE, self.default_label)
                continue
            results[item.id] = ClassifiedOk(
                item.id, label, float(entry.get("confidence") or 0.0), reasoning
            )
        if missing:
            logger.warning("Model omitted %d of %d ids; using fallback label", missing, len(sent))
        return results

    def classify_batch(self, api_key: str, batch: Sequence[WorkItem], prompt: str) -> BatchResponse:
        batch_id = f"batch_{uuid.uuid4().hex[:10]}"
        started = self.clock()
        sent = [item for item in batch if (item.body or "").strip()]
        by_id: Dict[str, ClassificationResult] = {
            item.id: ClassifiedOk(item.id, self.default_label, 0.0, EMPTY_CONTENT_REASON)
            for item in batch
            if not (item.body or "").strip()
        }

        if sent:
            try:
                text = self.service.generate(
                    render_batch_prompt(sent, prompt, self.max_body_chars),
                    response_schema=self.schema,
                    api_key=api_key,
                )
                by_id.update(self._reconcile(sent, self._entries(text)))
            except Exception as exc:
                err = classify_error(exc, {"batch_id": batch_id, "size": len(batch)})
                log_error(err, logger)
                if not err.recoverable:
                    if err is exc:
                        raise
                    raise err from exc
                return BatchResponse(
                    success=False,
                    results=[ClassifiedError(item.id, err.message, self.default_label) for item in batch],
                    batch_id=batch_id,
                    processing_time=self.clock() - started,
                    error=err.message,
                )

        elapsed = self.clock() - started
        logger.info("Batch %s: %d item(s) classified in %.2fs", batch_id, len(batch), elapsed)
        return BatchResponse(
            success=True,
            results=[by_id[item.id] for item in batch],
            batch_id=batch_id,
            processing_time=elapsed,
        )

    def process_all_batches(
        self,
        api_key: str,
        items: Sequence[WorkItem],
        prompt: str,
        on_batch_complete: Optional[ProgressCallback] = None,
        before_batch: Optional[BatchGate] = None,
        prepare: Optional[ItemPrepare] = None,
    ) -> List[ClassificationResult]:
        """Run batches in order with a fixed pause between calls.

        ``before_batch`` returning False stops before that batch is sent.
        ``prepare`` maps each item of a batch only once the batch is going
        out; ``on_batch_complete`` receives the prepared items.
        """
        batches = create_batches(items, self.max_batch_size)
        total = len(batches)
        results: List[ClassificationResult] = []
        for index, batch in enumerate(batches):
            if before_batch is not None and not before_batch(batch, index, total):
                logger.info("Stopping before batch %d of %d", index + 1, total)
                break
            if prepare is not None:
                batch = [prepare(item) for item in batch]
            if index > 0 and self.batch_delay_seconds > 0:
                self.sleep(self.batch_delay_seconds)
            response = self.classify_batch(api_key, batch, prompt)
            results.extend(response.results)
            if on_batch_complete is not None:
                on_batch_complete(response, batch, index, total)
        return results
