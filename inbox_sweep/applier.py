"""Writes classification outcomes back to the mailbox.

Every item that reaches :meth:`ResultApplier.apply` leaves with exactly one
terminal marker, processed-ok or processed-error. The marker is applied in a
single ``finally`` block; the branches above it only decide which one.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .errors import ErrorKind, TriageError, classify_error, log_error
from .guardrails import validate_reply
from .interfaces import ClassificationService, LabelApplier, VolatileCache
from .models import ClassificationResult, ClassifiedError, WorkItem
from .prompt_guard import build_secure_prompt, validate_response
from .redaction import Redactor
from .schema_validator import load_schema, parse_json_lenient, validate
from .schemas import REPLY_OUTPUT_DESCRIPTION
from .utils import content_hash

logger = logging.getLogger("inbox_sweep.applier")

DRAFT_KEY_PREFIX = "DRAFT_"
DRAFT_TTL_SECONDS = 7 * 24 * 60 * 60


@dataclass
class AppliedOutcome:
    item_id: str
    ok: bool = False
    label: Optional[str] = None
    draft_id: Optional[str] = None
    error: Optional[str] = None


class DraftTracker:
    """Remembers the hash of the last reply drafted per item."""

    def __init__(
        self,
        cache: VolatileCache,
        ttl_seconds: int = DRAFT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def is_duplicate(self, item_id: str, reply: str) -> bool:
        raw = self.cache.get(DRAFT_KEY_PREFIX + item_id)
        if not raw:
            return False
        try:
            previous = json.loads(raw)
        except json.JSONDecodeError:
            self.cache.remove(DRAFT_KEY_PREFIX + item_id)
            return False
        return previous.get("hash") == content_hash(reply)

    def record(self, item_id: str, reply: str, draft_id: Optional[str]) -> None:
        payload = {"hash": content_hash(reply), "draft_id": draft_id, "created_at": self.clock()}
        self.cache.put(DRAFT_KEY_PREFIX + item_id, json.dumps(payload), self.ttl_seconds)


class ReplyGenerator:
    def __init__(
        self,
        service: ClassificationService,
        labels: LabelApplier,
        drafts: DraftTracker,
        response_prompt: str,
        redactor: Optional[Redactor] = None,
    ) -> None:
        self.service = service
        self.labels = labels
        self.drafts = drafts
        self.response_prompt = response_prompt
        self.redactor = redactor
        self.schema = load_schema("reply")

    def compose(self, item: WorkItem, api_key: str) -> str:
        prompt = build_secure_prompt(
            f"{self.response_prompt.strip()}\n\n{REPLY_OUTPUT_DESCRIPTION}",
            f"Subject: {item.subject}\n\n{item.body}",
            context="Write a reply to the email below.",
            already_sanitized=True,
        )
        data = parse_json_lenient(self.service.generate(prompt, self.schema, api_key))
        check = validate(data, self.schema)
        if not check.valid:
            raise TriageError(
                ErrorKind.INVALID_RESPONSE,
                "Reply failed schema validation: " + "; ".join(check.errors[:3]),
                {"item_id": item.id},
            )
        reply = data["reply"]
        if not validate_response(reply):
            raise TriageError(ErrorKind.GUARD_REJECTED, "Reply echoed injection vocabulary", {"item_id": item.id})
        if self.redactor is not None:
            reply = self.redactor.restore(reply, item.id)
        verdict = validate_reply(reply)
        if not verdict.is_valid:
            raise TriageError(
                ErrorKind.GUARD_REJECTED,
                "Reply failed guardrails: " + "; ".join(verdict.failure_reasons),
                {"item_id": item.id},
            )
        return reply

    def reply(self, item: WorkItem, api_key: str, send: bool = False) -> Optional[str]:
        text = self.compose(item, api_key)
        if self.drafts.is_duplicate(item.id, text):
            logger.info("Skipping duplicate reply for %s", item.id)
            return None
        draft_id = self.labels.create_draft_or_reply(item.id, text, send=send)
        self.drafts.record(item.id, text, draft_id)
        return draft_id


class ResultApplier:
    def __init__(
        self,
        labels: LabelApplier,
        *,
        processing_mode: str = "label",
        reply_labels: Iterable[str] = (),
        replies: Optional[ReplyGenerator] = None,
        api_key: str = "",
    ) -> None:
        self.labels = labels
        self.processing_mode = processing_mode
        self.reply_labels = {label.lower() for label in reply_labels}
        self.replies = replies
        self.api_key = api_key

    def _wants_reply(self, label: str) -> bool:
        return (
            self.replies is not None
            and self.processing_mode in ("draft", "send")
            and label.lower() in self.reply_labels
        )

    def apply(self, item: WorkItem, result: Optional[ClassificationResult]) -> AppliedOutcome:
        outcome = AppliedOutcome(item_id=item.id)
        ok = False
        try:
            if result is None:
                outcome.error = "no classification result"
                return outcome
            if isinstance(result, ClassifiedError):
                outcome.error = result.message
                return outcome
            if result.id != item.id:
                raise TriageError(
                    ErrorKind.INVALID_RESPONSE,
                    f"Result for {result.id} applied to {item.id}",
                )
            self.labels.apply_outcome_label(item.id, result.label)
            outcome.label = result.label
            if self._wants_reply(result.label):
                outcome.draft_id = self.replies.reply(
                    item, self.api_key, send=self.processing_mode == "send"
                )
            ok = True
        except Exception as exc:
            err = classify_error(exc, {"item_id": item.id})
            log_error(err, logger)
            outcome.error = err.message
            if not err.recoverable:
                if err is exc:
                    raise
                raise err from exc
        finally:
            outcome.ok = ok
            self._mark(item, outcome)
        return outcome

    def _mark(self, item: WorkItem, outcome: AppliedOutcome) -> None:
        try:
            self.labels.apply_terminal_marker(item.id, outcome.ok)
        except Exception as exc:
            err = classify_error(exc, {"item_id": item.id})
            if err.kind is not ErrorKind.ITEM_NOT_FOUND:
                raise
            log_error(err, logger)
            outcome.ok = False
            outcome.error = outcome.error or err.message
