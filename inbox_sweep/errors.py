"""Failure taxonomy shared by every stage of a sweep.

Any exception that escapes a collaborator (Graph, the model endpoint, the
local stores) is normalised into a :class:`TriageError` before it is logged or
surfaced. The kind decides severity and whether the run may carry on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import jsonschema  # type: ignore[import]
import openai  # type: ignore[import]
import requests  # type: ignore[import]

from .redaction import mask_credentials
from .utils import utc_now

logger = logging.getLogger("inbox_sweep.errors")


class ErrorKind(str, Enum):
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_UNAVAILABLE = "network_unavailable"
    INVALID_CREDENTIAL = "invalid_credential"
    MISSING_CREDENTIAL = "missing_credential"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_QUOTA_EXCEEDED = "upstream_quota_exceeded"
    DOWNSTREAM_QUOTA_EXCEEDED = "downstream_quota_exceeded"
    INVALID_RESPONSE = "invalid_response"
    GUARD_REJECTED = "guard_rejected"
    ITEM_NOT_FOUND = "item_not_found"
    ALREADY_RUNNING = "already_running"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# kind -> (severity, recoverable)
ERROR_POLICY: Dict[ErrorKind, tuple] = {
    ErrorKind.NETWORK_TIMEOUT: (Severity.LOW, True),
    ErrorKind.NETWORK_UNAVAILABLE: (Severity.LOW, True),
    ErrorKind.INVALID_CREDENTIAL: (Severity.HIGH, False),
    ErrorKind.MISSING_CREDENTIAL: (Severity.CRITICAL, False),
    ErrorKind.RATE_LIMITED: (Severity.MEDIUM, True),
    ErrorKind.UPSTREAM_QUOTA_EXCEEDED: (Severity.HIGH, True),
    ErrorKind.DOWNSTREAM_QUOTA_EXCEEDED: (Severity.HIGH, True),
    ErrorKind.INVALID_RESPONSE: (Severity.MEDIUM, True),
    ErrorKind.GUARD_REJECTED: (Severity.MEDIUM, True),
    ErrorKind.ITEM_NOT_FOUND: (Severity.LOW, True),
    ErrorKind.ALREADY_RUNNING: (Severity.LOW, True),
    ErrorKind.UNKNOWN: (Severity.MEDIUM, False),
}

USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.NETWORK_TIMEOUT: "The request timed out. The sweep will retry on its next run.",
    ErrorKind.NETWORK_UNAVAILABLE: "Could not reach the service. Check your connection and try again.",
    ErrorKind.INVALID_CREDENTIAL: "The API key or mailbox credential was rejected. Update it and run again.",
    ErrorKind.MISSING_CREDENTIAL: "No API key is configured. Set the environment variable named in your config.",
    ErrorKind.RATE_LIMITED: "The model endpoint is rate limiting requests. Try again in a few minutes.",
    ErrorKind.UPSTREAM_QUOTA_EXCEEDED: "The model quota is exhausted. Check billing or wait for the quota to reset.",
    ErrorKind.DOWNSTREAM_QUOTA_EXCEEDED: "The mailbox service quota is exhausted. Try again later.",
    ErrorKind.INVALID_RESPONSE: "The model returned a reply that could not be understood.",
    ErrorKind.GUARD_REJECTED: "A model reply was rejected by content screening.",
    ErrorKind.ITEM_NOT_FOUND: "The message was moved or deleted before it could be updated.",
    ErrorKind.ALREADY_RUNNING: "A sweep is already running for this mailbox.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. See the log for details.",
}


@dataclass
class ErrorRecord:
    type: str
    severity: str
    recoverable: bool
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""


class TriageError(Exception):
    """A failure already placed in the taxonomy."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = dict(context or {})

    @property
    def severity(self) -> Severity:
        return ERROR_POLICY[self.kind][0]

    @property
    def recoverable(self) -> bool:
        return ERROR_POLICY[self.kind][1]

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(
            type=self.kind.value,
            severity=self.severity.value,
            recoverable=self.recoverable,
            message=mask_credentials(self.message),
            context=self.context,
            timestamp=utc_now().isoformat(),
        )

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


def _from_status(status: int, message: str, context: Dict[str, Any]) -> TriageError:
    if status in (401, 403):
        return TriageError(ErrorKind.INVALID_CREDENTIAL, message, context)
    if status == 429:
        return TriageError(ErrorKind.RATE_LIMITED, message, context)
    if status in (408, 504):
        return TriageError(ErrorKind.NETWORK_TIMEOUT, message, context)
    if status >= 500:
        return TriageError(ErrorKind.NETWORK_UNAVAILABLE, message, context)
    return TriageError(ErrorKind.UNKNOWN, message, context)


def _from_message(message: str, context: Dict[str, Any]) -> TriageError:
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return TriageError(ErrorKind.NETWORK_TIMEOUT, message, context)
    if "offline" in text or "network" in text or "connection" in text:
        return TriageError(ErrorKind.NETWORK_UNAVAILABLE, message, context)
    if "api key" in text or "apikey" in text or "api_key" in text:
        if "missing" in text or "required" in text or "not set" in text:
            return TriageError(ErrorKind.MISSING_CREDENTIAL, message, context)
        if "invalid" in text or "unauthorized" in text or "incorrect" in text:
            return TriageError(ErrorKind.INVALID_CREDENTIAL, message, context)
    if "quota" in text or "limit exceeded" in text:
        if "graph" in text or "mailbox" in text or "mailboxconcurrency" in text:
            return TriageError(ErrorKind.DOWNSTREAM_QUOTA_EXCEEDED, message, context)
        return TriageError(ErrorKind.UPSTREAM_QUOTA_EXCEEDED, message, context)
    if "rate limit" in text or "too many requests" in text:
        return TriageError(ErrorKind.RATE_LIMITED, message, context)
    if "invalid json" in text or "schema" in text:
        return TriageError(ErrorKind.INVALID_RESPONSE, message, context)
    return TriageError(ErrorKind.UNKNOWN, message, context)


def classify_error(
    exc: BaseException, context: Optional[Dict[str, Any]] = None
) -> TriageError:
    """Place an arbitrary exception in the taxonomy."""
    if isinstance(exc, TriageError):
        if context:
            exc.context.update(context)
        return exc

    ctx = dict(context or {})
    ctx.setdefault("exception", type(exc).__name__)
    message = str(exc) or type(exc).__name__

    # requests (Graph, Gemini over HTTP)
    if isinstance(exc, requests.Timeout):
        return TriageError(ErrorKind.NETWORK_TIMEOUT, message, ctx)
    if isinstance(exc, requests.ConnectionError):
        return TriageError(ErrorKind.NETWORK_UNAVAILABLE, message, ctx)
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        ctx["status"] = status
        body = (exc.response.text or "").lower()
        url = exc.response.url or ""
        # a single mailbox item vanished; the rest of the sweep is unaffected
        if status in (404, 410) and ("/messages/" in url or "erroritemnotfound" in body):
            return TriageError(ErrorKind.ITEM_NOT_FOUND, message, ctx)
        if status == 429 and "graph.microsoft.com" in url:
            return TriageError(ErrorKind.DOWNSTREAM_QUOTA_EXCEEDED, message, ctx)
        if status == 429 and ("quota" in body or "resource_exhausted" in body):
            return TriageError(ErrorKind.UPSTREAM_QUOTA_EXCEEDED, message, ctx)
        if status == 400 and "api key not valid" in body:
            return TriageError(ErrorKind.INVALID_CREDENTIAL, message, ctx)
        return _from_status(status, message, ctx)

    # openai SDK
    if isinstance(exc, openai.APITimeoutError):
        return TriageError(ErrorKind.NETWORK_TIMEOUT, message, ctx)
    if isinstance(exc, openai.APIConnectionError):
        return TriageError(ErrorKind.NETWORK_UNAVAILABLE, message, ctx)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return TriageError(ErrorKind.INVALID_CREDENTIAL, message, ctx)
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) == "insufficient_quota" or "quota" in message.lower():
            return TriageError(ErrorKind.UPSTREAM_QUOTA_EXCEEDED, message, ctx)
        return TriageError(ErrorKind.RATE_LIMITED, message, ctx)
    if isinstance(exc, openai.APIStatusError):
        ctx["status"] = exc.status_code
        return _from_status(exc.status_code, message, ctx)

    # malformed replies
    if isinstance(exc, (json.JSONDecodeError, jsonschema.ValidationError)):
        return TriageError(ErrorKind.INVALID_RESPONSE, message, ctx)

    return _from_message(message, ctx)


def log_error(error: TriageError, log: Optional[logging.Logger] = None) -> ErrorRecord:
    """Emit a masked log line at a level matching the severity."""
    record = error.to_record()
    target = log or logger
    level = {
        Severity.LOW: logging.INFO,
        Severity.MEDIUM: logging.WARNING,
        Severity.HIGH: logging.ERROR,
        Severity.CRITICAL: logging.CRITICAL,
    }[error.severity]
    target.log(
        level,
        "%s (severity=%s recoverable=%s): %s context=%s",
        record.type,
        record.severity,
        record.recoverable,
        record.message,
        record.context,
    )
    return record
