from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class WorkItem:
    """One mail item (message or thread) waiting for triage."""

    id: str
    subject: str
    body: str
    thread_id: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedOk:
    id: str
    label: str
    confidence: float = 0.0
    reasoning: str = ""

    ok = True


@dataclass(frozen=True)
class ClassifiedError:
    id: str
    message: str
    label: Optional[str] = None

    ok = False


ClassificationResult = Union[ClassifiedOk, ClassifiedError]


@dataclass
class BatchResponse:
    success: bool
    results: List[ClassificationResult] = field(default_factory=list)
    batch_id: str = ""
    processing_time: float = 0.0
    error: Optional[str] = None
