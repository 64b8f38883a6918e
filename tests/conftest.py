"""Test bootstrap helpers.

Ensures the project root is importable when running tests without installing
the package (common for local dev), and provides in-memory stand-ins for the
mailbox, the model endpoint and the clocks so a whole sweep can run offline.
"""

import json
import re
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import requests


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inbox_sweep.config import (  # noqa: E402
    BatchConfig,
    ClassifierConfig,
    ContinuationConfig,
    RedactionConfig,
)
from inbox_sweep.interfaces import ClassificationService, LabelApplier, WorkSource  # noqa: E402
from inbox_sweep.models import WorkItem  # noqa: E402
from inbox_sweep.pipeline import SweepPipeline, TriageContext  # noqa: E402
from inbox_sweep.stores import InMemoryScheduler, MemoryCache, MemoryPropertyStore  # noqa: E402

_ID_LINE = re.compile(r"^ID: (\S+)$", re.MULTILINE)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWorkSource(WorkSource):
    """Ordered list of items; optionally hides items that already carry a marker."""

    def __init__(self, items: List[WorkItem], labels: Optional["FakeLabelApplier"] = None) -> None:
        self.items = list(items)
        self.labels = labels
        self.queries: List[str] = []

    def list_candidates(self, query: str, limit: Optional[int] = None) -> List[WorkItem]:
        self.queries.append(query)
        out = [
            item
            for item in self.items
            if self.labels is None or item.id not in self.labels.markers
        ]
        return out[:limit] if limit else out


def graph_not_found(item_id: str) -> requests.HTTPError:
    """The error Graph raises for a message deleted or moved mid-sweep."""
    response = requests.Response()
    response.status_code = 404
    response.encoding = "utf-8"
    response._content = b'{"error": {"code": "ErrorItemNotFound"}}'
    response.url = f"https://graph.microsoft.com/v1.0/me/messages/{item_id}"
    return requests.HTTPError("404 Client Error: Not Found", response=response)


class FakeLabelApplier(LabelApplier):
    def __init__(self) -> None:
        self.markers: Dict[str, List[bool]] = {}
        self.labels: Dict[str, List[str]] = {}
        self.drafts: List[Dict[str, object]] = []
        self.fail_labels_for: set = set()
        self.gone: set = set()

    def apply_terminal_marker(self, item_id: str, ok: bool) -> None:
        if item_id in self.gone:
            raise graph_not_found(item_id)
        self.markers.setdefault(item_id, []).append(ok)

    def apply_outcome_label(self, item_id: str, label: str) -> None:
        if item_id in self.gone:
            raise graph_not_found(item_id)
        if item_id in self.fail_labels_for:
            raise ConnectionError("network unreachable while labelling")
        self.labels.setdefault(item_id, []).append(label)

    def create_draft_or_reply(self, item_id: str, text: str, send: bool = False) -> Optional[str]:
        self.drafts.append({"item_id": item_id, "text": text, "send": send})
        return None if send else f"draft-{item_id}"


class FakeService(ClassificationService):
    """Echoes back every id it finds in a batch prompt.

    ``label_for`` picks the label per id, ``drop`` names ids to leave out of the
    reply, ``on_call`` runs before each request (use it to raise or to move a
    clock), and ``reply_text`` answers reply-schema requests.
    """

    def __init__(
        self,
        *,
        label_for: Callable[[str], str] = lambda _id: "General",
        drop: Optional[set] = None,
        on_call: Optional[Callable[[int], None]] = None,
        reply_text: str = "Thanks for getting in touch. We are looking into this and will reply soon.",
        api_key: Optional[str] = "test-key",
    ) -> None:
        self.label_for = label_for
        self.drop = set(drop or ())
        self.on_call = on_call
        self.reply_text = reply_text
        self.api_key = api_key
        self.prompts: List[str] = []
        self.calls = 0

    def resolve_api_key(self) -> str:
        if self.api_key is None:
            from inbox_sweep.errors import ErrorKind, TriageError

            raise TriageError(ErrorKind.MISSING_CREDENTIAL, "API key not set")
        return self.api_key

    def generate(self, prompt, response_schema=None, api_key=None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if self.on_call is not None:
            self.on_call(self.calls)
        if "reply" in (response_schema or {}).get("properties", {}):
            return json.dumps({"reply": self.reply_text, "tone": "neutral"})
        results = [
            {"id": item_id, "label": self.label_for(item_id), "confidence": 0.9, "reasoning": "test"}
            for item_id in _ID_LINE.findall(prompt)
            if item_id not in self.drop
        ]
        return json.dumps({"results": results})


def make_items(count: int, prefix: str = "msg") -> List[WorkItem]:
    return [
        WorkItem(id=f"{prefix}-{i:03d}", subject=f"Subject {i}", body=f"Body of message number {i}.")
        for i in range(count)
    ]


@pytest.fixture
def wall_clock() -> FakeClock:
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def monotonic() -> FakeClock:
    return FakeClock(0.0)


@pytest.fixture
def labels() -> FakeLabelApplier:
    return FakeLabelApplier()


@pytest.fixture
def make_context(wall_clock, monotonic, labels):
    """Factory for a TriageContext sharing one set of stores across calls."""
    store = MemoryPropertyStore()
    cache = MemoryCache(clock=wall_clock)
    facility = InMemoryScheduler(clock=wall_clock)

    def factory(
        work_source: WorkSource,
        service: ClassificationService,
        *,
        classifier: Optional[ClassifierConfig] = None,
        batch: Optional[BatchConfig] = None,
        continuation: Optional[ContinuationConfig] = None,
        redaction: Optional[RedactionConfig] = None,
    ) -> TriageContext:
        return TriageContext(
            classifier=classifier or ClassifierConfig(),
            batch=batch or BatchConfig(max_batch_size=20),
            continuation=continuation or ContinuationConfig(),
            redaction=redaction or RedactionConfig(),
            store=store,
            cache=cache,
            facility=facility,
            services=lambda _key: service,
            work_source=work_source,
            labels=labels,
            wall_clock=wall_clock,
            monotonic=monotonic,
            sleep=lambda _seconds: None,
        )

    factory.store = store
    factory.cache = cache
    factory.facility = facility
    return factory


@pytest.fixture
def make_pipeline(make_context):
    def factory(*args, **kwargs) -> SweepPipeline:
        return SweepPipeline(make_context(*args, **kwargs))

    factory.store = make_context.store
    factory.cache = make_context.cache
    factory.facility = make_context.facility
    return factory
