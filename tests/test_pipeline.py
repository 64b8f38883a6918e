"""End-to-end sweeps over in-memory collaborators.

A fake model call moves the monotonic clock by 60s, so with the default
300s safe threshold each invocation gets through five batches of 20 before
it suspends.
"""

from __future__ import annotations

import pytest
import requests

from inbox_sweep.checkpoint import CheckpointStore
from inbox_sweep.config import ClassifierConfig, ContinuationConfig
from inbox_sweep.errors import ErrorKind, TriageError
from inbox_sweep.lock import LOCK_INFO_KEY
from inbox_sweep.models import WorkItem
from inbox_sweep.scheduler import CANCEL_FLAG_KEY, CONTINUATION_ENTRY_POINT

from conftest import FakeService, FakeWorkSource, make_items

SECONDS_PER_CALL = 60


def _ticking_service(monotonic, **kwargs) -> FakeService:
    def tick(_call: int) -> None:
        monotonic.advance(SECONDS_PER_CALL)

    return FakeService(on_call=tick, **kwargs)


def _all_marked_once(labels, items) -> bool:
    return all(labels.markers.get(item.id) == [True] for item in items)


def test_large_backlog_runs_across_three_invocations(make_pipeline, labels, monotonic):
    items = make_items(250)
    source = FakeWorkSource(items)
    service = _ticking_service(monotonic)
    checkpoints = CheckpointStore(make_pipeline.store)

    first = make_pipeline(source, service).start_run()

    assert first.status == "suspended"
    assert first.processed == 100
    state = checkpoints.load()
    assert state is not None
    assert state.processed_count == 100
    assert state.total_estimated == 250
    assert state.is_active is True
    assert state.last_processed_id == items[99].id
    pending = make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT)
    assert len(pending) == 1
    assert pending[0]["id"] == first.trigger_id == state.trigger_id

    second = make_pipeline(source, service).dispatch(CONTINUATION_ENTRY_POINT)

    assert second.status == "suspended"
    assert second.processed == 100
    assert checkpoints.load().processed_count == 200
    assert checkpoints.load().continuation_count == 2
    assert len(make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT)) == 1

    third = make_pipeline(source, service).resume_run()

    assert third.status == "complete"
    assert third.processed == 50
    assert third.processed_total == 250
    assert checkpoints.load() is None
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []
    assert LOCK_INFO_KEY not in make_pipeline.store.data
    assert len(labels.markers) == 250
    assert _all_marked_once(labels, items)
    assert service.calls == 13


def test_resume_uses_source_filter_when_last_id_is_gone(make_pipeline, labels, monotonic):
    items = make_items(150)
    # Hides marked items, so the last processed id never comes back.
    source = FakeWorkSource(items, labels=labels)
    service = _ticking_service(monotonic)

    assert make_pipeline(source, service).start_run().status == "suspended"
    summary = make_pipeline(source, service).resume_run()

    assert summary.status == "complete"
    assert summary.processed == 50
    assert _all_marked_once(labels, items)


def test_cancel_between_batches_of_resumed_run(make_pipeline, labels, monotonic):
    items = make_items(250)
    source = FakeWorkSource(items)
    store = make_pipeline.store

    make_pipeline(source, _ticking_service(monotonic)).start_run()
    marked_before = set(labels.markers)

    def tick_and_cancel(call: int) -> None:
        monotonic.advance(1)
        if call == 2:
            store.set(CANCEL_FLAG_KEY, "true")

    service = FakeService(on_call=tick_and_cancel)
    summary = make_pipeline(source, service).resume_run()

    assert summary.status == "cancelled"
    assert summary.processed == 40
    assert service.calls == 2
    assert CheckpointStore(store).load() is None
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []
    assert store.get(CANCEL_FLAG_KEY) is None
    third_batch = items[140:160]
    assert not any(item.id in labels.markers for item in third_batch)
    assert set(labels.markers) - marked_before == {item.id for item in items[100:140]}


def test_cancel_requested_while_suspended_clears_on_resume(make_pipeline, monotonic):
    source = FakeWorkSource(make_items(150))
    service = _ticking_service(monotonic)
    make_pipeline(source, service).start_run()
    calls = service.calls

    pipeline = make_pipeline(source, service)
    assert pipeline.cancel() is True
    assert CheckpointStore(make_pipeline.store).load() is None

    summary = pipeline.resume_run()
    assert summary.status == "idle"
    assert service.calls == calls


def test_missing_credential_aborts_and_clears_checkpoint(make_pipeline, labels, monotonic):
    source = FakeWorkSource(make_items(150))
    make_pipeline(source, _ticking_service(monotonic)).start_run()
    assert CheckpointStore(make_pipeline.store).load() is not None

    broken = FakeService(api_key=None)
    with pytest.raises(TriageError) as info:
        make_pipeline(source, broken).resume_run()

    assert info.value.kind is ErrorKind.MISSING_CREDENTIAL
    assert CheckpointStore(make_pipeline.store).load() is None
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []
    assert LOCK_INFO_KEY not in make_pipeline.store.data
    assert broken.calls == 0


def test_rejected_credential_mid_run_stops_everything(make_pipeline, labels):
    def reject_second(call: int) -> None:
        if call == 2:
            raise TriageError(ErrorKind.INVALID_CREDENTIAL, "API key invalid")

    items = make_items(60)
    with pytest.raises(TriageError):
        make_pipeline(FakeWorkSource(items), FakeService(on_call=reject_second)).start_run()

    assert set(labels.markers) == {item.id for item in items[:20]}
    assert CheckpointStore(make_pipeline.store).load() is None
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []


def test_transport_failure_marks_one_batch_as_errors(make_pipeline, labels):
    def drop_connection(call: int) -> None:
        if call == 1:
            raise requests.ConnectionError("connection reset")

    items = make_items(40)
    summary = make_pipeline(FakeWorkSource(items), FakeService(on_call=drop_connection)).start_run()

    assert summary.status == "complete"
    assert summary.errors == 20
    assert summary.ok == 20
    assert all(labels.markers[item.id] == [False] for item in items[:20])
    assert _all_marked_once(labels, items[20:])


def test_already_running_fails_fast(make_pipeline, wall_clock):
    make_pipeline.store.set(
        LOCK_INFO_KEY,
        '{"execution_id": "exec_other", "start_time": %f, "mode": "continue"}' % wall_clock(),
    )
    service = FakeService()

    with pytest.raises(TriageError) as info:
        make_pipeline(FakeWorkSource(make_items(5)), service).start_run()

    assert info.value.kind is ErrorKind.ALREADY_RUNNING
    assert info.value.recoverable
    assert service.calls == 0
    assert "exec_other" in make_pipeline.store.get(LOCK_INFO_KEY)


def test_stale_lock_is_taken_over(make_pipeline, wall_clock):
    make_pipeline.store.set(
        LOCK_INFO_KEY,
        '{"execution_id": "exec_dead", "start_time": %f, "mode": "start"}' % (wall_clock() - 3600),
    )
    summary = make_pipeline(FakeWorkSource(make_items(3)), FakeService()).start_run()
    assert summary.status == "complete"


def test_empty_mailbox_is_idle_immediately(make_pipeline):
    service = FakeService()
    summary = make_pipeline(FakeWorkSource([]), service).start_run()

    assert summary.status == "complete"
    assert summary.total_estimated == 0
    assert service.calls == 0
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []


def test_continuation_cap_stops_the_sweep(make_pipeline, monotonic):
    source = FakeWorkSource(make_items(250))
    service = _ticking_service(monotonic)
    cont = ContinuationConfig(max_continuations=1)

    assert make_pipeline(source, service, continuation=cont).start_run().status == "suspended"
    summary = make_pipeline(source, service, continuation=cont).resume_run()

    assert summary.status == "stopped"
    assert summary.processed_total == 200
    assert CheckpointStore(make_pipeline.store).load() is None
    assert make_pipeline.facility.pending(CONTINUATION_ENTRY_POINT) == []


def test_draft_mode_creates_replies_for_reply_labels(make_pipeline, labels):
    items = make_items(4)
    service = FakeService(label_for=lambda item_id: "support" if item_id.endswith("1") else "General")
    classifier = ClassifierConfig(processing_mode="draft", reply_labels=["support"])

    summary = make_pipeline(FakeWorkSource(items), service, classifier=classifier).start_run()

    assert summary.drafts == 1
    assert [d["item_id"] for d in labels.drafts] == ["msg-001"]
    assert labels.labels["msg-001"] == ["support"]
    assert _all_marked_once(labels, items)


def test_redacted_values_never_reach_the_model(make_pipeline):
    items = make_items(1)
    items[0] = WorkItem(
        id="msg-000", subject="Refund", body="Reach me at jane.doe@example.com or 555-123-4567."
    )
    service = FakeService()

    make_pipeline(FakeWorkSource(items), service).start_run()

    prompt = service.prompts[0]
    assert "jane.doe@example.com" not in prompt
    assert "555-123-4567" not in prompt
    assert "{{token1}}" in prompt


def test_status_and_unknown_entry_point(make_pipeline, monotonic):
    pipeline = make_pipeline(FakeWorkSource(make_items(150)), _ticking_service(monotonic))
    pipeline.start_run()

    status = pipeline.status()
    assert status["active"] is True
    assert status["processed"] == 100
    assert status["running"] is False
    assert status["pending_resumptions"] == 1

    with pytest.raises(KeyError):
        pipeline.dispatch("somethingElse")


def test_subject_ending_in_sensitive_url_is_redacted_not_fatal(make_pipeline, labels):
    items = [
        WorkItem(id="msg-url", subject="Reset via https://example.com/login", body="Click it soon."),
        *make_items(3),
    ]
    service = FakeService()

    summary = make_pipeline(FakeWorkSource(items), service).start_run()

    assert summary.status == "complete"
    assert _all_marked_once(labels, items)
    prompt = service.prompts[0]
    assert "https://example.com/login" not in prompt
    assert "Subject: Reset via {{token1}}" in prompt
    assert "Body: Click it soon." in prompt


def test_message_deleted_mid_resume_only_fails_that_message(make_pipeline, labels, monotonic):
    items = make_items(150)
    source = FakeWorkSource(items)
    service = _ticking_service(monotonic)
    assert make_pipeline(source, service).start_run().status == "suspended"

    labels.gone.add("msg-105")
    summary = make_pipeline(source, service).resume_run()

    assert summary.status == "complete"
    assert summary.processed == 50
    assert summary.errors == 1
    assert "msg-105" not in labels.markers
    assert _all_marked_once(labels, [item for item in items if item.id != "msg-105"])
    assert CheckpointStore(make_pipeline.store).load() is None


def test_only_batches_that_run_are_redacted(make_pipeline, monotonic, monkeypatch):
    items = [
        WorkItem(id=f"msg-{i:03d}", subject=f"Subject {i}", body=f"Write to user{i}@example.com please.")
        for i in range(250)
    ]
    cache = make_pipeline.cache
    written = []
    original_put = cache.put

    def recording_put(key, value, ttl_seconds):
        written.append(key)
        original_put(key, value, ttl_seconds)

    monkeypatch.setattr(cache, "put", recording_put)

    summary = make_pipeline(FakeWorkSource(items), _ticking_service(monotonic)).start_run()

    assert summary.status == "suspended"
    redacted = [key for key in written if key.startswith("redaction_")]
    assert redacted == [f"redaction_{item.id}" for item in items[:100]]
    assert not any(key.startswith("redaction_") for key in cache.entries)
