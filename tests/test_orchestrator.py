import asyncio
import pytest
from unittest.mock import AsyncMock, Mock
from app.errors import DraftCancelled, ProviderError
from app.orchestrator import DraftOrchestrator, EventEmitter, Heartbeat, effective_concurrency
from app.schema import DoneEvent, DraftEvent, ErrorEvent, GenerationRequest, ProgressEvent
from app.tools import llm
from conftest import draft_json, parse_sse

async def _no_sleep(seconds, cancel):
    return None

def _request(contacts, **kw):
    body = {
        "operationId": "op-1",
        "campaignId": 9,
        "prompt": "Ask about April",
        "identity": {"name": "Jane Doe", "bandName": "The Lanterns"},
        "contacts": [c.model_dump(by_alias=True) for c in contacts],
    }
    body.update(kw)
    return GenerationRequest.model_validate(body)

def _orchestrator(settings, contacts, complete, **kw):
    return DraftOrchestrator.from_request(_request(contacts, **kw), contacts, settings,
                                          complete=complete, sleep=_no_sleep)

async def _collect(orchestrator, **kw):
    return [e async for e in orchestrator.events(**kw)]

def _assert_counter_invariant(events, total):
    last = -1
    for e in events:
        if isinstance(e, ProgressEvent):
            assert e.completed == e.succeeded + e.failed
            assert e.completed <= total
            assert e.completed > last
            last = e.completed

def test_effective_concurrency():
    assert effective_concurrency(100, None, 3) == 3
    assert effective_concurrency(None, None, 50) == 5
    assert effective_concurrency(None, 8, 50) == 8
    assert effective_concurrency(None, 64, 50) == 20
    assert effective_concurrency(4, 8, 50) == 4
    assert effective_concurrency(0, None, 10) == 1

@pytest.mark.asyncio
async def test_all_contacts_succeed(settings, make_contacts):
    """3 contacts, one model, every call succeeds"""
    calls = []

    async def complete(model, system, user, timeout_ms, cancel):
        calls.append(model)
        return draft_json()

    contacts = make_contacts(3)
    orch = _orchestrator(settings, contacts, complete, models=["m1"])
    events = await _collect(orch)

    drafts = [e for e in events if isinstance(e, DraftEvent)]
    progress = [e for e in events if isinstance(e, ProgressEvent)]
    assert len(drafts) == 3
    assert sorted(d.contact_id for d in drafts) == [1, 2, 3]
    assert {d.model for d in drafts} == {"m1"}
    assert sorted(d.draft_index for d in drafts) == [1, 2, 3]
    assert (progress[-1].completed, progress[-1].succeeded, progress[-1].failed) == (3, 3, 0)
    assert isinstance(events[-1], DoneEvent)
    assert (events[-1].total, events[-1].succeeded, events[-1].failed) == (3, 3, 0)
    assert sum(isinstance(e, DoneEvent) for e in events) == 1
    assert not any(isinstance(e, ErrorEvent) for e in events)
    assert calls == ["m1"] * 3
    _assert_counter_invariant(events, 3)

@pytest.mark.asyncio
async def test_failures_are_isolated_per_contact(settings, make_contacts):
    """One contact is rejected; the others still draft; exactly one terminal event each"""
    async def complete(model, system, user, timeout_ms, cancel):
        if "booker2@" in user:
            raise ProviderError("content policy", status=400)
        return draft_json()

    contacts = make_contacts(4)
    orch = _orchestrator(settings, contacts, complete, concurrency=2)
    events = await _collect(orch)

    errors = [e for e in events if isinstance(e, ErrorEvent)]
    drafts = [e for e in events if isinstance(e, DraftEvent)]
    assert [e.contact_id for e in errors] == [2]
    assert errors[0].code == "http_400" and errors[0].retry_count == 0
    assert errors[0].message == "content policy"
    assert sorted(d.contact_id for d in drafts) == [1, 3, 4]
    terminal_ids = [e.contact_id for e in errors + drafts]
    assert len(terminal_ids) == len(set(terminal_ids)) == 4
    done = events[-1]
    assert (done.succeeded, done.failed) == (3, 1)
    _assert_counter_invariant(events, 4)

@pytest.mark.asyncio
async def test_provider_http_rejection_streams_status_code(settings, make_contacts):
    """A 400 from the provider boundary streams code http_400 and is not retried"""
    resp = Mock(status=400)
    resp.text = AsyncMock(return_value='{"error": {"message": "content policy"}}')
    calls = []

    async def complete(model, system, user, timeout_ms, cancel):
        calls.append(model)
        await llm._raise_for_status(resp)

    contacts = make_contacts(1)
    events = await _collect(_orchestrator(settings, contacts, complete))

    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert len(errors) == 1 and len(calls) == 1
    assert errors[0].code == "http_400" and errors[0].retry_count == 0
    assert errors[0].message == "content policy"
    assert events[-1].failed == 1

@pytest.mark.asyncio
async def test_pool_never_exceeds_concurrency(settings, make_contacts):
    in_flight, peak = 0, 0

    async def complete(model, system, user, timeout_ms, cancel):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return draft_json()

    orch = _orchestrator(settings, make_contacts(10), complete, concurrency=3)
    assert orch.worker_count == 3
    events = await _collect(orch)

    assert peak == 3
    assert events[-1].succeeded == 10

@pytest.mark.asyncio
async def test_cancellation_mid_flight(settings, make_contacts):
    """5 contacts, 2 done, then cancel: no more draft/error, done still sent"""
    calls = 0

    async def complete(model, system, user, timeout_ms, cancel):
        nonlocal calls
        calls += 1
        if calls <= 2:
            return draft_json()
        await cancel.wait()
        raise DraftCancelled("Request cancelled.")

    orch = _orchestrator(settings, make_contacts(5), complete, concurrency=2)
    events = []
    async for event in orch.events():
        events.append(event)
        if isinstance(event, ProgressEvent) and event.completed == 2:
            orch.cancel()

    progress_index = next(i for i, e in enumerate(events)
                          if isinstance(e, ProgressEvent) and e.completed == 2)
    after = events[progress_index + 1:]
    assert not any(isinstance(e, (DraftEvent, ErrorEvent, ProgressEvent)) for e in after)
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.total == 5
    assert done.succeeded + done.failed <= 2

@pytest.mark.asyncio
async def test_disconnected_before_start(settings, make_contacts):
    async def complete(*args, **kwargs):
        raise AssertionError("no call expected")

    async def gone():
        return True

    orch = _orchestrator(settings, make_contacts(3), complete)
    events = await _collect(orch, is_disconnected=gone)

    assert len(events) == 1 and isinstance(events[0], DoneEvent)
    assert (events[0].succeeded, events[0].failed) == (0, 0)

@pytest.mark.asyncio
async def test_disconnect_during_run_cancels(settings, make_contacts):
    disconnected = False

    async def complete(model, system, user, timeout_ms, cancel):
        nonlocal disconnected
        disconnected = True
        await cancel.wait()
        raise DraftCancelled("Request cancelled.")

    async def is_disconnected():
        return disconnected

    orch = _orchestrator(settings, make_contacts(2), complete)
    events = await asyncio.wait_for(_collect(orch, is_disconnected=is_disconnected), timeout=5)

    assert orch.cancelled
    assert [type(e) for e in events] == [DoneEvent]

@pytest.mark.asyncio
async def test_wall_clock_budget_cancels(settings, make_contacts):
    async def complete(model, system, user, timeout_ms, cancel):
        await cancel.wait()
        raise DraftCancelled("Request cancelled.")

    settings.max_duration_seconds = 0.05
    orch = _orchestrator(settings, make_contacts(2), complete)
    events = await asyncio.wait_for(_collect(orch), timeout=5)

    assert orch.cancelled
    assert isinstance(events[-1], DoneEvent)

@pytest.mark.asyncio
async def test_heartbeats_and_serialization(settings, make_contacts):
    async def complete(model, system, user, timeout_ms, cancel):
        await asyncio.sleep(0.05)
        return draft_json()

    settings.heartbeat_seconds = 0.01
    orch = _orchestrator(settings, make_contacts(1), complete)
    body = b"".join([chunk async for chunk in orch.stream()]).decode()

    frames, heartbeats = parse_sse(body)
    assert heartbeats >= 1
    assert [name for name, _ in frames] == ["draft", "progress", "done"]
    draft = frames[0][1]
    assert draft == {
        "operationId": "op-1", "contactId": 1, "draftIndex": 1,
        "model": "m1", "subject": "Hi there", "message": "Line1\nLine2",
    }
    assert frames[1][1] == {"operationId": "op-1", "completed": 1, "total": 1, "succeeded": 1, "failed": 0}
    assert set(frames[2][1]) == {"operationId", "total", "succeeded", "failed", "durationMs"}

@pytest.mark.asyncio
async def test_emitter_drops_writes_after_close():
    emitter = EventEmitter()
    done = DoneEvent(operation_id="op", total=0, succeeded=0, failed=0, duration_ms=0)
    emitter.finish(done)
    emitter.finish(done)
    assert emitter.emit(done) is False
    emitter.heartbeat()
    # done + close marker only
    assert emitter.queue.qsize() == 2
    assert isinstance(emitter.queue.get_nowait(), DoneEvent)
    assert not isinstance(emitter.queue.get_nowait(), (DoneEvent, Heartbeat))

@pytest.mark.asyncio
async def test_consumer_abort_waits_for_runner(settings, make_contacts):
    """Closing the stream early cancels the operation and lets the runner finish"""
    async def complete(model, system, user, timeout_ms, cancel):
        if "booker1@" in user:
            return draft_json()
        await cancel.wait()
        raise DraftCancelled("Request cancelled.")

    orch = _orchestrator(settings, make_contacts(2), complete, concurrency=2)
    stream = orch.events()
    first = await asyncio.wait_for(stream.__anext__(), timeout=5)
    await asyncio.wait_for(stream.aclose(), timeout=5)

    assert isinstance(first, DraftEvent)
    assert orch.cancelled
    assert orch._runner.done() and orch._runner.exception() is None
