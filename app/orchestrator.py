# file: app/orchestrator.py
import asyncio
import contextlib
import logging
import time
from typing import AsyncGenerator, Awaitable, Callable, List, Optional, Union

from app.config import DEFAULT_CONCURRENCY, MAX_CONCURRENCY, Settings
from app.errors import TerminalProviderError
from app.schema import (
    Contact, DoneEvent, DraftEvent, ErrorEvent, GenerationRequest, ProgressEvent, StreamEvent,
)
from app.streaming import HEARTBEAT_FRAME, sse_frame
from app.tools.llm import complete_chat
from agents.rotation import normalize_requested_models
from agents.writer import DraftOutcome, DraftWriter, SleepFn, interruptible_sleep

log = logging.getLogger("drafts")

DISCONNECT_POLL_SECONDS = 0.5

class Heartbeat:
    """Keep-alive marker on the event channel; carries nothing for consumers."""

HEARTBEAT = Heartbeat()
_CLOSED = object()

def effective_concurrency(requested: Optional[int], env_default: Optional[int], contact_count: int) -> int:
    base = requested if requested is not None else env_default
    if base is None:
        base = DEFAULT_CONCURRENCY
    return max(1, min(max(1, min(MAX_CONCURRENCY, base)), contact_count))

class OperationState:
    """
    Cursor and counters shared by every worker of one operation.
    Mutated only from the event loop with no await between read and write,
    so each claim/record is atomic with respect to the other workers.
    """

    def __init__(self, total: int):
        self.total = total
        self.cursor = 0
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self.started_at = time.monotonic()

    def claim(self) -> Optional[int]:
        if self.cursor >= self.total:
            return None
        index = self.cursor
        self.cursor += 1
        return index

    def record(self, succeeded: bool) -> None:
        if succeeded:
            self.succeeded += 1
        else:
            self.failed += 1
        self.completed += 1

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

class EventEmitter:
    """Append-only event channel. Nothing is queued after close(); done is sent at most once."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def emit(self, event: Union[StreamEvent, Heartbeat]) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait(event)
        return True

    def heartbeat(self) -> None:
        self.emit(HEARTBEAT)

    def finish(self, done: DoneEvent) -> None:
        if self.closed:
            return
        self.emit(done)
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_CLOSED)

class DraftOrchestrator:
    """Fans one operation's contacts out over a fixed pool of workers and streams the results."""

    def __init__(
        self,
        operation_id: str,
        contacts: List[Contact],
        writer: DraftWriter,
        concurrency: int,
        heartbeat_seconds: float = 15.0,
        campaign_id: Optional[int] = None,
        max_duration_seconds: Optional[float] = None,
    ):
        self.operation_id = operation_id
        self.contacts = contacts
        self.writer = writer
        self.worker_count = min(concurrency, len(contacts))
        self.heartbeat_seconds = heartbeat_seconds
        self.campaign_id = campaign_id
        self.max_duration_seconds = max_duration_seconds
        self.state = OperationState(len(contacts))
        self.emitter = EventEmitter()
        self._cancel = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._first_draft_logged = False

    @classmethod
    def from_request(
        cls,
        request: GenerationRequest,
        contacts: List[Contact],
        settings: Settings,
        complete: Callable[..., Awaitable[str]] = complete_chat,
        sleep: SleepFn = interruptible_sleep,
    ) -> "DraftOrchestrator":
        models = normalize_requested_models(request.models, settings.drafting_models, settings.default_model)
        writer = DraftWriter(
            models, request.identity, request.prompt, request.booking_for,
            complete=complete, sleep=sleep, max_retries=settings.max_retries,
            operation_id=request.operation_id,
        )
        workers = effective_concurrency(request.concurrency, settings.default_concurrency, len(contacts))
        return cls(request.operation_id, contacts, writer, workers,
                   heartbeat_seconds=settings.heartbeat_seconds, campaign_id=request.campaign_id,
                   max_duration_seconds=settings.max_duration_seconds)

    # ------------ cancellation ------------
    def cancel(self) -> None:
        if not self._cancel.is_set():
            log.info("drafts:%s cancelled completed=%d/%d", self.operation_id,
                     self.state.completed, self.state.total)
        self._cancel.set()

    def _expire(self) -> None:
        log.warning("drafts:%s wall-clock budget of %ss exhausted", self.operation_id, self.max_duration_seconds)
        self.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------ worker pool ------------
    async def run(self) -> None:
        log.info("drafts:%s start campaign=%s contacts=%d workers=%d models=%s",
                 self.operation_id, self.campaign_id, len(self.contacts),
                 self.worker_count, self.writer.models)
        heartbeat = asyncio.create_task(self._heartbeat())
        deadline = None
        if self.max_duration_seconds:
            deadline = asyncio.get_running_loop().call_later(self.max_duration_seconds, self._expire)
        try:
            await asyncio.gather(*(self._worker() for _ in range(self.worker_count)))
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            if deadline is not None:
                deadline.cancel()
            done = DoneEvent(
                operation_id=self.operation_id,
                total=self.state.total,
                succeeded=self.state.succeeded,
                failed=self.state.failed,
                duration_ms=self.state.duration_ms,
            )
            self.emitter.finish(done)
            log.info("drafts:%s done succeeded=%d failed=%d duration_ms=%d cancelled=%s",
                     self.operation_id, done.succeeded, done.failed, done.duration_ms, self.cancelled)

    async def _worker(self) -> None:
        while not self._cancel.is_set():
            index = self.state.claim()
            if index is None:
                return
            contact = self.contacts[index]
            try:
                outcome = await self.writer.draft(contact, index, self._cancel)
            except Exception as e:
                log.exception("drafts:%s contact=%s drafting crashed", self.operation_id, contact.id)
                outcome = DraftOutcome(contact, index + 1, self.writer.models[0], 0,
                                       error=TerminalProviderError(str(e) or "Internal error", code="internal"))
            self._record(outcome)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            self.emitter.heartbeat()

    def _record(self, outcome: DraftOutcome) -> None:
        if outcome.cancelled or self._cancel.is_set():
            return
        contact_id = outcome.contact.id
        if outcome.succeeded:
            self.state.record(True)
            self.emitter.emit(DraftEvent(
                operation_id=self.operation_id,
                contact_id=contact_id,
                draft_index=outcome.draft_index,
                model=outcome.model,
                subject=outcome.subject,
                message=outcome.message,
            ))
            if not self._first_draft_logged:
                self._first_draft_logged = True
                log.info("drafts:%s first draft emitted after %dms campaign=%s",
                         self.operation_id, self.state.duration_ms, self.campaign_id)
        else:
            self.state.record(False)
            err = outcome.error
            self.emitter.emit(ErrorEvent(
                operation_id=self.operation_id,
                contact_id=contact_id,
                draft_index=outcome.draft_index,
                model=outcome.model,
                code=(err.code if err is not None and err.code else "unknown"),
                message=(str(err) if err is not None and str(err) else "Unknown error"),
                retry_count=outcome.retry_count,
            ))
        self.emitter.emit(ProgressEvent(
            operation_id=self.operation_id,
            completed=self.state.completed,
            total=self.state.total,
            succeeded=self.state.succeeded,
            failed=self.state.failed,
        ))

    # ------------ streaming ------------
    async def events(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncGenerator[Union[StreamEvent, Heartbeat], None]:
        """
        Run the operation and yield its events as they are produced.
        A disconnect (or a consumer that stops iterating) cancels the operation;
        the final done event is still produced before the channel closes.
        """
        if is_disconnected is not None and await is_disconnected():
            self.cancel()
        self._runner = asyncio.create_task(self.run())
        try:
            while True:
                if is_disconnected is not None and not self.cancelled and await is_disconnected():
                    self.cancel()
                try:
                    item = await asyncio.wait_for(self.emitter.queue.get(), timeout=DISCONNECT_POLL_SECONDS)
                except asyncio.TimeoutError:
                    continue
                if item is _CLOSED:
                    break
                yield item
        finally:
            if not self._runner.done():
                self.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner

    async def stream(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncGenerator[bytes, None]:
        """Serialized SSE frames for the transport."""
        async for item in self.events(is_disconnected):
            yield HEARTBEAT_FRAME if isinstance(item, Heartbeat) else sse_frame(item)
