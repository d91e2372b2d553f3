# file: agents/writer.py
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from app.errors import DraftCancelled, ProviderError, TerminalProviderError, TransientProviderError
from app.schema import Contact, Identity
from app.tools.llm import complete_chat
from agents.parser import parse_draft_response
from agents.prompts import build_user_prompt, pick_system_prompt, prepare_contact
from agents.retry import BACKOFF, MAX_RETRIES, classify, timeout_ms_for
from agents.rotation import select_model

log = logging.getLogger("drafts")

CompleteFn = Callable[..., Awaitable[str]]
SleepFn = Callable[[float, asyncio.Event], Awaitable[None]]

async def interruptible_sleep(seconds: float, cancel: asyncio.Event) -> None:
    """Sleep for `seconds`, returning early if the operation is cancelled."""
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass

@dataclass
class DraftOutcome:
    contact: Contact
    draft_index: int
    model: str
    retry_count: int
    subject: Optional[str] = None
    message: Optional[str] = None
    error: Optional[ProviderError] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.subject is not None and not self.cancelled

class DraftWriter:
    """Drafts one contact at a time: rotate models, retry transient failures with backoff."""

    def __init__(
        self,
        models: List[str],
        identity: Identity,
        prompt: str,
        booking_for: Optional[str] = None,
        complete: CompleteFn = complete_chat,
        sleep: SleepFn = interruptible_sleep,
        max_retries: int = MAX_RETRIES,
        rng: Optional[random.Random] = None,
        operation_id: str = "",
    ):
        self.models = models
        self.identity = identity
        self.prompt = prompt
        self.booking_for = booking_for
        self.complete = complete
        self.sleep = sleep
        self.max_retries = max_retries
        self.rng = rng
        self.operation_id = operation_id

    async def draft(self, contact: Contact, index: int, cancel: asyncio.Event) -> DraftOutcome:
        draft_index = index + 1
        prepared = prepare_contact(contact)
        user_prompt = build_user_prompt(prepared, self.identity, self.prompt, self.booking_for)
        model = select_model(self.models, index, 0)
        retry_count = 0
        parsed = None

        async def backoff_sleep(seconds: float) -> None:
            await self.sleep(seconds, cancel)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=BACKOFF,
            retry=retry_if_exception_type(TransientProviderError),
            sleep=backoff_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if cancel.is_set():
                        raise DraftCancelled("Request cancelled.")
                    retry_count = attempt.retry_state.attempt_number - 1
                    model = select_model(self.models, index, retry_count)
                    parsed = await self._attempt(contact, model, user_prompt, retry_count, cancel)
        except DraftCancelled:
            return DraftOutcome(contact, draft_index, model, retry_count, cancelled=True)
        except ProviderError as e:
            if not isinstance(e, TerminalProviderError):
                log.warning("drafts:%s contact=%s failed after retries error=%s",
                            self.operation_id, contact.id, e)
            return DraftOutcome(contact, draft_index, model, retry_count, error=e)

        if cancel.is_set():
            # finished after cancellation; result is discarded
            return DraftOutcome(contact, draft_index, model, retry_count, cancelled=True)
        return DraftOutcome(contact, draft_index, model, retry_count,
                            subject=parsed["subject"], message=parsed["message"])

    async def _attempt(self, contact: Contact, model: str, user_prompt: str,
                       retry_count: int, cancel: asyncio.Event) -> dict:
        prompt_name, system_prompt = pick_system_prompt(contact, self.rng)
        try:
            raw = await self.complete(
                model, system_prompt, user_prompt,
                timeout_ms=timeout_ms_for(model), cancel=cancel,
            )
            return parse_draft_response(raw, self.identity)
        except DraftCancelled:
            raise
        except Exception as e:
            err = classify(e)
            log.info("drafts:%s attempt failed contact=%s model=%s retry=%d code=%s prompt=%s: %s",
                     self.operation_id, contact.id, model, retry_count, err.code, prompt_name, err)
            if err is e:
                raise
            raise err from e
