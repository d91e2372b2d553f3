# file: agents/retry.py
from __future__ import annotations
import asyncio

from tenacity import wait_exponential

from app.errors import (
    ParseError, ProviderError, TerminalProviderError, TransientProviderError,
)

MAX_RETRIES = 5
FAST_TIMEOUT_MS = 45_000
SLOW_TIMEOUT_MS = 110_000

SLOW_MODEL_MARKERS = ("gpt", "deepseek", "qwen", "claude", "235b", "70b", "gemini", "pro")
TRANSIENT_CODES = {"timeout", "network", "rate_limited"}
TRANSIENT_MESSAGE_HINTS = ("timeout", "timed out", "network", "fetch failed", "429", "rate limit")

# 1s, 2s, 4s, 8s, 16s between attempts
BACKOFF = wait_exponential(multiplier=1)

def timeout_ms_for(model: str) -> int:
    return SLOW_TIMEOUT_MS if any(m in model for m in SLOW_MODEL_MARKERS) else FAST_TIMEOUT_MS

def _status_of(err: BaseException):
    status = getattr(err, "status", None)
    return status if isinstance(status, int) and not isinstance(status, bool) else None

def to_error_code(err: BaseException) -> str:
    code = getattr(err, "code", None)
    if isinstance(code, str) and code:
        return code
    status = _status_of(err)
    if status is not None:
        return f"http_{status}"
    if isinstance(err, (asyncio.TimeoutError, TimeoutError, asyncio.CancelledError)):
        return "timeout"
    return "unknown"

def is_transient_failure(err: BaseException) -> bool:
    if isinstance(err, ParseError):
        # provider nondeterminism; worth another attempt
        return True
    if getattr(err, "code", None) in TRANSIENT_CODES:
        return True
    status = _status_of(err)
    if status is not None:
        return status == 429 or status >= 500
    if isinstance(err, (asyncio.TimeoutError, TimeoutError)):
        return True
    message = str(err).lower()
    return any(hint in message for hint in TRANSIENT_MESSAGE_HINTS)

def classify(err: BaseException) -> ProviderError:
    """Normalize any failure from one attempt into Transient/TerminalProviderError."""
    if isinstance(err, (TransientProviderError, TerminalProviderError)):
        if not err.code:
            err.code = to_error_code(err)
        return err
    code = to_error_code(err)
    message = str(err) or "Unknown error"
    cls = TransientProviderError if is_transient_failure(err) else TerminalProviderError
    return cls(message, code=code, status=_status_of(err))
