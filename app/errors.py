# app/errors.py
from __future__ import annotations
from typing import Optional

class ProviderError(RuntimeError):
    """Failure of a chat completion call, normalized at the provider boundary."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status

class TransientProviderError(ProviderError):
    """Timeout, network, rate limit or 5xx. Worth retrying unchanged."""

class TerminalProviderError(ProviderError):
    """Anything else the provider rejects. Not retried."""

class ParseError(ValueError):
    code = "parse_error"

    def __init__(self, message: str = "Prompt parsing failed"):
        super().__init__(message)

class DraftCancelled(Exception):
    """The operation was cancelled by the caller or a disconnect."""

class AuthError(Exception): ...
