# file: agents/__init__.py
from .rotation import select_model, normalize_requested_models
from .parser import parse_draft_response
from .retry import BACKOFF, classify, is_transient_failure, to_error_code
from .writer import DraftWriter, DraftOutcome

__all__ = [
    "select_model", "normalize_requested_models", "parse_draft_response",
    "BACKOFF", "classify", "is_transient_failure", "to_error_code",
    "DraftWriter", "DraftOutcome",
]
