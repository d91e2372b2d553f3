# file: agents/rotation.py
from __future__ import annotations
from typing import Iterable, List, Optional, Sequence

def select_model(models: Sequence[str], contact_index: int, retry_attempt: int) -> str:
    """Pick the model for one attempt. Each retry shifts one slot along the rotation."""
    if not models:
        raise ValueError("model rotation is empty")
    return models[(contact_index + retry_attempt) % len(models)]

def normalize_requested_models(
    requested: Optional[Iterable[str]],
    allowed: Sequence[str],
    default: Optional[str] = None,
) -> List[str]:
    """
    Build the rotation for one operation:
      • requested ids are de-duplicated (order kept) and filtered by the allow-list
      • nothing requested, or nothing survives -> the single default model
    """
    fallback = default or allowed[0]
    allow = set(allowed)
    deduped = list(dict.fromkeys(requested or []))
    kept = [m for m in deduped if m in allow]
    return kept or [fallback]
