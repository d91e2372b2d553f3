# app/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field

DEFAULT_DRAFTING_MODELS = (
    "meta-llama/llama-3.3-70b-instruct",
    "openai/gpt-4o-mini",
    "google/gemini-2.0-flash-001",
    "mistralai/mistral-small-3.1-24b-instruct",
    "qwen/qwen3-235b-a22b",
)

DEFAULT_CONCURRENCY = 5
MAX_CONCURRENCY = 20

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")

def _as_int(v: str | None, default: int) -> int:
    try:
        return int(v) if v not in (None, "") else default
    except ValueError:
        return default

def _as_float(v: str | None, default: float) -> float:
    try:
        return float(v) if v not in (None, "") else default
    except ValueError:
        return default

def _as_list(v: str | None, default: tuple[str, ...] = ()) -> list[str]:
    if not v:
        return list(default)
    items = [x.strip() for x in v.split(",")]
    return [x for x in items if x] or list(default)

def _parse_api_keys(v: str | None) -> dict[str, str]:
    # "key1:caller1,key2:caller2"
    keys: dict[str, str] = {}
    for pair in _as_list(v):
        key, _, caller = pair.partition(":")
        if key.strip() and caller.strip():
            keys[key.strip()] = caller.strip()
    return keys

@dataclass
class Settings:
    # Provider (OpenAI-compatible chat completions)
    openrouter_base: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    openrouter_api_key: str | None = os.getenv("OPENROUTER_API_KEY") or None
    openrouter_temperature: float = _as_float(os.getenv("OPENROUTER_TEMPERATURE"), 0.8)

    # Ordered allow-list; the first entry is the fallback model
    drafting_models: list[str] = field(
        default_factory=lambda: _as_list(os.getenv("DRAFTING_MODELS"), DEFAULT_DRAFTING_MODELS)
    )

    # Bulk generation
    # raw env value, kept as text so a non-numeric value falls back to DEFAULT_CONCURRENCY
    drafts_concurrency_env: str | None = os.getenv("DRAFTS_GENERATE_CONCURRENCY") or None
    max_retries: int = _as_int(os.getenv("DRAFTS_MAX_RETRIES"), 5)
    heartbeat_seconds: float = _as_float(os.getenv("DRAFTS_HEARTBEAT_SECONDS"), 15.0)
    # hosting platforms cut the handler at 120s; leave room for the done frame. 0 disables.
    max_duration_seconds: float = _as_float(os.getenv("DRAFTS_MAX_DURATION_SECONDS"), 115.0)

    # Auth: "key:caller_id" pairs
    api_keys: dict[str, str] = field(default_factory=lambda: _parse_api_keys(os.getenv("API_KEYS")))
    require_auth: bool = _as_bool(os.getenv("REQUIRE_AUTH"), True)

    @property
    def default_model(self) -> str:
        return self.drafting_models[0]

    @property
    def default_concurrency(self) -> int:
        return _as_int(self.drafts_concurrency_env, DEFAULT_CONCURRENCY)

_settings: Settings | None = None

def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
