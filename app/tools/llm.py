# app/tools/llm.py
from __future__ import annotations
import re, json, time, asyncio, logging, contextlib
from typing import Any, Optional
import aiohttp
from app.config import get_settings
from app.errors import DraftCancelled, TerminalProviderError, TransientProviderError

log = logging.getLogger("llm")

# Strip <think> blocks from reasoning models
_THINK_BLOCK = re.compile(r"<\s*think\s*>.*?<\s*/\s*think\s*>", re.I | re.S)

def _clean(t: str) -> str:
    return _THINK_BLOCK.sub("", t or "").strip()

def _temperature() -> float:
    t = get_settings().openrouter_temperature
    return max(0.0, min(2.0, t))

def _delta_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text") if isinstance(part.get("text"), str) else part.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""

def _sse_data(raw_line: bytes) -> Optional[str]:
    line = raw_line.decode("utf-8", errors="replace").strip()
    if not line.startswith("data:"):
        return None
    return line[5:].strip() or None

async def _raise_for_status(resp: aiohttp.ClientResponse) -> None:
    if resp.status < 400:
        return
    raw = await resp.text()
    try:
        body = json.loads(raw) if raw else None
    except json.JSONDecodeError:
        body = None
    msg = None
    if isinstance(body, dict):
        err = body.get("error")
        msg = (err.get("message") if isinstance(err, dict) else None) or body.get("message")
    msg = msg or (raw[:500] if raw else None) or "Chat completion request failed"
    if resp.status == 429:
        raise TransientProviderError(msg, code="rate_limited", status=429)
    if resp.status >= 500:
        raise TransientProviderError(msg, code="upstream", status=resp.status)
    raise TerminalProviderError(msg, code=f"http_{resp.status}", status=resp.status)

async def _stream_completion(model: str, system: str, user: str, timeout_ms: int) -> str:
    s = get_settings()
    if not s.openrouter_api_key:
        raise TerminalProviderError("OPENROUTER_API_KEY environment variable is not set",
                                    code="missing_api_key")
    payload = {
        "model": model,
        "stream": True,
        "temperature": _temperature(),
        "top_p": 0.95,
        "max_tokens": 1200,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
    }
    headers = {"Authorization": f"Bearer {s.openrouter_api_key}", "Content-Type": "application/json"}

    text = ""
    t0 = time.time()
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000)) as session:
            async with session.post(f"{s.openrouter_base}/chat/completions",
                                    json=payload, headers=headers) as resp:
                await _raise_for_status(resp)
                async for raw_line in resp.content:
                    data = _sse_data(raw_line)
                    if data is None:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    choices = chunk.get("choices") or [{}]
                    text += _delta_text((choices[0].get("delta") or {}).get("content"))
    except asyncio.TimeoutError as e:
        raise TransientProviderError(f"{model} request timed out", code="timeout") from e
    except aiohttp.ClientError as e:
        raise TransientProviderError(str(e) or "Network error", code="network") from e

    text = _clean(text)
    if not text:
        raise TerminalProviderError("Empty response from chat completion stream", code="empty_response")
    log.info("llm:complete model=%s chars=%d latency=%.2fs", model, len(text), time.time() - t0)
    return text

async def complete_chat(
    model: str,
    system: str,
    user: str,
    timeout_ms: int,
    cancel: Optional[asyncio.Event] = None,
) -> str:
    """
    One chat completion. Fails (never hangs) past timeout_ms, and aborts the
    in-flight request as soon as `cancel` is set, raising DraftCancelled.
    """
    if cancel is None:
        return await _stream_completion(model, system, user, timeout_ms)
    if cancel.is_set():
        raise DraftCancelled("Request cancelled.")

    call = asyncio.ensure_future(_stream_completion(model, system, user, timeout_ms))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise
    finally:
        waiter.cancel()
    if call.done():
        return call.result()

    call.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await call
    raise DraftCancelled("Request cancelled.")
