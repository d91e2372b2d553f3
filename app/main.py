# file: app/main.py
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from app.config import Settings, get_settings
from app.errors import AuthError
from app.logging_config import setup_logging
from app.orchestrator import DraftOrchestrator
from app.schema import Contact, GenerationRequest
from app.services.auth import resolve_caller_identity
from app.services.contacts import ContactStore, get_contact_store
from app.streaming import SSE_HEADERS, SSE_MEDIA_TYPE
from app.tools.llm import complete_chat

setup_logging()
log = logging.getLogger("api")

app = FastAPI(title="Bulk Draft Generation", version="0.1.0")

@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    detail = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]
    log.info("api:invalid request path=%s errors=%d", request.url.path, len(detail))
    return JSONResponse(status_code=400, content={"error": "Invalid request", "detail": detail})

@app.exception_handler(AuthError)
async def auth_error(request: Request, exc: AuthError):
    return JSONResponse(status_code=401, content={"error": str(exc) or "Unauthorized"})

def require_caller(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    caller_id = resolve_caller_identity(authorization, settings)
    if caller_id is None:
        raise AuthError("Unauthorized")
    return caller_id

def get_completion_fn() -> Callable[..., Awaitable[str]]:
    return complete_chat

def resolve_contacts(body: GenerationRequest, caller_id: str, store: ContactStore) -> List[Contact]:
    """Inline contacts are used as given; contactIds must all belong to the caller's campaign."""
    if not body.contact_ids:
        return list(body.contacts or [])

    t0 = time.time()
    unique_ids = list(dict.fromkeys(body.contact_ids))
    found = {c.id: c for c in store.find_many(caller_id, unique_ids, body.campaign_id)}
    log.info("api:%s fetched contacts in %dms requested=%d unique=%d authorized=%d campaign=%s",
             body.operation_id, int((time.time() - t0) * 1000), len(body.contact_ids),
             len(unique_ids), len(found), body.campaign_id)

    missing = [i for i in unique_ids if i not in found]
    if missing:
        log.warning("api:%s unauthorized/missing contacts campaign=%s missing=%d sample=%s",
                    body.operation_id, body.campaign_id, len(missing), missing[:10])
        raise HTTPException(status_code=403,
                            detail="One or more contacts are not authorized for this campaign")
    return [found[i] for i in body.contact_ids]

@app.get("/health")
async def health():
    s = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "provider": {
            "base_url": s.openrouter_base,
            "api_key_configured": bool(s.openrouter_api_key),
            "models": s.drafting_models,
        },
        "drafts": {
            "default_concurrency": s.default_concurrency,
            "max_retries": s.max_retries,
            "heartbeat_seconds": s.heartbeat_seconds,
        },
    }

@app.post("/drafts/generate")
async def generate_drafts(
    body: GenerationRequest,
    request: Request,
    caller_id: str = Depends(require_caller),
    settings: Settings = Depends(get_settings),
    store: ContactStore = Depends(get_contact_store),
    complete: Callable[..., Awaitable[str]] = Depends(get_completion_fn),
):
    """Stream drafted emails for every contact as server-sent events."""
    contacts = resolve_contacts(body, caller_id, store)
    orchestrator = DraftOrchestrator.from_request(body, contacts, settings, complete=complete)
    return StreamingResponse(
        orchestrator.stream(request.is_disconnected),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
