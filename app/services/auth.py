from __future__ import annotations
from typing import Optional
from app.config import Settings

ANONYMOUS_CALLER = "anonymous"

def resolve_caller_identity(authorization: Optional[str], settings: Settings) -> Optional[str]:
    """Map an `Authorization: Bearer <key>` header to a caller id, or None when unauthenticated."""
    if not settings.require_auth:
        return ANONYMOUS_CALLER
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return settings.api_keys.get(token.strip())
