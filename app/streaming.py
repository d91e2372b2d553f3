# file: app/streaming.py
import json
from app.schema import StreamEvent

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}
SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"

HEARTBEAT_FRAME = b": heartbeat\n\n"

def sse_frame(event: StreamEvent) -> bytes:
    """One named SSE frame: `event: <name>` + a single JSON `data:` line."""
    data = json.dumps(event.payload(), ensure_ascii=False)
    return f"event: {event.event}\ndata: {data}\n\n".encode("utf-8")
