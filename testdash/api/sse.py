from __future__ import annotations

import json
from typing import Any, AsyncGenerator, AsyncIterator, Dict

from starlette.responses import StreamingResponse


def format_sse_event(event: Dict[str, Any]) -> bytes:
    # Event name mirrors the envelope type
    payload = json.dumps(event, ensure_ascii=False)
    return f"event: {event['type']}\ndata: {payload}\n\n".encode("utf-8")


async def _encode(events: AsyncGenerator[Dict[str, Any], None]) -> AsyncIterator[bytes]:
    try:
        async for event in events:
            yield format_sse_event(event)
    finally:
        # Runs the source generator's cleanup when the client disconnects mid-stream
        await events.aclose()


def sse_response(events: AsyncGenerator[Dict[str, Any], None]) -> StreamingResponse:
    """Stream event envelopes to the client as server-sent events."""

    return StreamingResponse(
        _encode(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
