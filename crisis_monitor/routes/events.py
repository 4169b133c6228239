"""
events.py — Server-Sent Events stream of newly ingested crises.

Route:
  GET /events  — text/event-stream, one ConnectionSession per request

HOW THE DATA FLOWS
──────────────────
1. A viewer loads GET /crises once, then opens GET /events.
2. change_feed.subscribe() starts the session's poll + heartbeat tasks.
3. event_stream() drains the session's frame queue into the response.
4. When the client disconnects, Starlette stops iterating the body; the
   generator's `finally` closes the session and both tasks are cancelled.

TESTING
───────
  curl -N http://localhost:8000/events
"""

import logging
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from crisis_monitor.services.change_feed import ConnectionSession, change_feed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Stop nginx-style proxies from buffering the stream
    "X-Accel-Buffering": "no",
}


async def event_stream(session: ConnectionSession) -> AsyncIterator[str]:
    """Relay a session's frames; always releases the session on exit."""
    try:
        async for frame in session.frames():
            yield frame
    finally:
        session.close()


async def _release(session: ConnectionSession) -> None:
    # Async so Starlette runs it on the event loop, not in a worker thread
    session.close()


@router.get("/events")
async def stream_events():
    """Push `update` batches, `ping`s and `:` heartbeats until the client leaves."""
    session = change_feed.subscribe()
    return StreamingResponse(
        event_stream(session),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # Covers a client that leaves before the body is ever iterated
        background=BackgroundTask(_release, session),
    )
