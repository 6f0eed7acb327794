"""Server-sent events stream."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from api.dependencies import get_context
from backend.core.context import AppContext
from backend.core.events import Event, EventBus


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])

HEARTBEAT_SECONDS = 15.0


def format_sse(event: Event) -> str:
    data = {**event.payload, "emitted_at": event.emitted_at.isoformat()}
    return f"event: {event.name}\ndata: {json.dumps(data, default=str)}\n\n"


async def stream_events(bus: EventBus, request: Request, *, heartbeat: float = HEARTBEAT_SECONDS) -> AsyncIterator[str]:
    """Yield SSE frames until the client disconnects.

    A comment line is sent every `heartbeat` seconds without events so
    proxies keep the connection open.
    """

    with bus.subscribe() as subscription:
        yield "event: connected\ndata: {}\n\n"
        while not await request.is_disconnected():
            event = await subscription.get(timeout=heartbeat)
            if event is None:
                yield ": heartbeat\n\n"
                continue
            yield format_sse(event)
    logger.debug("SSE client disconnected")


@router.get("/events")
async def events(request: Request, ctx: AppContext = Depends(get_context)):
    """Stream backup, volume and mirror events."""

    return StreamingResponse(
        stream_events(ctx.events, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
