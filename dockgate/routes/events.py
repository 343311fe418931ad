"""Activity event stream."""

import asyncio
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from dockgate.services.event_bus import event_bus

router = APIRouter(prefix="/events", tags=["events"])

HEARTBEAT_SECONDS = 15


@router.get("/stream")
async def stream_events(request: Request) -> StreamingResponse:
    """Server-sent events stream of audit activity (container updates)."""

    async def event_generator() -> AsyncGenerator[str]:
        queue = await event_bus.subscribe()
        try:
            yield 'data: {"type":"connected"}\n\n'

            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                    yield f"data: {message}\n\n"
                except TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            await event_bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")
