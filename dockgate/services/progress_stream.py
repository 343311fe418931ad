"""Server-sent events transport for batch update progress.

The batch runs in a background task that publishes into a queue; the HTTP
response drains the queue. Once the client is gone, publishing becomes a
no-op but the batch keeps running, so a container is never left half-swapped
because a browser tab was closed.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from dockgate.schemas.update import ProgressEvent
from dockgate.services.batch_updater import OutcomeTally

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"
DEFAULT_KEEPALIVE_SECONDS = 5.0

# Strong references to running batches; the event loop only keeps weak ones
_background_tasks: set[asyncio.Task] = set()


def format_event(event: ProgressEvent) -> str:
    return f"data: {event.to_json()}\n\n"


class ProgressStream:
    """Queue between a running batch and one SSE response."""

    def __init__(self, keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS) -> None:
        self.keepalive_seconds = keepalive_seconds
        self.closed = False
        self.finished = False
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()

    def publish(self, event: ProgressEvent) -> None:
        """Enqueue an event; does nothing once the client has disconnected."""
        if self.closed:
            return
        self._queue.put_nowait(format_event(event))

    def close(self) -> None:
        if not self.closed and not self.finished:
            logger.info("Client disconnected; batch update continues in background")
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def start(self, events: AsyncIterator[ProgressEvent]) -> asyncio.Task:
        """Run ``events`` to completion in the background."""
        task = asyncio.create_task(self._pump(events))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task

    async def _pump(self, events: AsyncIterator[ProgressEvent]) -> None:
        tally = OutcomeTally()
        try:
            async for event in events:
                tally.observe(event)
                self.publish(event)
        except Exception as e:
            logger.error(f"Batch update aborted: {e}", exc_info=True)
            self.publish(ProgressEvent(type="error", error="Batch update aborted unexpectedly"))
        finally:
            # The stream always ends with a complete event
            if not tally.completed:
                self.publish(tally.fallback_complete())
            self.finished = True
            if not self.closed:
                self._queue.put_nowait(None)

    async def frames(
        self, is_disconnected: Callable[[], Awaitable[bool]] | None = None
    ) -> AsyncIterator[str]:
        """Yield SSE frames until the batch ends or the client goes away.

        A keepalive comment is written every ``keepalive_seconds`` whether or
        not events are flowing.
        """
        loop = asyncio.get_running_loop()
        next_keepalive = loop.time() + self.keepalive_seconds
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break

                timeout = next_keepalive - loop.time()
                if timeout <= 0:
                    next_keepalive = loop.time() + self.keepalive_seconds
                    yield KEEPALIVE_FRAME
                    continue

                try:
                    frame = await asyncio.wait_for(self._queue.get(), timeout=timeout)
                except TimeoutError:
                    continue

                if frame is None:
                    break
                yield frame
        finally:
            self.close()
