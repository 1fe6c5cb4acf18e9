import asyncio
import json
import logging
from typing import AsyncIterator

from .schemas import TERMINAL_EVENT_TYPES, StreamEvent


logger = logging.getLogger("uvicorn.error")

_CLOSED = object()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def pace(delay_ms: float) -> None:
    if delay_ms and delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000.0)


class EventStream:
    """Single-request outbound channel.

    Producers ``send`` events; one consumer drains them with ``events()``. The
    stream accepts at most one terminal event (done or error) and drops every
    write once the consumer has closed it.
    """

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.terminated = False

    async def send(self, event: StreamEvent) -> bool:
        if self.closed:
            logger.debug("Dropped %s event: stream closed", event.type)
            return False
        if self.terminated:
            logger.warning("Dropped %s event after terminal event", event.type)
            return False
        if event.type in TERMINAL_EVENT_TYPES:
            self.terminated = True
        await self.queue.put(event)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item
            if item.type in TERMINAL_EVENT_TYPES:
                return

    async def sse(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield sse_format(event.to_wire())

