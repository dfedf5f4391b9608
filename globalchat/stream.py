"""SSE subscriber and the per-connection stream loop.

Each stream owns a bounded queue. The broadcast side only ever calls
``send`` (a non-blocking put); the HTTP response drains the queue. A heartbeat
comment goes out every ``heartbeat_interval`` seconds on its own clock;
message traffic does not push it back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Optional

from globalchat.broadcast import HEARTBEAT_FRAME
from globalchat.config import HEARTBEAT_INTERVAL_S, SUBSCRIBER_QUEUE_SIZE

if TYPE_CHECKING:
    from globalchat.service import ChatService

logger = logging.getLogger(__name__)


class QueueSubscriber:
    """Subscriber backed by an ``asyncio.Queue``. A full queue counts as a failed write."""

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Drop whatever is pending and wake the reader with the end marker.
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.queue.put_nowait(None)


async def event_stream(
    sub: QueueSubscriber,
    *,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_S,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames until the subscriber is closed or the client goes away."""
    loop = asyncio.get_running_loop()
    next_beat = loop.time() + heartbeat_interval
    while True:
        try:
            frame = await asyncio.wait_for(sub.queue.get(), timeout=max(0.0, next_beat - loop.time()))
        except asyncio.TimeoutError:
            next_beat = loop.time() + heartbeat_interval
            if is_disconnected is not None and await is_disconnected():
                logger.debug("Client went away; ending stream")
                return
            yield HEARTBEAT_FRAME
            continue
        if frame is None:
            return
        yield frame


async def subscriber_stream(
    service: "ChatService",
    *,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_S,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    queue_size: int = SUBSCRIBER_QUEUE_SIZE,
) -> AsyncIterator[str]:
    """
    Body of one /api/stream response: subscribe on first iteration, stream,
    and unsubscribe however the loop ends (close, disconnect, cancellation).
    """
    sub = QueueSubscriber(queue_size)
    handle = service.open_stream(sub)
    try:
        async for frame in event_stream(
            sub, heartbeat_interval=heartbeat_interval, is_disconnected=is_disconnected
        ):
            yield frame
    finally:
        service.close_stream(handle)
