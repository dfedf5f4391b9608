# globalchat/broadcast.py
from __future__ import annotations
import itertools
import json
import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


def encode_event(event: str, data: Any) -> str:
    """Encode one SSE frame."""
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


class Subscriber(Protocol):
    """A sink for encoded frames. ``send`` must not block."""

    def send(self, frame: str) -> bool: ...

    def close(self) -> None: ...


class BroadcastRegistry:
    """
    Set of live subscribers keyed by an integer handle.
    publish() works on a copy taken under the lock, so subscribe/unsubscribe
    may run while a broadcast is in flight.
    ``on_change`` is called with the new count after every subscribe and unsubscribe.
    """

    def __init__(self, on_change: Optional[Callable[[int], None]] = None):
        self._subs: Dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()
        self._on_change = on_change

    def _changed(self) -> int:
        n = self.count()
        if self._on_change is not None:
            self._on_change(n)
        return n

    def subscribe(self, sub: Subscriber) -> int:
        with self._lock:
            handle = next(self._ids)
            self._subs[handle] = sub
        logger.debug("Subscriber #%d added (%d online)", handle, self._changed())
        return handle

    def unsubscribe(self, handle: int) -> bool:
        """Returns False if the handle was already gone."""
        with self._lock:
            sub = self._subs.pop(handle, None)
        if sub is None:
            return False
        try:
            sub.close()
        except Exception as e:
            logger.debug("Closing subscriber #%d raised: %s", handle, e)
        logger.debug("Subscriber #%d removed (%d online)", handle, self._changed())
        return True

    def publish(self, event: str, payload: Any) -> int:
        """
        Push an event to every subscriber. Subscribers whose send fails are
        dropped. Returns the number of successful deliveries.
        """
        frame = encode_event(event, payload)
        with self._lock:
            targets = list(self._subs.items())

        delivered = 0
        dead: List[int] = []
        for handle, sub in targets:
            try:
                ok = sub.send(frame)
            except Exception as e:
                logger.debug("Delivery to subscriber #%d raised: %s", handle, e)
                ok = False
            if ok:
                delivered += 1
            else:
                dead.append(handle)

        for handle in dead:
            if self.unsubscribe(handle):
                logger.info("Dropped subscriber #%d after failed delivery", handle)
        return delivered

    def close_all(self) -> int:
        """Unsubscribe everyone; used on shutdown. Returns how many were closed."""
        with self._lock:
            handles = list(self._subs)
        return sum(1 for handle in handles if self.unsubscribe(handle))

    def count(self) -> int:
        with self._lock:
            return len(self._subs)

    def __contains__(self, handle: int) -> bool:
        with self._lock:
            return handle in self._subs
