"""Chat operations: register, post, stream and stats.

``ChatService`` owns the store, the rate limiter and the broadcast registry
and is the only place they are combined. Every method is synchronous and is
called from the event loop thread, so a post's append and publish happen
back to back with no other request in between.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from globalchat.broadcast import BroadcastRegistry, Subscriber, encode_event
from globalchat.config import MAX_MESSAGES, SNAPSHOT_SIZE, TEXT_MAX_LEN
from globalchat.errors import InvalidInput, RateLimited, Unauthorized
from globalchat.models import Message, new_message_id, new_token, now_ms
from globalchat.ratelimit import FixedWindowRateLimiter
from globalchat.sanitize import is_blank, normalize_username, sanitize
from globalchat.store import DuplicateMessageId, Store

logger = logging.getLogger(__name__)

_ID_ATTEMPTS = 5


class ChatService:

    def __init__(
        self,
        store: Store,
        limiter: Optional[FixedWindowRateLimiter] = None,
        registry: Optional[BroadcastRegistry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.limiter = limiter if limiter is not None else FixedWindowRateLimiter()
        self.registry = registry if registry is not None else BroadcastRegistry()
        self.clock = clock

    def register(self, username: Any) -> Dict[str, str]:
        if not isinstance(username, str) or not username:
            raise InvalidInput("Username required")
        clean = normalize_username(username)
        if not clean:
            raise InvalidInput("Invalid username")

        token = new_token()
        self.store.register_user(token, clean, self.clock())
        logger.info("Registered user %r", clean)
        return {"token": token, "username": clean}

    def post_message(self, token: Optional[str], text: Any) -> Dict[str, Any]:
        username = self.store.lookup_user(token) if token else None
        if username is None:
            raise Unauthorized("Invalid token. Please register.")

        now = self.clock()
        if not self.limiter.allow(token, now):
            logger.info("Rate limited %r", username)
            raise RateLimited(
                f"Slow down! Max {self.limiter.cap} messages per {self.limiter.window_ms // 1000} seconds.",
                retry_after_ms=self.limiter.retry_after_ms(token, now),
            )

        if is_blank(text):
            raise InvalidInput("Message text required")
        clean = sanitize(text, TEXT_MAX_LEN)
        if not clean:
            raise InvalidInput("Message text required")

        msg = self._append(username, clean, now)
        delivered = self.registry.publish("message", msg.to_dict())
        logger.debug("Message %s from %r delivered to %d subscribers", msg.id, username, delivered)
        return {"ok": True, "message": msg.to_dict()}

    def _append(self, username: str, text: str, now: int) -> Message:
        for _ in range(_ID_ATTEMPTS):
            msg = Message(id=new_message_id(), username=username, text=text, timestamp=now)
            try:
                self.store.append(msg)
                return msg
            except DuplicateMessageId:
                logger.warning("Message id collision on %s; retrying", msg.id)
        raise DuplicateMessageId("could not allocate a unique message id")

    def list_messages(self, limit: int = MAX_MESSAGES) -> List[dict]:
        return [m.to_dict() for m in self.store.recent(limit)]

    # ---------- streaming ----------
    def open_stream(self, sub: Subscriber, snapshot_size: int = SNAPSHOT_SIZE) -> int:
        """
        Queue the ``connected`` snapshot on ``sub`` and register it.
        Nothing runs between the two steps, so every message is either in the
        snapshot or delivered live, never both.
        """
        snapshot = [m.to_dict() for m in self.store.recent(snapshot_size)]
        sub.send(encode_event("connected", {"messages": snapshot}))
        handle = self.registry.subscribe(sub)
        logger.info("Stream #%d opened (%d online)", handle, self.registry.count())
        return handle

    def close_stream(self, handle: int) -> None:
        if self.registry.unsubscribe(handle):
            logger.info("Stream #%d closed (%d online)", handle, self.registry.count())

    def online_count(self) -> int:
        return self.registry.count()

    def sweep_rate_limits(self) -> int:
        return self.limiter.sweep(self.clock())
