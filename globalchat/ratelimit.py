"""Fixed-window rate limiter keyed by user token.

Each token gets a window of ``window_ms`` that starts on its first post.
Up to ``cap`` posts are accepted inside the window. The window is not
sliding: a burst at the end of one window followed by a burst at the start
of the next can admit up to ``2 * cap`` posts in a short span.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict

from globalchat.config import RATE_LIMIT_CAP, RATE_LIMIT_WINDOW_MS

logger = logging.getLogger(__name__)


@dataclass
class Window:
    count: int
    reset_at: int  # ms


class FixedWindowRateLimiter:

    def __init__(self, cap: int = RATE_LIMIT_CAP, window_ms: int = RATE_LIMIT_WINDOW_MS):
        self.cap = cap
        self.window_ms = window_ms
        self._windows: Dict[str, Window] = {}
        self._lock = Lock()

    def allow(self, token: str, now: int) -> bool:
        with self._lock:
            w = self._windows.get(token)
            if w is None or now > w.reset_at:
                self._windows[token] = Window(count=1, reset_at=now + self.window_ms)
                return True
            if w.count < self.cap:
                w.count += 1
                return True
            return False

    def retry_after_ms(self, token: str, now: int) -> int:
        """Time left until the token's current window expires (0 if none)."""
        with self._lock:
            w = self._windows.get(token)
            if w is None or now > w.reset_at:
                return 0
            return w.reset_at - now

    def sweep(self, now: int) -> int:
        """Drop expired windows. Returns how many were removed."""
        with self._lock:
            expired = [t for t, w in self._windows.items() if now > w.reset_at]
            for t in expired:
                del self._windows[t]
        if expired:
            logger.debug("Swept %d expired rate-limit windows", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def __contains__(self, token: str) -> bool:
        with self._lock:
            return token in self._windows
