"""Errors raised by the chat service and rendered by the HTTP layer."""

from __future__ import annotations

import math


class ChatError(Exception):
    """Base class; ``status_code`` is the HTTP status the error maps to."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidInput(ChatError):
    status_code = 400


class Unauthorized(ChatError):
    status_code = 401


class RateLimited(ChatError):
    status_code = 429

    def __init__(self, message: str, retry_after_ms: int) -> None:
        super().__init__(message)
        self.retry_after_ms = max(0, int(retry_after_ms))

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))


class StoreError(ChatError):
    """Persistence failed; in-memory state is unchanged."""

    status_code = 500
