"""Message store contract and an in-memory implementation."""

from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Deque, Dict, List, Optional, Protocol

from globalchat.config import MAX_MESSAGES
from globalchat.errors import StoreError
from globalchat.models import Message, User


class DuplicateMessageId(StoreError):
    """The id is already held by a message in the log."""


class Store(Protocol):
    def load(self) -> None: ...

    def append(self, message: Message) -> None: ...

    def recent(self, k: int) -> List[Message]: ...

    def register_user(self, token: str, username: str, now: int) -> None: ...

    def lookup_user(self, token: str) -> Optional[str]: ...

    def export_state(self) -> dict: ...


class MemoryStore:
    """Non-durable store. Same semantics as SqliteStore minus the disk."""

    def __init__(self, max_messages: int = MAX_MESSAGES):
        self.max_messages = max_messages
        self._messages: Deque[Message] = deque(maxlen=max_messages)
        self._users: Dict[str, User] = {}
        self._lock = Lock()

    def load(self) -> None:
        pass

    def append(self, message: Message) -> None:
        with self._lock:
            if any(m.id == message.id for m in self._messages):
                raise DuplicateMessageId(f"message id {message.id} already stored")
            self._messages.append(message)

    def recent(self, k: int) -> List[Message]:
        if k <= 0:
            return []
        with self._lock:
            return list(self._messages)[-k:]

    def register_user(self, token: str, username: str, now: int) -> None:
        with self._lock:
            self._users[token] = User(token=token, username=username, joined_at=now)

    def lookup_user(self, token: str) -> Optional[str]:
        user = self._users.get(token)
        return user.username if user else None

    def export_state(self) -> dict:
        with self._lock:
            return {
                "messages": [m.to_dict() for m in self._messages],
                "users": {t: u.to_dict() for t, u in self._users.items()},
            }

    def __len__(self) -> int:
        return len(self._messages)
