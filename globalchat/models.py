from __future__ import annotations
import secrets
import time
from dataclasses import dataclass, asdict
from typing import Any, Mapping


def now_ms() -> int:
    return int(time.time() * 1000)


def new_token() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


def new_message_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class Message:
    id: str
    username: str
    text: str
    timestamp: int  # ms since epoch

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(d["id"]),
            username=str(d["username"]),
            text=str(d["text"]),
            timestamp=int(d["timestamp"]),
        )


@dataclass(frozen=True)
class User:
    token: str
    username: str
    joined_at: int

    def to_dict(self) -> dict:
        # persisted shape uses camelCase
        return {"username": self.username, "joinedAt": self.joined_at}
