from __future__ import annotations
import re
from typing import Any

from globalchat.config import TEXT_MAX_LEN, USERNAME_MAX_LEN

_WS = re.compile(r"\s+")


def sanitize(value: Any, max_len: int = TEXT_MAX_LEN) -> str:
    """
    Escape '<' and '>', cut to max_len, then trim.
    Non-string input yields ''.
    """
    if not isinstance(value, str):
        return ""
    escaped = value.replace("<", "&lt;").replace(">", "&gt;")
    return escaped[:max_len].strip()


def normalize_username(value: Any) -> str:
    # collapse whitespace runs into a single '_'
    return _WS.sub("_", sanitize(value, USERNAME_MAX_LEN))


def is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()
