from __future__ import annotations
import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from globalchat.config import PORT, TOKEN_HEADER

DEFAULT_SERVER = f"http://localhost:{PORT}"


class ChatClientError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def _check(resp: httpx.Response) -> Any:
    if resp.is_success:
        return resp.json()
    try:
        message = resp.json().get("error") or resp.text
    except (ValueError, AttributeError):
        message = resp.text
    raise ChatClientError(resp.status_code, message)


def parse_sse(lines: Iterator[str]) -> Iterator[Tuple[str, Any]]:
    """
    Turn SSE text lines into (event, data) pairs.
    Comment lines (heartbeats) are skipped.
    """
    event, data = "message", []
    for line in lines:
        if line == "":
            if data:
                yield event, json.loads("\n".join(data))
            event, data = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].lstrip())


class ChatClient:
    """Small synchronous client for the GlobalChat HTTP API."""

    def __init__(self, server: str = DEFAULT_SERVER, token: Optional[str] = None,
                 timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.server = server.rstrip("/")
        self.token = token
        self._own_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._own_client:
            self._client.close()

    def __enter__(self) -> "ChatClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return self.server + path

    def register(self, username: str) -> Dict[str, str]:
        data = _check(self._client.post(self._url("/api/register"), json={"username": username}))
        self.token = data["token"]
        return data

    def post(self, text: str) -> Dict[str, Any]:
        headers = {TOKEN_HEADER: self.token} if self.token else {}
        data = _check(self._client.post(self._url("/api/messages"), json={"text": text}, headers=headers))
        return data["message"]

    def messages(self) -> List[Dict[str, Any]]:
        return _check(self._client.get(self._url("/api/messages")))["messages"]

    def stats(self) -> int:
        return int(_check(self._client.get(self._url("/api/stats")))["onlineCount"])

    def events(self) -> Iterator[Tuple[str, Any]]:
        """Follow /api/stream until the server closes it."""
        with self._client.stream("GET", self._url("/api/stream"), timeout=None) as resp:
            if not resp.is_success:
                resp.read()
                _check(resp)
            yield from parse_sse(resp.iter_lines())
