"""ASGI middleware that caps request body size.

The body is read up front, chunk by chunk, and counted as it arrives, so a
chunked upload without Content-Length is capped the same way as one that
declares its length. Bodies within the limit are replayed to the app
unchanged. Later ``receive`` calls (disconnect polling on streams) go
straight to the server.
"""

from __future__ import annotations

import logging

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from globalchat.config import MAX_BODY_BYTES

logger = logging.getLogger(__name__)


class BodySizeLimitMiddleware:

    def __init__(self, app: ASGIApp, max_bytes: int = MAX_BODY_BYTES) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        length = headers.get(b"content-length")
        if length is not None and length.isdigit() and int(length) > self.max_bytes:
            await self._reject(scope, receive, send)
            return

        chunks = []
        size = 0
        while True:
            message = await receive()
            if message["type"] != "http.request":
                pending: Message = message  # client left mid-upload
                break
            body = message.get("body", b"")
            size += len(body)
            if size > self.max_bytes:
                await self._reject(scope, receive, send)
                return
            chunks.append(body)
            if not message.get("more_body", False):
                pending = {"type": "http.request", "body": b"".join(chunks), "more_body": False}
                break

        replay = [pending]

        async def buffered_receive() -> Message:
            if replay:
                return replay.pop()
            return await receive()

        await self.app(scope, buffered_receive, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.info("Rejected %s %s: body over %d bytes", scope.get("method"), scope.get("path"), self.max_bytes)
        response = JSONResponse({"error": "Request body too large"}, status_code=413)
        await response(scope, receive, send)
