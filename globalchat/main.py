# globalchat/main.py
from __future__ import annotations
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from globalchat.broadcast import BroadcastRegistry
from globalchat.config import (
    DB_PATH, HEARTBEAT_INTERVAL_S, HOST, LOG_FORMAT, LOG_LEVEL, MAX_BODY_BYTES,
    PORT, SWEEP_INTERVAL_S, TOKEN_HEADER,
)
from globalchat.db import SqliteStore
from globalchat.errors import ChatError, RateLimited
from globalchat.middleware import BodySizeLimitMiddleware
from globalchat.models import now_ms
from globalchat.ratelimit import FixedWindowRateLimiter
from globalchat.schemas import PostMessageRequest, RegisterRequest
from globalchat.service import ChatService
from globalchat.store import Store
from globalchat.stream import subscriber_stream

logger = logging.getLogger(__name__)

# ---------- metrics ----------
MESSAGE_COUNT  = Counter("chat_messages_posted_total", "Total messages accepted")
REGISTER_COUNT = Counter("chat_registrations_total",   "Total user registrations")
RATE_LIMITED   = Counter("chat_rate_limited_total",    "Posts rejected by the rate limiter")
ONLINE         = Gauge(  "chat_stream_subscribers",    "Connected stream subscribers")
POST_LATENCY   = Histogram("chat_post_duration_seconds", "Post handling duration")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

router = APIRouter()


async def get_chat(request: Request) -> ChatService:
    return request.app.state.chat


@router.post("/api/register")
async def register(body: Optional[RegisterRequest] = None, chat: ChatService = Depends(get_chat)):
    result = chat.register(body.username if body else None)
    REGISTER_COUNT.inc()
    return result


@router.get("/api/messages")
async def get_messages(chat: ChatService = Depends(get_chat)):
    return {"messages": chat.list_messages()}


@router.post("/api/messages")
async def post_message(
    body: Optional[PostMessageRequest] = None,
    x_user_token: Optional[str] = Header(default=None),
    chat: ChatService = Depends(get_chat),
):
    with POST_LATENCY.time():
        try:
            result = chat.post_message(x_user_token, body.text if body else None)
        except RateLimited:
            RATE_LIMITED.inc()
            raise
    MESSAGE_COUNT.inc()
    return result


@router.get("/api/stream")
async def stream(request: Request, chat: ChatService = Depends(get_chat)):
    gen = subscriber_stream(
        chat,
        heartbeat_interval=request.app.state.heartbeat_interval,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(gen, media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/api/stats")
async def stats(chat: ChatService = Depends(get_chat)):
    return {"onlineCount": chat.online_count()}


@router.get("/healthz")
async def healthz(chat: ChatService = Depends(get_chat)):
    return {"ok": True, "messages": len(chat.list_messages()), "subscribers": chat.online_count()}


@router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


async def _sweep_rate_limits(chat: ChatService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = chat.sweep_rate_limits()
        if removed:
            logger.debug("Rate-limit sweep removed %d windows", removed)


def create_app(
    store: Optional[Store] = None,
    *,
    limiter: Optional[FixedWindowRateLimiter] = None,
    registry: Optional[BroadcastRegistry] = None,
    clock: Callable[[], int] = now_ms,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_S,
    sweep_interval: float = SWEEP_INTERVAL_S,
) -> FastAPI:
    """Build the app around one ChatService. Defaults to the sqlite store at DB_PATH."""
    if store is None:
        store = SqliteStore(DB_PATH)
    store.load()
    if registry is None:
        registry = BroadcastRegistry(on_change=ONLINE.set)
    chat = ChatService(store, limiter=limiter, registry=registry, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_sweep_rate_limits(chat, sweep_interval))
        logger.info("GlobalChat server running on http://%s:%d", HOST, PORT)
        logger.info("  SSE stream: http://%s:%d/api/stream", HOST, PORT)
        logger.info("  Messages:   http://%s:%d/api/messages", HOST, PORT)
        try:
            yield
        finally:
            closed = chat.registry.close_all()
            if closed:
                logger.info("Closed %d open streams on shutdown", closed)
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="GlobalChat", lifespan=lifespan)
    app.state.chat = chat
    app.state.heartbeat_interval = heartbeat_interval

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=MAX_BODY_BYTES)
    # added last so it wraps everything, including the 413 above
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", TOKEN_HEADER],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def bad_body_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    app.include_router(router)
    return app


def run() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    uvicorn.run("globalchat.main:create_app", factory=True, host=HOST, port=PORT,
                log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
