import json
import threading
import time

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from conftest import FakeSink, decode_frame

from globalchat.db import SqliteStore
from globalchat.main import create_app
from globalchat.ratelimit import FixedWindowRateLimiter
from globalchat.store import MemoryStore


@pytest.fixture
def app(clock):
    return create_app(MemoryStore(), clock=clock)


@pytest.fixture
def client(app):
    return TestClient(app)


def _register(client, name="alice"):
    r = client.post("/api/register", json={"username": name})
    assert r.status_code == 200
    return r.json()["token"]


def test_register_and_post_roundtrip(client):
    r = client.post("/api/register", json={"username": "  alice  "})
    assert r.status_code == 200
    body = r.json()
    assert body["username"] == "alice"
    token = body["token"]

    r = client.post("/api/messages", json={"text": "hello"}, headers={"X-User-Token": token})
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    msg = data["message"]
    assert set(msg) == {"id", "username", "text", "timestamp"}
    assert (msg["username"], msg["text"]) == ("alice", "hello")
    assert isinstance(msg["timestamp"], int)

    r = client.get("/api/messages")
    assert r.json() == {"messages": [msg]}


@pytest.mark.parametrize("payload", [{}, {"username": ""}, {"username": 5}, {"username": "   "}])
def test_register_bad_username(client, payload):
    r = client.post("/api/register", json=payload)
    assert r.status_code == 400
    assert "error" in r.json()


def test_register_without_body_or_with_garbage(client):
    assert client.post("/api/register").status_code == 400
    r = client.post("/api/register", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request body"}


def test_post_requires_valid_token(client, app):
    sink = FakeSink()
    app.state.chat.open_stream(sink)

    r = client.post("/api/messages", json={"text": "hi"})
    assert r.status_code == 401
    r = client.post("/api/messages", json={"text": "hi"}, headers={"X-User-Token": "bogus"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid token. Please register."}

    assert client.get("/api/messages").json() == {"messages": []}
    assert len(sink.frames) == 1


def test_post_missing_text(client):
    token = _register(client)
    r = client.post("/api/messages", json={"text": "   "}, headers={"X-User-Token": token})
    assert r.status_code == 400
    assert r.json() == {"error": "Message text required"}


def test_fourth_post_in_window_is_rate_limited(client, clock):
    token = _register(client)
    headers = {"X-User-Token": token}
    for text in ("one", "two", "three"):
        assert client.post("/api/messages", json={"text": text}, headers=headers).status_code == 200
    clock.advance(2000)
    r = client.post("/api/messages", json={"text": "four"}, headers=headers)
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "3"
    assert "Slow down" in r.json()["error"]

    clock.advance(3001)
    assert client.post("/api/messages", json={"text": "five"}, headers=headers).status_code == 200


def test_script_tag_is_escaped(client):
    token = _register(client)
    r = client.post("/api/messages", json={"text": "<script>"}, headers={"X-User-Token": token})
    assert r.json()["message"]["text"] == "&lt;script&gt;"
    assert client.get("/api/messages").json()["messages"][0]["text"] == "&lt;script&gt;"


def test_stats_counts_stream_subscribers(client, app):
    assert client.get("/api/stats").json() == {"onlineCount": 0}
    handle = app.state.chat.open_stream(FakeSink())
    assert client.get("/api/stats").json() == {"onlineCount": 1}
    app.state.chat.close_stream(handle)
    assert client.get("/api/stats").json() == {"onlineCount": 0}


def test_body_too_large(client):
    token = _register(client)
    r = client.post("/api/messages", json={"text": "x" * 20_000}, headers={"X-User-Token": token})
    assert r.status_code == 413


def _chunks(total, size=4096):
    sent = 0
    while sent < total:
        n = min(size, total - sent)
        yield b"x" * n
        sent += n


def test_chunked_body_too_large(client):
    token = _register(client)
    r = client.post(
        "/api/messages",
        content=_chunks(200_000),
        headers={"X-User-Token": token, "Content-Type": "application/json"},
    )
    assert r.status_code == 413
    assert r.json() == {"error": "Request body too large"}
    assert client.get("/api/messages").json() == {"messages": []}


def test_small_chunked_body_is_accepted(client):
    token = _register(client)
    body = json.dumps({"text": "streamed"}).encode()
    r = client.post(
        "/api/messages",
        content=iter([body[:5], body[5:]]),
        headers={"X-User-Token": token, "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json()["message"]["text"] == "streamed"


def test_cors_preflight(client):
    r = client.options(
        "/api/messages",
        headers={
            "Origin": "https://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type, X-User-Token",
        },
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"
    assert "x-user-token" in r.headers["access-control-allow-headers"].lower()


def test_metrics_and_health(client):
    token = _register(client)
    client.post("/api/messages", json={"text": "hi"}, headers={"X-User-Token": token})
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "chat_messages_posted_total" in r.text
    assert client.get("/healthz").json() == {"ok": True, "messages": 1, "subscribers": 0}


def test_sqlite_backed_app_persists_across_restarts(tmp_path):
    path = tmp_path / "chat.db"
    client = TestClient(create_app(SqliteStore(path)))
    token = _register(client, "bob")
    client.post("/api/messages", json={"text": "persisted"}, headers={"X-User-Token": token})

    restarted = TestClient(create_app(SqliteStore(path)))
    assert [m["text"] for m in restarted.get("/api/messages").json()["messages"]] == ["persisted"]
    # the token survives the restart too
    r = restarted.post("/api/messages", json={"text": "again"}, headers={"X-User-Token": token})
    assert r.status_code == 200


def test_background_sweep_runs_during_lifespan():
    limiter = FixedWindowRateLimiter()
    limiter.allow("stale", 0)
    app = create_app(MemoryStore(), limiter=limiter, clock=lambda: 10**12, sweep_interval=0.01)
    with TestClient(app):
        deadline = time.time() + 2
        while len(limiter) and time.time() < deadline:
            time.sleep(0.02)
    assert len(limiter) == 0


def _gauge():
    return REGISTRY.get_sample_value("chat_stream_subscribers")


def test_gauge_follows_stream_subscribers(app):
    chat = app.state.chat
    h1 = chat.open_stream(FakeSink())
    h2 = chat.open_stream(FakeSink())
    assert _gauge() == 2
    chat.close_stream(h1)
    assert _gauge() == 1
    chat.close_stream(h2)
    assert _gauge() == 0


def test_stream_endpoint_over_http(clock):
    app = create_app(MemoryStore(), clock=clock, heartbeat_interval=0.05)
    with TestClient(app) as client:
        token = _register(client)
        client.post("/api/messages", json={"text": "before"}, headers={"X-User-Token": token})

        result = {}
        reader = threading.Thread(target=lambda: result.update(r=client.get("/api/stream")), daemon=True)
        reader.start()

        deadline = time.time() + 5
        while client.get("/api/stats").json()["onlineCount"] != 1 and time.time() < deadline:
            time.sleep(0.02)
        assert client.get("/api/stats").json() == {"onlineCount": 1}
        assert _gauge() == 1

        time.sleep(0.15)  # let a few heartbeats through
        client.portal.call(app.state.chat.registry.close_all)
        reader.join(timeout=5)
        assert not reader.is_alive()

        assert client.get("/api/stats").json() == {"onlineCount": 0}
        assert _gauge() == 0

    r = result["r"]
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    assert r.headers["x-accel-buffering"] == "no"

    frames = [f + "\n\n" for f in r.text.split("\n\n") if f]
    event, data = decode_frame(frames[0])
    assert event == "connected"
    assert [m["text"] for m in data["messages"]] == ["before"]
    assert ": heartbeat\n\n" in frames[1:]
