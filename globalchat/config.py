# globalchat/config.py
from __future__ import annotations
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Fly.io volumes are mounted at /data
_DEFAULT_DB = "/data/chat.db" if os.getenv("FLY_APP_NAME") else (PROJECT_ROOT / "chat.db").as_posix()
DB_PATH = os.getenv("GLOBALCHAT_DB_PATH", _DEFAULT_DB)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# ---------- message log ----------
MAX_MESSAGES = 200
SNAPSHOT_SIZE = 50
USERNAME_MAX_LEN = 24
TEXT_MAX_LEN = 500
MAX_BODY_BYTES = 10 * 1024

# ---------- rate limiting ----------
RATE_LIMIT_CAP = 3
RATE_LIMIT_WINDOW_MS = 5000
SWEEP_INTERVAL_S = 60

# ---------- streaming ----------
HEARTBEAT_INTERVAL_S = 20
SUBSCRIBER_QUEUE_SIZE = 64

TOKEN_HEADER = "X-User-Token"
