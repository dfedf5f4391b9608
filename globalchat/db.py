# globalchat/db.py
from __future__ import annotations
import logging
import os
import sqlite3
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional

from globalchat.config import DB_PATH, MAX_MESSAGES
from globalchat.errors import StoreError
from globalchat.models import Message, User, now_ms
from globalchat.store import DuplicateMessageId

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS messages (
    seq        INTEGER PRIMARY KEY AUTOINCREMENT,
    id         TEXT    NOT NULL UNIQUE,
    username   TEXT    NOT NULL,
    text       TEXT    NOT NULL,
    timestamp  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    token      TEXT PRIMARY KEY,
    username   TEXT    NOT NULL,
    joined_at  INTEGER NOT NULL
);
"""

INSERT_MESSAGE = "INSERT INTO messages(id, username, text, timestamp) VALUES (:id, :username, :text, :timestamp)"


class SqliteStore:
    """
    Durable store on a single sqlite file.

    The database is read once by load(); afterwards reads are served from an
    in-memory copy and every write goes to disk first, then to memory. A
    failed write therefore leaves the in-memory view untouched.
    """

    def __init__(self, path: str | os.PathLike = DB_PATH, max_messages: int = MAX_MESSAGES):
        self.path = Path(path)
        self.max_messages = max_messages
        self._messages: Deque[Message] = deque(maxlen=max_messages)
        self._users: Dict[str, User] = {}
        self._lock = Lock()

    def get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path.as_posix(), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_conn()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, what: str) -> Iterator[sqlite3.Connection]:
        """Commit on success; any sqlite failure other than a constraint becomes StoreError."""
        try:
            conn = self.get_conn()
        except sqlite3.Error as e:
            logger.error("Failed to %s: %s", what, e)
            raise StoreError(f"Failed to {what}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("Failed to %s: %s", what, e)
            raise StoreError(f"Failed to {what}") from e
        finally:
            conn.close()

    # ---------- startup ----------
    def load(self) -> None:
        """Read persisted state. A corrupt database is set aside and replaced."""
        try:
            self._load()
        except sqlite3.DatabaseError as e:
            logger.warning("Chat database %s is unreadable (%s); starting fresh", self.path, e)
            self._quarantine()
            self._load()

    def _load(self) -> None:
        self.init_db()
        conn = self.get_conn()
        try:
            msg_rows = conn.execute(
                """
                SELECT id, username, text, timestamp FROM (
                    SELECT * FROM messages ORDER BY seq DESC LIMIT ?
                ) ORDER BY seq ASC
                """,
                (self.max_messages,),
            ).fetchall()
            user_rows = conn.execute("SELECT token, username, joined_at FROM users").fetchall()
        finally:
            conn.close()

        with self._lock:
            self._messages = deque((Message(**dict(r)) for r in msg_rows), maxlen=self.max_messages)
            self._users = {r["token"]: User(**dict(r)) for r in user_rows}
        logger.info("Loaded %d messages and %d users from %s", len(msg_rows), len(user_rows), self.path)

    def _quarantine(self) -> None:
        aside = self.path.with_name(f"{self.path.name}.corrupt-{now_ms()}")
        if self.path.exists():
            os.replace(self.path, aside)
            logger.warning("Moved corrupt database to %s", aside)
        for suffix in ("-wal", "-shm"):
            side = self.path.with_name(self.path.name + suffix)
            if side.exists():
                side.unlink()

    # ---------- messages ----------
    def append(self, message: Message) -> None:
        with self._lock:
            try:
                with self._transaction("save message") as conn:
                    conn.execute(INSERT_MESSAGE, message.to_dict())
                    # keep only the newest max_messages rows
                    conn.execute(
                        """
                        DELETE FROM messages WHERE seq NOT IN (
                            SELECT seq FROM messages ORDER BY seq DESC LIMIT ?
                        )
                        """,
                        (self.max_messages,),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateMessageId(f"message id {message.id} already stored") from e
            self._messages.append(message)

    def recent(self, k: int) -> List[Message]:
        if k <= 0:
            return []
        with self._lock:
            return list(self._messages)[-k:]

    # ---------- users ----------
    def register_user(self, token: str, username: str, now: int) -> None:
        with self._lock:
            with self._transaction("save registration") as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO users(token, username, joined_at) VALUES (?,?,?)",
                    (token, username, now),
                )
            self._users[token] = User(token=token, username=username, joined_at=now)

    def lookup_user(self, token: str) -> Optional[str]:
        user = self._users.get(token)
        return user.username if user else None

    # ---------- import / export ----------
    def export_state(self) -> dict:
        """State as {messages: [...], users: {token: {username, joinedAt}}}."""
        with self._lock:
            return {
                "messages": [m.to_dict() for m in self._messages],
                "users": {t: u.to_dict() for t, u in self._users.items()},
            }

    def import_state(self, state: Mapping[str, Any]) -> int:
        """
        Replace the stored log and users with ``state`` (same shape as
        export_state). Malformed entries are skipped. Returns messages kept.
        """
        messages: List[Message] = []
        seen = set()
        for raw in state.get("messages") or []:
            try:
                m = Message.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                continue
            if m.id not in seen:
                seen.add(m.id)
                messages.append(m)
        messages = messages[-self.max_messages:]

        users: List[User] = []
        for token, raw in (state.get("users") or {}).items():
            try:
                users.append(User(token=str(token), username=str(raw["username"]), joined_at=int(raw["joinedAt"])))
            except (KeyError, TypeError, ValueError):
                continue

        with self._lock:
            with self._transaction("import state") as conn:
                conn.execute("DELETE FROM messages")
                conn.execute("DELETE FROM users")
                conn.executemany(INSERT_MESSAGE, [m.to_dict() for m in messages])
                conn.executemany(
                    "INSERT INTO users(token, username, joined_at) VALUES (?,?,?)",
                    [(u.token, u.username, u.joined_at) for u in users],
                )
            self._messages = deque(messages, maxlen=self.max_messages)
            self._users = {u.token: u for u in users}
        logger.info("Imported %d messages and %d users", len(messages), len(users))
        return len(messages)
