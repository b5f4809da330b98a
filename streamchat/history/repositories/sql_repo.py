# streamchat/history/repositories/sql_repo.py
from __future__ import annotations

import asyncio
import json
import logging

import aiosqlite

from streamchat.history.models import FeedbackRecord, Message, Session
from streamchat.history.session_store import SessionStore

logger = logging.getLogger(__name__)

CURRENT_SESSION_KEY = "current_session_id"
FEEDBACK_KEY = "feedback"


class SqliteSessionStore(SessionStore):
    """
    SQL implementation of SessionStore.
    Uses SQLite for simplicity; messages are stored as JSON documents ordered
    by their position in the session history.
    """

    def __init__(self, db_path: str = "sessions.db"):
        self.db_path = db_path
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._connection_lock = asyncio.Lock()  # Serialize database access
        self._connection: aiosqlite.Connection | None = None

    async def _initialize(self) -> aiosqlite.Connection:
        """
        Lazily create tables on first use.
        """
        if self._initialized and self._connection is not None:
            return self._connection
        async with self._init_lock:
            if self._initialized and self._connection is not None:
                return self._connection

            self._connection = await aiosqlite.connect(self.db_path)
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=30000")
            await self._connection.execute("PRAGMA foreign_keys=ON")

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    pinned INTEGER NOT NULL DEFAULT 0,
                    timestamp INTEGER NOT NULL
                )
            """)
            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    session_id TEXT NOT NULL
                        REFERENCES sessions(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (session_id, position)
                )
            """)
            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            await self._connection.commit()
            self._initialized = True
            return self._connection

    async def close(self) -> None:
        """
        Close the persistent database connection.
        """
        if self._connection:
            await self._connection.close()
            self._connection = None
            self._initialized = False

    async def __aenter__(self) -> SqliteSessionStore:
        await self._initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ---------- internal helpers ----------

    @staticmethod
    async def _write_history(
        conn: aiosqlite.Connection, session_id: str, history: list[Message]
    ) -> None:
        await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        await conn.executemany(
            "INSERT INTO messages (session_id, position, id, data) VALUES (?, ?, ?, ?)",
            [
                (session_id, position, m.id, m.model_dump_json())
                for position, m in enumerate(history)
            ],
        )

    @staticmethod
    async def _read_history(
        conn: aiosqlite.Connection, session_id: str
    ) -> list[Message]:
        async with conn.execute(
            "SELECT data FROM messages WHERE session_id = ? ORDER BY position",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [Message.model_validate_json(row[0]) for row in rows]

    async def _get_kv(self, key: str) -> str | None:
        conn = await self._initialize()
        async with self._connection_lock:
            async with conn.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def _set_kv(self, key: str, value: str | None) -> None:
        conn = await self._initialize()
        async with self._connection_lock:
            await conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            await conn.commit()

    # ---------- SessionStore ----------

    async def load_sessions(self) -> dict[str, Session]:
        conn = await self._initialize()
        async with self._connection_lock:
            async with conn.execute(
                "SELECT id, name, pinned, timestamp FROM sessions"
            ) as cursor:
                rows = await cursor.fetchall()
            sessions: dict[str, Session] = {}
            for session_id, name, pinned, timestamp in rows:
                sessions[session_id] = Session(
                    id=session_id,
                    name=name,
                    pinned=bool(pinned),
                    timestamp=timestamp,
                    history=await self._read_history(conn, session_id),
                )
        return sessions

    async def save_sessions(self, sessions: dict[str, Session]) -> None:
        conn = await self._initialize()
        async with self._connection_lock:
            try:
                if sessions:
                    placeholders = ",".join("?" for _ in sessions)
                    await conn.execute(
                        f"DELETE FROM sessions WHERE id NOT IN ({placeholders})",
                        tuple(sessions),
                    )
                else:
                    await conn.execute("DELETE FROM sessions")
                for session in sessions.values():
                    await conn.execute(
                        "INSERT INTO sessions (id, name, pinned, timestamp) "
                        "VALUES (?, ?, ?, ?) ON CONFLICT(id) DO UPDATE SET "
                        "name = excluded.name, pinned = excluded.pinned, "
                        "timestamp = excluded.timestamp",
                        (session.id, session.name, int(session.pinned), session.timestamp),
                    )
                    await self._write_history(conn, session.id, session.history)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def get_history(self, session_id: str) -> list[Message]:
        conn = await self._initialize()
        async with self._connection_lock:
            return await self._read_history(conn, session_id)

    async def put_history(self, session_id: str, history: list[Message]) -> None:
        conn = await self._initialize()
        async with self._connection_lock:
            async with conn.execute(
                "SELECT 1 FROM sessions WHERE id = ?", (session_id,)
            ) as cursor:
                if await cursor.fetchone() is None:
                    raise KeyError(f"Unknown session '{session_id}'")
            try:
                await self._write_history(conn, session_id, history)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def get_current_session_id(self) -> str | None:
        return await self._get_kv(CURRENT_SESSION_KEY)

    async def set_current_session_id(self, session_id: str | None) -> None:
        await self._set_kv(CURRENT_SESSION_KEY, session_id)

    async def get_feedback(self) -> list[FeedbackRecord]:
        raw = await self._get_kv(FEEDBACK_KEY)
        if not raw:
            return []
        return [FeedbackRecord.model_validate(item) for item in json.loads(raw)]

    async def put_feedback(self, feedback: list[FeedbackRecord]) -> None:
        await self._set_kv(
            FEEDBACK_KEY,
            json.dumps([f.model_dump(mode="json") for f in feedback], ensure_ascii=False),
        )
