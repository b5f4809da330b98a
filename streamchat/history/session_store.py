#!/usr/bin/env python3
"""
Session Storage Module

This module provides the persisted session store consumed by the chat
service. The store is a plain key-value collaborator: it loads and saves the
session table, a session's message list, the currently displayed session id
and the feedback log.

Key Components:
- SessionStore: Protocol defining the interface for session storage backends
- JsonSessionStore: async JSON document storage with cross-process locking
- create_session_store: backend selection from configuration

Features:
- Pydantic v2 models for validation and serialization
- Atomic replace on every write so a crash never leaves a half-written file
- Cross-process file locking for multi-process deployments
- Full async/await support
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

import aiofiles
from filelock import FileLock, Timeout

from .models import FeedbackRecord, Message, Session

if TYPE_CHECKING:                                        # pragma: no cover
    from ..config import Configuration

logger = logging.getLogger(__name__)


@asynccontextmanager
async def async_file_lock(
    file_path: str, timeout: float = 30.0
) -> AsyncGenerator[None]:
    """
    Async context manager for cross-process file locking with timeout.

    Creates a lock file alongside the target file; the blocking acquire and
    release run in the default executor.

    Args:
        file_path: Path to the file that needs to be locked
        timeout: Maximum time to wait for the lock (seconds)

    Raises:
        TimeoutError: If the lock cannot be acquired within the timeout period
    """
    file_lock = FileLock(f"{file_path}.lock", timeout=timeout)
    loop = asyncio.get_running_loop()

    try:
        await loop.run_in_executor(None, file_lock.acquire)
    except Timeout as e:
        raise TimeoutError(f"Failed to acquire file lock within {timeout}s") from e
    try:
        yield
    finally:
        await loop.run_in_executor(None, file_lock.release)


class SessionStore(Protocol):
    """
    Interface for persisting sessions.
    """

    async def load_sessions(self) -> dict[str, Session]:
        """Return every stored session keyed by id."""
        ...

    async def save_sessions(self, sessions: dict[str, Session]) -> None:
        """Replace the stored session table."""
        ...

    async def get_history(self, session_id: str) -> list[Message]:
        """Return a session's messages in display order ([] if unknown)."""
        ...

    async def put_history(self, session_id: str, history: list[Message]) -> None:
        """Replace a session's messages. The session must exist."""
        ...

    async def get_current_session_id(self) -> str | None:
        ...

    async def set_current_session_id(self, session_id: str | None) -> None:
        ...

    async def get_feedback(self) -> list[FeedbackRecord]:
        ...

    async def put_feedback(self, feedback: list[FeedbackRecord]) -> None:
        ...

    async def close(self) -> None:
        ...


class JsonSessionStore(SessionStore):
    """
    Single JSON document store using aiofiles and filelock.

    Layout::

        {"sessions": {id: Session}, "current_session_id": str | null,
         "feedback": [FeedbackRecord]}

    The document is cached after the first read; every write goes to a
    temporary file that atomically replaces the original under the lock.
    """

    def __init__(self, path: str = "sessions.json", fsync_enabled: bool = True):
        self.path = path
        self.fsync_enabled = fsync_enabled
        self._lock = asyncio.Lock()
        self._document: dict[str, Any] | None = None

    async def _ensure_loaded(self) -> dict[str, Any]:
        if self._document is not None:
            return self._document

        async with self._lock:
            if self._document is None:
                self._document = await self._read_document()
            return self._document

    async def _read_document(self) -> dict[str, Any]:
        empty: dict[str, Any] = {"sessions": {}, "current_session_id": None, "feedback": []}
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            # File doesn't exist yet - this is fine for new stores
            return empty

        if not raw.strip():
            return empty
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Session store {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Session store {self.path} must hold a JSON object")

        sessions: dict[str, Any] = {}
        for session_id, session_data in (data.get("sessions") or {}).items():
            try:
                session = Session.model_validate({**session_data, "id": session_id})
            except ValueError as e:
                logger.warning(f"Skipping invalid session {session_id} in {self.path}: {e}")
                continue
            sessions[session_id] = session.model_dump(mode="json")

        return {
            "sessions": sessions,
            "current_session_id": data.get("current_session_id"),
            "feedback": data.get("feedback") or [],
        }

    async def _write_document(self, document: dict[str, Any]) -> None:
        """Atomically persist the whole document."""
        tmp_path = f"{self.path}.tmp"
        payload = json.dumps(document, ensure_ascii=False, indent=2)
        async with async_file_lock(self.path):
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
                if self.fsync_enabled:
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, os.fsync, f.fileno())
            os.replace(tmp_path, self.path)

    async def _update(self, **changes: Any) -> None:
        await self._ensure_loaded()
        async with self._lock:
            # the cache only moves once the file has been replaced
            document = {**self._document, **changes}
            await self._write_document(document)
            self._document = document

    async def load_sessions(self) -> dict[str, Session]:
        document = await self._ensure_loaded()
        return {
            session_id: Session.model_validate(data)
            for session_id, data in document["sessions"].items()
        }

    async def save_sessions(self, sessions: dict[str, Session]) -> None:
        await self._update(sessions={
            session_id: session.model_dump(mode="json")
            for session_id, session in sessions.items()
        })

    async def get_history(self, session_id: str) -> list[Message]:
        document = await self._ensure_loaded()
        session = document["sessions"].get(session_id)
        if session is None:
            return []
        return [Message.model_validate(m) for m in session.get("history", [])]

    async def put_history(self, session_id: str, history: list[Message]) -> None:
        document = await self._ensure_loaded()
        if session_id not in document["sessions"]:
            raise KeyError(f"Unknown session '{session_id}'")
        sessions = dict(document["sessions"])
        sessions[session_id] = {
            **sessions[session_id],
            "history": [m.model_dump(mode="json") for m in history],
        }
        await self._update(sessions=sessions)

    async def get_current_session_id(self) -> str | None:
        document = await self._ensure_loaded()
        return document.get("current_session_id")

    async def set_current_session_id(self, session_id: str | None) -> None:
        await self._update(current_session_id=session_id)

    async def get_feedback(self) -> list[FeedbackRecord]:
        document = await self._ensure_loaded()
        return [FeedbackRecord.model_validate(f) for f in document["feedback"]]

    async def put_feedback(self, feedback: list[FeedbackRecord]) -> None:
        await self._update(feedback=[f.model_dump(mode="json") for f in feedback])

    async def close(self) -> None:
        """Nothing to release: every change is written through."""
        self._document = None


def create_session_store(config: Configuration) -> SessionStore:
    """Create the session store selected by ``history.backend``."""
    history_config = config.get_history_config()
    backend = history_config.get("backend", "json")

    if backend == "sqlite":
        from .repositories.sql_repo import SqliteSessionStore

        db_path = history_config.get("path", "sessions.db")
        logger.info(f"Using SqliteSessionStore with database path: {db_path}")
        return SqliteSessionStore(db_path)

    path = history_config.get("path", "sessions.json")
    logger.info(f"Using JsonSessionStore with path: {path}")
    return JsonSessionStore(path, fsync_enabled=history_config.get("fsync", True))
