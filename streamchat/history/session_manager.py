"""
In-memory session table backed by a SessionStore.

The manager owns every Session object; the streaming engine mutates the
messages it is given by reference and asks the manager to persist.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..llm.exceptions import SessionBusyError, SessionError
from ..logging_utils import log_operation
from .models import (
    DEFAULT_SESSION_NAME,
    FeedbackRecord,
    FeedbackType,
    Message,
    Session,
    generate_session_id,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Session table with the rules the UI relies on.

    ``is_generating`` is provided by the chat service so that edits and
    deletions are refused while a session has an active stream.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        private_mode: bool = False,
        is_generating: Callable[[str], bool] | None = None,
    ) -> None:
        self.store = store
        self.private_mode = private_mode
        self.is_generating = is_generating or (lambda _session_id: False)
        self.sessions: dict[str, Session] = {}
        self.current_session_id: str | None = None
        self.feedback: list[FeedbackRecord] = []

    # ---------- loading / persistence ----------

    async def load(self) -> None:
        """Restore sessions; at least one session exists afterwards."""
        self.sessions = await self.store.load_sessions()
        self.current_session_id = await self.store.get_current_session_id()
        self.feedback = await self.store.get_feedback()
        if not self.current_session_id or self.current_session_id not in self.sessions:
            ordered = self.ordered_sessions()
            if ordered:
                self.current_session_id = ordered[0].id
            else:
                self.create_session()
        logger.info(
            "Loaded %d session(s), current=%s", len(self.sessions), self.current_session_id
        )

    @log_operation("persist_sessions")
    async def persist(self) -> None:
        """Save sessions and the current session id (no-op in private mode)."""
        if self.private_mode:
            return
        await self.store.save_sessions(self.sessions)
        await self.store.set_current_session_id(self.current_session_id)

    @log_operation("persist_feedback")
    async def persist_feedback(self) -> None:
        if self.private_mode:
            return
        await self.store.put_feedback(self.feedback)

    async def set_private_mode(self, enabled: bool) -> None:
        """
        Toggle private mode.

        Leaving private mode discards the in-memory conversations and
        reloads what was persisted before.
        """
        if enabled == self.private_mode:
            return
        self.private_mode = enabled
        if not enabled:
            self.sessions = {}
            self.current_session_id = None
            await self.load()
        logger.info("Private mode %s", "enabled" if enabled else "disabled")

    # ---------- lookup ----------

    def get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionError(f"Unknown session '{session_id}'")
        return session

    @property
    def current(self) -> Session | None:
        if self.current_session_id is None:
            return None
        return self.sessions.get(self.current_session_id)

    def is_displayed(self, session_id: str) -> bool:
        return self.current_session_id == session_id

    def ordered_sessions(self) -> list[Session]:
        """Pinned first, then most recent activity first."""
        return sorted(
            self.sessions.values(),
            key=lambda s: (not s.pinned, -s.last_activity),
        )

    # ---------- session operations ----------

    def create_session(self, name: str = DEFAULT_SESSION_NAME) -> Session:
        session_id = generate_session_id()
        suffix = 1
        while session_id in self.sessions:
            session_id = f"{generate_session_id()}_{suffix}"
            suffix += 1
        session = Session(id=session_id, name=name)
        self.sessions[session_id] = session
        self.current_session_id = session_id
        return session

    def switch_session(self, session_id: str) -> Session:
        session = self.get(session_id)
        self.current_session_id = session_id
        return session

    def rename_session(self, session_id: str, name: str) -> bool:
        """Blank names are ignored; returns whether the name changed."""
        session = self.get(session_id)
        name = name.strip()
        if not name:
            return False
        session.name = name
        return True

    def toggle_pin(self, session_id: str) -> bool:
        session = self.get(session_id)
        session.pinned = not session.pinned
        return session.pinned

    def delete_session(self, session_id: str) -> None:
        self.get(session_id)
        if self.is_generating(session_id):
            raise SessionError("Cannot delete a session that is generating")
        if len(self.sessions) <= 1:
            raise SessionError("Cannot delete the last session")
        del self.sessions[session_id]
        if self.current_session_id == session_id:
            self.current_session_id = self.ordered_sessions()[0].id

    def clear_all(self) -> Session:
        """Drop every session and start a fresh one."""
        if any(self.is_generating(session_id) for session_id in self.sessions):
            raise SessionError("Stop the current generation first")
        self.sessions = {}
        self.current_session_id = None
        return self.create_session()

    # ---------- message operations ----------

    def _ensure_idle(self, session_id: str) -> None:
        if self.is_generating(session_id):
            raise SessionBusyError(session_id)

    def edit_message(self, session_id: str, index: int, content: str) -> Message:
        self._ensure_idle(session_id)
        session = self.get(session_id)
        try:
            message = session.history[index]
        except IndexError as e:
            raise SessionError(f"No message at index {index}") from e
        message.content = content
        return message

    def truncate_history(self, session_id: str, keep: int) -> list[Message]:
        """Keep the first ``keep`` messages; returns the removed tail."""
        self._ensure_idle(session_id)
        session = self.get(session_id)
        removed = session.history[keep:]
        del session.history[keep:]
        return removed

    def submit_feedback(
        self, session_id: str, index: int, kind: FeedbackType | str
    ) -> FeedbackRecord:
        """Record feedback once per message."""
        session = self.get(session_id)
        try:
            message = session.history[index]
        except IndexError as e:
            raise SessionError(f"No message at index {index}") from e
        if message.feedback_submitted is not None:
            raise SessionError("Feedback already submitted for this message")

        feedback_type = FeedbackType(kind)
        record = FeedbackRecord(
            session_id=session_id,
            message_index=index,
            message_content=message.content,
            feedback_type=feedback_type,
        )
        self.feedback.append(record)
        message.feedback_submitted = feedback_type
        return record

    def delete_feedback(self, timestamp: int) -> FeedbackRecord | None:
        """Remove a feedback record and clear the mark on its message."""
        for position, record in enumerate(self.feedback):
            if record.timestamp == timestamp:
                del self.feedback[position]
                session = self.sessions.get(record.session_id)
                if session and 0 <= record.message_index < len(session.history):
                    session.history[record.message_index].feedback_submitted = None
                return record
        return None
