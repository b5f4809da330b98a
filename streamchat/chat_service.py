"""
Chat Service

This module handles the business logic for chat sessions, including:
- Sending a prompt and streaming the assistant answer into the session
- Stopping, regenerating and editing messages
- Settling an answer into content, thinking and dialogue metrics
- Automatic session titles

Only one StreamSession may exist per session id; the exclusivity check runs
before any history mutation, so a refused request leaves the session intact.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING

from .history.models import DEFAULT_SESSION_NAME, DialogueInfo, Message
from .history.session_manager import SessionManager
from .llm.client import LLMClient
from .llm.exceptions import SessionError, StreamAbortedError
from .llm.models import LLMMessage, LLMRequest, MessageRole, RequestOptions
from .llm.streaming.accumulator import RenderScheduler, RenderUpdate, Renderer
from .llm.streaming.cancellation import (
    CancellationToken,
    StreamLifecycle,
    StreamRegistry,
)
from .llm.streaming.controller import StreamSessionController
from .llm.streaming.models import StreamSession
from .llm.streaming.thinking import split_thinking, strip_thinking
from .logging_utils import StreamErrorHandler, log_operation, operation_context

if TYPE_CHECKING:                                        # pragma: no cover
    from .config import ChatSettings

logger = logging.getLogger(__name__)

STOPPED_MARKER = "已停止生成"
ERROR_PREFIX = "抱歉，出错了: "
SUMMARY_HISTORY_LIMIT = 4
# session names that still qualify for an automatic title
UNTITLED_NAMES = frozenset({DEFAULT_SESSION_NAME, "Chat"})
_QUOTES = re.compile(r"^[\"'“”]|[\"'“”]$")


def compute_dialogue_info(stream: StreamSession, model: str) -> DialogueInfo:
    """Throughput metrics for a completed stream (token count is estimated)."""
    raw = stream.accumulator.snapshot()
    total = stream.timing.total_time
    ttft = stream.timing.time_to_first_token
    if ttft is None:
        ttft = total / 3
    estimated_tokens = len(raw) / 4
    return DialogueInfo(
        tokens_per_second=round(estimated_tokens / total, 1) if total > 0 else None,
        time_to_first_token=round(ttft, 2),
        total_time=round(total, 2),
        model=model,
    )


def clean_title(text: str, max_length: int = 50) -> str:
    """Strip surrounding quotes and cap the length of a generated title."""
    title = _QUOTES.sub("", text.strip())
    if len(title) > max_length:
        title = title[:max_length - 3] + "..."
    return title


class ChatService:
    """
    Conversation orchestrator.

    1. Validates configuration and session exclusivity
    2. Appends the user message and an assistant placeholder
    3. Streams the answer through the StreamSessionController
    4. Settles the placeholder on success, stop or failure and persists
    """

    def __init__(
        self,
        client: LLMClient,
        manager: SessionManager,
        *,
        registry: StreamRegistry | None = None,
        scheduler: RenderScheduler | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        self.client = client
        self.manager = manager
        self.registry = registry or StreamRegistry()
        self.scheduler = scheduler or RenderScheduler(
            renderer, interval=client.settings.render_interval
        )
        self.manager.is_generating = self.registry.is_generating
        self.controller = StreamSessionController(
            client, self.scheduler, is_displayed=manager.is_displayed
        )
        self._background: set[asyncio.Task] = set()

    @property
    def settings(self) -> ChatSettings:
        return self.client.settings

    def is_generating(self, session_id: str) -> bool:
        return self.registry.is_generating(session_id)

    # ------------------------------------------------------------------ #
    # Sending                                                            #
    # ------------------------------------------------------------------ #

    async def send_message(
        self,
        session_id: str,
        prompt: str,
        images: list[str] | None = None,
        *,
        regenerate: bool = False,
    ) -> Message:
        """
        Send ``prompt`` in ``session_id`` and stream the answer.

        Returns the settled assistant message. Stops and transport failures
        are reported through that message, not raised. ConfigError,
        SessionBusyError and ValueError (empty prompt) are raised before the
        history is touched.
        """
        self.client.ensure_configured()
        self.registry.ensure_available(session_id)
        session = self.manager.get(session_id)

        text = prompt.strip()
        if not regenerate and not text and not images:
            raise ValueError("Cannot send an empty message")

        if not regenerate:
            session.history.append(
                Message(role="user", content=text, images=images or None)
            )
        assistant = Message(role="assistant")
        session.history.append(assistant)

        stream = StreamSession(
            stream_id=f"stream_{assistant.id}",
            session_id=session_id,
            message=assistant,
            history=session.history,
            token=CancellationToken(),
        )
        lifecycle = StreamLifecycle(
            stream,
            self.registry,
            self.scheduler,
            cancel_transport=self.client.cancel_stream,
        )
        self.registry.register(stream, lifecycle)

        completed = False
        try:
            await self.manager.persist()
            run = (
                self.controller.run
                if self.settings.enable_streaming
                else self.controller.run_once
            )
            async with operation_context(
                "send_message",
                context={"session_id": session_id, "stream_id": stream.stream_id},
            ):
                await run(stream, lifecycle)
            self._settle_completed(stream)
            completed = True
        except StreamAbortedError:
            self._settle_aborted(stream)
        except Exception as e:
            if stream.token.cancelled:
                # a closed transport may surface its own error after a stop
                self._settle_aborted(stream)
            else:
                self._settle_failed(stream, e)
        finally:
            lifecycle.finalize()
            await self.manager.persist()
            if self.manager.is_displayed(session_id):
                self.scheduler.render_now(
                    RenderUpdate(session_id, assistant.id, assistant.content)
                )

        if completed and self._wants_summary(session_id):
            self._spawn(self.summarize_session(session_id))
        return assistant

    def _settle_completed(self, stream: StreamSession) -> None:
        raw = stream.accumulator.snapshot()
        split = split_thinking(raw)
        message = stream.message
        message.content = split.content
        message.thinking = split.thinking
        message.dialogue_info = compute_dialogue_info(stream, self.settings.model)

    def _settle_aborted(self, stream: StreamSession) -> None:
        split = split_thinking(stream.accumulator.snapshot())
        message = stream.message
        message.content = split.content or STOPPED_MARKER
        message.thinking = split.thinking
        message.dialogue_info = DialogueInfo(model=self.settings.model, stopped=True)

    def _settle_failed(self, stream: StreamSession, error: Exception) -> None:
        StreamErrorHandler.log_failure(
            error,
            "send_message",
            {"session_id": stream.session_id, "stream_id": stream.stream_id},
        )
        message = stream.message
        message.content = ERROR_PREFIX + StreamErrorHandler.user_message(error)
        message.is_error = True
        message.thinking = None
        message.dialogue_info = None

    # ------------------------------------------------------------------ #
    # Stop / regenerate / edit                                           #
    # ------------------------------------------------------------------ #

    async def stop_generation(self, session_id: str) -> bool:
        """Abort the session's active stream; returns whether one existed."""
        stream = self.registry.for_session(session_id)
        if stream is None:
            return False
        lifecycle = self.registry.lifecycle(stream.stream_id)
        if lifecycle is None:
            stream.token.cancel()
            return True
        logger.info("Stopping stream %s for session %s", stream.stream_id, session_id)
        await lifecycle.abort()
        return True

    async def stop_all(self) -> None:
        for session_id in self.registry.active_session_ids:
            await self.stop_generation(session_id)

    async def regenerate(self, session_id: str, assistant_index: int) -> Message:
        """Drop the answer at ``assistant_index`` and ask again."""
        self.registry.ensure_available(session_id)
        session = self.manager.get(session_id)
        if not 0 <= assistant_index < len(session.history):
            raise SessionError(f"No message at index {assistant_index}")
        if session.history[assistant_index].role != "assistant":
            raise SessionError("Only assistant messages can be regenerated")

        user_index = next(
            (
                i for i in range(assistant_index - 1, -1, -1)
                if session.history[i].role == "user"
            ),
            None,
        )
        if user_index is None:
            raise SessionError("No user message precedes this answer")

        self.client.ensure_configured()
        self.manager.truncate_history(session_id, user_index + 1)
        return await self.send_message(session_id, "", regenerate=True)

    async def edit_and_resend(
        self, session_id: str, index: int, content: str
    ) -> Message:
        """
        Edit a message.

        A user message is replaced by a new send of ``content`` with
        everything after it discarded; an assistant message is edited in
        place.
        """
        session = self.manager.get(session_id)
        if not 0 <= index < len(session.history):
            raise SessionError(f"No message at index {index}")
        original = session.history[index]

        if original.role == "assistant":
            message = self.manager.edit_message(session_id, index, content)
            await self.manager.persist()
            return message

        self.client.ensure_configured()
        self.registry.ensure_available(session_id)
        if not content.strip() and not original.images:
            raise ValueError("Cannot send an empty message")
        self.manager.truncate_history(session_id, index)
        return await self.send_message(session_id, content, original.images)

    # ------------------------------------------------------------------ #
    # Titles                                                             #
    # ------------------------------------------------------------------ #

    def _wants_summary(self, session_id: str) -> bool:
        session = self.manager.sessions.get(session_id)
        return (
            session is not None
            and self.settings.enable_auto_summary
            and session.name in UNTITLED_NAMES
            and len(session.history) >= 2
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @log_operation("summarize_session")
    async def summarize_session(self, session_id: str) -> str | None:
        """
        Generate a title from the opening exchange.

        Returns the new name, or None when nothing was renamed. Failures are
        logged; a title is never worth surfacing an error for.
        """
        session = self.manager.sessions.get(session_id)
        if session is None or not self.settings.model or not self.settings.api_endpoint:
            return None
        if session.name not in UNTITLED_NAMES:
            return None

        messages = [
            LLMMessage(role=MessageRole(m.role), content=strip_thinking(m.content))
            for m in session.history[:SUMMARY_HISTORY_LIMIT]
            if not m.is_error and strip_thinking(m.content)
        ]
        if not messages:
            return None
        messages.append(
            LLMMessage(role=MessageRole.USER, content=self.settings.summary_prompt)
        )
        request = LLMRequest(
            model=self.settings.model,
            messages=messages,
            stream=False,
            options=RequestOptions(temperature=self.settings.summary_temperature),
        )

        try:
            text = await self.client.complete(request)
        except Exception as e:
            StreamErrorHandler.log_failure(e, "summarize_session", {"session_id": session_id})
            return None

        title = clean_title(text, self.settings.max_title_length)
        if not title:
            return None
        # the user may have renamed the session while the request was in flight
        if session.name not in UNTITLED_NAMES or session_id not in self.manager.sessions:
            return None
        session.name = title
        await self.manager.persist()
        logger.info("Session %s titled %r", session_id, title)
        return title

    # ------------------------------------------------------------------ #
    # Models                                                             #
    # ------------------------------------------------------------------ #

    @log_operation("scan_models", log_result=True)
    async def scan_models(self) -> list[str]:
        """
        Merge the server's installed models into ``custom_models``.

        Selects the first known model when none is configured yet. Returns
        the names the server reported.
        """
        names = await self.client.list_models()
        self.settings.custom_models = sorted({*self.settings.custom_models, *names})
        if not self.settings.model and self.settings.custom_models:
            self.settings.model = self.settings.custom_models[0]
        logger.info("Found %d models on %s", len(names), self.client.models_url())
        return names

    async def cleanup(self) -> None:
        """Stop every stream and wait for background title requests."""
        await self.stop_all()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
