"""
Answer accumulation and render throttling.

The accumulator has one writer (the controller's read loop) and one extra
reader (the render callback). Both run on the event loop, so snapshots are
handed off without locking.

The render throttle is a single slot per process: at most one frame is
pending, later requests overwrite the source of that frame, and the frame
reads the newest snapshot when it actually runs.
"""

from __future__ import annotations

import asyncio
import inspect
import io
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_RENDER_INTERVAL = 1 / 60


class ResponseAccumulator:
    """Growing answer text for one in-flight request."""

    def __init__(self) -> None:
        self._buffer = io.StringIO()
        self._length = 0

    def append(self, delta: str) -> int:
        """Append text and return the new accumulated length."""
        if delta:
            self._buffer.write(delta)
            self._length += len(delta)
        return self._length

    def snapshot(self) -> str:
        return self._buffer.getvalue()

    def __len__(self) -> int:
        return self._length

    def clear(self) -> None:
        self._buffer.seek(0)
        self._buffer.truncate(0)
        self._length = 0


@dataclass(frozen=True)
class RenderUpdate:
    """What the renderer receives for one frame."""
    session_id: str
    message_id: str
    content: str


Renderer = Callable[[RenderUpdate], Awaitable[None] | None]


@dataclass
class _PendingFrame:
    session_id: str
    message_id: str
    snapshot: Callable[[], str]


class RenderScheduler:
    """
    Single-slot coalescing render queue.

    ``schedule`` is cheap to call after every append; bursts collapse into one
    renderer call per ``interval``.
    """

    def __init__(
        self,
        renderer: Renderer | None = None,
        interval: float = DEFAULT_RENDER_INTERVAL,
    ) -> None:
        self.renderer = renderer
        self.interval = interval
        self._pending: _PendingFrame | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self.frames_rendered = 0

    @property
    def has_pending(self) -> bool:
        return self._handle is not None

    def schedule(
        self, session_id: str, message_id: str, snapshot: Callable[[], str]
    ) -> None:
        """Request a frame; the slot keeps only the latest source."""
        if self.renderer is None:
            return
        self._pending = _PendingFrame(session_id, message_id, snapshot)
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.interval, self._run_frame)

    def cancel(self, message_id: str | None = None) -> None:
        """Drop the pending frame (only if it belongs to ``message_id`` when given)."""
        if self._pending is None:
            return
        if message_id is not None and self._pending.message_id != message_id:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._pending = None

    def render_now(self, update: RenderUpdate) -> None:
        """Render immediately, bypassing the throttle."""
        self._dispatch(update)

    def _run_frame(self) -> None:
        frame, self._pending = self._pending, None
        self._handle = None
        if frame is None:
            return
        self._dispatch(
            RenderUpdate(frame.session_id, frame.message_id, frame.snapshot())
        )

    def _dispatch(self, update: RenderUpdate) -> None:
        if self.renderer is None:
            return
        try:
            result = self.renderer(update)
        except Exception:
            logger.exception("Renderer failed for message %s", update.message_id)
            return
        self.frames_rendered += 1
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._render_task_done)

    def _render_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async renderer failed: %s", task.exception())
