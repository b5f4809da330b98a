"""
Cancellation and lifecycle management for in-flight streams.

One CancellationToken is bound to one StreamSession. The StreamLifecycle
owning that pair guarantees that listener teardown, removal of any pending
render and removal of the stream from the registry happen exactly once,
whichever of success, failure or user stop comes first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..exceptions import SessionBusyError
from .accumulator import RenderScheduler
from .models import StreamSession

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class CancellationToken:
    """Cooperative cancellation flag with listeners."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._listeners: list[Listener] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback fired on cancel; returns its unsubscribe function."""
        if self._cancelled:
            listener()
            return lambda: None
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener failed")
        return True

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True


class StreamRegistry:
    """
    Arena of active StreamSessions indexed by stream id.

    At most one stream may exist per session id.
    """

    def __init__(self) -> None:
        self._streams: dict[str, StreamSession] = {}
        self._lifecycles: dict[str, StreamLifecycle] = {}
        self._by_session: dict[str, str] = {}

    def ensure_available(self, session_id: str) -> None:
        if session_id in self._by_session:
            raise SessionBusyError(session_id)

    def register(self, stream: StreamSession, lifecycle: StreamLifecycle) -> None:
        self.ensure_available(stream.session_id)
        self._streams[stream.stream_id] = stream
        self._lifecycles[stream.stream_id] = lifecycle
        self._by_session[stream.session_id] = stream.stream_id

    def release(self, stream_id: str) -> None:
        stream = self._streams.pop(stream_id, None)
        self._lifecycles.pop(stream_id, None)
        if stream is not None and self._by_session.get(stream.session_id) == stream_id:
            del self._by_session[stream.session_id]

    def get(self, stream_id: str) -> StreamSession | None:
        return self._streams.get(stream_id)

    def lifecycle(self, stream_id: str) -> StreamLifecycle | None:
        return self._lifecycles.get(stream_id)

    def for_session(self, session_id: str) -> StreamSession | None:
        stream_id = self._by_session.get(session_id)
        return self._streams.get(stream_id) if stream_id else None

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._by_session

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._by_session)

    def __len__(self) -> int:
        return len(self._streams)


class StreamLifecycle:
    """Idempotent teardown for one StreamSession."""

    def __init__(
        self,
        stream: StreamSession,
        registry: StreamRegistry,
        scheduler: RenderScheduler | None = None,
        cancel_transport: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        self.stream = stream
        self.registry = registry
        self.scheduler = scheduler
        self.cancel_transport = cancel_transport
        self._teardowns: list[Callable[[], None]] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def subscribe(self, teardown: Callable[[], None]) -> None:
        """Register a listener teardown to run once on finalize."""
        if self._finalized:
            teardown()
            return
        self._teardowns.append(teardown)

    async def abort(self) -> None:
        """
        User stop: token fire, transport cancel by id, then finalize.

        The token fires before the first await so a reader woken by the
        transport close already sees the stream as stopped. A transport that
        fails to cancel is logged; local teardown still runs.
        """
        if self._finalized:
            return
        self.stream.token.cancel()
        if self.cancel_transport is not None:
            try:
                await self.cancel_transport(self.stream.stream_id)
            except Exception as e:
                logger.warning(
                    "Transport cancel failed for stream %s: %s",
                    self.stream.stream_id, e,
                )
        self.finalize()

    def finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        teardowns, self._teardowns = self._teardowns, []
        for teardown in teardowns:
            try:
                teardown()
            except Exception:
                logger.exception(
                    "Listener teardown failed for stream %s", self.stream.stream_id
                )
        if self.scheduler is not None:
            self.scheduler.cancel(self.stream.message_id)
        self.registry.release(self.stream.stream_id)
