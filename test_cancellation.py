#!/usr/bin/env python3
"""
Tests for cancellation tokens, the stream registry and lifecycle teardown.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from streamchat.history.models import Message
from streamchat.llm.exceptions import SessionBusyError
from streamchat.llm.streaming.accumulator import RenderScheduler
from streamchat.llm.streaming.cancellation import (
    CancellationToken,
    StreamLifecycle,
    StreamRegistry,
)
from streamchat.llm.streaming.models import StreamSession


def make_stream(session_id: str = "s1") -> StreamSession:
    message = Message(role="assistant")
    return StreamSession(
        stream_id=f"stream_{message.id}",
        session_id=session_id,
        message=message,
        history=[message],
        token=CancellationToken(),
    )


class TestCancellationToken:
    """Cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_fires_listeners_once(self):
        token = CancellationToken()
        listener = Mock()
        token.add_listener(listener)

        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled
        listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        token = CancellationToken()
        listener = Mock()
        unsubscribe = token.add_listener(listener)
        unsubscribe()
        unsubscribe()
        token.cancel()
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_added_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        listener = Mock()
        token.add_listener(listener)
        listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self):
        token = CancellationToken()
        second = Mock()
        token.add_listener(Mock(side_effect=RuntimeError("boom")))
        token.add_listener(second)
        token.cancel()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_sleep_elapses(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_sleep_interrupted_by_cancel(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)
        assert await asyncio.wait_for(token.sleep(5), timeout=1) is True


class TestStreamRegistry:
    """One stream per session."""

    def test_register_and_release(self):
        registry = StreamRegistry()
        stream = make_stream()
        lifecycle = StreamLifecycle(stream, registry)
        registry.register(stream, lifecycle)

        assert registry.is_generating("s1")
        assert registry.for_session("s1") is stream
        assert registry.get(stream.stream_id) is stream
        assert registry.lifecycle(stream.stream_id) is lifecycle
        assert registry.active_session_ids == ["s1"]
        assert len(registry) == 1

        registry.release(stream.stream_id)
        assert not registry.is_generating("s1")
        assert registry.for_session("s1") is None
        assert len(registry) == 0

    def test_second_stream_for_same_session_is_rejected(self):
        registry = StreamRegistry()
        first = make_stream()
        registry.register(first, StreamLifecycle(first, registry))

        second = make_stream()
        with pytest.raises(SessionBusyError):
            registry.register(second, StreamLifecycle(second, registry))
        assert registry.for_session("s1") is first

    def test_other_sessions_are_independent(self):
        registry = StreamRegistry()
        for session_id in ("s1", "s2"):
            stream = make_stream(session_id)
            registry.register(stream, StreamLifecycle(stream, registry))
        assert sorted(registry.active_session_ids) == ["s1", "s2"]

    def test_release_unknown_is_noop(self):
        StreamRegistry().release("missing")


class TestStreamLifecycle:
    """Exactly-once teardown."""

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self):
        registry = StreamRegistry()
        scheduler = RenderScheduler(Mock(), interval=10)
        stream = make_stream()
        lifecycle = StreamLifecycle(stream, registry, scheduler)
        registry.register(stream, lifecycle)
        teardown = Mock()
        lifecycle.subscribe(teardown)
        scheduler.schedule("s1", stream.message_id, lambda: "x")

        lifecycle.finalize()
        lifecycle.finalize()

        teardown.assert_called_once()
        assert lifecycle.finalized
        assert not scheduler.has_pending
        assert not registry.is_generating("s1")

    @pytest.mark.asyncio
    async def test_finalize_keeps_other_streams_pending_render(self):
        registry = StreamRegistry()
        scheduler = RenderScheduler(Mock(), interval=10)
        stream = make_stream()
        lifecycle = StreamLifecycle(stream, registry, scheduler)
        scheduler.schedule("s2", "other-message", lambda: "x")

        lifecycle.finalize()
        assert scheduler.has_pending
        scheduler.cancel()

    @pytest.mark.asyncio
    async def test_abort_fires_token_before_transport_cancel(self):
        registry = StreamRegistry()
        stream = make_stream()
        order: list[str] = []
        stream.token.add_listener(lambda: order.append("token"))

        async def cancel_transport(stream_id: str) -> bool:
            order.append(f"transport:{stream_id}")
            return True

        lifecycle = StreamLifecycle(stream, registry, cancel_transport=cancel_transport)
        registry.register(stream, lifecycle)

        await lifecycle.abort()
        await lifecycle.abort()

        assert order == ["token", f"transport:{stream.stream_id}"]
        assert stream.token.cancelled
        assert lifecycle.finalized
        assert not registry.is_generating("s1")

    @pytest.mark.asyncio
    async def test_abort_survives_transport_failure(self):
        registry = StreamRegistry()
        stream = make_stream()
        cancel_transport = AsyncMock(side_effect=RuntimeError("already closed"))
        lifecycle = StreamLifecycle(stream, registry, cancel_transport=cancel_transport)
        registry.register(stream, lifecycle)

        await lifecycle.abort()

        cancel_transport.assert_awaited_once_with(stream.stream_id)
        assert stream.token.cancelled
        assert not registry.is_generating("s1")

    @pytest.mark.asyncio
    async def test_subscribe_after_finalize_runs_immediately(self):
        stream = make_stream()
        lifecycle = StreamLifecycle(stream, StreamRegistry())
        lifecycle.finalize()
        teardown = Mock()
        lifecycle.subscribe(teardown)
        teardown.assert_called_once()
