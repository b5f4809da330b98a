#!/usr/bin/env python3
"""
Tests for answer accumulation and the single-slot render throttle.
"""

import asyncio

import pytest

from streamchat.llm.streaming.accumulator import (
    RenderScheduler,
    RenderUpdate,
    ResponseAccumulator,
)


class TestResponseAccumulator:
    """Append-only answer text."""

    def test_append_returns_total_length(self):
        acc = ResponseAccumulator()
        assert acc.append("Hel") == 3
        assert acc.append("lo") == 5
        assert acc.snapshot() == "Hello"
        assert len(acc) == 5

    def test_snapshot_is_prefix_stable(self):
        acc = ResponseAccumulator()
        seen = []
        for delta in ["a", "bc", "", "def"]:
            acc.append(delta)
            seen.append(acc.snapshot())
        for earlier, later in zip(seen, seen[1:]):
            assert later.startswith(earlier)

    def test_clear(self):
        acc = ResponseAccumulator()
        acc.append("x")
        acc.clear()
        assert acc.snapshot() == ""
        assert len(acc) == 0


class TestRenderScheduler:
    """Coalescing render slot."""

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_frame_with_latest_text(self):
        updates: list[RenderUpdate] = []
        scheduler = RenderScheduler(updates.append, interval=0.01)
        acc = ResponseAccumulator()

        for delta in ["a", "b", "c"]:
            acc.append(delta)
            scheduler.schedule("s1", "m1", acc.snapshot)
        acc.append("d")  # after the last schedule, before the frame runs

        await asyncio.sleep(0.05)
        assert updates == [RenderUpdate("s1", "m1", "abcd")]
        assert scheduler.frames_rendered == 1
        assert not scheduler.has_pending

    @pytest.mark.asyncio
    async def test_latest_source_wins(self):
        updates: list[RenderUpdate] = []
        scheduler = RenderScheduler(updates.append, interval=0.01)
        scheduler.schedule("s1", "m1", lambda: "first")
        scheduler.schedule("s2", "m2", lambda: "second")

        await asyncio.sleep(0.05)
        assert updates == [RenderUpdate("s2", "m2", "second")]

    @pytest.mark.asyncio
    async def test_cancel_matching_message(self):
        updates: list[RenderUpdate] = []
        scheduler = RenderScheduler(updates.append, interval=0.01)
        scheduler.schedule("s1", "m1", lambda: "text")
        scheduler.cancel("other")
        assert scheduler.has_pending
        scheduler.cancel("m1")
        assert not scheduler.has_pending

        await asyncio.sleep(0.05)
        assert updates == []

    @pytest.mark.asyncio
    async def test_render_now_bypasses_throttle(self):
        updates: list[RenderUpdate] = []
        scheduler = RenderScheduler(updates.append, interval=10)
        scheduler.render_now(RenderUpdate("s1", "m1", "final"))
        assert updates == [RenderUpdate("s1", "m1", "final")]

    @pytest.mark.asyncio
    async def test_async_renderer(self):
        updates: list[str] = []

        async def renderer(update: RenderUpdate) -> None:
            updates.append(update.content)

        scheduler = RenderScheduler(renderer, interval=0.01)
        scheduler.schedule("s1", "m1", lambda: "async")
        await asyncio.sleep(0.05)
        assert updates == ["async"]

    @pytest.mark.asyncio
    async def test_failing_renderer_does_not_raise(self):
        def renderer(update: RenderUpdate) -> None:
            raise RuntimeError("display gone")

        scheduler = RenderScheduler(renderer, interval=0.01)
        scheduler.schedule("s1", "m1", lambda: "x")
        await asyncio.sleep(0.05)
        assert scheduler.frames_rendered == 0

    def test_without_renderer_nothing_is_scheduled(self):
        scheduler = RenderScheduler()
        scheduler.schedule("s1", "m1", lambda: "x")
        assert not scheduler.has_pending
