"""Shared fixtures: a scripted transport and small async helpers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest

from streamchat.config import ChatSettings


def sse(content: str | None = None, finish_reason: str | None = None) -> str:
    """One OpenAI-style event block."""
    choice: dict[str, Any] = {"delta": {}, "finish_reason": finish_reason}
    if content is not None:
        choice["delta"]["content"] = content
    return f"data: {json.dumps({'choices': [choice]})}\n\n"


class ScriptedTransport:
    """
    Transport double replaying one list of chunks per request.

    With ``hold=True`` every stream stays open after its chunks until the
    reading task is cancelled or the stream is cancelled by id. Like
    HttpxTransport, a cancel by id ends the iterator without an error.
    ``cancel_yields`` makes ``cancel_stream`` hand control back to the loop
    that many times, as a real socket close does.
    """

    def __init__(
        self,
        attempts: list[list[str]] | None = None,
        *,
        hold: bool = False,
        error: Exception | None = None,
        complete_bodies: list[str] | None = None,
        cancel_yields: int = 0,
        models: list[str] | None = None,
    ) -> None:
        self.attempts = list(attempts or [])
        self.hold = hold
        self.error = error
        self.complete_bodies = list(complete_bodies or [])
        self.cancel_yields = cancel_yields
        self.models = list(models or [])
        self.bodies: list[dict[str, Any]] = []
        self.once_bodies: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.model_requests: list[tuple[str, dict[str, str]]] = []
        self.closed = False
        self._closing: dict[str, asyncio.Event] = {}

    @asynccontextmanager
    async def open_stream(
        self,
        stream_id: str,
        endpoint: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> AsyncIterator[AsyncIterator[str]]:
        self.bodies.append(body)
        if self.error is not None:
            raise self.error
        chunks = self.attempts.pop(0) if self.attempts else []
        closing = self._closing[stream_id] = asyncio.Event()
        try:
            yield self._iterate(chunks, closing)
        finally:
            self._closing.pop(stream_id, None)

    async def _iterate(
        self, chunks: list[str], closing: asyncio.Event
    ) -> AsyncIterator[str]:
        for chunk in chunks:
            await asyncio.sleep(0)
            if closing.is_set():
                return
            yield chunk
        if self.hold:
            await closing.wait()

    async def send_once(
        self, endpoint: str, headers: dict[str, str], body: dict[str, Any]
    ) -> str:
        self.once_bodies.append(body)
        if self.error is not None:
            raise self.error
        return self.complete_bodies.pop(0) if self.complete_bodies else ""

    async def cancel_stream(self, stream_id: str) -> bool:
        self.cancelled.append(stream_id)
        closing = self._closing.get(stream_id)
        if closing is not None:
            closing.set()
        for _ in range(self.cancel_yields):
            await asyncio.sleep(0)
        return True

    async def list_models(self, url: str, headers: dict[str, str]) -> list[str]:
        self.model_requests.append((url, headers))
        if self.error is not None:
            raise self.error
        return list(self.models)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(
        api_endpoint="http://llm.test/v1/chat/completions",
        model="test-model",
        auto_continue_stream=True,
        continuation_delay=0.0,
        enable_auto_summary=False,
    )


@pytest.fixture
def transport_factory() -> type[ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture
def event() -> Callable[..., str]:
    return sse


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.001)
    return _wait
