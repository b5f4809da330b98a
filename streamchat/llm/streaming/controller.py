"""
Stream session controller.

Drives one logical request through
``Idle -> Requesting -> Streaming -> Finishing -> {Completed, Continuing, Aborted, Failed}``.

Transport closure and true completion are different things: only a parsed
finish signal marks the answer complete. A stream that closes without one is
re-issued with the partial answer as context, at most ``max_continuations``
times, and the new text is appended to what was already accumulated.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ...logging_utils import ContextualLogger
from ..client import LLMClient
from ..exceptions import StreamAbortedError
from ..models import LLMRequest
from .accumulator import RenderScheduler
from .cancellation import StreamLifecycle
from .dialects import parse_payload
from .models import ParsedDelta, ParseSkip, StreamSession, StreamState

T = TypeVar("T")


class StreamSessionController:
    """Orchestrates transport, decoder, parser and accumulator for one stream."""

    def __init__(
        self,
        client: LLMClient,
        scheduler: RenderScheduler,
        *,
        is_displayed: Callable[[str], bool] | None = None,
        on_continue: Callable[[StreamSession], None] | None = None,
    ) -> None:
        self.client = client
        self.scheduler = scheduler
        self.is_displayed = is_displayed or (lambda _session_id: True)
        self.on_continue = on_continue

    @property
    def auto_continue(self) -> bool:
        return self.client.settings.auto_continue_stream

    @property
    def max_continuations(self) -> int:
        return self.client.settings.max_continuations

    @property
    def continuation_delay(self) -> float:
        return self.client.settings.continuation_delay

    # ------------------------------------------------------------------ #
    # State handling                                                     #
    # ------------------------------------------------------------------ #

    def _transition(
        self, stream: StreamSession, state: StreamState, log: ContextualLogger
    ) -> None:
        log.debug(
            "Stream state change", from_state=stream.state.value, to_state=state.value
        )
        stream.state = state

    def should_continue(self, stream: StreamSession) -> bool:
        """Finishing -> Continuing iff no finish signal and attempts remain."""
        return (
            not stream.finished
            and self.auto_continue
            and stream.continuation_count < self.max_continuations
        )

    def _check_cancelled(self, stream: StreamSession) -> None:
        if stream.token.cancelled:
            raise StreamAbortedError()

    # ------------------------------------------------------------------ #
    # Public entry points                                                #
    # ------------------------------------------------------------------ #

    async def run(self, stream: StreamSession, lifecycle: StreamLifecycle) -> str:
        """
        Stream a full answer, continuing interrupted streams as configured.

        Returns the accumulated raw text on completion. Raises
        StreamAbortedError when the token fires; any other exception moves
        the stream to Failed and propagates unchanged.
        """
        log = ContextualLogger({
            "stream_id": stream.stream_id,
            "session_id": stream.session_id,
            "message_id": stream.message_id,
        })
        try:
            while True:
                self._check_cancelled(stream)
                self._transition(stream, StreamState.REQUESTING, log)
                request = self.client.build_request(
                    stream.history,
                    continuation=stream.continuation_count > 0,
                    stream=True,
                )
                stream.decoder.reset()
                await self._guarded(
                    stream, lifecycle, self._read_attempt(stream, request, log)
                )
                self._check_cancelled(stream)

                self._transition(stream, StreamState.FINISHING, log)
                if not self.should_continue(stream):
                    break

                self._transition(stream, StreamState.CONTINUING, log)
                stream.continuation_count += 1
                log.info(
                    "Stream ended without a finish signal, continuing",
                    attempt=stream.continuation_count,
                    max_attempts=self.max_continuations,
                    accumulated_length=len(stream.accumulator),
                )
                if self.on_continue is not None:
                    self.on_continue(stream)
                if await stream.token.sleep(self.continuation_delay):
                    raise StreamAbortedError()

            stream.timing.mark_end()
            self._transition(stream, StreamState.COMPLETED, log)
            log.info(
                "Stream completed",
                finished_signal=stream.finished,
                continuations=stream.continuation_count,
                length=len(stream.accumulator),
            )
            return stream.accumulator.snapshot()

        except StreamAbortedError:
            stream.timing.mark_end()
            self._transition(stream, StreamState.ABORTED, log)
            log.info("Stream stopped by user", length=len(stream.accumulator))
            raise
        except Exception as e:
            stream.timing.mark_end()
            self._transition(stream, StreamState.FAILED, log)
            log.error(
                "Stream failed", error_type=type(e).__name__, error_message=str(e)
            )
            raise

    async def run_once(self, stream: StreamSession, lifecycle: StreamLifecycle) -> str:
        """Non-streaming request: one call, no continuation."""
        log = ContextualLogger({
            "stream_id": stream.stream_id,
            "session_id": stream.session_id,
            "message_id": stream.message_id,
        })
        try:
            self._check_cancelled(stream)
            self._transition(stream, StreamState.REQUESTING, log)
            request = self.client.build_request(stream.history, stream=False)
            text = await self._guarded(stream, lifecycle, self.client.complete(request))
            self._check_cancelled(stream)
            self._transition(stream, StreamState.FINISHING, log)
            self._apply(stream, ParsedDelta(text, True))
            stream.timing.mark_end()
            self._transition(stream, StreamState.COMPLETED, log)
            return stream.accumulator.snapshot()
        except StreamAbortedError:
            stream.timing.mark_end()
            self._transition(stream, StreamState.ABORTED, log)
            raise
        except Exception as e:
            stream.timing.mark_end()
            self._transition(stream, StreamState.FAILED, log)
            log.error(
                "Request failed", error_type=type(e).__name__, error_message=str(e)
            )
            raise

    # ------------------------------------------------------------------ #
    # Internals                                                          #
    # ------------------------------------------------------------------ #

    async def _guarded(
        self,
        stream: StreamSession,
        lifecycle: StreamLifecycle,
        work: Awaitable[T],
    ) -> T:
        """
        Run ``work`` as a task that the stream's token cancels.

        The token listener is registered with the lifecycle so teardown
        removes it exactly once.
        """
        task = asyncio.ensure_future(work)
        unsubscribe = stream.token.add_listener(task.cancel)
        lifecycle.subscribe(unsubscribe)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if stream.token.cancelled and not (current and current.cancelling()):
                raise StreamAbortedError() from None
            raise
        finally:
            unsubscribe()

    async def _read_attempt(
        self, stream: StreamSession, request: LLMRequest, log: ContextualLogger
    ) -> None:
        async with self.client.open_stream(stream.stream_id, request) as chunks:
            self._transition(stream, StreamState.STREAMING, log)
            async for chunk in chunks:
                if stream.token.cancelled:
                    return
                for payload in stream.decoder.feed(chunk):
                    if stream.token.cancelled:
                        return
                    self._apply(stream, parse_payload(payload))
        if stream.token.cancelled:
            return
        for payload in stream.decoder.flush():
            self._apply(stream, parse_payload(payload))

    def _apply(self, stream: StreamSession, parsed: ParsedDelta | ParseSkip) -> None:
        """Apply one parsed payload; the only writer of ``message.content``."""
        if isinstance(parsed, ParseSkip):
            return
        if parsed.finished:
            stream.finished = True
        if not parsed.text:
            return

        stream.timing.mark_first_chunk()
        stream.accumulator.append(parsed.text)
        stream.message.content = stream.accumulator.snapshot()

        # the data model is always updated; rendering only for the visible session
        if self.is_displayed(stream.session_id):
            self.scheduler.schedule(
                stream.session_id, stream.message_id, stream.accumulator.snapshot
            )
