"""
Streaming-specific dataclasses for the response engine.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

from .accumulator import ResponseAccumulator
from .frames import FrameDecoder

if TYPE_CHECKING:                                        # pragma: no cover
    from ...history.models import Message
    from .cancellation import CancellationToken


class StreamState(Enum):
    """Lifecycle states of one logical request."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINISHING = "finishing"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class ParsedDelta(NamedTuple):
    """Incremental text from one payload and whether it carried a finish signal."""
    text: str
    finished: bool


class ParseSkip:
    """Sentinel for a payload that carries nothing usable."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "PARSE_SKIP"

    def __bool__(self) -> bool:
        return False


PARSE_SKIP = ParseSkip()


@dataclass
class TimingMarks:
    """Timing marks captured during one stream's lifetime."""
    started_at: float = field(default_factory=time.monotonic)
    first_chunk_at: float | None = None
    ended_at: float | None = None

    def mark_first_chunk(self) -> None:
        if self.first_chunk_at is None:
            self.first_chunk_at = time.monotonic()

    def mark_end(self) -> None:
        self.ended_at = time.monotonic()

    @property
    def total_time(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at

    @property
    def time_to_first_token(self) -> float | None:
        if self.first_chunk_at is None:
            return None
        return self.first_chunk_at - self.started_at


@dataclass
class StreamSession:
    """
    Ephemeral state of one in-flight request.

    Holds references to the owning session's history and to the assistant
    placeholder message; the controller is the only writer of
    ``message.content`` while the stream is registered.
    """
    stream_id: str
    session_id: str
    message: Message
    history: list[Message]
    token: CancellationToken
    decoder: FrameDecoder = field(default_factory=FrameDecoder)
    accumulator: ResponseAccumulator = field(default_factory=ResponseAccumulator)
    continuation_count: int = 0
    finished: bool = False
    state: StreamState = StreamState.IDLE
    timing: TimingMarks = field(default_factory=TimingMarks)

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def raw_buffer(self) -> str:
        return self.decoder.buffer

    @property
    def accumulated_text(self) -> str:
        return self.accumulator.snapshot()
