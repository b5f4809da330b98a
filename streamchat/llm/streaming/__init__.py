"""
Streaming response engine.

This package contains:
- Frame decoding of event-stream text
- Dialect parsing of OpenAI-style and Ollama-style payloads
- Response accumulation and throttled rendering
- Cancellation tokens and stream lifecycle management
- Think/answer splitting

The controller lives in ``streaming.controller`` and is imported from there.
"""

from __future__ import annotations

from .accumulator import RenderScheduler, RenderUpdate, ResponseAccumulator
from .cancellation import CancellationToken, StreamLifecycle, StreamRegistry
from .dialects import parse_complete_response, parse_payload
from .frames import FrameDecoder
from .models import PARSE_SKIP, ParsedDelta, ParseSkip, StreamSession, StreamState
from .thinking import ThinkSplit, split_thinking, strip_thinking

__all__ = [
    "PARSE_SKIP",
    "CancellationToken",
    "FrameDecoder",
    "ParseSkip",
    "ParsedDelta",
    "RenderScheduler",
    "RenderUpdate",
    "ResponseAccumulator",
    "StreamLifecycle",
    "StreamRegistry",
    "StreamSession",
    "StreamState",
    "ThinkSplit",
    "parse_complete_response",
    "parse_payload",
    "split_thinking",
    "strip_thinking",
]
