"""
Dialect parsing for chat completion payloads.

Providers disagree on how an increment of text and the end of an answer are
represented. The fields read here are the complete set; nothing else is
consulted:

- text, in priority order:
    ``choices[0].delta.content``   (OpenAI-style)
    ``message.content``            (Ollama-style)
- finish signal, any one of:
    ``choices[0].finish_reason``   non-empty and not the string "null"
    ``finish_reason``              same rule, top level (DeepSeek-style)
    ``done is True``               (Ollama-style)
    the literal payload ``[DONE]`` (protocol sentinel)

An unrecognised finish-reason location is reported as not finished.
"""

from __future__ import annotations

import json
from typing import Any

from .models import PARSE_SKIP, ParsedDelta, ParseSkip

DONE_SENTINEL = "[DONE]"
OBJECT_OPEN = "{"


def _first_choice(data: dict[str, Any]) -> dict[str, Any]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _is_finish_reason(value: Any) -> bool:
    return bool(value) and value != "null"


def extract_delta_text(data: dict[str, Any]) -> str:
    """Incremental text of a decoded streaming payload."""
    delta = _mapping(_first_choice(data).get("delta"))
    return _text(delta.get("content")) or _text(
        _mapping(data.get("message")).get("content")
    )


def is_stream_finished(data: dict[str, Any]) -> bool:
    """Union of every known completion signal."""
    if _is_finish_reason(_first_choice(data).get("finish_reason")):
        return True
    if data.get("done") is True:
        return True
    return _is_finish_reason(data.get("finish_reason"))


def parse_payload(payload: str) -> ParsedDelta | ParseSkip:
    """
    Turn one event payload into ``(text, finished)``.

    Malformed payloads never raise: anything that does not look like a JSON
    object is treated as literal streamed text, and a broken object is skipped.
    """
    if payload == DONE_SENTINEL:
        return ParsedDelta("", True)
    if not payload:
        return PARSE_SKIP

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        if payload.startswith(OBJECT_OPEN):
            return PARSE_SKIP
        return ParsedDelta(payload, False)

    if not isinstance(data, dict):
        return ParsedDelta("", False)
    return ParsedDelta(extract_delta_text(data), is_stream_finished(data))


def parse_complete_response(body: str) -> str:
    """
    Extract the answer from a non-streaming response body.

    Accepts ``{choices:[{message:{content}}]}`` or ``{message:{content}}``;
    a body that is not a JSON object is returned as literal text.
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        if body.lstrip().startswith(OBJECT_OPEN):
            return ""
        return body

    if not isinstance(data, dict):
        return ""
    message = _mapping(_first_choice(data).get("message"))
    return _text(message.get("content")) or _text(
        _mapping(data.get("message")).get("content")
    )
