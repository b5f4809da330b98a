"""Separate an optional reasoning segment from the visible answer."""

from __future__ import annotations

import re
from typing import NamedTuple

THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>")
OPEN_THINK = re.compile(r"<think>([\s\S]*)$")


class ThinkSplit(NamedTuple):
    thinking: str | None
    content: str


def split_thinking(raw: str) -> ThinkSplit:
    """
    Split finished answer text into ``(thinking, content)``.

    Only call this on the final accumulated text: a tag may be cut across
    delta boundaries.
    """
    match = THINK_BLOCK.search(raw)
    if match:
        content = raw[:match.start()] + raw[match.end():]
        return ThinkSplit(match.group(1).strip(), content.strip())

    open_match = OPEN_THINK.search(raw)
    if open_match:
        # stream cut mid-thought
        return ThinkSplit(open_match.group(1).strip(), "")

    return ThinkSplit(None, raw)


def strip_thinking(text: str) -> str:
    """Remove every complete think region, for use as request context."""
    return THINK_BLOCK.sub("", text).strip()
