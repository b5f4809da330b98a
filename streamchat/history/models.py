# streamchat/history/models.py
from __future__ import annotations

import itertools
import time
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]

DEFAULT_SESSION_NAME = "未命名聊天"

_message_counter = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_message_id() -> str:
    """``<epoch-ms>_<counter>``, unique within the process."""
    return f"{now_ms()}_{next(_message_counter)}"


def generate_session_id() -> str:
    return f"session_{now_ms()}"


class FeedbackType(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class DialogueInfo(BaseModel):
    """
    Throughput metrics computed once when a stream settles.

    Time fields are None when not applicable (user-stopped generation).
    """
    model_config = ConfigDict(frozen=True)

    tokens_per_second: float | None = None
    time_to_first_token: float | None = None
    total_time: float | None = None
    model: str
    stopped: bool = False


class Message(BaseModel):
    """A single chat message."""
    id: str = Field(default_factory=generate_message_id)
    role: Role
    content: str = ""
    thinking: str | None = None
    timestamp: int = Field(default_factory=now_ms)
    images: list[str] | None = None
    dialogue_info: DialogueInfo | None = None
    feedback_submitted: FeedbackType | None = None
    is_error: bool = False


class Session(BaseModel):
    """A chat conversation; ``history`` order is display order."""
    id: str = Field(default_factory=generate_session_id)
    name: str = DEFAULT_SESSION_NAME
    history: list[Message] = Field(default_factory=list)
    pinned: bool = False
    timestamp: int = Field(default_factory=now_ms)

    @property
    def last_activity(self) -> int:
        if self.history:
            return self.history[-1].timestamp
        return self.timestamp


class FeedbackRecord(BaseModel):
    """A like/dislike submitted for one message."""
    session_id: str
    message_index: int
    message_content: str
    feedback_type: FeedbackType
    timestamp: int = Field(default_factory=now_ms)
