"""
Request-side dataclasses for chat completion calls.

This module provides:
- Provider detection (OpenAI-compatible vs Ollama chat endpoints)
- Message structures, including image parts
- The outbound request body
- Conversion of a session history into request messages
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .streaming.thinking import strip_thinking

if TYPE_CHECKING:                                        # pragma: no cover
    from ..history.models import Message

OLLAMA_CHAT_PATH = "/api/chat"
IMAGE_DATA_URL = "data:image/png;base64,{}"


class ProviderType(Enum):
    """Request dialects the client can emit."""
    OPENAI = "openai"
    OLLAMA = "ollama"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


def detect_provider(endpoint: str) -> ProviderType:
    """Ollama-style iff the endpoint path contains ``/api/chat``."""
    if OLLAMA_CHAT_PATH in endpoint:
        return ProviderType.OLLAMA
    return ProviderType.OPENAI


@dataclass(frozen=True)
class LLMMessage:
    """One request message; ``images`` is only set for Ollama endpoints."""
    role: MessageRole
    content: str | list[dict[str, Any]]
    images: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.images is not None:
            data["images"] = list(self.images)
        return data


@dataclass(frozen=True)
class RequestOptions:
    temperature: float = 0.7


@dataclass
class LLMRequest:
    """Complete outbound request body."""
    model: str
    messages: list[LLMMessage]
    stream: bool = True
    options: RequestOptions = field(default_factory=RequestOptions)

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "stream": self.stream,
            "options": asdict(self.options),
        }


def _to_llm_message(message: Message, provider: ProviderType) -> LLMMessage:
    role = MessageRole(message.role)
    content = strip_thinking(message.content)
    if not message.images:
        return LLMMessage(role=role, content=content)

    if provider is ProviderType.OLLAMA:
        return LLMMessage(role=role, content=content, images=list(message.images))

    parts: list[dict[str, Any]] = [{"type": "text", "text": content}]
    parts.extend(
        {"type": "image_url", "image_url": {"url": IMAGE_DATA_URL.format(b64)}}
        for b64 in message.images
    )
    return LLMMessage(role=role, content=parts)


def build_messages(
    history: Sequence[Message],
    *,
    system_prompt: str,
    max_context_length: int,
    provider: ProviderType,
    include_last: bool = False,
) -> list[LLMMessage]:
    """
    Convert a session history into request messages.

    The trailing assistant placeholder is dropped unless ``include_last`` is
    set (continuations keep it so the partial answer is context). Error
    messages are never sent; only the most recent ``max_context_length``
    messages are kept.
    """
    selected = list(history) if include_last else list(history[:-1])
    selected = [m for m in selected if not m.is_error]
    if max_context_length > 0:
        selected = selected[-max_context_length:]

    messages: list[LLMMessage] = []
    if system_prompt:
        messages.append(LLMMessage(role=MessageRole.SYSTEM, content=system_prompt))
    messages.extend(_to_llm_message(m, provider) for m in selected)
    return messages
