"""
LLM integration for the chat client.

This package provides:
- Request models and history-to-messages conversion
- A pluggable HTTP transport with cancel-by-id
- The error taxonomy shared by the streaming engine
"""

from __future__ import annotations

from .client import LLMClient
from .exceptions import (
    ConfigError,
    LLMError,
    SessionBusyError,
    SessionError,
    StreamAbortedError,
    TransportError,
)
from .models import (
    LLMMessage,
    LLMRequest,
    MessageRole,
    ProviderType,
    RequestOptions,
    build_messages,
    detect_provider,
)
from .transport import HttpxTransport, Transport

__all__ = [
    "ConfigError",
    "HttpxTransport",
    "LLMClient",
    "LLMError",
    "LLMMessage",
    "LLMRequest",
    "MessageRole",
    "ProviderType",
    "RequestOptions",
    "SessionBusyError",
    "SessionError",
    "StreamAbortedError",
    "Transport",
    "TransportError",
    "build_messages",
    "detect_provider",
]
