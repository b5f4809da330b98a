"""
Error taxonomy for chat completion requests.

This module provides the errors surfaced by the streaming engine:
- Configuration errors raised before any network call
- Transport errors carrying the provider's status and text verbatim
- User-initiated aborts, classified by identity rather than message text
- Session exclusivity and session-table rule violations
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx

P = ParamSpec("P")
T = TypeVar("T")


class LLMError(Exception):
    """Base LLM error with rich context."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        model: str = "unknown",
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}


class ConfigError(LLMError):
    """No model or no endpoint configured. Raised before any request is made."""
    pass


class TransportError(LLMError):
    """Non-2xx response or connection failure."""
    pass


class StreamAbortedError(LLMError):
    """The user stopped generation."""

    def __init__(self, message: str = "Aborted", **kwargs):
        super().__init__(message, **kwargs)


class SessionBusyError(LLMError):
    """A stream is already active for this session."""

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            f"Session '{session_id}' is already generating a response", **kwargs
        )
        self.session_id = session_id


class SessionError(LLMError):
    """Session table rule violation (unknown id, last session, ...)."""
    pass


def wrap_transport_errors(
    operation: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator translating httpx failures into TransportError.

    LLMError subclasses raised by the wrapped coroutine pass through untouched.
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await func(*args, **kwargs)
            except LLMError:
                raise
            except httpx.HTTPError as e:
                raise TransportError(f"{operation} failed: {e!s}") from e

        return wrapper
    return decorator
