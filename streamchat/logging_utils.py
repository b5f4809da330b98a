"""
Centralized logging and error handling utilities for the chat client.

This module provides decorators and helper functions to standardize logging
and error reporting across the streaming engine, reducing boilerplate and
keeping stream lifecycle events consistent.

Features:
- Structured logging with contextual information
- Error classification for the request error taxonomy
- Performance timing for operations
- Context-aware user-facing error messages
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import structlog
from pydantic import ValidationError

from .llm.exceptions import (
    ConfigError,
    SessionBusyError,
    SessionError,
    StreamAbortedError,
    TransportError,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Set the stdlib root level that structlog filters against."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )


class StreamErrorHandler:
    """Classification of request failures with structured logging."""

    @staticmethod
    def classify_error(error: Exception) -> str:
        """
        Classify an error into a category.

        Args:
            error: The exception to classify

        Returns:
            The error category name
        """
        if isinstance(error, StreamAbortedError):
            return "aborted"
        if isinstance(error, ConfigError):
            return "config_error"
        if isinstance(error, SessionBusyError):
            return "busy"
        if isinstance(error, SessionError):
            return "session_error"
        if isinstance(error, TransportError):
            return "transport_error"
        if isinstance(error, ValidationError):
            return "validation_error"
        if isinstance(error, TimeoutError):
            return "timeout_error"
        if isinstance(error, ConnectionError | OSError):
            return "connection_error"
        return "unknown_error"

    @staticmethod
    def user_message(error: Exception) -> str:
        """Text shown in place of the assistant answer."""
        text = str(error)
        return text or type(error).__name__

    @staticmethod
    def log_failure(
        error: Exception, operation: str, context: dict[str, Any] | None = None
    ) -> str:
        """Log a classified failure and return its category."""
        category = StreamErrorHandler.classify_error(error)
        logger.error(
            "Operation failed",
            operation=operation,
            error_type=type(error).__name__,
            error_category=category,
            error_message=str(error),
            **(context or {}),
        )
        return category


def log_operation(
    operation: str,
    *,
    log_args: bool = False,
    log_result: bool = False,
    log_timing: bool = True,
    context: dict[str, Any] | None = None,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """
    Decorator for logging async operations with structured context.

    Args:
        operation: Description of the operation being performed
        log_args: Whether to log function arguments
        log_result: Whether to log function result
        log_timing: Whether to log execution timing
        context: Additional context to include in logs

    Returns:
        Decorated function with logging
    """
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            operation_logger = logger.bind(
                operation=operation,
                function=func.__name__,
                **(context or {}),
            )

            log_data = {}
            if log_args:
                log_data.update({
                    "args": args[1:] if args else [],  # Skip 'self' if present
                    "kwargs": kwargs,
                })

            operation_logger.debug("Operation started", **log_data)

            start_time = time.perf_counter() if log_timing else None

            try:
                result = await func(*args, **kwargs)

                end_log_data: dict[str, Any] = {}
                if log_timing and start_time is not None:
                    duration = round((time.perf_counter() - start_time) * 1000, 2)
                    end_log_data["duration_ms"] = duration
                if log_result:
                    end_log_data["result"] = result

                operation_logger.debug(
                    "Operation completed successfully", **end_log_data
                )
                return result

            except Exception as e:
                error_log_data: dict[str, Any] = {
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "error_category": StreamErrorHandler.classify_error(e),
                }
                if log_timing and start_time is not None:
                    duration = round((time.perf_counter() - start_time) * 1000, 2)
                    error_log_data["duration_ms"] = duration

                operation_logger.error("Operation failed", **error_log_data)
                raise

        return wrapper
    return decorator


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    log_timing: bool = True,
):
    """
    Async context manager for operation logging.

    Aborts are logged at info level; they are not failures.

    Args:
        operation: Description of the operation
        context: Additional context for logging
        log_timing: Whether to log operation timing

    Yields:
        Bound logger for the operation
    """
    operation_logger = logger.bind(
        operation=operation,
        **(context or {}),
    )

    operation_logger.info("Operation started")
    start_time = time.perf_counter() if log_timing else None

    def _timing() -> dict[str, Any]:
        if log_timing and start_time is not None:
            return {"duration_ms": round((time.perf_counter() - start_time) * 1000, 2)}
        return {}

    try:
        yield operation_logger
        operation_logger.info("Operation completed successfully", **_timing())

    except StreamAbortedError:
        operation_logger.info("Operation stopped by user", **_timing())
        raise

    except Exception as e:
        operation_logger.error(
            "Operation failed",
            error_type=type(e).__name__,
            error_message=str(e),
            error_category=StreamErrorHandler.classify_error(e),
            **_timing(),
        )
        raise


class ContextualLogger:
    """Logger that maintains context across related operations."""

    def __init__(self, base_context: dict[str, Any] | None = None):
        self.base_context = base_context or {}
        self._logger = logger.bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        """Create a new logger with additional context."""
        merged_context = {**self.base_context, **context}
        return ContextualLogger(merged_context)

    def info(self, message: str, **context: Any) -> None:
        self._logger.info(message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._logger.warning(message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._logger.error(message, **context)

    def debug(self, message: str, **context: Any) -> None:
        self._logger.debug(message, **context)
