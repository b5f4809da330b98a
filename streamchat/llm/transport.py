"""
HTTP transport for chat completion endpoints.

The engine consumes a Transport capability: a cancellable streaming POST that
yields decoded text chunks, a one-shot POST returning the full body, an
explicit cancel-by-stream-id command and a model list lookup.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Protocol

import httpx

from .exceptions import StreamAbortedError, TransportError, wrap_transport_errors

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=300.0, write=30.0, pool=10.0)


class Transport(Protocol):
    """Transport capability required by the streaming engine."""

    def open_stream(
        self,
        stream_id: str,
        endpoint: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> AbstractAsyncContextManager[AsyncIterator[str]]:
        """
        Open a streaming POST. Entering the context performs the request and
        fails with TransportError on a non-2xx status; the yielded iterator
        produces text chunks in arrival order.
        """
        ...

    async def send_once(
        self, endpoint: str, headers: dict[str, str], body: dict[str, Any]
    ) -> str:
        """POST and return the full response body, or raise TransportError."""
        ...

    async def cancel_stream(self, stream_id: str) -> bool:
        """Cancel the in-flight stream with this id. Returns False if none."""
        ...

    async def list_models(self, url: str, headers: dict[str, str]) -> list[str]:
        """GET a model list and return the model names, or raise TransportError."""
        ...

    async def close(self) -> None:
        ...


def extract_error_text(status_code: int, reason: str, body: str) -> str:
    """Human-readable error text from a failed response body."""
    fallback = f"API error: {status_code} {reason}".strip()
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body or fallback

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return error if isinstance(error, str) else json.dumps(error)
    return body or fallback


class HttpxTransport:
    """Transport over a shared httpx.AsyncClient."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
    ) -> None:
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._active: dict[str, httpx.Response] = {}
        self._cancelled: set[str] = set()

    @property
    def active_stream_ids(self) -> list[str]:
        return list(self._active)

    @staticmethod
    async def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        raise TransportError(
            extract_error_text(response.status_code, response.reason_phrase, body),
            status_code=response.status_code,
            response_data={"body": body},
        )

    @asynccontextmanager
    async def open_stream(
        self,
        stream_id: str,
        endpoint: str,
        headers: dict[str, str],
        body: dict[str, Any],
    ) -> AsyncIterator[AsyncIterator[str]]:
        self._cancelled.discard(stream_id)
        try:
            async with self.client.stream(
                "POST", endpoint, json=body, headers=headers
            ) as response:
                await self._raise_for_status(response)
                self._active[stream_id] = response
                try:
                    yield self._iter_text(stream_id, response)
                finally:
                    self._active.pop(stream_id, None)
        except httpx.HTTPError as e:
            if stream_id in self._cancelled:
                raise StreamAbortedError() from e
            logger.error("HTTP error during streaming: %s", e)
            raise TransportError(f"HTTP error: {e!s}") from e
        finally:
            self._cancelled.discard(stream_id)

    async def _iter_text(
        self, stream_id: str, response: httpx.Response
    ) -> AsyncIterator[str]:
        async for chunk in response.aiter_text():
            if stream_id in self._cancelled:
                return
            if chunk:
                yield chunk

    @wrap_transport_errors("send_chat_request")
    async def send_once(
        self, endpoint: str, headers: dict[str, str], body: dict[str, Any]
    ) -> str:
        response = await self.client.post(endpoint, json=body, headers=headers)
        await self._raise_for_status(response)
        return response.text

    @wrap_transport_errors("list_models")
    async def list_models(self, url: str, headers: dict[str, str]) -> list[str]:
        response = await self.client.get(url, headers=headers)
        await self._raise_for_status(response)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise TransportError(
                f"Failed to parse model list: {e}", status_code=response.status_code
            ) from e

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise TransportError(
                "Model list response has no 'models' array",
                status_code=response.status_code,
            )
        return [
            str(entry["name"])
            for entry in models
            if isinstance(entry, dict) and entry.get("name")
        ]

    async def cancel_stream(self, stream_id: str) -> bool:
        response = self._active.get(stream_id)
        if response is None:
            return False
        self._cancelled.add(stream_id)
        await response.aclose()
        logger.info("Cancelled stream %s", stream_id)
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        for stream_id in list(self._active):
            await self.cancel_stream(stream_id)
        await self.client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
