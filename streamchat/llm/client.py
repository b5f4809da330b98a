"""
LLM client: request construction over a pluggable transport.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any

import httpx

from .exceptions import ConfigError
from .models import LLMRequest, ProviderType, RequestOptions, build_messages, detect_provider
from .streaming.dialects import parse_complete_response
from .transport import HttpxTransport, Transport

if TYPE_CHECKING:                                        # pragma: no cover
    from ..config import ChatSettings
    from ..history.models import Message


class LLMClient:
    """
    HTTP client for chat completion endpoints.

    Settings are held by reference, so edits made at runtime apply to the
    next request.
    """

    def __init__(
        self, settings: ChatSettings, transport: Transport | None = None
    ) -> None:
        self.settings = settings
        self.transport: Transport = transport or HttpxTransport()

    @property
    def provider_type(self) -> ProviderType:
        return detect_provider(self.settings.api_endpoint)

    def ensure_configured(self) -> None:
        """Fail fast, before any network call."""
        if not self.settings.model:
            raise ConfigError("No model configured; select or add a model in settings")
        if not self.settings.api_endpoint:
            raise ConfigError("No API endpoint configured; add one in settings")

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def build_request(
        self,
        history: Sequence[Message],
        *,
        continuation: bool = False,
        stream: bool | None = None,
    ) -> LLMRequest:
        """Build the outbound body for a session history."""
        self.ensure_configured()
        return LLMRequest(
            model=self.settings.model,
            messages=build_messages(
                history,
                system_prompt=self.settings.system_prompt,
                max_context_length=self.settings.max_context_length,
                provider=self.provider_type,
                include_last=continuation,
            ),
            stream=self.settings.enable_streaming if stream is None else stream,
            options=RequestOptions(temperature=self.settings.temperature),
        )

    def open_stream(
        self, stream_id: str, request: LLMRequest
    ) -> AbstractAsyncContextManager[AsyncIterator[str]]:
        return self.transport.open_stream(
            stream_id, self.settings.api_endpoint, self.headers(), request.to_payload()
        )

    async def complete(self, request: LLMRequest) -> str:
        """Non-streaming call returning the answer text."""
        payload: dict[str, Any] = request.to_payload()
        payload["stream"] = False
        body = await self.transport.send_once(
            self.settings.api_endpoint, self.headers(), payload
        )
        return parse_complete_response(body)

    def models_url(self) -> str:
        """Ollama tag listing on the configured endpoint's host."""
        if not self.settings.api_endpoint:
            raise ConfigError("No API endpoint configured; add one in settings")
        try:
            url = httpx.URL(self.settings.api_endpoint)
        except httpx.InvalidURL as e:
            raise ConfigError(f"Invalid API endpoint URL: {e}") from e
        if not url.scheme or not url.host:
            raise ConfigError(f"Invalid API endpoint URL: {self.settings.api_endpoint}")
        return f"{url.scheme}://{url.netloc.decode('ascii')}/api/tags"

    async def list_models(self) -> list[str]:
        """Names of the models installed on the endpoint's server."""
        return await self.transport.list_models(self.models_url(), self.headers())

    async def cancel_stream(self, stream_id: str) -> bool:
        return await self.transport.cancel_stream(stream_id)

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
