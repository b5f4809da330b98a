#!/usr/bin/env python3
"""
Tests for the httpx transport and the LLM client, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from streamchat.llm.client import LLMClient
from streamchat.llm.exceptions import ConfigError, TransportError
from streamchat.llm.transport import HttpxTransport, extract_error_text

ENDPOINT = "http://llm.test/v1/chat/completions"


def mock_transport(handler) -> HttpxTransport:
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestExtractErrorText:
    """Error text from failed response bodies."""

    def test_nested_message(self):
        body = json.dumps({"error": {"message": "model 'x' not found"}})
        assert extract_error_text(404, "Not Found", body) == "model 'x' not found"

    def test_flat_error(self):
        assert extract_error_text(400, "Bad Request", '{"error":"bad input"}') == "bad input"

    def test_raw_text(self):
        assert extract_error_text(502, "Bad Gateway", "upstream down") == "upstream down"

    def test_empty_body(self):
        assert extract_error_text(503, "Service Unavailable", "") == "API error: 503 Service Unavailable"


class TestHttpxTransport:
    """Streaming and one-shot requests."""

    @pytest.mark.asyncio
    async def test_stream_yields_text(self):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent["body"] = json.loads(request.content)
            sent["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text='data: {"done":true}\n\n')

        transport = mock_transport(handler)
        async with transport.open_stream(
            "s1", ENDPOINT, {"Authorization": "Bearer k"}, {"stream": True}
        ) as chunks:
            assert transport.active_stream_ids == ["s1"]
            text = "".join([chunk async for chunk in chunks])

        assert text == 'data: {"done":true}\n\n'
        assert sent == {"body": {"stream": True}, "auth": "Bearer k"}
        assert transport.active_stream_ids == []
        await transport.close()

    @pytest.mark.asyncio
    async def test_stream_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

        transport = mock_transport(handler)
        with pytest.raises(TransportError, match="Invalid API key") as exc_info:
            async with transport.open_stream("s1", ENDPOINT, {}, {}):
                pass
        assert exc_info.value.status_code == 401
        await transport.close()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        transport = mock_transport(handler)
        with pytest.raises(TransportError, match="connection refused"):
            async with transport.open_stream("s1", ENDPOINT, {}, {}):
                pass
        with pytest.raises(TransportError, match="connection refused"):
            await transport.send_once(ENDPOINT, {}, {})
        await transport.close()

    @pytest.mark.asyncio
    async def test_send_once(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": {"content": "hi"}})

        transport = mock_transport(handler)
        body = await transport.send_once(ENDPOINT, {}, {"stream": False})
        assert json.loads(body) == {"message": {"content": "hi"}}
        await transport.close()

    @pytest.mark.asyncio
    async def test_cancel_unknown_stream(self):
        transport = mock_transport(lambda request: httpx.Response(200))
        assert await transport.cancel_stream("missing") is False
        await transport.close()


class TestLLMClient:
    """Config checks and request construction over a real transport."""

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, settings):
        settings.api_endpoint = ""
        async with LLMClient(settings, mock_transport(lambda r: httpx.Response(200))) as client:
            with pytest.raises(ConfigError):
                client.build_request([])

    @pytest.mark.asyncio
    async def test_headers(self, settings):
        client = LLMClient(settings, mock_transport(lambda r: httpx.Response(200)))
        assert "Authorization" not in client.headers()
        settings.api_key = "sk-1"
        assert client.headers()["Authorization"] == "Bearer sk-1"
        await client.close()

    @pytest.mark.asyncio
    async def test_complete_forces_non_streaming(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"choices": [{"message": {"content": "Done"}}]})

        async with LLMClient(settings, mock_transport(handler)) as client:
            request = client.build_request([], stream=True)
            assert await client.complete(request) == "Done"

        assert seen["stream"] is False
        assert seen["model"] == "test-model"
        assert seen["options"] == {"temperature": 0.7}


class TestModelListing:
    """Installed model discovery on the endpoint's server."""

    @pytest.mark.asyncio
    async def test_names_from_tags(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={
                "models": [{"name": "qwen3:8b"}, {"name": "llama3.2"}, {"size": 1}],
            })

        settings.api_endpoint = "http://localhost:11434/api/chat"
        settings.api_key = "sk-1"
        async with LLMClient(settings, mock_transport(handler)) as client:
            assert await client.list_models() == ["qwen3:8b", "llama3.2"]

        assert seen == {
            "method": "GET",
            "url": "http://localhost:11434/api/tags",
            "auth": "Bearer sk-1",
        }

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="404 page not found")

        transport = mock_transport(handler)
        with pytest.raises(TransportError, match="404 page not found") as exc_info:
            await transport.list_models("http://llm.test/api/tags", {})
        assert exc_info.value.status_code == 404
        await transport.close()

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        transport = mock_transport(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(TransportError, match="parse model list"):
            await transport.list_models("http://llm.test/api/tags", {})

        transport = mock_transport(lambda request: httpx.Response(200, json={"data": []}))
        with pytest.raises(TransportError, match="'models'"):
            await transport.list_models("http://llm.test/api/tags", {})
        await transport.close()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        transport = mock_transport(handler)
        with pytest.raises(TransportError, match="connection refused"):
            await transport.list_models("http://llm.test/api/tags", {})
        await transport.close()

    def test_models_url_keeps_host_and_port(self, settings):
        client = LLMClient(settings, mock_transport(lambda r: httpx.Response(200)))
        settings.api_endpoint = "https://api.example.com:8443/v1/chat/completions?x=1"
        assert client.models_url() == "https://api.example.com:8443/api/tags"

    def test_models_url_needs_endpoint(self, settings):
        client = LLMClient(settings, mock_transport(lambda r: httpx.Response(200)))
        settings.api_endpoint = ""
        with pytest.raises(ConfigError):
            client.models_url()
        settings.api_endpoint = "localhost/api/chat"
        with pytest.raises(ConfigError):
            client.models_url()
