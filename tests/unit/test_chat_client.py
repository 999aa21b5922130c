from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from autopsy.errors import ConfigurationError, UpstreamError
from autopsy.llm.chat_client import ChatClient


def test_chat_client_parses_chat_response() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/chat/completions")
        assert request.headers["Authorization"] == "Bearer test"
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"filePath": "a.py"}'}}]})

    c = ChatClient(api_key="test", base_url="https://llm.example/v1", transport=httpx.MockTransport(handler))
    out = asyncio.run(c.chat(model="gemini-2.5-flash", messages=[{"role": "user", "content": "hi"}]))
    assert out == '{"filePath": "a.py"}'
    assert captured["model"] == "gemini-2.5-flash"
    assert captured["response_format"] == {"type": "json_object"}


def test_chat_client_non_200_is_upstream_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(429, text="quota"))
    c = ChatClient(api_key="k", base_url="https://llm.example/v1", provider="openrouter", transport=transport)
    with pytest.raises(UpstreamError) as ei:
        asyncio.run(c.chat(model="m", messages=[]))
    assert ei.value.status_code == 429
    assert "openrouter_http_429" in str(ei.value)


def test_chat_client_does_not_retry_by_default() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        raise httpx.ConnectError("refused", request=request)

    c = ChatClient(api_key="k", base_url="https://llm.example/v1", transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamError):
        asyncio.run(c.chat(model="m", messages=[]))
    assert len(calls) == 1


def test_chat_client_requires_api_key() -> None:
    with pytest.raises(ConfigurationError) as ei:
        ChatClient(api_key="", base_url="https://llm.example/v1", provider="groq")
    assert ei.value.missing == ["AUTOPSY_GROQ_API_KEY"]


def test_chat_client_malformed_body_is_upstream_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
    c = ChatClient(api_key="k", base_url="https://llm.example/v1", transport=transport)
    with pytest.raises(UpstreamError):
        asyncio.run(c.chat(model="m", messages=[]))
