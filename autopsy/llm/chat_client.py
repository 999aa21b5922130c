from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List

import httpx

from autopsy.errors import ConfigurationError, UpstreamError


@dataclass(frozen=True)
class ChatClient:
    """
    Calls an OpenAI-compatible chat completions endpoint (Gemini, OpenRouter, Groq).

    Endpoint: POST {base_url}/chat/completions
    """

    api_key: str
    base_url: str
    provider: str = "gemini"
    timeout_s: float = 90.0
    json_mode: bool = True
    site_url: str | None = None
    site_name: str | None = None
    max_retries: int = 1
    retry_backoff_s: float = 0.8
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.provider} api key is required", missing=[f"AUTOPSY_{self.provider.upper()}_API_KEY"]
            )

    async def chat(self, *, model: str, messages: List[Dict[str, str]], max_tokens: int = 8192) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        # Optional ranking headers (OpenRouter)
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_name:
            headers["X-Title"] = self.site_name

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": int(max(1, min(int(max_tokens), 65536))),
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}

        attempts = max(1, int(self.max_retries))
        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                    r = await client.post(url, headers=headers, json=payload)
            except (httpx.TransportError, httpx.TimeoutException) as e:
                if attempt < attempts:
                    await asyncio.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                    continue
                raise UpstreamError(f"{self.provider}_transport_error after {attempt} attempts: {e}", service="llm") from e

            if r.status_code != 200:
                raise UpstreamError(
                    f"{self.provider}_http_{r.status_code}: {r.text[:1500]}", service="llm", status_code=r.status_code
                )
            try:
                content = r.json()["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise UpstreamError(f"{self.provider}_response_parse_error: {r.text[:1500]}", service="llm") from e
            return content or ""

        # range() above always returns or raises.
        raise UpstreamError(f"{self.provider}_failed", service="llm")
