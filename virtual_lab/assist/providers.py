from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

log = logging.getLogger("virtual_lab")


class ExternalServiceUnavailable(Exception):
    """Provider timed out, refused, or answered with a non-success status."""


class MalformedProviderResponse(Exception):
    """Provider answered 2xx but the payload carried no usable text."""


class CompletionProvider(ABC):
    name: str = ""
    model: str | None = None

    @abstractmethod
    async def complete(self, prompt: str, *, timeout: float) -> str:
        """Return the generated text for ``prompt``.

        Raises ``ExternalServiceUnavailable`` or ``MalformedProviderResponse``;
        nothing else is expected to escape.
        """

    def _log_metric(self, name: str, **fields: object) -> None:
        payload = {"metric": name, "ts": time.time(), "provider": self.name, **fields}
        log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))


def _extract_text(body: Any) -> str:
    """Pull ``candidates[0].content.parts[0].text`` out of a generateContent reply."""
    try:
        text = body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedProviderResponse("no candidate text in provider response") from exc
    if not isinstance(text, str) or not text.strip():
        raise MalformedProviderResponse("empty candidate text in provider response")
    return text


class GeminiProvider(CompletionProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-pro",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    async def complete(self, prompt: str, *, timeout: float) -> str:
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.endpoint,
                    params={"key": self.api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceUnavailable(f"{self.name} timed out after {timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceUnavailable(f"{self.name} request failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000
        self._log_metric("provider_call", status=resp.status_code, latency_ms=round(latency_ms, 1))
        if resp.status_code >= 400:
            # The body may echo the request URL, which carries the key.
            raise ExternalServiceUnavailable(f"{self.name} returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise MalformedProviderResponse(f"{self.name} returned non-JSON body") from exc
        return _extract_text(body)
