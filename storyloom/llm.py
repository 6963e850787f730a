"""Generation backend: HTTP connection to an LLM.

The executor injects a Backend matching the protocol:

    async def generate(self, messages, *, model, temperature, max_tokens) -> Generation

`messages` is the conversation so far (earlier acts plus the current act's
resolved inputs). The returned Generation.text is exactly what the backend
sent; nothing here trims or rewrites it.

Two implementations are provided:

    HttpBackend   real HTTP client, supports OpenAI-compatible chat and
                  KoboldCpp backends. Selected by provider_format.
    EchoBackend   returns the last user message unchanged. Useful for
                  smoke-testing narrative wiring without a running model.

Every failure surfaces as a BackendError carrying a kind, so the executor can
tell recoverable failures (rate limit, network, timeout) from permanent ones.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx
from pydantic import BaseModel

from storyloom.errors import BackendError, BackendErrorKind
from storyloom.models import TokenUsage

logger = logging.getLogger(__name__)


Role = Literal["system", "user", "assistant"]


class Message(BaseModel):
    role: Role
    content: str


class Generation(BaseModel):
    text: str
    token_usage: TokenUsage = TokenUsage()


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Backend(Protocol):
    async def generate(
        self,
        messages: list[Message],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Generation: ...


# ---------------------------------------------------------------------------
# HttpBackend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]


def _status_kind(status: int) -> BackendErrorKind:
    if status == 429:
        return BackendErrorKind.RATE_LIMITED
    if status in (401, 403):
        return BackendErrorKind.AUTH
    if status >= 500:
        return BackendErrorKind.NETWORK
    return BackendErrorKind.INVALID


class HttpBackend:
    """Async HTTP client for generation backends.

    Supported formats:
      "openai"     POST /v1/chat/completions  {"model", "messages", ...}
                   Response: {"choices": [{"message": {"content": "..."}}],
                              "usage": {...}}
      "koboldcpp"  POST /api/v1/generate      {"prompt", "max_length", ...}
                   Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        timeout:         HTTP timeout in seconds. Defaults to 120.
        default_model:   Model used when an act leaves its model empty.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        timeout: float = 120.0,
        default_model: str = "",
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._timeout = timeout
        self._default_model = default_model

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, messages: list[Message], model: str, temperature: float, max_tokens: int
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {
                "messages": [m.model_dump() for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            if model:
                body["model"] = model
            return url, body

        # koboldcpp takes a flat prompt
        url = f"{self._base_url}/api/v1/generate"
        prompt = "\n\n".join(m.content for m in messages)
        return url, {"prompt": prompt, "max_length": max_tokens, "temperature": temperature}

    def _parse_response(self, data: dict) -> Generation:
        """Extract the completion text and usage from the response body."""
        if self._format == "openai":
            choices = data.get("choices") if isinstance(data, dict) else None
            first = choices[0] if isinstance(choices, list) and choices else None
            message = first.get("message") if isinstance(first, dict) else None
            if not isinstance(message, dict) or not isinstance(message.get("content"), str):
                raise BackendError(
                    BackendErrorKind.INVALID,
                    "Unexpected response format from OpenAI-compatible backend",
                )
            usage = data.get("usage") or {}
            return Generation(
                text=message["content"],
                token_usage=TokenUsage(
                    input_tokens=usage.get("prompt_tokens", 0),
                    output_tokens=usage.get("completion_tokens", 0),
                    total_tokens=usage.get("total_tokens", 0),
                ),
            )

        results = data.get("results") if isinstance(data, dict) else None
        first = results[0] if isinstance(results, list) and results else None
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            raise BackendError(
                BackendErrorKind.INVALID, "Unexpected response format from KoboldCpp backend"
            )
        return Generation(text=first["text"])

    async def generate(
        self,
        messages: list[Message],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Generation:
        model = model or self._default_model
        url, body = self._build_request(messages, model, temperature, max_tokens)
        logger.debug(
            "llm call model=%s url=%s messages=%d max_tokens=%d",
            model, url, len(messages), max_tokens,
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise BackendError(
                BackendErrorKind.TIMEOUT, f"LLM backend timed out after {self._timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise BackendError(
                _status_kind(status), f"LLM backend returned HTTP {status}"
            ) from e
        except httpx.TransportError as e:
            raise BackendError(
                BackendErrorKind.NETWORK, f"Cannot connect to LLM backend at {self._base_url}"
            ) from e
        except httpx.HTTPError as e:
            raise BackendError(BackendErrorKind.INVALID, f"LLM request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(BackendErrorKind.INVALID, "LLM backend sent invalid JSON") from e
        generation = self._parse_response(data)
        logger.debug("llm response model=%s len=%d", model, len(generation.text))
        return generation


# ---------------------------------------------------------------------------
# EchoBackend
# ---------------------------------------------------------------------------

class EchoBackend:
    """Returns the last user message as-is. No network calls.

    Lets you verify that the narrative wiring (input resolution, act
    sequencing, storage writes) works end-to-end without a running model.
    The output won't be valid JSON for extracting acts; use StubBackend in
    tests when you need controlled responses.
    """

    async def generate(
        self,
        messages: list[Message],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Generation:
        logger.debug("EchoBackend model=%s messages=%d", model, len(messages))
        for m in reversed(messages):
            if m.role == "user":
                return Generation(text=m.content)
        return Generation(text="")
