"""LLM backend abstraction layer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from storyspine.exceptions import TransientError


@dataclass
class Message:
    role: str  # system | user | assistant
    content: str


@dataclass
class ChatResponse:
    content: str
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatResponse: ...

    @property
    def stats(self) -> dict[str, Any]: ...


class HTTPChatBackend:
    """Shared client lifecycle, request template and token accounting.

    Providers describe one round trip with ``endpoint``, ``_payload`` and
    ``_response``; ``chat`` handles the client, error wrapping and stats.
    """

    endpoint = "/chat/completions"
    key_env = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        model: str = "",
        api_key: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.model = model
        self.api_key = api_key or (os.environ.get(self.key_env, "") if self.key_env else "")
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    def _headers(self) -> dict[str, str]:
        return {}

    def _payload(self, messages: list[Message], temperature: float, max_tokens: int, json_mode: bool) -> dict[str, Any]:
        raise NotImplementedError

    def _response(self, data: dict[str, Any]) -> tuple[ChatResponse, Any, Any]:
        """Return the parsed response plus its input and output token counts."""
        raise NotImplementedError

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        if self.key_env and not self.api_key:
            # checked per call, not at construction
            raise RuntimeError(f"an LLM API key is required (STORYSPINE_LLM_API_KEY or {self.key_env})")
        payload = self._payload(
            messages,
            self.temperature if temperature is None else temperature,
            self.max_tokens if max_tokens is None else max_tokens,
            json_mode,
        )
        client = await self._get_client()
        try:
            resp = await client.post(self.endpoint, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientError(f"{type(self).__name__} request failed: {e}") from e
        response, input_tokens, output_tokens = self._response(data)
        self._record(input_tokens, output_tokens)
        if not response.model:
            response.model = self.model
        return response

    def _record(self, input_tokens: Any = 0, output_tokens: Any = 0) -> None:
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(input_tokens or 0)
        self._stats["output_tokens"] += int(output_tokens or 0)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
