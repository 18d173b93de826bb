"""Chat backend providers (OpenAI, Ollama) with JSON-schema output support."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx


@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class ChatResponse:
    content: str
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class JSONSchemaFormat:
    """Named JSON schema the model output must follow."""

    name: str
    schema: dict[str, Any]


@runtime_checkable
class ChatBackend(Protocol):
    name: str

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_schema: JSONSchemaFormat | None = None,
    ) -> ChatResponse: ...

    async def close(self) -> None: ...


class OpenAIBackend:
    name = "openai"

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4.1",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._client

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_schema: JSONSchemaFormat | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
        }
        if json_schema is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": json_schema.name, "schema": json_schema.schema},
            }
        resp = await client.post("/chat/completions", json=body)
        resp.raise_for_status()
        data = resp.json()
        choice = data["choices"][0]
        message = choice.get("message") or {}
        if message.get("refusal"):
            raise RuntimeError(f"model refused: {message['refusal']}")
        usage = data.get("usage", {})
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(usage.get("prompt_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("completion_tokens", 0))
        return ChatResponse(
            content=str(message.get("content") or ""),
            model=str(data.get("model", self.model)),
            usage=usage,
            finish_reason=str(choice.get("finish_reason", "")),
            raw=data,
        )

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


class OllamaBackend:
    name = "ollama"

    def __init__(
        self,
        model: str = "alibayram/Qwen3-30B-A3B-Instruct-2507",
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 120.0,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        keep_alive: str = "24h",
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.keep_alive = keep_alive
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_schema: JSONSchemaFormat | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "keep_alive": self.keep_alive,
            "options": {
                "temperature": temperature if temperature is not None else self.temperature,
                "top_p": 0.8,
                "top_k": 20,
                "num_predict": max_tokens if max_tokens is not None else self.max_tokens,
            },
        }
        if json_schema is not None:
            body["format"] = json_schema.schema
        resp = await client.post("/api/chat", json=body)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            raise RuntimeError(f"ollama error: {data['error']}")
        msg = data.get("message", {})
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(data.get("prompt_eval_count", 0) or 0)
        self._stats["output_tokens"] += int(data.get("eval_count", 0) or 0)
        return ChatResponse(
            content=str(msg.get("content", "")),
            model=self.model,
            usage={},
            finish_reason=str(data.get("done_reason", "")),
            raw=data,
        )

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
