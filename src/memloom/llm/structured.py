"""Structured completion: prompt + JSON schema in, validated data out."""

from __future__ import annotations

import asyncio
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from memloom.exceptions import CompletionError, SchemaValidationError
from memloom.llm.providers import ChatBackend, ChatMessage, JSONSchemaFormat
from memloom.utils import strip_code_fences

M = TypeVar("M", bound=BaseModel)


class StructuredCompletionClient:
    """Single-shot JSON-schema completions over a chat backend.

    Every call carries its own timeout. Transport, provider and timeout
    failures surface as ``CompletionError`` naming the provider and stage;
    output that does not match the schema surfaces as
    ``SchemaValidationError``. Nothing is retried here.
    """

    def __init__(
        self,
        backend: ChatBackend,
        *,
        timeout: float | None = 120.0,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.backend = backend
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def provider(self) -> str:
        return str(getattr(self.backend, "name", type(self.backend).__name__))

    async def complete(
        self,
        prompt: str,
        schema: dict,
        *,
        name: str = "output",
        stage: str = "completion",
        timeout: float | None = None,
    ) -> str:
        """Return the raw JSON text produced for ``schema``."""
        limit = timeout if timeout is not None else self.timeout
        call = self.backend.chat(
            [ChatMessage(role="user", content=prompt)],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_schema=JSONSchemaFormat(name=name, schema=schema),
        )
        try:
            response = await asyncio.wait_for(call, limit) if limit else await call
        except asyncio.TimeoutError as exc:
            raise CompletionError(self.provider, stage, f"timed out after {limit}s") from exc
        except Exception as exc:
            raise CompletionError(self.provider, stage, f"{type(exc).__name__}: {exc}") from exc

        content = strip_code_fences(response.content)
        if not content:
            raise CompletionError(self.provider, stage, "empty response")
        return content

    async def complete_as(
        self,
        prompt: str,
        model_cls: type[M],
        *,
        name: str,
        stage: str,
        timeout: float | None = None,
    ) -> M:
        raw = await self.complete(
            prompt,
            model_cls.model_json_schema(),
            name=name,
            stage=stage,
            timeout=timeout,
        )
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("{} output failed {} validation: {}", self.provider, name, exc)
            raise SchemaValidationError(stage, f"{name}: {exc}") from exc

    async def close(self) -> None:
        await self.backend.close()
