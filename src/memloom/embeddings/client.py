"""Validated, batched, retrying embedding client."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import numpy as np
from loguru import logger

from memloom.embeddings.backends import EmbeddingBackend
from memloom.embeddings.retry import RetryPolicy, call_with_retry
from memloom.exceptions import EmbeddingInputError, EmbeddingProviderError, EmbeddingResponseError
from memloom.utils import batched, fit_dims


class EmbeddingClient:
    """Turns texts into ``(n, dims)`` float32 arrays through a provider backend.

    Texts are validated before any network call, split into chunks of the
    backend's ``max_batch``, embedded concurrently with per-chunk retry and
    timeout, and reassembled in input order.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        dims: int = 1536,
        max_text_chars: int = 8192,
        timeout: float | None = 30.0,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.dims = dims
        self.max_text_chars = max_text_chars
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    @property
    def provider(self) -> str:
        return str(getattr(self.backend, "name", type(self.backend).__name__))

    def validate(self, texts: Any) -> list[str]:
        if not isinstance(texts, (list, tuple)) or len(texts) == 0:
            raise EmbeddingInputError("texts must be a non-empty list of strings")
        for i, text in enumerate(texts):
            if not isinstance(text, str):
                raise EmbeddingInputError(f"texts[{i}] is {type(text).__name__}, expected str")
            if not text.strip():
                raise EmbeddingInputError(f"texts[{i}] is blank")
            if len(text) > self.max_text_chars:
                raise EmbeddingInputError(
                    f"texts[{i}] has {len(text)} chars, limit is {self.max_text_chars}"
                )
        return list(texts)

    async def embed(self, texts: list[str], dims: int | None = None) -> np.ndarray:
        items = self.validate(texts)
        target = int(dims or self.dims)
        batch_size = max(1, int(getattr(self.backend, "max_batch", 10)))
        chunks = list(batched(items, batch_size))
        if len(chunks) > 1:
            logger.debug(
                "Embedding {} texts via {} in {} chunks of <= {}",
                len(items), self.provider, len(chunks), batch_size,
            )
        tasks = [asyncio.ensure_future(self._embed_chunk(list(c), target)) for c in chunks]
        try:
            parts = await asyncio.gather(*tasks)
        except BaseException:
            # one chunk failed: stop the others from retrying against the provider
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return np.concatenate(parts, axis=0) if len(parts) > 1 else parts[0]

    async def embed_one(self, text: str, dims: int | None = None) -> np.ndarray:
        return (await self.embed([text], dims))[0]

    async def _embed_chunk(self, chunk: list[str], dims: int) -> np.ndarray:
        async def attempt() -> np.ndarray:
            raw = await self.backend.embed(chunk, dims)
            arr = np.asarray(raw, dtype=np.float32)
            count = arr.shape[0] if arr.ndim >= 1 and arr.size else 0
            if count != len(chunk):
                raise EmbeddingResponseError(
                    f"expected {len(chunk)} vectors, provider returned {count}"
                )
            return fit_dims(arr, dims)

        return await call_with_retry(
            attempt,
            policy=self.retry,
            provider=self.provider,
            stage="embedding",
            timeout=self.timeout,
            error_cls=EmbeddingProviderError,
            sleep=self._sleep,
        )

    async def close(self) -> None:
        await self.backend.close()
