"""Retry policy for provider calls: exponential backoff with jitter."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from memloom.config import RetryConfig
from memloom.exceptions import EmbeddingResponseError, ProviderError, ProviderThrottled

T = TypeVar("T")

_RETRYABLE_STATUS = {408, 429}


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.5

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay,
            max_delay=cfg.max_delay,
            jitter=cfg.jitter,
        )

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        raw = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            raw *= 1.0 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, raw)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (ProviderThrottled, EmbeddingResponseError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in _RETRYABLE_STATUS or status >= 500
    # TransportError covers connect/read timeouts and network failures
    return isinstance(exc, httpx.TransportError)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    provider: str,
    stage: str,
    timeout: float | None = None,
    error_cls: type[ProviderError] = ProviderError,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` under ``policy``; raise ``error_cls`` once it gives up.

    Non-retryable failures give up immediately. The raised error is chained to
    the last underlying exception.
    """
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(attempts):
        try:
            if timeout:
                return await asyncio.wait_for(fn(), timeout)
            return await fn()
        except Exception as exc:
            retryable = is_retryable(exc)
            described = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            if not retryable or attempt + 1 >= attempts:
                logger.error(
                    "{} {} failed (attempt {}/{}, retryable={}): {}",
                    provider, stage, attempt + 1, attempts, retryable, described,
                )
                raise error_cls(provider, stage, described, attempts=attempt + 1) from exc
            wait = policy.delay(attempt)
            logger.warning(
                "{} {} attempt {}/{} failed, retrying in {:.2f}s: {}",
                provider, stage, attempt + 1, attempts, wait, described,
            )
            await sleep(wait)
    raise AssertionError("unreachable")
