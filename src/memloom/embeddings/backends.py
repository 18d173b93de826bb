"""Embedding provider backends."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Protocol, runtime_checkable

import httpx
import numpy as np

from memloom.config import EmbeddingConfig
from memloom.exceptions import EmbeddingResponseError, ProviderThrottled


@runtime_checkable
class EmbeddingBackend(Protocol):
    name: str
    max_batch: int

    async def embed(self, texts: list[str], dims: int) -> np.ndarray: ...
    async def close(self) -> None: ...


class DashscopeEmbedder:
    """Dashscope (Aliyun) text-embedding API.

    The service accepts at most 10 texts per request and reports throttling
    through a ``Throttling*`` error code in the response body.
    """

    name = "dashscope"
    max_batch = 10

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-v4",
        url: str = "https://dashscope.aliyuncs.com/api/v1/services/embeddings/text-embedding/text-embedding",
        timeout: float = 30.0,
        text_type: str | None = None,
        instruct: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout = timeout
        self.text_type = text_type
        self.instruct = instruct
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise RuntimeError("DASHSCOPE_API_KEY is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._client

    def _build_body(self, texts: list[str], dims: int) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "input": {"texts": texts},
            "parameters": {"dimension": dims},
        }
        if self.text_type:
            body["parameters"]["text_type"] = self.text_type
        if self.instruct:
            body["input"]["instruct"] = self.instruct
        return body

    async def embed(self, texts: list[str], dims: int) -> np.ndarray:
        if not texts:
            return np.zeros((0, dims), dtype=np.float32)
        client = await self._get_client()
        resp = await client.post(self.url, json=self._build_body(texts, dims))
        if resp.status_code != 200:
            code = _error_code(resp)
            if code.startswith("Throttling"):
                raise ProviderThrottled(self.name, code)
        resp.raise_for_status()
        data = resp.json()
        rows = (data.get("output") or {}).get("embeddings")
        if not isinstance(rows, list):
            raise EmbeddingResponseError("invalid dashscope response: missing output.embeddings")
        rows = sorted(rows, key=lambda r: int(r.get("text_index", 0) or 0))
        return np.array([r["embedding"] for r in rows], dtype=np.float32)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIEmbedder:
    name = "openai"
    max_batch = 256

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

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

    async def embed(self, texts: list[str], dims: int) -> np.ndarray:
        if not texts:
            return np.zeros((0, dims), dtype=np.float32)
        client = await self._get_client()
        resp = await client.post(
            "/embeddings",
            json={"model": self.model, "input": texts, "dimensions": dims},
        )
        resp.raise_for_status()
        data = resp.json()
        rows = sorted(data.get("data", []), key=lambda r: int(r.get("index", 0)))
        return np.array([r["embedding"] for r in rows], dtype=np.float32)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OllamaEmbedder:
    name = "ollama"
    max_batch = 16

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def embed(self, texts: list[str], dims: int) -> np.ndarray:
        if not texts:
            return np.zeros((0, dims), dtype=np.float32)
        client = await self._get_client()
        resp = await client.post("/api/embed", json={"model": self.model, "input": texts})
        resp.raise_for_status()
        data = resp.json()
        return np.array(data.get("embeddings", []), dtype=np.float32)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class HashEmbedder:
    """Deterministic local embedder using token hashing (no network/API keys)."""

    name = "hash"
    max_batch = 64

    _TOKEN_RE = re.compile(r"[a-z0-9_]+")

    def _encode(self, text: str, dims: int) -> np.ndarray:
        tokens = self._TOKEN_RE.findall((text or "").lower())
        vec = np.zeros((dims,), dtype=np.float32)
        if not tokens:
            return vec

        features = list(tokens)
        features.extend(f"{tokens[i]}_{tokens[i+1]}" for i in range(len(tokens) - 1))
        for feat in features:
            digest = hashlib.blake2b(feat.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little", signed=False) % dims
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec

    async def embed(self, texts: list[str], dims: int) -> np.ndarray:
        if not texts:
            return np.zeros((0, dims), dtype=np.float32)
        return np.stack([self._encode(t, dims) for t in texts]).astype(np.float32, copy=False)

    async def close(self) -> None:
        return None


def _error_code(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        return str(payload.get("code") or "")
    return ""


def create_embedder(provider: str | None = None, config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    cfg = config or EmbeddingConfig()
    name = (provider or cfg.provider or "dashscope").strip().lower()
    if name in {"dashscope", "default"}:
        return DashscopeEmbedder(
            api_key=cfg.dashscope_api_key,
            model=cfg.dashscope_model,
            url=cfg.dashscope_url,
            timeout=cfg.timeout,
        )
    if name == "openai":
        return OpenAIEmbedder(
            api_key=cfg.openai_api_key,
            model=cfg.openai_model,
            timeout=cfg.timeout,
        )
    if name in {"ollama", "local"}:
        return OllamaEmbedder(
            model=cfg.ollama_model,
            base_url=cfg.ollama_base_url,
            timeout=cfg.timeout,
        )
    if name in {"hash", "localhash"}:
        return HashEmbedder()
    raise ValueError(f"Unsupported embedding provider: {provider}")
