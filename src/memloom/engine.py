"""MemoryEngine: wires storage, providers and the consolidator from one Config."""

from __future__ import annotations

from typing import Any

from loguru import logger

from memloom.config import Config
from memloom.consolidation.locks import UserLocks
from memloom.consolidation.orchestrator import ConsolidationResult, MemoryConsolidator
from memloom.embeddings.backends import create_embedder
from memloom.embeddings.client import EmbeddingClient
from memloom.embeddings.retry import RetryPolicy
from memloom.llm import create_chat_backend
from memloom.llm.structured import StructuredCompletionClient
from memloom.memory.messages import MessageLog
from memloom.memory.store import MemoryStore
from memloom.retrieval.vector import SimilaritySearch
from memloom.storage.faiss_store import FAISSStore
from memloom.storage.sqlite_store import SQLiteStore
from memloom.types import SearchHit

CHAT_PROVIDERS = {"openai", "ollama"}


class MemoryEngine:
    """Central object owning the stores and cached provider clients."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()

        # Storage backends
        self.sqlite = SQLiteStore(self.config.db_path)
        self.faiss = FAISSStore(
            dims=self.config.embedding.dims,
            loader=self.sqlite.list_memory_embeddings,
        )

        # Subsystems
        self.messages = MessageLog(self.sqlite)
        self.search_index = SimilaritySearch(self.faiss, self.sqlite)
        self.memories = MemoryStore(self.sqlite, self.faiss, dims=self.config.embedding.dims)
        self.locks = UserLocks()

        self._embedders: dict[str, EmbeddingClient] = {}
        self._completions: dict[str, StructuredCompletionClient] = {}

    # --- Provider clients ---

    def embedder(self, provider: str | None = None) -> EmbeddingClient:
        cfg = self.config.embedding
        name = (provider or cfg.provider).strip().lower()
        client = self._embedders.get(name)
        if client is None:
            client = EmbeddingClient(
                create_embedder(name, cfg),
                dims=cfg.dims,
                max_text_chars=cfg.max_text_chars,
                timeout=cfg.timeout,
                retry=RetryPolicy.from_config(cfg.retry),
            )
            self._embedders[name] = client
        return client

    def completions(self, provider: str | None = None) -> StructuredCompletionClient:
        cfg = self.config.llm
        name = (provider or cfg.provider).strip().lower()
        client = self._completions.get(name)
        if client is None:
            client = StructuredCompletionClient(
                create_chat_backend(name, cfg),
                timeout=cfg.timeout,
                temperature=cfg.temperature,
                max_tokens=cfg.max_tokens,
            )
            self._completions[name] = client
        return client

    def consolidator(
        self,
        embedding_provider: str | None = None,
        llm_provider: str | None = None,
    ) -> MemoryConsolidator:
        if llm_provider is None and embedding_provider in CHAT_PROVIDERS:
            llm_provider = embedding_provider
        return MemoryConsolidator(
            messages=self.messages,
            memories=self.memories,
            search=self.search_index,
            embedder=self.embedder(embedding_provider),
            completions=self.completions(llm_provider),
            config=self.config.consolidation,
            locks=self.locks,
        )

    # --- Operations ---

    async def extract_memories_for_user(
        self,
        user_id: str,
        embedding_provider: str | None = None,
        llm_provider: str | None = None,
    ) -> ConsolidationResult:
        """Run one consolidation pass over the user's pending messages."""
        return await self.consolidator(embedding_provider, llm_provider).run(user_id)

    async def search(
        self,
        user_id: str,
        query: str,
        top_k: int | None = None,
        min_similarity: float = 0.0,
        category: str | None = None,
        embedding_provider: str | None = None,
    ) -> list[SearchHit]:
        vec = await self.embedder(embedding_provider).embed_one(query)
        return await self.search_index.search(
            vec,
            top_k=top_k or self.config.consolidation.top_k,
            user_id=user_id,
            min_similarity=min_similarity,
            category=category,
        )

    def status(self) -> dict[str, Any]:
        return {
            "db_path": str(self.config.db_path),
            "messages": self.sqlite.count_messages(),
            "pending_messages": self.sqlite.count_messages(extracted=False),
            "memories": self.sqlite.count_memories(),
            "embedding_provider": self.config.embedding.provider,
            "llm_provider": self.config.llm.provider,
        }

    async def aclose(self) -> None:
        for client in self._embedders.values():
            await client.close()
        for completion in self._completions.values():
            await completion.close()
        self._embedders.clear()
        self._completions.clear()
        self.close()

    def close(self) -> None:
        self.sqlite.close()


async def consolidate_user(
    user_id: str,
    embedding_provider: str | None = None,
    llm_provider: str | None = None,
    config: Config | None = None,
) -> ConsolidationResult:
    """Open an engine, consolidate one user, and release every resource."""
    engine = MemoryEngine(config)
    try:
        result = await engine.extract_memories_for_user(user_id, embedding_provider, llm_provider)
    finally:
        await engine.aclose()
    logger.debug("consolidate_user({}) -> {}", user_id, result.to_dict())
    return result
