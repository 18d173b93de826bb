"""Memory records: CRUD with embedding kept in sync with content."""

from __future__ import annotations

from typing import Any

import numpy as np
from loguru import logger

from memloom.embeddings.client import EmbeddingClient
from memloom.exceptions import StorageError
from memloom.storage.faiss_store import FAISSStore
from memloom.storage.sqlite_store import SQLiteStore
from memloom.types import Memory, MemoryAction, MemoryCategory

_PATCHABLE = {"content", "category", "importance", "confidence", "prev_content", "action", "embedding"}


class MemoryStore:
    """Persists memories in SQLite and mirrors their vectors into FAISS."""

    def __init__(
        self,
        sqlite_store: SQLiteStore,
        faiss_store: FAISSStore,
        embedder: EmbeddingClient | None = None,
        dims: int | None = None,
    ) -> None:
        self.sqlite = sqlite_store
        self.faiss = faiss_store
        self.embedder = embedder
        self.dims = int(dims or faiss_store.dims)

    def _check_dims(self, vectors: np.ndarray) -> None:
        if vectors.ndim != 2 or vectors.shape[1] != self.dims:
            raise StorageError(f"embedding shape {vectors.shape} does not match dims {self.dims}")

    async def insert(
        self,
        records: list[Memory],
        embedder: EmbeddingClient | None = None,
    ) -> list[Memory]:
        """Insert memories in one transaction.

        Records with blank content are skipped. Records without an embedding
        are embedded in one batch through ``embedder`` (or the store default);
        if none is available the insert fails before anything is written.
        """
        items = [r for r in records if r.content and r.content.strip()]
        if len(items) < len(records):
            logger.debug("Skipping {} memories with empty content", len(records) - len(items))
        if not items:
            return []

        missing = [r for r in items if r.embedding is None]
        if missing:
            client = embedder or self.embedder
            if client is None:
                raise StorageError("memories without embeddings need an embedding client")
            vecs = await client.embed([r.content for r in missing], self.dims)
            for record, vec in zip(missing, vecs):
                record.embedding = vec
        vectors = np.stack([np.asarray(r.embedding, dtype=np.float32) for r in items])
        self._check_dims(vectors)
        for record in items:
            if record.action is None:
                record.action = MemoryAction.ADD

        self.sqlite.insert_memories(items)
        by_user: dict[str, list[int]] = {}
        for pos, record in enumerate(items):
            by_user.setdefault(record.user_id, []).append(pos)
        for user_id, positions in by_user.items():
            self.faiss.add_batch(user_id, [items[p].id for p in positions], vectors[positions])
        return items

    async def insert_one(self, record: Memory, embedder: EmbeddingClient | None = None) -> Memory | None:
        inserted = await self.insert([record], embedder=embedder)
        return inserted[0] if inserted else None

    async def update(
        self,
        user_id: str,
        memory_id: int,
        patch: dict[str, Any],
        embedder: EmbeddingClient | None = None,
    ) -> Memory | None:
        """Apply ``patch`` to one memory; content changes regenerate the embedding.

        Returns ``None`` when the memory does not exist for ``user_id``.
        """
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise StorageError(f"cannot patch memory fields: {sorted(unknown)}")
        current = self.sqlite.get_memory(user_id, memory_id)
        if current is None:
            return None

        fields = dict(patch)
        if "category" in fields and fields["category"] is not None:
            fields["category"] = MemoryCategory(fields["category"])
        content_changed = "content" in fields and fields["content"] != current.content
        if content_changed and fields.get("embedding") is None:
            client = embedder or self.embedder
            if client is None:
                raise StorageError("content change needs an embedding client")
            fields["embedding"] = await client.embed_one(fields["content"], self.dims)
        vector: np.ndarray | None = None
        if fields.get("embedding") is not None:
            vector = np.asarray(fields["embedding"], dtype=np.float32).reshape(1, -1)
            self._check_dims(vector)
            fields["embedding"] = vector[0]

        updated = self.sqlite.update_memory(user_id, memory_id, fields)
        if updated is not None and vector is not None:
            self.faiss.replace(user_id, memory_id, vector[0])
        return updated

    def get(self, user_id: str, memory_id: int) -> Memory | None:
        return self.sqlite.get_memory(user_id, memory_id)

    def list_by_user(
        self,
        user_id: str,
        category: MemoryCategory | str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Memory]:
        cat = MemoryCategory(category).value if category else None
        return self.sqlite.list_memories(user_id, category=cat, limit=limit, offset=offset)

    def delete(self, user_id: str, memory_id: int) -> Memory | None:
        removed = self.sqlite.delete_memory(user_id, memory_id)
        if removed is not None:
            self.faiss.remove(user_id, memory_id)
        return removed

    def count(self, user_id: str | None = None) -> int:
        return self.sqlite.count_memories(user_id)
