"""Vector similarity search over stored memories."""

from __future__ import annotations

import asyncio

import numpy as np

from memloom.storage.faiss_store import FAISSStore
from memloom.storage.sqlite_store import SQLiteStore
from memloom.types import MemoryCategory, SearchHit


def similarity_from_distance(distance: float) -> float:
    """Map a cosine distance in ``[0, 2]`` onto a similarity in ``[0, 1]``."""
    d = min(2.0, max(0.0, float(distance)))
    return 1.0 - d / 2.0


class SimilaritySearch:
    """Top-K memories by cosine distance, then a similarity floor.

    Rows are ranked by ascending distance and cut to ``top_k`` first; the
    ``min_similarity`` floor is applied to that cut, so a search never
    returns more than ``top_k`` hits and may return fewer. User and
    category filters narrow the candidate set before ranking.
    """

    def __init__(self, faiss_store: FAISSStore, sqlite_store: SQLiteStore) -> None:
        self.faiss = faiss_store
        self.sqlite = sqlite_store

    async def search(
        self,
        query_vector: np.ndarray,
        top_k: int = 5,
        user_id: str | None = None,
        min_similarity: float = 0.0,
        category: MemoryCategory | str | None = None,
    ) -> list[SearchHit]:
        if top_k <= 0:
            return []
        users = [user_id] if user_id is not None else self.sqlite.list_memory_user_ids()
        # Build indexes here so worker threads never read SQLite.
        for uid in users:
            self.faiss.ensure(uid)

        cat = MemoryCategory(category).value if category else None
        # A category filter needs every candidate ranked, not just the top K.
        per_user = await asyncio.gather(*(
            asyncio.to_thread(
                self.faiss.search, uid, query_vector, self.faiss.size(uid) if cat else top_k
            )
            for uid in users
        ))
        ranked = sorted((pair for hits in per_user for pair in hits), key=lambda p: p[1])

        memories = self.sqlite.get_memories([mid for mid, _ in ranked])
        results: list[SearchHit] = []
        for memory_id, distance in ranked:
            memory = memories.get(memory_id)
            if memory is None:
                continue
            if cat and (memory.category is None or memory.category.value != cat):
                continue
            results.append(SearchHit(memory=memory, similarity=similarity_from_distance(distance)))
            if len(results) >= top_k:
                break
        return [hit for hit in results if hit.similarity >= min_similarity]

    async def bulk_search(
        self,
        query_vectors: np.ndarray | list[np.ndarray],
        top_k: int = 5,
        user_id: str | None = None,
        min_similarity: float = 0.0,
        category: MemoryCategory | str | None = None,
    ) -> list[list[SearchHit]]:
        """Run one search per query concurrently; output order follows input order."""
        return list(await asyncio.gather(*(
            self.search(
                q, top_k=top_k, user_id=user_id, min_similarity=min_similarity, category=category
            )
            for q in query_vectors
        )))
