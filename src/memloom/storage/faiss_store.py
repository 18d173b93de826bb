"""Per-user FAISS inner-product indexes mirrored from SQLite."""

from __future__ import annotations

import threading
from typing import Callable

import faiss
import numpy as np
from loguru import logger

from memloom.exceptions import StorageError
from memloom.utils import blob_to_vector

EmbeddingLoader = Callable[[str], list[tuple[int, bytes]]]


class FAISSStore:
    """One ``IndexIDMap2(IndexFlatIP)`` per user, keyed by memory id.

    Indexes are built lazily from the loader the first time a user is
    touched. Writes to a user whose index has not been built yet are
    dropped: the next build reads them back from the backing rows.
    Vectors are L2-normalized, so inner product is cosine similarity and
    the reported distance ``1 - ip`` lies in ``[0, 2]``.
    """

    def __init__(self, dims: int, loader: EmbeddingLoader | None = None) -> None:
        self.dims = dims
        self._loader = loader
        self._indexes: dict[str, faiss.IndexIDMap2] = {}
        self._lock = threading.RLock()

    def _new_index(self) -> faiss.IndexIDMap2:
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self.dims))

    def _prepare(self, vectors: np.ndarray) -> np.ndarray:
        arr = np.asarray(vectors, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2 or arr.shape[1] != self.dims:
            raise StorageError(f"vector shape {arr.shape} does not match index dims {self.dims}")
        vecs = np.array(arr, dtype=np.float32, order="C", copy=True)
        faiss.normalize_L2(vecs)
        return vecs

    def ensure(self, user_id: str) -> faiss.IndexIDMap2:
        """Return the user's index, building it from stored embeddings on first use."""
        with self._lock:
            index = self._indexes.get(user_id)
            if index is not None:
                return index
            index = self._new_index()
            rows = self._loader(user_id) if self._loader else []
            ids: list[int] = []
            vecs: list[np.ndarray] = []
            for memory_id, blob in rows:
                vec = blob_to_vector(blob)
                if vec is None or vec.size != self.dims:
                    logger.warning(
                        "Skipping memory {} for user {}: embedding has {} dims, index expects {}",
                        memory_id, user_id, 0 if vec is None else vec.size, self.dims,
                    )
                    continue
                ids.append(int(memory_id))
                vecs.append(vec)
            if ids:
                index.add_with_ids(self._prepare(np.stack(vecs)), np.asarray(ids, dtype=np.int64))
            self._indexes[user_id] = index
            logger.debug("Built vector index for user {} with {} entries", user_id, len(ids))
            return index

    def is_loaded(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._indexes

    def size(self, user_id: str) -> int:
        with self._lock:
            index = self._indexes.get(user_id)
            return int(index.ntotal) if index is not None else 0

    def add_batch(self, user_id: str, memory_ids: list[int], vectors: np.ndarray) -> None:
        if len(memory_ids) != len(vectors):
            raise StorageError("vectors and memory_ids length mismatch")
        if not memory_ids:
            return
        vecs = self._prepare(vectors)
        with self._lock:
            index = self._indexes.get(user_id)
            if index is None:
                return
            index.add_with_ids(vecs, np.asarray(memory_ids, dtype=np.int64))

    def add(self, user_id: str, memory_id: int, vector: np.ndarray) -> None:
        self.add_batch(user_id, [memory_id], np.asarray(vector).reshape(1, -1))

    def remove(self, user_id: str, memory_id: int) -> bool:
        with self._lock:
            index = self._indexes.get(user_id)
            if index is None:
                return False
            return index.remove_ids(np.asarray([memory_id], dtype=np.int64)) > 0

    def replace(self, user_id: str, memory_id: int, vector: np.ndarray) -> None:
        vecs = self._prepare(np.asarray(vector).reshape(1, -1))
        with self._lock:
            index = self._indexes.get(user_id)
            if index is None:
                return
            index.remove_ids(np.asarray([memory_id], dtype=np.int64))
            index.add_with_ids(vecs, np.asarray([memory_id], dtype=np.int64))

    def search(self, user_id: str, query_vector: np.ndarray, top_k: int) -> list[tuple[int, float]]:
        """Nearest neighbours in one user's index as ``[(memory_id, distance), ...]``."""
        vec = self._prepare(np.asarray(query_vector).reshape(1, -1))
        with self._lock:
            index = self.ensure(user_id)
            if index.ntotal == 0 or top_k <= 0:
                return []
            k = min(int(top_k), int(index.ntotal))
            scores, ids = index.search(vec, k)
        results: list[tuple[int, float]] = []
        for score, memory_id in zip(scores[0], ids[0]):
            if memory_id < 0:
                continue
            distance = float(np.clip(1.0 - float(score), 0.0, 2.0))
            results.append((int(memory_id), distance))
        return results
