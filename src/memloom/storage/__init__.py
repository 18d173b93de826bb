from memloom.storage.faiss_store import FAISSStore
from memloom.storage.sqlite_store import SQLiteStore

__all__ = ["FAISSStore", "SQLiteStore"]
