from memloom.memory.messages import MessageLog
from memloom.memory.store import MemoryStore

__all__ = ["MemoryStore", "MessageLog"]
