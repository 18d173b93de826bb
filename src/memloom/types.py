"""Core domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np

from memloom.utils import utcnow


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MemoryCategory(str, Enum):
    USER_INFO = "USER_INFO"
    USER_PREFERENCE = "USER_PREFERENCE"
    USER_GOAL = "USER_GOAL"
    USER_RELATIONSHIP = "USER_RELATIONSHIP"
    USER_EVENT = "USER_EVENT"
    OTHER = "OTHER"


class MemoryAction(str, Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class Story:
    user_id: str
    name: str
    id: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    story_id: int
    role: Role
    content: str
    id: int | None = None
    extracted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Memory:
    user_id: str
    content: str
    id: int | None = None
    prev_content: str | None = None
    category: MemoryCategory | None = None
    importance: float | None = None
    confidence: float | None = None
    embedding: np.ndarray | None = field(default=None, repr=False)
    action: MemoryAction | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "prev_content": self.prev_content,
            "category": self.category.value if self.category else None,
            "importance": self.importance,
            "confidence": self.confidence,
            "action": self.action.value if self.action else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class SearchHit:
    memory: Memory
    similarity: float
