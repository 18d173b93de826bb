"""Structured output schemas for the extraction and adjudication calls."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

CategoryName = Literal[
    "USER_INFO",
    "USER_PREFERENCE",
    "USER_GOAL",
    "USER_RELATIONSHIP",
    "USER_EVENT",
    "OTHER",
]


class ExtractedFact(BaseModel):
    text: str = Field(description="One atomic fact about the user, in a single sentence.")
    category: CategoryName
    importance: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)


class FactRetrievalSchema(BaseModel):
    facts: list[ExtractedFact] = Field(default_factory=list)


class MemoryDecision(BaseModel):
    id: str = Field(description="Unified id of an existing memory (UPDATE) or a new fact (ADD).")
    event: Literal["ADD", "UPDATE"]
    text: str = ""
    source_id: str | None = Field(
        default=None,
        description="For UPDATE: unified id of the new fact that triggered the change.",
    )


class MemoryUpdateSchema(BaseModel):
    memory: list[MemoryDecision] = Field(default_factory=list)
