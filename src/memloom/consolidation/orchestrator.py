"""Consolidation run: extract facts, find similar memories, adjudicate, apply.

One run processes every not-yet-extracted message of a user:

1. extraction: one structured completion turns the transcript into facts;
2. deduplication: facts are embedded in one batch and each fact searches
   the user's memories; hits are merged into a numbered candidate list;
3. adjudication: one structured completion decides ADD / UPDATE per fact
   over a single id space (candidates ``1..N``, facts ``N+1..N+M``);
4. application: decisions are applied one by one, failures are recorded,
   and finally every fetched message is marked extracted in one update.

Errors in phases 1-3 abort the run with no message marked.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np
from loguru import logger

from memloom.config import ConsolidationConfig
from memloom.consolidation.locks import UserLocks
from memloom.consolidation.prompts import (
    fact_retrieval_prompt,
    memory_update_prompt,
    render_transcript,
)
from memloom.consolidation.schemas import (
    ExtractedFact,
    FactRetrievalSchema,
    MemoryDecision,
    MemoryUpdateSchema,
)
from memloom.embeddings.client import EmbeddingClient
from memloom.embeddings.retry import is_retryable
from memloom.exceptions import EmbeddingInputError, EmbeddingProviderError
from memloom.llm.structured import StructuredCompletionClient
from memloom.memory.messages import MessageLog
from memloom.memory.store import MemoryStore
from memloom.retrieval.vector import SimilaritySearch
from memloom.types import Memory, MemoryAction, MemoryCategory, SearchHit


@dataclass
class DecisionFailure:
    decision_id: str
    event: str
    error: str


@dataclass
class ConsolidationResult:
    facts_extracted: int = 0
    memories_updated: int = 0
    messages_extracted: int = 0
    decisions_skipped: int = 0
    failures: list[DecisionFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Candidate:
    """An existing memory surfaced by deduplication."""

    unified_id: int
    memory: Memory
    best_fact: int
    best_similarity: float


@dataclass
class _Planned:
    decision: MemoryDecision
    event: MemoryAction
    text: str
    fact_index: int | None = None
    candidate: Candidate | None = None
    embedding: np.ndarray | None = None


def collect_candidates(hits_per_fact: list[list[SearchHit]]) -> list[Candidate]:
    """Unique memories across all searches, numbered ``1..N`` in discovery order.

    Each candidate remembers which fact surfaced it with the highest similarity.
    """
    by_id: dict[int, Candidate] = {}
    for fact_index, hits in enumerate(hits_per_fact):
        for hit in hits:
            mid = hit.memory.id
            existing = by_id.get(mid)
            if existing is None:
                by_id[mid] = Candidate(
                    unified_id=len(by_id) + 1,
                    memory=hit.memory,
                    best_fact=fact_index,
                    best_similarity=hit.similarity,
                )
            elif hit.similarity > existing.best_similarity:
                existing.best_fact = fact_index
                existing.best_similarity = hit.similarity
    return list(by_id.values())


def _parse_unified_id(raw: str | None) -> int | None:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


def _is_transient(exc: EmbeddingProviderError) -> bool:
    cause = exc.__cause__
    return cause is None or is_retryable(cause)


class MemoryConsolidator:
    def __init__(
        self,
        messages: MessageLog,
        memories: MemoryStore,
        search: SimilaritySearch,
        embedder: EmbeddingClient,
        completions: StructuredCompletionClient,
        config: ConsolidationConfig | None = None,
        locks: UserLocks | None = None,
    ) -> None:
        self.messages = messages
        self.memories = memories
        self.search = search
        self.embedder = embedder
        self.completions = completions
        self.config = config or ConsolidationConfig()
        self.locks = locks or UserLocks()

    async def run(self, user_id: str) -> ConsolidationResult:
        """Consolidate all pending messages of ``user_id``; runs per user are serialized."""
        async with self.locks.hold(user_id):
            return await self._run(user_id)

    async def _run(self, user_id: str) -> ConsolidationResult:
        pending = self.messages.get_unextracted(user_id)
        if not pending:
            logger.debug("No pending messages for user {}", user_id)
            return ConsolidationResult()
        message_ids = [m.id for m in pending]
        logger.info("Consolidating {} messages for user {}", len(pending), user_id)

        facts = await self._extract_facts(render_transcript(pending))
        if not facts:
            marked = self.messages.mark_extracted(message_ids)
            logger.info("No facts in {} messages for user {}", len(pending), user_id)
            return ConsolidationResult(messages_extracted=marked)

        fact_vectors = await self.embedder.embed([f.text for f in facts])
        hits = await self.search.bulk_search(
            fact_vectors,
            top_k=self.config.top_k,
            user_id=user_id,
            min_similarity=self.config.min_similarity,
        )
        candidates = collect_candidates(hits)
        decisions = await self._adjudicate(candidates, facts)

        result = ConsolidationResult(facts_extracted=len(facts))
        plan = self._resolve(decisions, candidates, facts, result)
        plan = await self._embed_plan(plan, facts, fact_vectors, result)
        for item in plan:
            await self._apply(user_id, item, facts, result)

        result.messages_extracted = self.messages.mark_extracted(message_ids)
        logger.info(
            "User {}: {} facts, {} memories written, {} messages marked, {} skipped, {} failed",
            user_id, result.facts_extracted, result.memories_updated,
            result.messages_extracted, result.decisions_skipped, len(result.failures),
        )
        return result

    # --- Phases ---

    async def _extract_facts(self, transcript: str) -> list[ExtractedFact]:
        parsed = await self.completions.complete_as(
            fact_retrieval_prompt(transcript),
            FactRetrievalSchema,
            name="fact_retrieval",
            stage="extraction",
            timeout=self.config.extraction_timeout,
        )
        facts = []
        for fact in parsed.facts:
            text = fact.text.strip()
            if not text:
                logger.warning("Dropping extracted fact with empty text")
                continue
            facts.append(fact.model_copy(update={"text": text}))
        return facts

    async def _adjudicate(
        self,
        candidates: list[Candidate],
        facts: list[ExtractedFact],
    ) -> list[MemoryDecision]:
        existing = [{"id": str(c.unified_id), "text": c.memory.content} for c in candidates]
        offset = len(candidates) + 1
        new_facts = [
            {
                "id": str(offset + i),
                "text": f.text,
                "category": f.category,
                "importance": f.importance,
                "confidence": f.confidence,
            }
            for i, f in enumerate(facts)
        ]
        parsed = await self.completions.complete_as(
            memory_update_prompt(existing, new_facts),
            MemoryUpdateSchema,
            name="memory_update",
            stage="adjudication",
            timeout=self.config.adjudication_timeout,
        )
        return parsed.memory

    def _resolve(
        self,
        decisions: list[MemoryDecision],
        candidates: list[Candidate],
        facts: list[ExtractedFact],
        result: ConsolidationResult,
    ) -> list[_Planned]:
        """Map unified ids back to facts and memories; drop what does not resolve."""
        n = len(candidates)
        plan: list[_Planned] = []
        for decision in decisions:
            uid = _parse_unified_id(decision.id)
            if decision.event == "ADD":
                index = None if uid is None else uid - n - 1
                if index is None or not 0 <= index < len(facts):
                    self._skip(result, decision, "does not name a new fact")
                    continue
                text = decision.text.strip() or facts[index].text
                plan.append(_Planned(decision, MemoryAction.ADD, text, fact_index=index))
            else:
                if uid is None or not 1 <= uid <= n:
                    self._skip(result, decision, "does not name an existing memory")
                    continue
                text = decision.text.strip()
                if not text:
                    self._skip(result, decision, "has no text")
                    continue
                candidate = candidates[uid - 1]
                plan.append(_Planned(
                    decision,
                    MemoryAction.UPDATE,
                    text,
                    fact_index=self._update_source(decision, candidate, n, len(facts)),
                    candidate=candidate,
                ))
        return plan

    @staticmethod
    def _skip(result: ConsolidationResult, decision: MemoryDecision, reason: str) -> None:
        logger.warning("Skipping {} decision with id {!r}: {}", decision.event, decision.id, reason)
        result.decisions_skipped += 1

    @staticmethod
    def _update_source(
        decision: MemoryDecision,
        candidate: Candidate,
        n_candidates: int,
        n_facts: int,
    ) -> int | None:
        """Index of the fact whose metadata an UPDATE takes, if any."""
        sid = _parse_unified_id(decision.source_id) if decision.source_id else None
        if sid is not None and 0 <= sid - n_candidates - 1 < n_facts:
            return sid - n_candidates - 1
        if 0 <= candidate.best_fact < n_facts:
            return candidate.best_fact
        return None

    async def _embed_plan(
        self,
        plan: list[_Planned],
        facts: list[ExtractedFact],
        fact_vectors: np.ndarray,
        result: ConsolidationResult,
    ) -> list[_Planned]:
        """Attach embeddings to planned writes; return the ones that got a vector.

        New texts go out in one batched call. When that call fails for a reason
        retrying cannot fix, each text is embedded on its own so a bad text only
        fails its own decision. Transient failures that exhaust their retries
        abort the run.
        """
        fresh: list[_Planned] = []
        for item in plan:
            if (
                item.event == MemoryAction.ADD
                and item.fact_index is not None
                and item.text == facts[item.fact_index].text
            ):
                item.embedding = fact_vectors[item.fact_index]
                continue
            try:
                self.embedder.validate([item.text])
            except EmbeddingInputError as exc:
                self._fail(result, item.decision, exc)
                continue
            fresh.append(item)

        if fresh:
            try:
                vectors = await self.embedder.embed([item.text for item in fresh])
            except EmbeddingProviderError as exc:
                if _is_transient(exc):
                    raise
                logger.warning("Batched decision embedding failed, retrying texts one by one: {}", exc)
                await self._embed_each(fresh, result)
            else:
                for item, vec in zip(fresh, vectors):
                    item.embedding = vec
        return [item for item in plan if item.embedding is not None]

    async def _embed_each(self, items: list[_Planned], result: ConsolidationResult) -> None:
        for item in items:
            try:
                item.embedding = await self.embedder.embed_one(item.text)
            except EmbeddingProviderError as exc:
                if _is_transient(exc):
                    raise
                self._fail(result, item.decision, exc)

    @staticmethod
    def _fail(result: ConsolidationResult, decision: MemoryDecision, exc: Exception) -> None:
        logger.opt(exception=exc).error(
            "Failed to apply {} decision {!r}: {}", decision.event, decision.id, exc
        )
        result.failures.append(DecisionFailure(decision.id, decision.event, str(exc)))

    async def _apply(
        self,
        user_id: str,
        item: _Planned,
        facts: list[ExtractedFact],
        result: ConsolidationResult,
    ) -> None:
        decision = item.decision
        try:
            if item.event == MemoryAction.ADD:
                fact = facts[item.fact_index]
                await self.memories.insert_one(Memory(
                    user_id=user_id,
                    content=item.text,
                    category=MemoryCategory(fact.category),
                    importance=fact.importance,
                    confidence=fact.confidence,
                    embedding=item.embedding,
                    action=MemoryAction.ADD,
                ))
            else:
                await self._apply_update(user_id, item, facts)
        except Exception as exc:
            self._fail(result, decision, exc)
            return
        result.memories_updated += 1

    async def _apply_update(self, user_id: str, item: _Planned, facts: list[ExtractedFact]) -> None:
        memory_id = item.candidate.memory.id
        current = self.memories.get(user_id, memory_id)
        if current is None:
            raise LookupError(f"memory {memory_id} no longer exists")
        patch: dict[str, Any] = {
            "prev_content": current.content,
            "content": item.text,
            "embedding": item.embedding,
            "action": MemoryAction.UPDATE,
        }
        if item.fact_index is not None:
            fact = facts[item.fact_index]
            patch.update(
                category=MemoryCategory(fact.category),
                importance=fact.importance,
                confidence=fact.confidence,
            )
        updated = await self.memories.update(user_id, memory_id, patch)
        if updated is None:
            raise LookupError(f"memory {memory_id} no longer exists")
