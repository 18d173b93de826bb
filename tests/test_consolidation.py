from __future__ import annotations

import asyncio
from datetime import date
from types import SimpleNamespace

import httpx
import numpy as np
import pytest

from memloom.config import ConsolidationConfig
from memloom.consolidation import MemoryConsolidator, UserLocks, collect_candidates
from memloom.consolidation.prompts import FACT_RETRIEVAL_PROMPT, fact_retrieval_prompt
from memloom.embeddings import EmbeddingClient, HashEmbedder, RetryPolicy
from memloom.exceptions import (
    CompletionError,
    EmbeddingProviderError,
    SchemaValidationError,
    StorageError,
)
from memloom.llm import ChatResponse, StructuredCompletionClient
from memloom.memory import MemoryStore, MessageLog
from memloom.retrieval import SimilaritySearch
from memloom.storage import FAISSStore, SQLiteStore
from memloom.types import Memory, MemoryAction, MemoryCategory, SearchHit
from memloom.utils import json_dumps

DIMS = 8


def _unit(*head: float) -> np.ndarray:
    vec = np.zeros(DIMS, dtype=np.float32)
    vec[: len(head)] = head
    return vec


def _cos(c: float) -> np.ndarray:
    return _unit(c, float(np.sqrt(1.0 - c * c)))


class _ScriptedChat:
    name = "scripted"

    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.schema_names: list[str] = []

    async def chat(self, messages, temperature=None, max_tokens=None, json_schema=None):
        self.prompts.append(messages[-1].content)
        self.schema_names.append(json_schema.name if json_schema else "")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(content=reply if isinstance(reply, str) else json_dumps(reply))

    async def close(self) -> None:
        return None


class _KeyedEmbedder:
    """Known texts map to fixed vectors; anything else falls back to token hashing."""

    name = "keyed"
    max_batch = 10

    def __init__(
        self,
        vectors: dict[str, np.ndarray] | None = None,
        fail: Exception | None = None,
        reject: set[str] | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self.fail = fail
        self.reject = reject or set()
        self.calls: list[list[str]] = []
        self._fallback = HashEmbedder()

    async def embed(self, texts: list[str], dims: int) -> np.ndarray:
        self.calls.append(list(texts))
        if self.fail is not None:
            raise self.fail
        if self.reject.intersection(texts):
            request = httpx.Request("POST", "https://embeddings.test/v1")
            response = httpx.Response(400, request=request)
            raise httpx.HTTPStatusError("status 400", request=request, response=response)
        rows = []
        for t in texts:
            if t in self.vectors:
                rows.append(self.vectors[t])
            else:
                rows.append((await self._fallback.embed([t], dims))[0])
        return np.stack(rows).astype(np.float32)

    async def close(self) -> None:
        return None


class _FlakyMemoryStore(MemoryStore):
    async def insert(self, records, embedder=None):
        if any(r.content == "boom" for r in records):
            raise StorageError("disk full")
        return await super().insert(records, embedder)


def _fact(text: str, category: str = "USER_PREFERENCE", importance: float = 0.5, confidence: float = 0.9):
    return {"text": text, "category": category, "importance": importance, "confidence": confidence}


def _setup(tmp_path, replies: list, vectors=None, fail=None, store_cls=MemoryStore, reject=None):
    sqlite = SQLiteStore(tmp_path / "memloom.db")
    faiss_store = FAISSStore(DIMS, loader=sqlite.list_memory_embeddings)
    backend = _KeyedEmbedder(vectors, fail=fail, reject=reject)

    async def _no_sleep(_delay: float) -> None:
        return None

    embedder = EmbeddingClient(
        backend, dims=DIMS, retry=RetryPolicy(max_attempts=2, jitter=0.0), sleep=_no_sleep
    )
    chat = _ScriptedChat(replies)
    messages = MessageLog(sqlite)
    memories = store_cls(sqlite, faiss_store, embedder=embedder)
    consolidator = MemoryConsolidator(
        messages=messages,
        memories=memories,
        search=SimilaritySearch(faiss_store, sqlite),
        embedder=embedder,
        completions=StructuredCompletionClient(chat, timeout=5.0),
        config=ConsolidationConfig(),
    )
    return SimpleNamespace(
        sqlite=sqlite, backend=backend, chat=chat, messages=messages,
        memories=memories, consolidator=consolidator,
    )


def _conversation(env, user_id: str = "u1", turns: int = 6) -> list[int]:
    story = env.messages.create_story(user_id, "chat")
    lines = [
        ("user", "Hi there"),
        ("assistant", "Hello! How can I help?"),
        ("user", "I really like coffee in the morning"),
        ("assistant", "Nice, any favourite roast?"),
        ("user", "Dark roast. Also my name is Sam"),
        ("assistant", "Got it, Sam."),
    ]
    msgs = env.messages.bulk_insert([(story.id, role, text) for role, text in lines[:turns]])
    return [m.id for m in msgs]


def test_no_pending_messages_is_a_noop(tmp_path):
    env = _setup(tmp_path, replies=[])

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.to_dict() == {
        "facts_extracted": 0,
        "memories_updated": 0,
        "messages_extracted": 0,
        "decisions_skipped": 0,
        "failures": [],
    }
    assert env.chat.prompts == []
    assert env.backend.calls == []
    env.sqlite.close()


def test_end_to_end_adds_memory_and_marks_messages(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee", importance=0.8), _fact("Name is Sam", "USER_INFO", 0.9)]},
        {"memory": [{"id": "1", "event": "ADD", "text": "likes coffee"}]},
    ])
    _conversation(env)

    async def _run():
        first = await env.consolidator.run("u1")
        second = await env.consolidator.run("u1")
        return first, second

    first, second = asyncio.run(_run())

    assert (first.facts_extracted, first.memories_updated, first.messages_extracted) == (2, 1, 6)
    assert (second.facts_extracted, second.memories_updated, second.messages_extracted) == (0, 0, 0)
    assert env.chat.schema_names == ["fact_retrieval", "memory_update"]
    assert "user: I really like coffee in the morning" in env.chat.prompts[0]
    # ADD text equals the fact text, so the fact vector is reused
    assert env.backend.calls == [["likes coffee", "Name is Sam"]]

    (memory,) = env.memories.list_by_user("u1")
    assert memory.content == "likes coffee"
    assert memory.category == MemoryCategory.USER_PREFERENCE
    assert memory.importance == 0.8
    assert memory.action == MemoryAction.ADD
    assert memory.prev_content is None
    assert env.messages.get_unextracted("u1") == []
    env.sqlite.close()


def test_add_with_rewritten_text_is_embedded_fresh(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee")]},
        {"memory": [{"id": "1", "event": "ADD", "text": "Enjoys dark roast coffee"}]},
    ])
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.memories_updated == 1
    assert env.backend.calls == [["likes coffee"], ["Enjoys dark roast coffee"]]
    assert env.memories.list_by_user("u1")[0].content == "Enjoys dark roast coffee"
    env.sqlite.close()


def test_unresolvable_decision_ids_are_skipped(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee"), _fact("Name is Sam", "USER_INFO")]},
        {"memory": [
            {"id": "7", "event": "ADD", "text": "out of range"},
            {"id": "abc", "event": "ADD", "text": "not a number"},
            {"id": "1", "event": "UPDATE", "text": "no existing memories"},
            {"id": "0", "event": "ADD", "text": "below range"},
            {"id": "2", "event": "ADD"},
        ]},
    ])
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.decisions_skipped == 4
    assert result.memories_updated == 1
    assert result.messages_extracted == 6
    # empty ADD text falls back to the fact text
    assert [m.content for m in env.memories.list_by_user("u1")] == ["Name is Sam"]
    env.sqlite.close()


def test_failed_decision_does_not_block_the_others(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [_fact("likes coffee"), _fact("boom"), _fact("Name is Sam", "USER_INFO")]},
            {"memory": [
                {"id": "1", "event": "ADD", "text": "likes coffee"},
                {"id": "2", "event": "ADD", "text": "boom"},
                {"id": "3", "event": "ADD", "text": "Name is Sam"},
            ]},
        ],
        store_cls=_FlakyMemoryStore,
    )
    ids = _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.memories_updated == 2
    assert result.messages_extracted == len(ids)
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert (failure.decision_id, failure.event) == ("2", "ADD")
    assert "disk full" in failure.error
    assert sorted(m.content for m in env.memories.list_by_user("u1")) == ["Name is Sam", "likes coffee"]
    assert env.messages.get_unextracted("u1") == []
    env.sqlite.close()


def test_oversized_decision_text_fails_only_that_decision(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee"), _fact("plays chess")]},
        {"memory": [
            {"id": "1", "event": "ADD", "text": "likes coffee"},
            {"id": "2", "event": "ADD", "text": "x" * 9000},
        ]},
    ])
    ids = _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.memories_updated == 1
    assert [(f.decision_id, f.event) for f in result.failures] == [("2", "ADD")]
    assert "limit is 8192" in result.failures[0].error
    assert result.messages_extracted == len(ids)
    assert env.backend.calls == [["likes coffee", "plays chess"]]
    assert [m.content for m in env.memories.list_by_user("u1")] == ["likes coffee"]
    env.sqlite.close()


def test_rejected_decision_text_is_retried_alone_and_fails_only_itself(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [_fact("likes coffee"), _fact("plays chess")]},
            {"memory": [
                {"id": "1", "event": "ADD", "text": "Enjoys dark roast coffee"},
                {"id": "2", "event": "ADD", "text": "malformed text"},
            ]},
        ],
        reject={"malformed text"},
    )
    ids = _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert env.backend.calls == [
        ["likes coffee", "plays chess"],
        ["Enjoys dark roast coffee", "malformed text"],
        ["Enjoys dark roast coffee"],
        ["malformed text"],
    ]
    assert result.memories_updated == 1
    assert [f.decision_id for f in result.failures] == ["2"]
    assert result.messages_extracted == len(ids)
    assert [m.content for m in env.memories.list_by_user("u1")] == ["Enjoys dark roast coffee"]
    assert env.messages.get_unextracted("u1") == []
    env.sqlite.close()



def test_zero_facts_still_marks_messages(tmp_path):
    env = _setup(tmp_path, replies=[{"facts": []}])
    _conversation(env, turns=2)

    result = asyncio.run(env.consolidator.run("u1"))

    assert (result.facts_extracted, result.memories_updated, result.messages_extracted) == (0, 0, 2)
    assert len(env.chat.prompts) == 1
    assert env.backend.calls == []
    assert env.messages.get_unextracted("u1") == []
    env.sqlite.close()


@pytest.mark.parametrize(
    "reply,error",
    [
        ("{not json", SchemaValidationError),
        ({"facts": [{"text": "x", "category": "HOBBY", "importance": 0.5, "confidence": 0.5}]},
         SchemaValidationError),
        (RuntimeError("connection reset"), CompletionError),
    ],
)
def test_extraction_failure_leaves_messages_pending(tmp_path, reply, error):
    env = _setup(tmp_path, replies=[reply])
    _conversation(env)

    with pytest.raises(error) as excinfo:
        asyncio.run(env.consolidator.run("u1"))

    assert excinfo.value.stage == "extraction"
    assert len(env.messages.get_unextracted("u1")) == 6
    assert env.memories.count("u1") == 0
    env.sqlite.close()


def test_adjudication_failure_leaves_messages_pending(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee")]},
        {"memory": [{"id": "2", "event": "DELETE", "text": "nope"}]},
    ])
    _conversation(env)

    with pytest.raises(SchemaValidationError) as excinfo:
        asyncio.run(env.consolidator.run("u1"))

    assert excinfo.value.stage == "adjudication"
    assert len(env.messages.get_unextracted("u1")) == 6
    env.sqlite.close()


def test_embedding_exhaustion_aborts_before_any_write(tmp_path):
    env = _setup(
        tmp_path,
        replies=[{"facts": [_fact("likes coffee")]}],
        fail=TimeoutError("provider timed out"),
    )
    _conversation(env)

    with pytest.raises(EmbeddingProviderError) as excinfo:
        asyncio.run(env.consolidator.run("u1"))

    assert excinfo.value.attempts == 2
    assert len(env.backend.calls) == 2
    assert len(env.messages.get_unextracted("u1")) == 6
    env.sqlite.close()


def test_update_rewrites_memory_and_keeps_previous_content(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [_fact("Prefers coffee now", "USER_PREFERENCE", 0.9, 0.8)]},
            {"memory": [
                {"id": "1", "event": "UPDATE", "text": "Prefers coffee over tea", "source_id": "2"},
            ]},
        ],
        vectors={
            "Likes tea": _unit(1.0),
            "Prefers coffee now": _cos(0.9),
            "Prefers coffee over tea": _unit(0.0, 0.0, 1.0),
        },
    )
    existing = asyncio.run(env.memories.insert_one(Memory(
        user_id="u1",
        content="Likes tea",
        category=MemoryCategory.OTHER,
        importance=0.2,
        confidence=0.4,
    )))
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert (result.facts_extracted, result.memories_updated, result.messages_extracted) == (1, 1, 6)
    adjudication_prompt = env.chat.prompts[1]
    assert '{"id":"1","text":"Likes tea"}' in adjudication_prompt
    assert '{"id":"2","text":"Prefers coffee now"' in adjudication_prompt

    updated = env.memories.get("u1", existing.id)
    assert updated.content == "Prefers coffee over tea"
    assert updated.prev_content == "Likes tea"
    assert updated.action == MemoryAction.UPDATE
    assert updated.category == MemoryCategory.USER_PREFERENCE
    assert updated.importance == pytest.approx(0.9)
    assert updated.confidence == pytest.approx(0.8)
    assert np.allclose(updated.embedding, _unit(0.0, 0.0, 1.0))
    assert env.memories.count("u1") == 1
    env.sqlite.close()


def test_update_metadata_comes_from_closest_fact_without_source_id(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [
                _fact("Drinks coffee daily", "USER_EVENT", 0.3, 0.5),
                _fact("Loves espresso", "USER_PREFERENCE", 0.9, 0.95),
            ]},
            {"memory": [{"id": "1", "event": "UPDATE", "text": "Loves espresso, drinks it daily"}]},
        ],
        vectors={
            "Likes coffee": _unit(1.0),
            "Drinks coffee daily": _cos(0.8),
            "Loves espresso": _cos(0.99),
        },
    )
    existing = asyncio.run(env.memories.insert_one(Memory(user_id="u1", content="Likes coffee")))
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.memories_updated == 1
    updated = env.memories.get("u1", existing.id)
    assert updated.category == MemoryCategory.USER_PREFERENCE
    assert updated.importance == pytest.approx(0.9)
    env.sqlite.close()


def test_update_with_blank_text_is_skipped(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [_fact("Likes coffee a lot")]},
            {"memory": [{"id": "1", "event": "UPDATE", "text": "  "}]},
        ],
        vectors={"Likes coffee": _unit(1.0), "Likes coffee a lot": _cos(0.95)},
    )
    existing = asyncio.run(env.memories.insert_one(Memory(user_id="u1", content="Likes coffee")))
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert result.decisions_skipped == 1
    assert result.memories_updated == 0
    assert env.memories.get("u1", existing.id).content == "Likes coffee"
    env.sqlite.close()


def test_memories_of_other_users_are_not_candidates(tmp_path):
    env = _setup(
        tmp_path,
        replies=[
            {"facts": [_fact("likes coffee")]},
            {"memory": [{"id": "1", "event": "ADD", "text": "likes coffee"}]},
        ],
        vectors={"someone else's coffee": _unit(1.0), "likes coffee": _unit(1.0)},
    )
    asyncio.run(env.memories.insert_one(Memory(user_id="u2", content="someone else's coffee")))
    _conversation(env)

    result = asyncio.run(env.consolidator.run("u1"))

    assert "someone else's coffee" not in env.chat.prompts[1]
    assert result.memories_updated == 1
    assert env.memories.count("u1") == 1
    assert env.memories.count("u2") == 1
    env.sqlite.close()


def test_concurrent_runs_for_one_user_process_messages_once(tmp_path):
    env = _setup(tmp_path, replies=[
        {"facts": [_fact("likes coffee")]},
        {"memory": [{"id": "1", "event": "ADD", "text": "likes coffee"}]},
    ])
    _conversation(env)

    async def _run():
        return await asyncio.gather(env.consolidator.run("u1"), env.consolidator.run("u1"))

    results = asyncio.run(_run())

    assert sorted(r.messages_extracted for r in results) == [0, 6]
    assert len(env.chat.prompts) == 2
    assert env.memories.count("u1") == 1
    assert env.consolidator.locks._locks == {}
    env.sqlite.close()


def test_collect_candidates_numbers_unique_memories_in_discovery_order():
    a = Memory(user_id="u1", content="a", id=10)
    b = Memory(user_id="u1", content="b", id=20)
    c = Memory(user_id="u1", content="c", id=30)
    hits = [
        [SearchHit(b, 0.80), SearchHit(a, 0.75)],
        [SearchHit(a, 0.95), SearchHit(c, 0.71)],
        [],
    ]

    candidates = collect_candidates(hits)

    assert [(cand.unified_id, cand.memory.id) for cand in candidates] == [(1, 20), (2, 10), (3, 30)]
    assert [cand.best_fact for cand in candidates] == [0, 1, 1]
    assert candidates[1].best_similarity == 0.95


def test_extraction_prompt_is_dated_when_rendered():
    assert "Today's date" not in FACT_RETRIEVAL_PROMPT

    dated = fact_retrieval_prompt("user: hi", today=date(2031, 2, 3))
    assert "Today's date is 2031-02-03." in dated
    assert dated.endswith("Conversation:\nuser: hi")
    assert f"Today's date is {date.today().isoformat()}." in fact_retrieval_prompt("user: hi")


def test_user_locks_serialize_one_user_and_forget_idle_users():
    locks = UserLocks()
    events: list[str] = []

    async def _hold(user_id: str, tag: str) -> None:
        async with locks.hold(user_id):
            events.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            events.append(f"{tag}-out")

    async def _run():
        await asyncio.gather(_hold("u1", "a"), _hold("u1", "b"), _hold("u2", "c"))
        return dict(locks._locks), dict(locks._users)

    held, users = asyncio.run(_run())

    a_in, a_out = events.index("a-in"), events.index("a-out")
    b_in, b_out = events.index("b-in"), events.index("b-out")
    assert a_out < b_in or b_out < a_in
    assert events.index("c-in") < max(a_out, b_out)
    assert held == {} and users == {}
