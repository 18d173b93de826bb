from __future__ import annotations

import asyncio

from click.testing import CliRunner

from memloom.cli import main
from memloom.config import Config
from memloom.embeddings import EmbeddingClient, HashEmbedder
from memloom.engine import MemoryEngine
from memloom.llm import ChatResponse, StructuredCompletionClient
from memloom.types import Memory
from memloom.utils import json_dumps


class _ScriptedChat:
    name = "scripted"

    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.closed = False

    async def chat(self, messages, temperature=None, max_tokens=None, json_schema=None):
        return ChatResponse(content=json_dumps(self.replies.pop(0)))

    async def close(self) -> None:
        self.closed = True


def _config(tmp_path) -> Config:
    cfg = Config()
    cfg.data_dir = tmp_path
    cfg.embedding.dims = 16
    cfg.ensure_dirs()
    return cfg


def test_engine_runs_consolidation_with_named_providers(tmp_path):
    async def _run() -> None:
        engine = MemoryEngine(_config(tmp_path))
        chat = _ScriptedChat([
            {"facts": [{"text": "Plays the cello", "category": "USER_INFO",
                        "importance": 0.7, "confidence": 0.9}]},
            {"memory": [{"id": "1", "event": "ADD", "text": "Plays the cello"}]},
        ])
        engine._completions["scripted"] = StructuredCompletionClient(chat)
        try:
            story = engine.messages.create_story("u1", "music")
            engine.messages.bulk_insert([
                (story.id, "user", "I play the cello in an orchestra"),
                (story.id, "assistant", "That sounds lovely!"),
            ])
            result = await engine.extract_memories_for_user("u1", "hash", "scripted")
            assert result.to_dict()["memories_updated"] == 1
            assert result.messages_extracted == 2

            hits = await engine.search("u1", "Plays the cello", embedding_provider="hash")
            assert hits and hits[0].memory.content == "Plays the cello"
            assert hits[0].similarity > 0.99
            assert engine.status()["pending_messages"] == 0
        finally:
            await engine.aclose()
        assert chat.closed

    asyncio.run(_run())


def test_llm_provider_follows_chat_capable_embedding_provider(tmp_path):
    engine = MemoryEngine(_config(tmp_path))
    try:
        assert engine.consolidator("ollama").completions.provider == "ollama"
        assert engine.consolidator("hash").completions.provider == engine.config.llm.provider
        assert engine.consolidator("hash", "ollama").embedder.provider == "hash"
        # clients are cached per provider name
        assert engine.embedder("hash") is engine.embedder("HASH")
    finally:
        engine.close()


def test_cli_status_and_memories(tmp_path):
    cfg = _config(tmp_path)
    engine = MemoryEngine(cfg)
    asyncio.run(engine.memories.insert_one(
        Memory(user_id="u1", content="Speaks Portuguese"),
        embedder=EmbeddingClient(HashEmbedder(), dims=16),
    ))
    engine.close()

    runner = CliRunner()
    status = runner.invoke(main, ["--data-dir", str(tmp_path), "status"])
    assert status.exit_code == 0, status.output
    assert "Memories:" in status.output

    listed = runner.invoke(main, ["--data-dir", str(tmp_path), "memories", "u1"])
    assert listed.exit_code == 0, listed.output
    assert "Speaks Portuguese" in listed.output

    empty = runner.invoke(main, ["--data-dir", str(tmp_path), "memories", "nobody"])
    assert "No memories." in empty.output


def test_cli_search_reports_provider_failure(tmp_path, monkeypatch):
    monkeypatch.delenv("DASHSCOPE_API_KEY", raising=False)
    _config(tmp_path)

    runner = CliRunner()
    failed = runner.invoke(
        main, ["--data-dir", str(tmp_path), "search", "u1", "coffee", "-e", "dashscope"]
    )

    assert failed.exit_code == 1
    assert "Search failed:" in failed.output
    assert "DASHSCOPE_API_KEY is required" in failed.output
    assert failed.exception is None or isinstance(failed.exception, SystemExit)
