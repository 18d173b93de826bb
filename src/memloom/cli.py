"""memloom CLI."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from memloom.config import Config
from memloom.engine import MemoryEngine
from memloom.exceptions import MemloomError
from memloom.log import setup_logging
from memloom.utils import json_dumps


def _get_engine(data_dir: str | None = None) -> MemoryEngine:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    return MemoryEngine(config)


@click.group()
@click.option("--data-dir", envvar="MEMLOOM_DATA_DIR", default=None, help="Data directory")
@click.option("--log-level", envvar="MEMLOOM_LOG_LEVEL", default="INFO", help="Log level")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, log_level: str) -> None:
    """memloom: consolidate chat transcripts into long-term user memories."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    setup_logging(log_level, log_file=Config().logging.log_file)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show store status."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    st = engine.status()
    click.echo("memloom status")
    click.echo(f"  Database:          {st['db_path']}")
    click.echo(f"  Messages:          {st['messages']}")
    click.echo(f"  Pending messages:  {st['pending_messages']}")
    click.echo(f"  Memories:          {st['memories']}")
    click.echo(f"  Embedding:         {st['embedding_provider']}")
    click.echo(f"  LLM:               {st['llm_provider']}")
    engine.close()


@main.command()
@click.argument("user_id")
@click.option("--embedding-provider", "-e", default=None, help="Embedding provider")
@click.option("--llm-provider", "-l", default=None, help="Chat provider for extraction")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def consolidate(
    ctx: click.Context,
    user_id: str,
    embedding_provider: str | None,
    llm_provider: str | None,
    as_json: bool,
) -> None:
    """Consolidate pending messages of USER_ID into memories."""
    engine = _get_engine(ctx.obj.get("data_dir"))

    async def _run():
        try:
            return await engine.extract_memories_for_user(user_id, embedding_provider, llm_provider)
        finally:
            await engine.aclose()

    try:
        result = asyncio.run(_run())
    except MemloomError as e:
        click.echo(f"Consolidation failed: {e}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json_dumps(result.to_dict()))
        return
    click.echo(f"Facts extracted:    {result.facts_extracted}")
    click.echo(f"Memories written:   {result.memories_updated}")
    click.echo(f"Messages processed: {result.messages_extracted}")
    if result.decisions_skipped:
        click.echo(f"Decisions skipped:  {result.decisions_skipped}")
    for f in result.failures:
        click.echo(f"  failed {f.event} {f.decision_id}: {f.error}")


@main.command()
@click.argument("user_id")
@click.option("--category", "-c", default=None, help="Only this category")
@click.option("--limit", "-n", default=20, help="Number of memories")
@click.pass_context
def memories(ctx: click.Context, user_id: str, category: str | None, limit: int) -> None:
    """List memories of USER_ID, newest first."""
    engine = _get_engine(ctx.obj.get("data_dir"))
    rows = engine.memories.list_by_user(user_id, category=category, limit=limit)
    if not rows:
        click.echo("No memories.")
    for m in rows:
        cat = m.category.value if m.category else "-"
        click.echo(f"  [{m.id}] ({cat}) {m.content}")
    engine.close()


@main.command()
@click.argument("user_id")
@click.argument("query")
@click.option("--top-k", "-k", default=5, help="Number of results")
@click.option("--min-similarity", "-m", default=0.0, help="Similarity floor")
@click.option("--embedding-provider", "-e", default=None, help="Embedding provider")
@click.pass_context
def search(
    ctx: click.Context,
    user_id: str,
    query: str,
    top_k: int,
    min_similarity: float,
    embedding_provider: str | None,
) -> None:
    """Search memories of USER_ID."""
    engine = _get_engine(ctx.obj.get("data_dir"))

    async def _run():
        try:
            return await engine.search(
                user_id, query, top_k=top_k, min_similarity=min_similarity,
                embedding_provider=embedding_provider,
            )
        finally:
            await engine.aclose()

    try:
        hits = asyncio.run(_run())
    except MemloomError as e:
        click.echo(f"Search failed: {e}", err=True)
        sys.exit(1)
    if not hits:
        click.echo("No results found.")
    for i, hit in enumerate(hits, 1):
        click.echo(f"{i}. ({hit.similarity:.3f}) [{hit.memory.id}] {hit.memory.content}")


if __name__ == "__main__":
    main()
