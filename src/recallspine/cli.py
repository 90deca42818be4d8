"""recallspine CLI."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from recallspine.config import Config
from recallspine.exceptions import RecallSpineError
from recallspine.memory.store import MemoryStore
from recallspine.retrieval.orchestrator import RetrievalOrchestrator
from recallspine.types import RetrievalResult, RetrieveOptions


def _get_orchestrator(data_dir: str | None = None) -> RetrievalOrchestrator:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    return RetrievalOrchestrator(MemoryStore(config), config=config)


def _echo_result(result: RetrievalResult) -> None:
    if not result.fragments:
        click.echo("No fragments found." + (" (fallback)" if result.fallback else ""))
    for i, f in enumerate(result.fragments, 1):
        click.echo(f"\n--- Fragment {i} (score: {f.final_score:.4f}, source: {f.source}) ---")
        click.echo(f.text[:200].replace("\n", " "))
    counts = ", ".join(f"{k}={v}" for k, v in result.search_types.items())
    click.echo(f"\nStrategies: {counts}")
    if result.failed_strategies:
        click.echo(f"Failed: {', '.join(result.failed_strategies)}")


@click.group()
@click.option("--data-dir", envvar="RECALLSPINE_DATA_DIR", default=None, help="Data directory")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, verbose: bool) -> None:
    """recallspine: semantic memory and multi-strategy retrieval."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@main.command()
@click.argument("text")
@click.option("--type", "memory_type", default="conversation", help="Memory type")
@click.option("--importance", type=float, default=None, help="Importance in [0, 1]")
@click.option("--timestamp", default=None, help="ISO-8601 timestamp (default: now)")
@click.pass_context
def add(ctx: click.Context, text: str, memory_type: str,
        importance: float | None, timestamp: str | None) -> None:
    """Add a memory."""
    orch = _get_orchestrator(ctx.obj.get("data_dir"))
    metadata = {"importance": importance} if importance is not None else None

    async def _run():
        try:
            return await orch.add_memory(text, timestamp=timestamp,
                                         memory_type=memory_type, metadata=metadata)
        finally:
            await orch.close()

    try:
        record = asyncio.run(_run())
    except RecallSpineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Stored {record.id} in {record.cluster_id}")


@main.command()
@click.argument("query")
@click.option("--top-k", "-k", default=10, help="Number of results")
@click.option("--min-similarity", default=0.3, type=float, help="Minimum cosine similarity")
@click.option("--type", "type_filter", default=None, help="Only this memory type")
@click.pass_context
def search(ctx: click.Context, query: str, top_k: int, min_similarity: float,
           type_filter: str | None) -> None:
    """Semantic search over stored memories."""
    orch = _get_orchestrator(ctx.obj.get("data_dir"))

    async def _run():
        try:
            return await orch.semantic.search(query, max_results=top_k,
                                              min_similarity=min_similarity,
                                              type_filter=type_filter)
        finally:
            await orch.close()

    try:
        hits = asyncio.run(_run())
    except RecallSpineError as exc:
        raise click.ClickException(str(exc)) from exc
    if not hits:
        click.echo("No results found.")
    for i, h in enumerate(hits, 1):
        click.echo(f"\n--- Result {i} (relevance: {h.relevance_score:.4f}, "
                   f"similarity: {h.similarity:.4f}) ---")
        click.echo(f"ID: {h.memory.id}  cluster: {h.memory.cluster_id}")
        click.echo(h.memory.text[:200].replace("\n", " "))


@main.command()
@click.argument("query")
@click.option("--max-results", "-n", default=5, help="Number of fragments")
@click.option("--profile", default="default", help="Profile id for history lookup")
@click.option("--smart", is_flag=True, help="Pick strategies from the query")
@click.pass_context
def retrieve(ctx: click.Context, query: str, max_results: int, profile: str, smart: bool) -> None:
    """Run multi-strategy context retrieval."""
    orch = _get_orchestrator(ctx.obj.get("data_dir"))

    async def _run() -> RetrievalResult:
        try:
            if smart:
                return await orch.smart_search(query, profile_id=profile, max_results=max_results)
            return await orch.retrieve_context(
                query, profile_id=profile, options=RetrieveOptions(max_results=max_results),
            )
        finally:
            await orch.close()

    result = asyncio.run(_run())
    if result.query_analysis is not None:
        click.echo(f"Query type: {result.query_analysis.query_type}")
    _echo_result(result)


@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show memory statistics."""
    orch = _get_orchestrator(ctx.obj.get("data_dir"))
    st = orch.store.get_stats()
    click.echo("recallspine memory status")
    click.echo(f"  Memories:          {st['total_memories']}")
    click.echo(f"  Clusters:          {st['total_clusters']}")
    click.echo(f"  Avg cluster size:  {st['average_cluster_size']:.2f}")
    click.echo(f"  Dominant ratio:    {st['dominant_cluster_ratio']:.2f}")
    for mtype, count in sorted(st["memory_types"].items()):
        click.echo(f"  {mtype + ':':<18} {count}")
    if st["temporal_range"]:
        click.echo(f"  Oldest:            {st['temporal_range']['oldest']}")
        click.echo(f"  Newest:            {st['temporal_range']['newest']}")
    asyncio.run(orch.close())


@main.command()
@click.option("--max-age-days", required=True, type=float, help="Age cutoff in days")
@click.option("--limit", default=None, type=int, help="Max memories to remove")
@click.option("--apply", "apply_", is_flag=True, help="Delete instead of previewing")
@click.pass_context
def forget(ctx: click.Context, max_age_days: float, limit: int | None, apply_: bool) -> None:
    """Preview or delete memories older than a cutoff."""
    orch = _get_orchestrator(ctx.obj.get("data_dir"))

    async def _run():
        try:
            return await orch.store.forget_stale(max_age_days, dry_run=not apply_, limit=limit)
        finally:
            await orch.close()

    result = asyncio.run(_run())
    verb = "Removed" if apply_ else "Would remove"
    click.echo(f"{verb} {result['candidate_count']} memories")


@main.command()
@click.option("--host", "-h", default="127.0.0.1", help="Bind host")
@click.option("--port", "-p", default=8430, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the HTTP API server."""
    import uvicorn
    from recallspine.api.routes import create_app

    app = create_app(data_dir=ctx.obj.get("data_dir"))
    click.echo(f"Starting recallspine API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
