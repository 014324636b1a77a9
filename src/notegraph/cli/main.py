"""
NoteGraph CLI - Main Entry Point

Usage:
    notegraph stats                               # Sync + projection statistics
    notegraph search "dragon glass" -k 5          # Hybrid search over the vault
    notegraph neighbors <node-id>                 # Direct neighbors of a node
    notegraph centrality --top 10                 # Most central nodes
"""

import asyncio
import dataclasses
import json
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import Callable, Optional

import click
from loguru import logger

from notegraph.cli.formatters import format_centrality, format_neighbors, format_results, format_stats
from notegraph.core.candidates import BM25Index
from notegraph.core.config import NoteGraphConfig, load_config
from notegraph.core.exceptions import NoteGraphError
from notegraph.core.hybrid_search import DEFAULT_FUSION_CONFIGS, HybridSearchEngine
from notegraph.core.logging_config import configure_logging
from notegraph.core.search_service import SearchOptions, SearchService
from notegraph.core.store import SQLiteGraphStore
from notegraph.core.sync_engine import SyncEngine


# ============================================================================
# Engine lifecycle
# ============================================================================

@asynccontextmanager
async def engine_context(config: NoteGraphConfig, db_path: Optional[str] = None):
    """
    Open the SQLite store, hydrate a SyncEngine and close it on exit.

    Usage:
        async with engine_context(config) as engine:
            print(engine.get_graph_projection().stats())
    """
    store = SQLiteGraphStore(
        db_path or config.store.sqlite_path,
        timeout=config.store.timeout_seconds,
    )
    engine = SyncEngine(store, config)
    try:
        await engine.initialize()
        yield engine
    finally:
        await engine.close()


def with_engine(func: Callable) -> Callable:
    """
    Run an async command body with a hydrated engine.

    The wrapped coroutine receives ``(ctx, engine, *args, **kwargs)``.
    NoteGraphError is reported on stderr with exit code 1.
    """
    @wraps(func)
    def wrapper(ctx: click.Context, *args, **kwargs):
        async def run():
            async with engine_context(ctx.obj["config"], ctx.obj.get("db_path")) as engine:
                return await func(ctx, engine, *args, **kwargs)

        try:
            return asyncio.run(run())
        except NoteGraphError as exc:
            logger.debug(f"Command failed: {exc.to_dict()}")
            click.echo(f"Error: {exc}", err=True)
            ctx.exit(1)

    return wrapper


def _emit_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


# ============================================================================
# CLI Group
# ============================================================================

@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config.yaml file")
@click.option("--db", "db_path", type=click.Path(), help="SQLite database (overrides store.sqlite_path)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], db_path: Optional[str], verbose: bool):
    """
    NoteGraph - knowledge graph sync and hybrid retrieval for a note vault.
    """
    ctx.ensure_object(dict)
    cfg = load_config(Path(config) if config else None)
    ctx.obj["config"] = cfg
    ctx.obj["db_path"] = db_path
    ctx.obj["verbose"] = verbose
    configure_logging(
        level="DEBUG" if verbose else cfg.observability.log_level,
        json_format=cfg.observability.json_logs,
    )


# ============================================================================
# Commands
# ============================================================================

@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx, output_json: bool):
    """
    Show record counts, projection shape and sync metrics.

    Example:
        notegraph stats --json
    """
    @with_engine
    async def _stats(ctx, engine: SyncEngine):
        metrics = engine.get_metrics()
        data = {
            "Records": {
                "notes": len(engine.get_notes()),
                "folders": len(engine.get_folders()),
                "entities": len(engine.get_entities()),
                "edges": len(engine.get_edges()),
            },
            "Projection": engine.get_graph_projection().stats(),
            "Sync": {**dataclasses.asdict(metrics), "hit_rate": metrics.hit_rate},
        }
        if output_json:
            _emit_json(data)
        else:
            click.echo(format_stats(data))

    return _stats(ctx)


@cli.command()
@click.argument("query", required=True)
@click.option("--top-k", "-k", type=int, default=10, help="Number of results to return")
@click.option(
    "--profile",
    "-p",
    type=click.Choice(sorted(DEFAULT_FUSION_CONFIGS)),
    default=None,
    help="Fusion profile (defaults to search.default_profile)",
)
@click.option("--kind", "kinds", multiple=True, help="Only return nodes of this kind (repeatable)")
@click.option("--min-score", "-s", type=float, default=0.0, help="Minimum fused score")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx, query: str, top_k: int, profile: Optional[str], kinds: tuple, min_score: float, output_json: bool):
    """
    Hybrid lexical + graph search over notes and entities.

    Example:
        notegraph search "night's watch" -k 5 --profile relational
    """
    @with_engine
    async def _search(ctx, engine: SyncEngine):
        config = ctx.obj["config"]
        hybrid = HybridSearchEngine(
            engine.projection_store,
            lexical_source=BM25Index(),
            record_source=engine.store,
            config=config.search,
        )
        service = SearchService(hybrid, config)
        service.attach(engine)
        results = await service.search(
            query,
            options=SearchOptions(mode="hybrid", k=top_k, profile=profile, kinds=kinds, min_score=min_score),
        )
        if output_json:
            _emit_json([r.to_dict() for r in results])
        else:
            click.echo(format_results(results))

    return _search(ctx)


@cli.command()
@click.argument("node_id", required=True)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def neighbors(ctx, node_id: str, output_json: bool):
    """
    List the direct neighbors of a node.

    Example:
        notegraph neighbors 3f2a9c...
    """
    @with_engine
    async def _neighbors(ctx, engine: SyncEngine):
        projection = engine.projection_store
        node = projection.get_node(node_id)
        if node is None:
            click.echo(f"Node not found: {node_id}", err=True)
            ctx.exit(1)
        pairs = [(n, projection.edges_between(node.id, n.id)) for n in projection.get_neighbors(node.id)]
        if output_json:
            _emit_json({
                "node": node.to_dict(),
                "neighbors": [
                    {"node": n.to_dict(), "edges": [dataclasses.asdict(e) for e in edges]}
                    for n, edges in pairs
                ],
            })
        else:
            click.echo(format_neighbors(node, pairs))

    return _neighbors(ctx)


@cli.command()
@click.option("--top", "-n", "top_n", type=int, default=10, help="Number of nodes to show")
@click.option("--threshold", "-t", type=float, default=None, help="Confidence threshold for the analysed subgraph")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def centrality(ctx, top_n: int, threshold: Optional[float], output_json: bool):
    """
    Rank nodes by centrality within the confidence-filtered subgraph.

    Example:
        notegraph centrality --top 20 --threshold 0.7
    """
    @with_engine
    async def _centrality(ctx, engine: SyncEngine):
        projection = engine.projection_store
        if threshold is not None:
            projection.set_confidence_threshold(threshold)
        ranked = projection.top_central(top_n)
        if output_json:
            _emit_json([
                {"node": node.to_dict(), "scores": {**dataclasses.asdict(s), "composite": s.composite}}
                for node, s in ranked
            ])
        else:
            click.echo(format_centrality(ranked))

    return _centrality(ctx)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
