"""threadgraph CLI: inspect and maintain a thread-partitioned memory store.

Commands:
    threadgraph init                    create threadgraph.toml + memory dir
    threadgraph stats                   counts, scores, recent activity
    threadgraph conversations           threads, most recent first
    threadgraph search QUERY            substring search over entities
    threadgraph show NAME...            entities with their relations
    threadgraph path FROM TO            shortest relation path
    threadgraph context NAME...         neighbourhood of entities
    threadgraph conflicts               possibly contradictory observations
    threadgraph flagged                 entities flagged for review
    threadgraph prune                   drop old / unimportant entities
    threadgraph analytics THREAD        per-thread report
    threadgraph serve                   start stdio MCP server
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from threadgraph import __version__
from threadgraph.config import ThreadgraphConfig, init_config, load_config
from threadgraph.errors import ThreadgraphError
from threadgraph.models import KnowledgeGraph
from threadgraph.mcp import run_server
from threadgraph.pruning import PruneOptions
from threadgraph.store import MemoryStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> ThreadgraphConfig:
    try:
        return load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _store() -> MemoryStore:
    return MemoryStore.from_config(_load_cfg())


def _configure_logging(verbose: bool) -> None:
    # stdout carries JSON-RPC under `serve`; logs always go to stderr
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _print_graph(graph: KnowledgeGraph) -> None:
    if not graph.entities:
        click.echo("(no entities)")
        return
    for e in graph.entities:
        flag = "  [flagged]" if e.flagged or e.has_legacy_flag else ""
        click.echo(
            f"# {e.name}  type={e.entity_type}  thread={e.agent_thread_id}  "
            f"imp={e.importance:.2f} conf={e.confidence:.2f}{flag}"
        )
        for o in e.observation_texts():
            click.echo(f"- {o}")
    if graph.relations:
        click.echo("")
        for r in graph.relations:
            click.echo(f"{r.from_entity} -[{r.relation_type}]-> {r.to_entity}  ({r.agent_thread_id})")


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, package_name="threadgraph")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
def cli(verbose: bool) -> None:
    """threadgraph: multi-thread memory graph for agents."""
    _configure_logging(verbose)


@cli.command()
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(root: str) -> None:
    """Create threadgraph.toml and the memory directory."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("threadgraph.toml already exists, skipping init")

    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Memory dir : {cfg.memory_dir}")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@cli.command()
def stats() -> None:
    """Show entity/relation counts, mean scores and the last week of activity."""
    cfg = _load_cfg()
    s = MemoryStore.from_config(cfg).get_memory_stats()
    console = Console()

    table = Table(title="threadgraph", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Version", __version__)
    table.add_row("Memory dir", str(cfg.memory_dir))
    table.add_row("Server", f"{cfg.server.host}:{cfg.server.port}")
    table.add_row("", "")
    table.add_row("Entities", str(s.entity_count))
    table.add_row("Relations", str(s.relation_count))
    table.add_row("Threads", str(s.thread_count))
    table.add_row("Avg confidence", f"{s.avg_confidence:.2f}")
    table.add_row("Avg importance", f"{s.avg_importance:.2f}")
    if s.entity_types:
        table.add_row("", "")
        for etype, n in sorted(s.entity_types.items(), key=lambda kv: kv[1], reverse=True):
            table.add_row(f"  {etype}", str(n))
    if s.recent_activity:
        table.add_row("", "")
        for day, n in s.recent_activity:
            table.add_row(f"  {day}", str(n))
    console.print(table)


@cli.command()
def conversations() -> None:
    """List threads with their counts and time span."""
    rows = _store().list_conversations()
    if not rows:
        click.echo("No conversations yet.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Thread")
    table.add_column("Entities", justify="right")
    table.add_column("Relations", justify="right")
    table.add_column("First created", style="dim")
    table.add_column("Last updated")
    for c in rows:
        table.add_row(c.agent_thread_id, str(c.entity_count), str(c.relation_count), c.first_created, c.last_updated)
    Console().print(table)


@cli.command()
@click.argument("thread_id")
def analytics(thread_id: str) -> None:
    """Recent, important, connected and orphaned entities of THREAD_ID."""
    report = _store().get_analytics(thread_id)
    console = Console()

    recent = Table(title="Recent changes", header_style="bold")
    for col in ("Entity", "Type", "Last modified", "Change"):
        recent.add_column(col)
    for row in report.recent_changes:
        recent.add_row(row["entityName"], row["entityType"], row["lastModified"], row["changeType"])
    console.print(recent)

    important = Table(title="Most important", header_style="bold")
    for col in ("Entity", "Type", "Importance", "Observations"):
        important.add_column(col)
    for row in report.top_important:
        important.add_row(row["entityName"], row["entityType"], f"{row['importance']:.2f}", str(row["observationCount"]))
    console.print(important)

    connected = Table(title="Most connected", header_style="bold")
    for col in ("Entity", "Type", "Neighbours", "Connected to"):
        connected.add_column(col)
    for row in report.most_connected:
        connected.add_row(row["entityName"], row["entityType"], str(row["relationCount"]), ", ".join(row["connectedTo"]))
    console.print(connected)

    if report.orphaned_entities:
        orphans = Table(title="Orphaned", header_style="bold")
        for col in ("Entity", "Type", "Reason"):
            orphans.add_column(col)
        for row in report.orphaned_entities:
            orphans.add_row(row["entityName"], row["entityType"], f"[yellow]{row['reason']}[/yellow]")
        console.print(orphans)


# ---------------------------------------------------------------------------
# Graph reads
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--thread", "thread_id", default=None, help="Only this thread")
def search(query: str, thread_id: str | None) -> None:
    """Case-insensitive substring search over names, types and observations."""
    _print_graph(_store().search_nodes(query, thread_id))


@cli.command()
@click.argument("names", nargs=-1, required=True)
def show(names: tuple[str, ...]) -> None:
    """Show entities by exact name, with the relations between them."""
    _print_graph(_store().open_nodes(names))


@cli.command()
@click.argument("from_name")
@click.argument("to_name")
@click.option("--max-depth", default=5, show_default=True, type=int)
def path(from_name: str, to_name: str, max_depth: int) -> None:
    """Shortest relation path between two entities."""
    result = _store().find_relation_path(from_name, to_name, max_depth)
    if not result.found:
        click.echo(f"No path from {from_name} to {to_name} within {max_depth} hops")
        return
    click.echo(" -> ".join(result.path))
    for r in result.relations:
        click.echo(f"  {r.from_entity} -[{r.relation_type}]-> {r.to_entity}")


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--depth", default=1, show_default=True, type=int)
@click.option("--thread", "thread_id", default=None, help="Only this thread")
def context(names: tuple[str, ...], depth: int, thread_id: str | None) -> None:
    """Entities within DEPTH relation hops of NAMES."""
    _print_graph(_store().get_context(names, depth, thread_id))


@cli.command()
def conflicts() -> None:
    """Observation pairs that may contradict each other."""
    found = _store().detect_conflicts()
    if not found:
        click.echo("No conflicts detected.")
        return
    for ec in found:
        click.echo(f"# {ec.entity_name}")
        for c in ec.conflicts:
            click.echo(f"  - {c.obs1!r} vs {c.obs2!r}")


@cli.command()
def flagged() -> None:
    """Entities flagged for review."""
    entities = _store().get_flagged_entities()
    if not entities:
        click.echo("Nothing flagged.")
        return
    for e in entities:
        who = f" by {e.flagged_by}" if e.flagged_by else ""
        reason = e.flag_reason or "(legacy flag)"
        click.echo(f"{e.name}  [{e.entity_type}]  {reason}{who}")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--older-than", default=None, help="Drop entities stamped before this ISO-8601 time")
@click.option("--importance-below", "importance_less_than", default=None, type=float)
@click.option("--keep-min", "keep_min_entities", default=None, type=int, help="Always keep at least this many")
@click.option("--thread", "thread_id", default=None, help="Only prune this thread")
def prune(
    older_than: str | None,
    importance_less_than: float | None,
    keep_min_entities: int | None,
    thread_id: str | None,
) -> None:
    """Remove old or unimportant entities and their relations."""
    options = PruneOptions(
        older_than=older_than,
        importance_less_than=importance_less_than,
        keep_min_entities=keep_min_entities,
    )
    try:
        result = _store().prune_memory(options, thread_id)
    except ThreadgraphError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {result.removed_entities} entities, {result.removed_relations} relations")


@cli.command()
@click.option("--root", default=None, help="Override project root (default: auto-detect from cwd)")
def serve(root: str | None) -> None:
    """Start stdio MCP server."""
    root_path = Path(root).resolve() if root else None
    run_server(root_path)
