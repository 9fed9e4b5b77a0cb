"""CLI for the lore knowledge graph and search index."""

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .config import LorePaths
from .constants import (
    DEFAULT_HUB_LIMIT,
    DEFAULT_QUERY_LIMIT,
    DEFAULT_RELATED_HOPS,
    MAX_GRAPH_EXPAND_DEPTH,
    MAX_TRAVERSE_COMMAND_DEPTH,
    RECURRING_FAILURE_THRESHOLD,
)
from .engine import LoreEngine
from .index import INDEX_KINDS, IndexUnavailable
from .models import NODE_TYPES, InvalidNodeType, InvalidRelation
from .rebuild import SYNC_ORDER
from .resolver import resolve_ref
from .retrieval import SEARCH_MODES, InvalidQuery
from .store import NodeNotFound
from .timeutil import format_relative_time, parse_timestamp
from .traverse import (
    degree,
    find_clusters,
    find_hubs,
    find_orphans,
    path_edges,
    traverse,
)
from .viz import EXPORT_FORMATS, write_export

console = Console()
err_console = Console(stderr=True)

CHECK_KINDS = ("decision", "pattern", "failure", "observation", "session")


def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _engine(ctx) -> LoreEngine:
    return ctx.obj["engine"]


def _resolve(engine: LoreEngine, ref: str) -> str:
    node_id = resolve_ref(engine.store, ref)
    if node_id is None:
        _fail(f"Node not found: {ref}")
    return node_id


def _when(timestamp: str | None) -> str:
    parsed = parse_timestamp(timestamp)
    return format_relative_time(parsed) if parsed else ""


def _parse_attrs(pairs: tuple[str, ...], attrs_json: str | None) -> dict:
    attributes: dict = {}
    if attrs_json:
        try:
            loaded = json.loads(attrs_json)
        except json.JSONDecodeError as e:
            _fail(f"--json is not valid JSON: {e}")
        if not isinstance(loaded, dict):
            _fail("--json must be a JSON object")
        attributes.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            _fail(f"Attributes must look like key=value, got '{pair}'")
        attributes[key] = value
    return attributes


@click.group()
@click.option(
    "--data-dir",
    envvar="LORE_DATA_DIR",
    type=click.Path(path_type=Path),
    help="Lore data directory (default: ~/.lore)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, data_dir, verbose):
    """Loregraph - knowledge graph and search over the lore logs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    ctx.ensure_object(dict)
    engine = LoreEngine(LorePaths.from_env(root=data_dir))
    ctx.obj["engine"] = engine
    ctx.call_on_close(engine.close)


# --- Graph ---


@cli.group()
def graph():
    """Inspect and edit the knowledge graph."""


@graph.command("add")
@click.argument("node_type", type=click.Choice(NODE_TYPES))
@click.argument("name")
@click.option("--attr", "attrs", multiple=True, help="Attribute as key=value (repeatable)")
@click.option("--json", "attrs_json", help="Attributes as a JSON object")
@click.pass_context
def graph_add(ctx, node_type, name, attrs, attrs_json):
    """Add a node, or merge attributes into an existing one."""
    engine = _engine(ctx)
    try:
        node_id = engine.store.add_node(node_type, name, _parse_attrs(attrs, attrs_json))
    except InvalidNodeType as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {node_id}")


@graph.command("link")
@click.argument("from_ref")
@click.argument("to_ref")
@click.argument("relation")
@click.option("--weight", type=float, default=1.0, show_default=True)
@click.option("--bidirectional", is_flag=True, help="Also add the reverse edge")
@click.pass_context
def graph_link(ctx, from_ref, to_ref, relation, weight, bidirectional):
    """Add a directed edge between two nodes."""
    engine = _engine(ctx)
    from_id, to_id = _resolve(engine, from_ref), _resolve(engine, to_ref)
    try:
        edge = engine.store.add_edge(from_id, to_id, relation, weight=weight, bidirectional=bidirectional)
    except (InvalidRelation, NodeNotFound) as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {edge.from_id} → {edge.relation} → {edge.to_id}")


@graph.command("connect")
@click.argument("a")
@click.argument("b")
@click.option("--relation", default="relates_to", show_default=True)
@click.pass_context
def graph_connect(ctx, a, b, relation):
    """Link two nodes in both directions."""
    engine = _engine(ctx)
    a_id, b_id = _resolve(engine, a), _resolve(engine, b)
    try:
        engine.store.add_edge(a_id, b_id, relation, bidirectional=True)
    except InvalidRelation as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {a_id} ↔ {relation} ↔ {b_id}")


@graph.command("disconnect")
@click.argument("a")
@click.argument("b")
@click.option("--relation", default=None, help="Only remove this relation")
@click.pass_context
def graph_disconnect(ctx, a, b, relation):
    """Remove edges between two nodes, in both directions."""
    engine = _engine(ctx)
    a_id, b_id = _resolve(engine, a), _resolve(engine, b)
    try:
        with engine.store.batch():
            removed = engine.store.delete_edge(a_id, b_id, relation)
            removed += engine.store.delete_edge(b_id, a_id, relation)
    except InvalidRelation as e:
        _fail(str(e))
    if removed:
        console.print(f"[green]✓[/green] Removed {removed} edge(s)")
    else:
        console.print("No edges between those nodes")


@graph.command("deprecate")
@click.argument("from_ref")
@click.argument("to_ref")
@click.option("--relation", default=None, help="Only deprecate this relation")
@click.pass_context
def graph_deprecate(ctx, from_ref, to_ref, relation):
    """Mark edges deprecated; traversal stops following them."""
    engine = _engine(ctx)
    from_id, to_id = _resolve(engine, from_ref), _resolve(engine, to_ref)
    try:
        count = engine.store.deprecate_edge(from_id, to_id, relation)
    except InvalidRelation as e:
        _fail(str(e))
    if count:
        console.print(f"[green]✓[/green] Deprecated {count} edge(s)")
    else:
        console.print("No active edges to deprecate")


@graph.command("delete")
@click.argument("ref")
@click.pass_context
def graph_delete(ctx, ref):
    """Delete a node and every edge touching it."""
    engine = _engine(ctx)
    node_id = _resolve(engine, ref)
    engine.store.delete_node(node_id)
    console.print(f"[green]✓[/green] Deleted {node_id}")


@graph.command("get")
@click.argument("ref")
@click.pass_context
def graph_get(ctx, ref):
    """Show a node as JSON, with its degree."""
    engine = _engine(ctx)
    node_id = _resolve(engine, ref)
    payload = engine.store.get_node(node_id).model_dump(mode="json")
    payload["degree"] = degree(engine.store, node_id)
    click.echo(json.dumps(payload, indent=2))


@graph.command("list")
@click.option("--type", "node_type", type=click.Choice(NODE_TYPES), help="Only this node type")
@click.pass_context
def graph_list(ctx, node_type):
    """List nodes."""
    nodes = _engine(ctx).store.list_nodes(node_type)
    if not nodes:
        console.print("No nodes")
        return
    table = Table(title=f"Nodes ({len(nodes)})")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    for node in nodes:
        table.add_row(node.id, node.type, escape(node.name))
    console.print(table)


@graph.command("traverse")
@click.argument("ref")
@click.option(
    "--depth",
    type=click.IntRange(1, MAX_TRAVERSE_COMMAND_DEPTH),
    default=1,
    show_default=True,
)
@click.pass_context
def graph_traverse(ctx, ref, depth):
    """Show the neighbourhood of a node, one line per edge."""
    engine = _engine(ctx)
    node_id = _resolve(engine, ref)
    steps = traverse(engine.store, node_id, depth)
    if not steps:
        console.print(f"No connections from {node_id}")
        return
    for step in steps:
        console.print(escape(step.format(engine.store)), highlight=False)


@graph.command("related")
@click.argument("ref")
@click.option(
    "--hops",
    type=click.IntRange(1, MAX_TRAVERSE_COMMAND_DEPTH),
    default=DEFAULT_RELATED_HOPS,
    show_default=True,
)
@click.pass_context
def graph_related(ctx, ref, hops):
    """List nodes within N hops."""
    engine = _engine(ctx)
    node_id = _resolve(engine, ref)
    items = engine.related(node_id, hops)
    if not items:
        console.print(f"Nothing related to {node_id}")
        return
    table = Table(title=f"Related to {escape(node_id)}")
    table.add_column("Hops", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Via", style="dim")
    table.add_column("ID", style="dim")
    for item in items:
        table.add_row(str(item["hops"]), item["type"], escape(item["name"]), item["relation"], item["id"])
    console.print(table)


@graph.command("path")
@click.argument("a")
@click.argument("b")
@click.pass_context
def graph_path(ctx, a, b):
    """Shortest path between two nodes."""
    engine = _engine(ctx)
    a_id, b_id = _resolve(engine, a), _resolve(engine, b)
    path = engine.path(a_id, b_id)
    if not path:
        console.print(f"No path between {a_id} and {b_id}")
        return
    console.print(f"Path ({len(path) - 1} hops):")
    for edge in path_edges(engine.store, a_id, b_id):
        console.print(f"  {edge.from_id} → {edge.relation} → {edge.to_id}", highlight=False)
    if len(path) == 1:
        console.print(f"  {path[0]}")


@graph.command("orphans")
@click.pass_context
def graph_orphans(ctx):
    """Nodes with no edges."""
    orphans = find_orphans(_engine(ctx).store)
    if not orphans:
        console.print("No orphan nodes")
        return
    for node in orphans:
        console.print(f"  {node.id}  {escape(f'[{node.type}]')} {escape(node.name)}", highlight=False)


@graph.command("hubs")
@click.option("--limit", type=int, default=DEFAULT_HUB_LIMIT, show_default=True)
@click.pass_context
def graph_hubs(ctx, limit):
    """Most connected nodes."""
    hubs = find_hubs(_engine(ctx).store, limit)
    if not hubs:
        console.print("Graph has no edges")
        return
    table = Table(title="Hubs")
    table.add_column("Degree", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("ID", style="dim")
    for hub in hubs:
        table.add_row(str(hub["degree"]), hub["type"], escape(hub["name"]), hub["id"])
    console.print(table)


@graph.command("clusters")
@click.pass_context
def graph_clusters(ctx):
    """Connected components, largest first."""
    clusters = find_clusters(_engine(ctx).store)
    if not clusters:
        console.print("Graph is empty")
        return
    for i, cluster in enumerate(sorted(clusters, key=len, reverse=True), 1):
        console.print(f"Cluster {i} ({len(cluster)} nodes): {', '.join(cluster)}", highlight=False)


@graph.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def graph_stats(ctx, as_json):
    """Node and edge counts."""
    data = _engine(ctx).stats()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    console.print(f"Nodes: [bold]{data['nodes']}[/bold]  Edges: [bold]{data['edges']}[/bold]")
    for node_type, count in data["by_type"].items():
        console.print(f"  {node_type}: {count}")
    if data["by_relation"]:
        console.print("Relations:")
        for relation, count in data["by_relation"].items():
            console.print(f"  {relation}: {count}")


@graph.command("lookup")
@click.argument("ref")
@click.pass_context
def graph_lookup(ctx, ref):
    """Show the source record behind a node."""
    result = _engine(ctx).lookup(ref)
    if result is None:
        console.print(f"No node matches '{escape(ref)}'")
        return
    click.echo(json.dumps(result, indent=2))


@graph.command("query")
@click.argument("text")
@click.option("--type", "node_type", type=click.Choice(NODE_TYPES), help="Only this node type")
@click.option("--limit", type=int, default=DEFAULT_QUERY_LIMIT, show_default=True)
@click.pass_context
def graph_query(ctx, text, node_type, limit):
    """Find nodes by name and attributes."""
    if not text.strip():
        _fail("Query text required")
    results = _engine(ctx).find_nodes(text, node_type, limit)
    if not results:
        console.print(f"No nodes match '{escape(text)}'")
        return
    for item in results:
        console.print(
            f"  {item['score']:>4}  {item['id']}  {escape(item['name'])}", highlight=False
        )


@graph.command("visualize")
@click.option("--format", "fmt", type=click.Choice(["dot", "mermaid"]), default="dot", show_default=True)
@click.option("--type", "node_type", type=click.Choice(NODE_TYPES), help="Only this node type")
@click.pass_context
def graph_visualize(ctx, fmt, node_type):
    """Print the graph as DOT or Mermaid for external rendering."""
    click.echo(write_export(_engine(ctx).store, fmt, node_type=node_type), nl=False)


@graph.command("export")
@click.argument("output", type=click.Path(path_type=Path))
@click.option("--format", "fmt", type=click.Choice(EXPORT_FORMATS), default="json", show_default=True)
@click.pass_context
def graph_export(ctx, output, fmt):
    """Write the graph to a file."""
    write_export(_engine(ctx).store, fmt, output_path=output)
    console.print(f"[green]✓[/green] Exported to {output}")


@graph.command("import")
@click.argument("source", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def graph_import(ctx, source):
    """Merge a JSON graph document into the graph."""
    try:
        doc = json.loads(source.read_text())
    except json.JSONDecodeError as e:
        _fail(f"{source} is not valid JSON: {e}")
    try:
        nodes, edges = _engine(ctx).store.import_graph(doc)
    except (KeyError, InvalidNodeType, InvalidRelation) as e:
        _fail(f"Cannot import {source}: {e}")
    console.print(f"[green]✓[/green] Imported {nodes} nodes, {edges} edges")


@graph.command("rebuild")
@click.pass_context
def graph_rebuild(ctx):
    """Rebuild the graph from every source log."""
    report = _engine(ctx).rebuild_graph()
    for step in report.failed_steps:
        err_console.print(f"[yellow]Warning:[/yellow] {step.name} skipped: {escape(step.error or '')}")
    console.print(
        f"[green]✓[/green] Rebuilt graph: {report.nodes} nodes, {report.edges} edges "
        f"from {report.sources_ok}/{len(report.steps)} sources"
    )


@graph.command("sync")
@click.argument("kinds", nargs=-1, type=click.Choice(SYNC_ORDER))
@click.pass_context
def graph_sync(ctx, kinds):
    """Project new source records without resetting the graph."""
    results = _engine(ctx).sync(list(kinds) or None)
    for step in results:
        if step.ok:
            console.print(f"  {step.name}: +{step.nodes_added} nodes, +{step.edges_added} edges")
        else:
            err_console.print(f"[yellow]Warning:[/yellow] {step.name} skipped: {escape(step.error or '')}")


# --- Search ---


@cli.command()
@click.argument("query")
@click.option(
    "--graph-depth",
    type=int,
    default=0,
    show_default=True,
    help=f"Expand hits through the graph (0-{MAX_GRAPH_EXPAND_DEPTH})",
)
@click.option("--type", "kind", type=click.Choice(INDEX_KINDS), help="Only this record kind")
@click.option("--limit", type=int, default=DEFAULT_QUERY_LIMIT, show_default=True)
@click.option("--mode", type=click.Choice(SEARCH_MODES), default="lexical", show_default=True)
@click.option("--project", help="Boost records scoped to this project")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx, query, graph_depth, kind, limit, mode, project, as_json):
    """Search decisions, patterns, sessions, failures and observations."""
    try:
        result = _engine(ctx).search(
            query, kind=kind, graph_depth=graph_depth, limit=limit, mode=mode, project=project
        )
    except InvalidQuery as e:
        _fail(str(e))

    if result.degraded and result.reason:
        err_console.print(f"[yellow]Note:[/yellow] {escape(result.reason)} ({result.mode} results)")

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if result.empty:
        console.print(f"No results for '{escape(query)}'")
        return

    table = Table(title=f"Results for '{escape(query)}'")
    table.add_column("#", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("ID")
    table.add_column("Score", justify="right")
    table.add_column("Snippet")
    for rank, hit in enumerate(result.hits, 1):
        source = "" if hit.source in ("lexical", "semantic", "hybrid") else f" ({hit.source})"
        table.add_row(
            str(rank),
            hit.kind,
            escape(hit.record_id) + source,
            f"{hit.score:.3f}",
            escape(hit.snippet),
        )
    console.print(table)


# --- Index ---


@cli.group()
def index():
    """Manage the search index."""


@index.command("rebuild")
@click.option("--embeddings", is_flag=True, help="Also compute semantic embeddings")
@click.pass_context
def index_rebuild(ctx, embeddings):
    """Re-project every source log into the search index."""
    try:
        counts = _engine(ctx).rebuild_index(embeddings=embeddings)
    except IndexUnavailable as e:
        _fail(str(e))
    total = sum(count for kind, count in counts.items() if kind != "embedded")
    console.print(f"[green]✓[/green] Indexed {total} records")
    for kind, count in counts.items():
        console.print(f"  {kind}: {count}")


# --- Conflict checks ---


@cli.command()
@click.argument("kind", type=click.Choice(CHECK_KINDS))
@click.argument("text")
@click.option("--force", is_flag=True, help="Skip conflict checks")
@click.pass_context
def check(ctx, kind, text, force):
    """Check new record text for duplicates before writing it.

    Exits 1 when a likely duplicate exists, so callers can skip the write.
    """
    if not text.strip():
        _fail("Text required")
    if force:
        console.print("[yellow]Conflict checks bypassed (--force)[/yellow]")
        return

    duplicate, contradictions = _engine(ctx).check(kind, text)

    for found in contradictions:
        err_console.print(
            f"[yellow]Possible contradiction[/yellow] with {escape(found.other_id)} "
            f"(shared: {escape(', '.join(found.shared_entities))}, "
            f"{int(found.similarity * 100)}% similar)"
        )

    if duplicate.status == "skipped":
        console.print("Text too short for a duplicate check")
        return
    if duplicate.is_duplicate:
        err_console.print("[yellow]Possible duplicate(s) found:[/yellow]")
        for match in duplicate.matches:
            err_console.print(
                f"  {escape(match.record_id)} ({int(match.similarity * 100)}% similar): "
                f"{escape(match.text)}",
                highlight=False,
            )
        err_console.print("Use --force to write anyway.")
        sys.exit(1)
    console.print("[green]✓[/green] No duplicates found")


@cli.command()
@click.option(
    "--threshold",
    type=click.IntRange(min=1),
    default=RECURRING_FAILURE_THRESHOLD,
    show_default=True,
)
@click.pass_context
def triggers(ctx, threshold):
    """Failure types that keep recurring."""
    recurring = _engine(ctx).triggers(threshold)
    if not recurring:
        console.print(f"No recurring failures (threshold {threshold})")
        return
    table = Table(title="Recurring failures")
    table.add_column("Error type", style="red")
    table.add_column("Count", justify="right")
    table.add_column("Latest")
    table.add_column("Sample message")
    for item in recurring:
        table.add_row(
            escape(item["error_type"]),
            str(item["count"]),
            _when(item["latest"]),
            escape(item["sample_message"]),
        )
    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
