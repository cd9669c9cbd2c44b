#!/usr/bin/env python3
"""
CLI for inspecting and maintaining closure trees.

Usage:
    closure-tree init -d sqlite:///labels.db
    closure-tree add a/b/c a/b/d --type label -d sqlite:///labels.db
    closure-tree tree --json -d sqlite:///labels.db
    closure-tree move 4 1 --index 0 -d sqlite:///labels.db
    closure-tree check -c closure_tree.yaml
    closure-tree --version
"""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import typer

from closure_tree import __version__
from closure_tree.exceptions import ClosureTreeError
from closure_tree.models import TreeNode
from closure_tree.settings import TreeSettings, load_settings
from closure_tree.tree import ClosureTree

DEFAULT_DATABASE = "sqlite:///closure_tree.db"

# Create the main app
app = typer.Typer(
    name="closure-tree",
    help="Ordered closure-table trees over a SQL database",
    no_args_is_help=True,
    add_completion=False,
)

DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    envvar="CLOSURE_TREE_DATABASE_URL",
    help="SQLAlchemy database URL",
)
ConfigOption = typer.Option(
    None, "--config", "-c", help="YAML settings file (closure_tree: ...)"
)
VerboseOption = typer.Option(
    0, "--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)"
)
QuietOption = typer.Option(False, "--quiet", "-q", help="Suppress non-error output")


def setup_logging(verbose: int, quiet: bool):
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def build_settings(database: Optional[str], config: Optional[Path]) -> TreeSettings:
    """
    Settings from --config, with --database taking precedence.

    Without either, the tree lives in ./closure_tree.db.
    """
    if config is not None:
        if not config.exists():
            typer.echo(f"Error: Config file not found: {config}", err=True)
            raise typer.Exit(1)
        try:
            settings = load_settings(config)
        except ValueError as e:
            typer.echo(f"Error: Invalid config: {e}", err=True)
            raise typer.Exit(1)
        if database:
            settings = settings.merged(url=database)
        return settings
    return TreeSettings(url=database or DEFAULT_DATABASE)


@contextmanager
def open_tree(database: Optional[str], config: Optional[Path]) -> Iterator[ClosureTree]:
    """Open a tree for one command; errors become exit code 1."""
    settings = build_settings(database, config)
    try:
        with ClosureTree(settings) as tree:
            yield tree
    except (ClosureTreeError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def node_line(node: TreeNode) -> str:
    return f"{node.name} [{node.id}] ({node.type_tag})"


def with_depths(nodes: List[TreeNode]) -> List[Dict]:
    """
    Annotate a preordered node list with depths.

    Parents come before children in preorder; a node whose parent is not in
    the list (a root, or the top of a subtree) gets depth 0.
    """
    depths: Dict[int, int] = {}
    result = []
    for node in nodes:
        depth = depths[node.parent_id] + 1 if node.parent_id in depths else 0
        depths[node.id] = depth
        entry = node.to_dict()
        entry["depth"] = depth
        result.append(entry)
    return result


@app.command()
def init(
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Create the node and closure tables."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        if not quiet:
            typer.echo(
                f"Initialized {tree.settings.node_table} / "
                f"{tree.settings.edge_table} at {tree.settings.url}"
            )


@app.command()
def add(
    paths: List[str] = typer.Argument(..., help="Paths to find or create, e.g. a/b/c"),
    type_tag: Optional[str] = typer.Option(None, "--type", "-t", help="Node type tag"),
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Find or create nodes by path."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        for path in paths:
            node = tree.find_or_create_by_path(path, type_tag=type_tag)
            if not quiet:
                separator = tree.settings.path_separator
                typer.echo(f"{node.id}\t{separator.join(tree.ancestry_path(node))}")


@app.command("tree")
def show_tree(
    root: Optional[int] = typer.Option(None, "--root", "-r", help="Only this subtree"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Print the forest (or one subtree) in preorder."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        if root is None:
            nodes = tree.roots_and_descendants_preordered()
        else:
            nodes = tree.self_and_descendants_preordered(root)
        entries = with_depths(nodes)

    if as_json:
        typer.echo(json.dumps(entries, indent=2, default=str))
        return
    for entry in entries:
        typer.echo(
            f"{'  ' * entry['depth']}{entry['name']} [{entry['id']}] ({entry['type_tag']})"
        )


@app.command()
def roots(
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """List root nodes in order."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        for node in tree.roots():
            typer.echo(node_line(node))


@app.command()
def move(
    node_id: int = typer.Argument(..., help="Node to move"),
    parent_id: Optional[int] = typer.Argument(None, help="New parent (omit for root)"),
    index: Optional[int] = typer.Option(None, "--index", "-i", help="Sibling index"),
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Move a node (and its subtree) under a new parent."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        node = tree.move(node_id, parent_id, index)
        if not quiet:
            typer.echo(
                f"Moved {node.name} [{node.id}] under {node.parent_id} "
                f"at {node.order_value}"
            )


@app.command()
def destroy(
    node_id: int = typer.Argument(..., help="Node to destroy with its subtree"),
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Destroy a node and its whole subtree."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        destroyed = tree.destroy(node_id)
        if not quiet:
            typer.echo(f"Destroyed {len(destroyed)} node(s)")


@app.command()
def check(
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Verify closure edges and sibling order. Exit 1 if inconsistent."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        report = tree.check()

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    elif report.ok:
        if not quiet:
            typer.echo(f"OK: {report.node_count} nodes, {report.edge_count} edges")
    else:
        typer.echo(
            f"INCONSISTENT: {len(report.missing_edges)} missing edges, "
            f"{len(report.extra_edges)} extra edges, "
            f"{len(report.wrong_generations)} wrong generations, "
            f"{len(report.cycles)} cycles, "
            f"{len(report.order_conflicts)} order conflicts",
            err=True,
        )
    if not report.ok:
        raise typer.Exit(1)


@app.command()
def rebuild(
    database: Optional[str] = DatabaseOption,
    config: Optional[Path] = ConfigOption,
    verbose: int = VerboseOption,
    quiet: bool = QuietOption,
):
    """Regenerate the closure table and renumber sibling groups."""
    setup_logging(verbose, quiet)
    with open_tree(database, config) as tree:
        report = tree.rebuild()
    if not quiet:
        typer.echo(f"Rebuilt: {report.node_count} nodes, {report.edge_count} edges")


def version_callback(value: bool):
    """Handle --version flag."""
    if value:
        typer.echo(f"closure-tree {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """Ordered closure-table trees over a SQL database."""


def main():
    """Entry point for the closure-tree CLI."""
    app()


if __name__ == "__main__":
    main()
