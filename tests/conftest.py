"""
Pytest configuration and shared helpers for closure_tree tests.

All trees run against SQLite in-memory unless a test asks for a file.
"""

import sys
from pathlib import Path

import pytest
from sqlalchemy import event

# Ensure src and tests directories are in path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from closure_tree import ClosureTree  # noqa: E402

LABEL_TAGS = ["label", "date_label", "directory_label", "event_label"]

PREORDER_PATHS = [
    "a/l/n/r",
    "a/l/n/q",
    "a/l/n/p",
    "a/l/n/o",
    "a/l/m",
    "a/b/h/i/j/k",
    "a/b/c/d/g",
    "a/b/c/d/f",
    "a/b/c/d/e",
]


def make_label_tree(**overrides) -> ClosureTree:
    """An in-memory tree configured with the four label tags."""
    return ClosureTree(url="sqlite:///:memory:", type_tags=LABEL_TAGS, **overrides)


def names(nodes):
    return [n.name for n in nodes]


def ids(nodes):
    return [n.id for n in nodes]


def name_and_order(nodes):
    return [(n.name, n.order_value) for n in nodes]


def create_label_tree(tree: ClosureTree) -> dict:
    """
    a1 - b1 - c1 - d1
            \\ c2 - d2
    a2 - b2 - c3 - d3
    """
    nodes = {}
    nodes["d1"] = tree.find_or_create_by_path(["a1", "b1", "c1", "d1"])
    nodes["d2"] = tree.find_or_create_by_path(["a1", "b1", "c2", "d2"])
    nodes["d3"] = tree.find_or_create_by_path(["a2", "b2", "c3", "d3"])
    for leaf in ("d1", "d2", "d3"):
        for ancestor in tree.ancestors(nodes[leaf]):
            nodes[ancestor.name] = ancestor
    return nodes


def create_preorder_tree(tree: ClosureTree, suffix: str = "", tag_for_index=None):
    """
    Build the 18-node a..r tree with children in name order.

    Paths are created in sorted order so every child is appended after its
    alphabetically smaller siblings. tag_for_index maps a node's sibling
    index to its type tag (default tag when None).
    """
    for path in sorted(PREORDER_PATHS):
        parent = None
        for name in path.split("/"):
            name = f"{name}{suffix}"
            group = tree.roots() if parent is None else tree.children(parent)
            match = next((n for n in group if n.name == name), None)
            if match is None:
                type_tag = tag_for_index(len(group)) if tag_for_index else None
                match = tree.create(
                    {"name": name, "type_tag": type_tag}, parent=parent
                )
            parent = match
    return tree.find_by_path([f"a{suffix}"])


class QueryCounter:
    """Counts SQL statements executed on an engine while active."""

    def __init__(self, engine):
        self.engine = engine
        self.count = 0
        self.statements = []

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        self.count += 1
        self.statements.append(statement)

    def __enter__(self):
        event.listen(self.engine, "before_cursor_execute", self._before_cursor_execute)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        event.remove(self.engine, "before_cursor_execute", self._before_cursor_execute)
        return False


@pytest.fixture
def tree():
    """Single-tag in-memory tree."""
    t = ClosureTree(url="sqlite:///:memory:")
    yield t
    t.close()


@pytest.fixture
def label_tree():
    """In-memory tree with the label / date / directory / event tags."""
    t = make_label_tree()
    yield t
    t.close()
