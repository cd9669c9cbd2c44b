"""
Consistency checking for the closure and order structures.

The closure table and the order values are both derived from the parent
links. This module recomputes what they should be with networkx and compares
against storage:

    parent links --(nx.DiGraph)--> expected closure   vs   edge table
    parent links --(group by)----> 0..n-1 per group   vs   order values

ClosureTree.check() reports; ClosureTree.rebuild() uses expected_edges() to
regenerate the edge table wholesale.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import networkx as nx
from sqlalchemy.orm import Session

from .edges import EdgeStore
from .ordering import OrderAllocator

logger = logging.getLogger(__name__)

Edge = Tuple[int, int, int]


@dataclass
class IntegrityReport:
    """
    Result of an integrity check.

    Attributes:
        node_count: Rows in the node table
        edge_count: Rows in the closure table
        missing_edges: Expected (ancestor, descendant, generations) not stored
        extra_edges: Stored edges with no counterpart in the parent links
        wrong_generations: (ancestor, descendant, stored, expected)
        cycles: Parent-link cycles, each as a list of node ids
        order_conflicts: (parent_id, order values) for non-dense groups
    """

    node_count: int = 0
    edge_count: int = 0
    missing_edges: List[Edge] = field(default_factory=list)
    extra_edges: List[Edge] = field(default_factory=list)
    wrong_generations: List[Tuple[int, int, int, int]] = field(default_factory=list)
    cycles: List[List[int]] = field(default_factory=list)
    order_conflicts: List[Tuple[Optional[int], List[Optional[int]]]] = field(
        default_factory=list
    )

    @property
    def ok(self) -> bool:
        return not (
            self.missing_edges
            or self.extra_edges
            or self.wrong_generations
            or self.cycles
            or self.order_conflicts
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "missing_edges": [list(e) for e in self.missing_edges],
            "extra_edges": [list(e) for e in self.extra_edges],
            "wrong_generations": [list(e) for e in self.wrong_generations],
            "cycles": self.cycles,
            "order_conflicts": [
                {"parent_id": parent_id, "values": values}
                for parent_id, values in self.order_conflicts
            ],
        }


def parent_graph(session: Session, node_model) -> nx.DiGraph:
    """DiGraph with one parent -> child edge per parent link."""
    graph = nx.DiGraph()
    for node_id, parent_id in session.query(node_model.id, node_model.parent_id).all():
        graph.add_node(node_id)
        if parent_id is not None:
            graph.add_edge(parent_id, node_id)
    return graph


def parent_cycles(graph: nx.DiGraph) -> List[List[int]]:
    """Cycles in the parent links, each as a sorted list of node ids."""
    return [sorted(cycle) for cycle in nx.simple_cycles(graph)]


def expected_edges(graph: nx.DiGraph) -> Set[Edge]:
    """The closure of graph, including one reflexive edge per node."""
    edges: Set[Edge] = set()
    for ancestor in graph.nodes:
        lengths = nx.single_source_shortest_path_length(graph, ancestor)
        for descendant, generations in lengths.items():
            edges.add((ancestor, descendant, generations))
    return edges


def order_conflicts(
    session: Session, node_model, order: OrderAllocator
) -> List[Tuple[Optional[int], List[Optional[int]]]]:
    """Every sibling group whose values are not exactly 0..n-1."""
    groups: Dict[Optional[int], List[Optional[int]]] = defaultdict(list)
    rows = (
        session.query(node_model.parent_id, node_model.order_value)
        .order_by(node_model.parent_id, *order.order_by())
        .all()
    )
    for parent_id, value in rows:
        groups[parent_id].append(value)

    conflicts = []
    for parent_id, values in groups.items():
        if values != list(range(len(values))):
            conflicts.append((parent_id, values))
    # Roots (None) first, then by parent id.
    conflicts.sort(key=lambda c: (c[0] is not None, c[0] or 0))
    return conflicts


def check_integrity(
    session: Session,
    node_model,
    edges: EdgeStore,
    order: OrderAllocator,
) -> IntegrityReport:
    """
    Compare stored edges and order values against the parent links.

    Read-only; never raises on inconsistency, it reports instead.
    """
    graph = parent_graph(session, node_model)
    actual = edges.all_edges(session)
    expected = expected_edges(graph)

    stored = {(a, d): g for a, d, g in actual}
    wanted = {(a, d): g for a, d, g in expected}

    report = IntegrityReport(node_count=graph.number_of_nodes(), edge_count=len(actual))
    report.missing_edges = sorted(
        (a, d, g) for (a, d), g in wanted.items() if (a, d) not in stored
    )
    report.extra_edges = sorted(
        (a, d, g) for (a, d), g in stored.items() if (a, d) not in wanted
    )
    report.wrong_generations = sorted(
        (a, d, stored[(a, d)], g)
        for (a, d), g in wanted.items()
        if (a, d) in stored and stored[(a, d)] != g
    )
    report.cycles = parent_cycles(graph)
    report.order_conflicts = order_conflicts(session, node_model, order)

    if not report.ok:
        logger.warning(
            "Integrity check failed: %d missing, %d extra, %d wrong generations, "
            "%d cycles, %d order conflicts",
            len(report.missing_edges),
            len(report.extra_edges),
            len(report.wrong_generations),
            len(report.cycles),
            len(report.order_conflicts),
        )
    return report


__all__ = [
    "IntegrityReport",
    "check_integrity",
    "expected_edges",
    "order_conflicts",
    "parent_cycles",
    "parent_graph",
]
