"""
Traversal Engine.

Read-only queries over the node and closure tables. Every node-anchored
query is a single SELECT regardless of subtree depth or fan-out; that is the
point of keeping a closure table.

Type-tag filters apply to the returned projection only. Reachability always
goes through the full heterogeneous tree: the descendants of a "label" node
include its "date_label" grandchildren's children whatever their tag.

Preorder uses a path-array sort. One query fetches, for every node of
interest, the order value of each of its ancestors; the tuple of those values
from the root down is the node's sort key. A parent's key is a prefix of its
children's keys, so it sorts first, and siblings sort by order value:

    a      -> (0,)
    a/b    -> (0, 0)
    a/b/c  -> (0, 0, 0)
    a/l    -> (0, 1)
"""

from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import exists, select
from sqlalchemy.orm import Query, Session, aliased

from .edges import EdgeStore
from .exceptions import NotFoundError
from .models import NodeRef, TreeNode, node_id_of
from .ordering import OrderAllocator


def _project(rows, type_tag: Optional[str]) -> List[TreeNode]:
    return [
        TreeNode.from_row(row)
        for row in rows
        if type_tag is None or row.type_tag == type_tag
    ]


class TraversalEngine:
    """
    Ancestor, descendant, sibling, generation and preorder queries.

    Args:
        node_model: ORM model of the node table
        edge_model: ORM model of the closure table
        order: OrderAllocator (sibling sort expression)
        edges: EdgeStore (id-level closure reads)
    """

    def __init__(self, node_model, edge_model, order: OrderAllocator, edges: EdgeStore):
        self._node = node_model
        self._edge = edge_model
        self._order = order
        self._edges = edges

    def _nodes(self, session: Session) -> Query:
        return session.query(self._node).populate_existing()

    # ------------------------------------------------------------------
    # Ancestors
    # ------------------------------------------------------------------

    def self_and_ancestors(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        """Self first (generation 0), root last. One query."""
        node_id = node_id_of(node)
        rows = (
            self._nodes(session)
            .join(self._edge, self._edge.ancestor_id == self._node.id)
            .filter(self._edge.descendant_id == node_id)
            .order_by(self._edge.generations)
            .all()
        )
        if not rows:
            raise NotFoundError(node_id)
        return _project(rows, type_tag)

    def ancestors(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        chain = self.self_and_ancestors(session, node)[1:]
        return [n for n in chain if type_tag is None or n.type_tag == type_tag]

    def parent(self, session: Session, node: NodeRef) -> Optional[TreeNode]:
        chain = self.self_and_ancestors(session, node)
        return chain[1] if len(chain) > 1 else None

    def root(self, session: Session, node: NodeRef) -> TreeNode:
        return self.self_and_ancestors(session, node)[-1]

    def depth(self, session: Session, node: NodeRef) -> int:
        """Generations between node and its root (0 for a root)."""
        return len(self.self_and_ancestors(session, node)) - 1

    # ------------------------------------------------------------------
    # Descendants
    # ------------------------------------------------------------------

    def self_and_descendants(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        """Self first, then by (generations, order value, id). One query."""
        node_id = node_id_of(node)
        rows = (
            self._nodes(session)
            .join(self._edge, self._edge.descendant_id == self._node.id)
            .filter(self._edge.ancestor_id == node_id)
            .order_by(self._edge.generations, *self._order.order_by())
            .all()
        )
        if not rows:
            raise NotFoundError(node_id)
        return _project(rows, type_tag)

    def descendants(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        found = self.self_and_descendants(session, node)[1:]
        return [n for n in found if type_tag is None or n.type_tag == type_tag]

    def children(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        """Direct children ordered by order value."""
        rows = (
            self._nodes(session)
            .filter(self._node.parent_id == node_id_of(node))
            .order_by(*self._order.order_by())
            .all()
        )
        return _project(rows, type_tag)

    def is_leaf(self, session: Session, node: NodeRef) -> bool:
        node_id = node_id_of(node)
        return (
            session.query(self._node.id)
            .filter(self._node.parent_id == node_id)
            .first()
            is None
        )

    # ------------------------------------------------------------------
    # Siblings
    # ------------------------------------------------------------------

    def _group(self, session: Session, node: NodeRef) -> Tuple[TreeNode, List[TreeNode]]:
        node_id = node_id_of(node)
        row = self._nodes(session).filter(self._node.id == node_id).one_or_none()
        if row is None:
            raise NotFoundError(node_id)
        if row.parent_id is None:
            clause = self._node.parent_id.is_(None)
        else:
            clause = self._node.parent_id == row.parent_id
        rows = self._nodes(session).filter(clause).order_by(*self._order.order_by()).all()
        return TreeNode.from_row(row), [TreeNode.from_row(r) for r in rows]

    def self_and_siblings(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        _, group = self._group(session, node)
        return [n for n in group if type_tag is None or n.type_tag == type_tag]

    def siblings(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        me, group = self._group(session, node)
        return [
            n
            for n in group
            if n.id != me.id and (type_tag is None or n.type_tag == type_tag)
        ]

    def siblings_before(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        me, group = self._group(session, node)
        position = [n.id for n in group].index(me.id)
        return [n for n in group[:position] if type_tag is None or n.type_tag == type_tag]

    def siblings_after(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        me, group = self._group(session, node)
        position = [n.id for n in group].index(me.id)
        return [
            n
            for n in group[position + 1 :]
            if type_tag is None or n.type_tag == type_tag
        ]

    # ------------------------------------------------------------------
    # Roots and global scans
    # ------------------------------------------------------------------

    def roots(self, session: Session, type_tag: Optional[str] = None) -> List[TreeNode]:
        """Parentless nodes ordered by order value."""
        query = self._nodes(session).filter(self._node.parent_id.is_(None))
        if type_tag is not None:
            query = query.filter(self._node.type_tag == type_tag)
        return [
            TreeNode.from_row(r) for r in query.order_by(*self._order.order_by()).all()
        ]

    def first_root(
        self, session: Session, type_tag: Optional[str] = None
    ) -> Optional[TreeNode]:
        roots = self.roots(session, type_tag)
        return roots[0] if roots else None

    def all_nodes(self, session: Session, type_tag: Optional[str] = None) -> List[TreeNode]:
        query = self._nodes(session)
        if type_tag is not None:
            query = query.filter(self._node.type_tag == type_tag)
        return [TreeNode.from_row(r) for r in query.order_by(self._node.id).all()]

    # ------------------------------------------------------------------
    # Path-array ordering
    # ------------------------------------------------------------------

    def _path_sorted(self, session: Session, candidates) -> List:
        """
        Rows for candidate ids sorted by their root-to-node order path.

        candidates is a selectable of node ids; everything runs as one query.
        """
        path = aliased(self._edge)
        ancestor = aliased(self._node)
        ancestor_order = getattr(ancestor, self._order.order_key)
        rows = (
            session.query(self._node, path.generations, ancestor_order, ancestor.id)
            .join(path, path.descendant_id == self._node.id)
            .join(ancestor, ancestor.id == path.ancestor_id)
            .filter(self._node.id.in_(candidates))
            .populate_existing()
            .all()
        )

        nodes: Dict[int, object] = {}
        steps: Dict[int, List[Tuple[int, tuple]]] = defaultdict(list)
        for node, generations, order_value, ancestor_id in rows:
            nodes[node.id] = node
            step = (1, 0, ancestor_id) if order_value is None else (0, order_value, ancestor_id)
            steps[node.id].append((generations, step))

        def path_key(node_id: int) -> tuple:
            # Deepest generation first means root first.
            return tuple(step for _, step in sorted(steps[node_id], key=lambda s: -s[0]))

        return [nodes[i] for i in sorted(nodes, key=path_key)]

    def _subtree_ids(self, node_id: int):
        return select(self._edge.descendant_id).where(
            self._edge.ancestor_id == node_id
        )

    def self_and_descendants_preordered(
        self, session: Session, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        """Depth-first, order-respecting traversal of node's subtree."""
        node_id = node_id_of(node)
        rows = self._path_sorted(session, self._subtree_ids(node_id))
        if not rows:
            raise NotFoundError(node_id)
        return _project(rows, type_tag)

    def roots_and_descendants_preordered(
        self, session: Session, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        """Depth-first traversal of the whole forest, roots in order."""
        # Aliased so the subquery is not correlated to the outer node table.
        candidate = aliased(self._node)
        return _project(self._path_sorted(session, select(candidate.id)), type_tag)

    def leaves(
        self,
        session: Session,
        node: Optional[NodeRef] = None,
        type_tag: Optional[str] = None,
    ) -> List[TreeNode]:
        """Childless nodes in preorder; within node's subtree when given."""
        candidate = aliased(self._node)
        child = aliased(self._node)
        candidates = select(candidate.id).where(
            ~exists().where(child.parent_id == candidate.id)
        )
        if node is not None:
            candidates = candidates.where(
                candidate.id.in_(self._subtree_ids(node_id_of(node)))
            )
        return _project(self._path_sorted(session, candidates), type_tag)

    def find_all_by_generation(
        self,
        session: Session,
        generation: int,
        node: Optional[NodeRef] = None,
        type_tag: Optional[str] = None,
    ) -> List[TreeNode]:
        """
        Nodes exactly `generation` levels below node, or below any root.

        Ordered by root-path order, then order value.
        """
        if generation < 0:
            raise ValueError(f"generation must be >= 0, got {generation}")
        candidates = select(self._edge.descendant_id).where(
            self._edge.generations == generation
        )
        if node is not None:
            candidates = candidates.where(self._edge.ancestor_id == node_id_of(node))
        else:
            root = aliased(self._node)
            candidates = candidates.join(
                root, root.id == self._edge.ancestor_id
            ).where(root.parent_id.is_(None))
        return _project(self._path_sorted(session, candidates), type_tag)

    # ------------------------------------------------------------------
    # Edge-level pass-throughs
    # ------------------------------------------------------------------

    def ancestor_ids(self, session: Session, node: NodeRef) -> List[int]:
        return self._edges.ancestors_of(session, node_id_of(node))

    def descendant_ids(self, session: Session, node: NodeRef) -> Set[int]:
        return self._edges.descendants_of(session, node_id_of(node))

    def edges_for_subtree(
        self, session: Session, node: NodeRef
    ) -> List[Tuple[int, int, int]]:
        return self._edges.edges_for_subtree(session, node_id_of(node))


__all__ = ["TraversalEngine"]
