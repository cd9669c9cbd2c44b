"""
Node Repository.

Owns node identity, the parent pointer and the type tag, and orchestrates
EdgeStore and OrderAllocator updates. Every public method expects to run
inside one unit of work (a Session opened by ClosureTree); nothing here
commits.

Structural state machine:

    unattached --create/add--> root | attached --move--> moved --destroy--> destroyed

Validation (existence, cycles, order density) always happens before the
first write of an operation, so a rejected call leaves storage untouched
even before the rollback.
"""

import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from sqlalchemy.orm import Session

from .edges import EdgeStore, _batches
from .exceptions import CycleError, NotFoundError
from .models import NewNode, NodeRef, NodeState, TreeNode, node_id_of
from .ordering import OrderAllocator

logger = logging.getLogger(__name__)

CHILD_POSITIONS = ("end", "start")
SIBLING_POSITIONS = ("after", "before")


class NodeRepository:
    """
    Structural mutations over the node table.

    Args:
        node_model: ORM model of the node table
        edges: EdgeStore sharing the same models
        order: OrderAllocator for the configured order column
        settings: TreeSettings
    """

    def __init__(
        self,
        node_model,
        edges: EdgeStore,
        order: OrderAllocator,
        settings,
    ):
        self._node = node_model
        self._edges = edges
        self._order = order
        self._settings = settings

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _load(self, session: Session, node_id: int, kind: str = "node"):
        """Fetch a row fresh from storage, bypassing the identity map."""
        row = (
            session.query(self._node)
            .filter(self._node.id == node_id)
            .populate_existing()
            .one_or_none()
        )
        if row is None:
            raise NotFoundError(node_id, kind)
        return row

    def get(self, session: Session, ref: NodeRef, kind: str = "node") -> TreeNode:
        """Current snapshot of a node. Raises NotFoundError."""
        return TreeNode.from_row(self._load(session, node_id_of(ref), kind))

    def find(self, session: Session, node_id: int) -> Optional[TreeNode]:
        row = (
            session.query(self._node)
            .filter(self._node.id == node_id)
            .populate_existing()
            .one_or_none()
        )
        return TreeNode.from_row(row) if row is not None else None

    def exists(self, session: Session, refs: Iterable[NodeRef]) -> bool:
        """True if any of the referenced nodes exists."""
        ids = [node_id_of(ref) for ref in refs]
        if not ids:
            return False
        return (
            session.query(self._node.id).filter(self._node.id.in_(ids)).first()
            is not None
        )

    def resolve_type_tag(self, type_tag: Optional[str]) -> str:
        """Return the effective tag, validating it against the configured set."""
        if type_tag is None:
            return self._settings.default_type_tag
        if type_tag not in self._settings.type_tags:
            raise ValueError(
                f"Unknown type tag: '{type_tag}'. "
                f"Valid tags: {self._settings.type_tags}"
            )
        return type_tag

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _verify_groups(self, session: Session, *parent_ids: Optional[int]) -> None:
        if not self._settings.verify_order:
            return
        seen = set()
        for parent_id in parent_ids:
            if parent_id in seen:
                continue
            seen.add(parent_id)
            self._order.verify(session, parent_id)

    @staticmethod
    def _as_new_node(attrs: Union[NewNode, Mapping[str, Any]]) -> NewNode:
        if isinstance(attrs, NewNode):
            return attrs
        if not isinstance(attrs, Mapping):
            raise TypeError(
                f"Expected NewNode or mapping of attributes, got {type(attrs).__name__}"
            )
        unknown = set(attrs) - {"name", "type_tag", "metadata"}
        if unknown:
            raise ValueError(f"Unknown node attributes: {sorted(unknown)}")
        if "name" not in attrs:
            raise ValueError("Node attributes require a 'name'")
        return NewNode(
            name=attrs["name"],
            type_tag=attrs.get("type_tag"),
            metadata=attrs.get("metadata"),
        )

    def _insert_row(
        self,
        session: Session,
        new_node: NewNode,
        parent_id: Optional[int],
        order_value: Optional[int],
    ) -> int:
        if new_node.name is None or str(new_node.name) == "":
            raise ValueError("Node name cannot be empty")
        row = self._node(
            name=str(new_node.name),
            type_tag=self.resolve_type_tag(new_node.type_tag),
            parent_id=parent_id,
            order_value=order_value,
            metadata_=dict(new_node.metadata or {}),
        )
        session.add(row)
        session.flush()
        self._edges.insert_self_edge(session, row.id)
        if parent_id is not None:
            self._edges.rebuild_edges_on_attach(session, row.id, parent_id)
        return row.id

    def _insert_at(
        self,
        session: Session,
        new_node: NewNode,
        parent_id: Optional[int],
        index_for: Callable[[Session], int],
    ) -> TreeNode:
        self.resolve_type_tag(new_node.type_tag)
        self._verify_groups(session, parent_id)
        node_id = self._insert_row(session, new_node, parent_id, None)
        index = self._order.insert_at(session, parent_id, index_for(session), node_id)
        logger.debug(
            "Created node %s (%s) under %s at %s",
            node_id,
            new_node.name,
            parent_id,
            index,
        )
        return self.get(session, node_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        session: Session,
        attrs: Union[NewNode, Mapping[str, Any]],
        parent: Optional[NodeRef] = None,
        position: Optional[int] = None,
    ) -> TreeNode:
        """
        Insert a node as a root (parent None) or as a child of parent.

        Args:
            attrs: NewNode or mapping with name, optional type_tag and metadata
            parent: Parent node or id
            position: Sibling index to insert at (clamped); appends when None

        Returns:
            Snapshot of the created node

        Raises:
            NotFoundError: If parent does not exist
            ValueError: If attributes or the type tag are invalid
        """
        new_node = self._as_new_node(attrs)
        parent_id = None
        if parent is not None:
            parent_id = node_id_of(parent)
            self._load(session, parent_id, kind="parent")

        if position is not None:
            return self._insert_at(session, new_node, parent_id, lambda s: position)

        self.resolve_type_tag(new_node.type_tag)
        self._verify_groups(session, parent_id)
        order_value = self._order.next_order_value(session, parent_id)
        node_id = self._insert_row(session, new_node, parent_id, order_value)
        logger.debug(
            "Created node %s (%s) under %s at %s",
            node_id,
            new_node.name,
            parent_id,
            order_value,
        )
        return self.get(session, node_id)

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def move(
        self,
        session: Session,
        node: NodeRef,
        new_parent: Optional[NodeRef],
        index: Optional[int] = None,
    ) -> TreeNode:
        """
        Move node (with its whole subtree) under new_parent at index.

        new_parent None makes the node a root; index None appends.
        """
        node_id = node_id_of(node)
        new_parent_id = node_id_of(new_parent) if new_parent is not None else None
        if index is None:
            index_for = lambda s: self._order.sibling_count(  # noqa: E731
                s, new_parent_id, exclude_id=node_id
            )
        else:
            index_for = lambda s: index  # noqa: E731
        return self._relocate(session, node_id, new_parent_id, index_for)

    def _check_cycle(
        self, session: Session, node_id: int, new_parent_id: Optional[int]
    ) -> None:
        if new_parent_id is None:
            return
        if node_id in self._edges.ancestors_of(session, new_parent_id):
            raise CycleError(node_id, new_parent_id)

    def _relocate(
        self,
        session: Session,
        node_id: int,
        new_parent_id: Optional[int],
        index_for: Callable[[Session], int],
    ) -> TreeNode:
        row = self._load(session, node_id)
        if new_parent_id is not None:
            self._load(session, new_parent_id, kind="parent")
        self._check_cycle(session, node_id, new_parent_id)

        old_parent_id = row.parent_id
        self._verify_groups(session, old_parent_id, new_parent_id)
        # Re-read: verification may have renumbered the group.
        old_order = self._load(session, node_id).order_value

        # Leave the old group first so sibling anchors are read post-compaction.
        self._order.vacate(session, node_id)
        self._order.remove_and_compact(session, old_parent_id, old_order)

        parent_changed = old_parent_id != new_parent_id
        if parent_changed:
            session.query(self._node).filter(self._node.id == node_id).update(
                {self._node.parent_id: new_parent_id}, synchronize_session=False
            )

        index = self._order.insert_at(
            session, new_parent_id, index_for(session), node_id
        )

        if parent_changed:
            self._edges.rebuild_edges_on_attach(session, node_id, new_parent_id)

        logger.debug(
            "Moved node %s from %s[%s] to %s[%s]",
            node_id,
            old_parent_id,
            old_order,
            new_parent_id,
            index,
        )
        return self.get(session, node_id).with_state(NodeState.MOVED)

    def add_child(
        self,
        session: Session,
        parent: NodeRef,
        child: Union[NewNode, NodeRef],
        at: str = "end",
    ) -> TreeNode:
        """
        Attach child under parent, first or last among its children.

        child may be a NewNode (created in place) or an existing node, which
        is moved together with its subtree.
        """
        if at not in CHILD_POSITIONS:
            raise ValueError(f"at must be one of {CHILD_POSITIONS}, got {at!r}")
        parent_id = node_id_of(parent)

        if isinstance(child, NewNode):
            self._load(session, parent_id, kind="parent")
            if at == "start":
                index_for = lambda s: 0  # noqa: E731
            else:
                index_for = lambda s: self._order.sibling_count(s, parent_id)  # noqa: E731
            return self._insert_at(session, child, parent_id, index_for)

        return self.move(session, child, parent_id, 0 if at == "start" else None)

    def append_child(self, session: Session, parent: NodeRef, child) -> TreeNode:
        return self.add_child(session, parent, child, at="end")

    def prepend_child(self, session: Session, parent: NodeRef, child) -> TreeNode:
        return self.add_child(session, parent, child, at="start")

    def add_sibling(
        self,
        session: Session,
        node: NodeRef,
        other: Union[NewNode, NodeRef],
        position: str = "after",
    ) -> TreeNode:
        """
        Place other directly after (or before) node, under node's parent.

        If other already exists this is a move: its old group is compacted
        first, then the target index is read from node's current order.
        """
        if position not in SIBLING_POSITIONS:
            raise ValueError(
                f"position must be one of {SIBLING_POSITIONS}, got {position!r}"
            )
        anchor_id = node_id_of(node)
        anchor = self._load(session, anchor_id, kind="sibling")
        parent_id = anchor.parent_id
        offset = 1 if position == "after" else 0

        def index_for(s: Session) -> int:
            return self._load(s, anchor_id, kind="sibling").order_value + offset

        if isinstance(other, NewNode):
            return self._insert_at(session, other, parent_id, index_for)

        other_id = node_id_of(other)
        if other_id == anchor_id:
            raise ValueError(f"Node {anchor_id} cannot be its own sibling")
        return self._relocate(session, other_id, parent_id, index_for)

    def append_sibling(self, session: Session, node: NodeRef, new_node) -> TreeNode:
        return self.add_sibling(session, node, new_node, position="after")

    def prepend_sibling(self, session: Session, node: NodeRef, new_node) -> TreeNode:
        return self.add_sibling(session, node, new_node, position="before")

    # ------------------------------------------------------------------
    # Updates and destruction
    # ------------------------------------------------------------------

    def update(
        self,
        session: Session,
        node: NodeRef,
        name: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TreeNode:
        """Update non-structural attributes."""
        node_id = node_id_of(node)
        self._load(session, node_id)
        values = {}
        if name is not None:
            if str(name) == "":
                raise ValueError("Node name cannot be empty")
            values[self._node.name] = str(name)
        if metadata is not None:
            values[self._node.metadata_] = dict(metadata)
        if values:
            session.query(self._node).filter(self._node.id == node_id).update(
                values, synchronize_session=False
            )
        return self.get(session, node_id)

    def destroy(self, session: Session, node: NodeRef) -> List[TreeNode]:
        """
        Delete node and its full subtree, then close the gap it leaves.

        Edges go first, then node rows deepest first in bounded batches.

        Returns:
            Snapshots of the destroyed nodes (state=destroyed), node first
        """
        node_id = node_id_of(node)
        row = self._load(session, node_id)
        parent_id = row.parent_id
        self._verify_groups(session, parent_id)
        order_value = self._load(session, node_id).order_value

        ids = self._edges.delete_subtree(session, node_id)
        if node_id not in ids:
            # Missing reflexive edge; still remove the row itself.
            ids.append(node_id)

        snapshots = {}
        for batch in _batches(ids, self._settings.delete_batch_size):
            rows = (
                session.query(self._node)
                .filter(self._node.id.in_(batch))
                .populate_existing()
                .all()
            )
            for r in rows:
                snapshots[r.id] = TreeNode.from_row(r, NodeState.DESTROYED)
        for batch in _batches(ids, self._settings.delete_batch_size):
            session.query(self._node).filter(self._node.id.in_(batch)).delete(
                synchronize_session=False
            )

        self._order.remove_and_compact(session, parent_id, order_value)
        logger.debug("Destroyed node %s and %d descendants", node_id, len(ids) - 1)
        return [snapshots[i] for i in reversed(ids) if i in snapshots]

    def destroy_children(self, session: Session, node: NodeRef) -> int:
        """Destroy every child subtree of node. Returns nodes removed."""
        node_id = node_id_of(node)
        self._load(session, node_id)
        child_ids = [
            r[0]
            for r in session.query(self._node.id)
            .filter(self._node.parent_id == node_id)
            .order_by(*self._order.order_by())
            .all()
        ]
        removed = 0
        # Last first, so no sibling ever needs shifting.
        for child_id in reversed(child_ids):
            removed += len(self.destroy(session, child_id))
        return removed


__all__ = ["NodeRepository", "CHILD_POSITIONS", "SIBLING_POSITIONS"]
