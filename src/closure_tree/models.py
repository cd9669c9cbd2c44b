"""
Data model for closure_tree.

Two tables back every tree:

    Node table (settings.node_table)
    id | name | type_tag | parent_id | order_value | metadata | created_at | updated_at

    Closure table (settings.edge_table)
    ancestor_id | descendant_id | generations
    ------------|---------------|------------
    a           | a             | 0
    a           | b             | 1
    b           | b             | 0
    ...

ORM models are created per declarative base (one base per ClosureTree) so
table and column names can come from TreeSettings. Callers never receive ORM
instances: every read is projected into an immutable ``TreeNode`` snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)


class NodeState(str, Enum):
    """Structural state of a node."""

    UNATTACHED = "unattached"  # constructed, not persisted
    ROOT = "root"  # persisted, no parent
    ATTACHED = "attached"  # persisted, has a parent
    MOVED = "moved"  # parent or position changed in this operation
    DESTROYED = "destroyed"  # rows and edges removed (terminal)


def _create_tree_models(base, settings):
    """Create the node and closure ORM models with the given declarative base."""
    node_table = settings.node_table
    edge_table = settings.edge_table

    class TreeNodeRow(base):
        """Node registry table."""

        __tablename__ = node_table

        id = Column(Integer, primary_key=True, autoincrement=True)
        name = Column(String(255), nullable=False)
        type_tag = Column(String(64), nullable=False)
        parent_id = Column(
            Integer, ForeignKey(f"{node_table}.id", ondelete="CASCADE")
        )
        # Nullable only while a node is in flight inside one transaction.
        order_value = Column(settings.order_column, Integer, nullable=True)
        metadata_ = Column("metadata", JSON, default=dict)
        created_at = Column(DateTime, default=func.now())
        updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

        __table_args__ = (
            UniqueConstraint(
                "parent_id",
                settings.order_column,
                name=f"uq_{node_table}_parent_order",
            ),
            # NULL parents never collide above, so roots get their own index.
            Index(
                f"uq_{node_table}_root_order",
                settings.order_column,
                unique=True,
                sqlite_where=text("parent_id IS NULL"),
                postgresql_where=text("parent_id IS NULL"),
            ).ddl_if(dialect=("sqlite", "postgresql")),
            Index(f"idx_{node_table}_parent", "parent_id"),
            Index(f"idx_{node_table}_type_tag", "type_tag"),
        )

    class TreeEdgeRow(base):
        """
        Closure table.

        One row per (ancestor, descendant) pair, including (node, node, 0).
        """

        __tablename__ = edge_table

        ancestor_id = Column(
            Integer,
            ForeignKey(f"{node_table}.id", ondelete="CASCADE"),
            primary_key=True,
        )
        descendant_id = Column(
            Integer,
            ForeignKey(f"{node_table}.id", ondelete="CASCADE"),
            primary_key=True,
        )
        generations = Column(Integer, nullable=False)  # 0 = self, 1 = child

        __table_args__ = (
            Index(f"idx_{edge_table}_ancestor", "ancestor_id"),
            Index(f"idx_{edge_table}_descendant", "descendant_id"),
        )

    return TreeNodeRow, TreeEdgeRow


@dataclass(frozen=True)
class TreeNode:
    """
    Immutable snapshot of a node row.

    Snapshots are never refreshed behind the caller's back. After a mutation
    that may have shifted siblings or re-parented a subtree, re-fetch the
    nodes you still hold (``tree.get(node)``).
    """

    id: int
    name: str
    type_tag: str
    parent_id: Optional[int]
    order_value: Optional[int]
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)
    state: NodeState = field(default=NodeState.ROOT, compare=False)
    created_at: Optional[datetime] = field(default=None, compare=False)
    updated_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @classmethod
    def from_row(cls, row, state: Optional[NodeState] = None) -> "TreeNode":
        if state is None:
            state = NodeState.ROOT if row.parent_id is None else NodeState.ATTACHED
        return cls(
            id=row.id,
            name=row.name,
            type_tag=row.type_tag,
            parent_id=row.parent_id,
            order_value=row.order_value,
            metadata=dict(row.metadata_ or {}),
            state=state,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def with_state(self, state: NodeState) -> "TreeNode":
        return TreeNode(
            id=self.id,
            name=self.name,
            type_tag=self.type_tag,
            parent_id=self.parent_id,
            order_value=self.order_value,
            metadata=self.metadata,
            state=state,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type_tag": self.type_tag,
            "parent_id": self.parent_id,
            "order_value": self.order_value,
            "metadata": self.metadata,
            "state": self.state.value,
        }


@dataclass
class NewNode:
    """An unattached node: constructed but not yet persisted."""

    name: str
    type_tag: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> NodeState:
        return NodeState.UNATTACHED


NodeRef = Union[TreeNode, int]


def node_id_of(ref: NodeRef) -> int:
    """Extract the id from a node reference (snapshot or raw id)."""
    if isinstance(ref, TreeNode):
        return ref.id
    if isinstance(ref, bool) or not isinstance(ref, int):
        raise TypeError(
            f"Expected a TreeNode or an integer id, got {type(ref).__name__}"
        )
    return ref


__all__ = [
    "NewNode",
    "NodeRef",
    "NodeState",
    "TreeNode",
    "node_id_of",
]
