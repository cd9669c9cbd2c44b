"""
ClosureTree facade.

Owns the SQLAlchemy engine, the per-instance declarative base and the
session factory, and wires the components together:

    ClosureTree
      ├─ NodeRepository  ─┬─ EdgeStore
      │                   └─ OrderAllocator
      ├─ TraversalEngine (read-only)
      └─ PathResolver ──── NodeRepository

Every public method runs as one unit of work: one session, committed once on
success, rolled back on any exception (which then propagates unchanged).

Example:
    >>> from closure_tree import ClosureTree
    >>>
    >>> with ClosureTree(type_tags=["label", "date_label"]) as tree:
    ...     d = tree.find_or_create_by_path(["2011", "November", "23"], type_tag="date_label")
    ...     tree.ancestry_path(d)
    ['2011', 'November', '23']
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple, Union

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .edges import EdgeStore
from .exceptions import ClosureTreeError
from .integrity import (
    IntegrityReport,
    check_integrity,
    expected_edges,
    order_conflicts,
    parent_cycles,
    parent_graph,
)
from .models import NewNode, NodeRef, TreeNode, _create_tree_models
from .ordering import OrderAllocator
from .paths import PathLike, PathResolver
from .repository import NodeRepository
from .settings import TreeSettings
from .traversal import TraversalEngine

logger = logging.getLogger(__name__)

Attrs = Union[str, NewNode, Mapping[str, Any]]
Child = Union[str, NewNode, TreeNode, int]


def _as_attrs(attrs: Attrs) -> Union[NewNode, Mapping[str, Any]]:
    if isinstance(attrs, str):
        return NewNode(name=attrs)
    return attrs


def _as_child(child: Child) -> Union[NewNode, NodeRef]:
    if isinstance(child, str):
        return NewNode(name=child)
    return child


class ClosureTree:
    """
    Ordered, polymorphic tree stored as a node table plus a closure table.

    Works with any SQLAlchemy-compatible database (PostgreSQL, MySQL, SQLite).

    Args:
        settings: TreeSettings; defaults to an in-memory SQLite tree
        **overrides: Individual TreeSettings fields (url, type_tags, ...)

    Example:
        >>> tree = ClosureTree(url="sqlite:///tree.db")
        >>> a = tree.create("a")
        >>> b = tree.add_child(a, "b")
        >>> [n.name for n in tree.self_and_descendants(a)]
        ['a', 'b']
    """

    def __init__(self, settings: Optional[TreeSettings] = None, **overrides: Any):
        settings = settings or TreeSettings()
        self._settings = settings.merged(**overrides)
        self._lock = threading.Lock()

        # Lazy initialization
        self._engine = None
        self._session_factory = None
        self._base = None
        self._node_model = None
        self._edge_model = None
        self._edges: Optional[EdgeStore] = None
        self._order: Optional[OrderAllocator] = None
        self._repository: Optional[NodeRepository] = None
        self._traversal: Optional[TraversalEngine] = None
        self._paths: Optional[PathResolver] = None
        self._initialized = False

        if not self._settings.lazy:
            self._ensure_initialized()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def settings(self) -> TreeSettings:
        return self._settings

    @property
    def engine(self):
        self._ensure_initialized()
        return self._engine

    @property
    def node_model(self):
        self._ensure_initialized()
        return self._node_model

    @property
    def edge_model(self):
        self._ensure_initialized()
        return self._edge_model

    def _create_engine(self):
        url = self._settings.url
        echo = self._settings.echo
        pool_size = self._settings.pool_size

        if not url.startswith("sqlite"):
            return create_engine(
                url, echo=echo, pool_size=pool_size, max_overflow=pool_size * 2
            )

        if ":memory:" in url or url == "sqlite://":
            engine = create_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(
                url,
                echo=echo,
                pool_size=pool_size,
                connect_args={"check_same_thread": False},
            )

        # Enable foreign key enforcement for SQLite
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    def _ensure_initialized(self) -> None:
        """Lazily initialize engine, session factory, schema and components."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            self._engine = self._create_engine()
            self._session_factory = sessionmaker(bind=self._engine)
            self._base = declarative_base()
            self._node_model, self._edge_model = _create_tree_models(
                self._base, self._settings
            )

            # Create tables and indexes
            if self._settings.auto_migrate:
                self._base.metadata.create_all(self._engine)

            self._edges = EdgeStore(self._node_model, self._edge_model, self._settings)
            self._order = OrderAllocator(
                self._node_model,
                self._settings.order_column,
                repair_conflicts=self._settings.repair_order_conflicts,
            )
            self._repository = NodeRepository(
                self._node_model, self._edges, self._order, self._settings
            )
            self._traversal = TraversalEngine(
                self._node_model, self._edge_model, self._order, self._edges
            )
            self._paths = PathResolver(
                self._node_model, self._repository, self._traversal, self._settings
            )

            self._initialized = True
            logger.debug(
                "ClosureTree initialized: %s (%s, %s)",
                self._settings.url,
                self._settings.node_table,
                self._settings.edge_table,
            )

    def _get_session(self) -> Session:
        """Get a new session for database operations."""
        self._ensure_initialized()
        return self._session_factory()

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        """One session, committed once; rolled back if anything raises."""
        session = self._get_session()
        with self._lock:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        session = self._get_session()
        with self._lock:
            try:
                yield session
            finally:
                session.close()

    def close(self) -> None:
        """Close engine and release resources."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._initialized = False
        logger.debug("ClosureTree closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False

    # ------------------------------------------------------------------
    # Node Repository
    # ------------------------------------------------------------------

    def create(
        self,
        attrs: Attrs,
        parent: Optional[NodeRef] = None,
        position: Optional[int] = None,
    ) -> TreeNode:
        """
        Create a node as a root, or as the last (or position-th) child of parent.

        Args:
            attrs: Name, NewNode, or mapping with name/type_tag/metadata
            parent: Parent node or id
            position: Sibling index to insert at (clamped)

        Returns:
            Snapshot of the created node
        """
        with self._unit_of_work() as session:
            return self._repository.create(
                session, _as_attrs(attrs), parent=parent, position=position
            )

    def add_child(self, parent: NodeRef, child: Child, at: str = "end") -> TreeNode:
        """Create (NewNode or name) or move (existing node) child under parent."""
        with self._unit_of_work() as session:
            return self._repository.add_child(session, parent, _as_child(child), at=at)

    def append_child(self, parent: NodeRef, child: Child) -> TreeNode:
        return self.add_child(parent, child, at="end")

    def prepend_child(self, parent: NodeRef, child: Child) -> TreeNode:
        return self.add_child(parent, child, at="start")

    def add_sibling(
        self, node: NodeRef, other: Child, position: str = "after"
    ) -> TreeNode:
        with self._unit_of_work() as session:
            return self._repository.add_sibling(
                session, node, _as_child(other), position=position
            )

    def append_sibling(self, node: NodeRef, other: Child) -> TreeNode:
        """Place other directly after node."""
        return self.add_sibling(node, other, position="after")

    def prepend_sibling(self, node: NodeRef, other: Child) -> TreeNode:
        """Place other directly before node."""
        return self.add_sibling(node, other, position="before")

    def move(
        self,
        node: NodeRef,
        new_parent: Optional[NodeRef],
        index: Optional[int] = None,
    ) -> TreeNode:
        """
        Move node and its subtree under new_parent (None for a root) at index.

        Raises:
            CycleError: If new_parent is node or one of its descendants
            NotFoundError: If either node does not exist
        """
        with self._unit_of_work() as session:
            return self._repository.move(session, node, new_parent, index)

    def update(
        self,
        node: NodeRef,
        name: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TreeNode:
        with self._unit_of_work() as session:
            return self._repository.update(session, node, name=name, metadata=metadata)

    def destroy(self, node: NodeRef) -> List[TreeNode]:
        """Destroy node and its whole subtree. Returns destroyed snapshots."""
        with self._unit_of_work() as session:
            return self._repository.destroy(session, node)

    def destroy_children(self, node: NodeRef) -> int:
        with self._unit_of_work() as session:
            return self._repository.destroy_children(session, node)

    def get(self, node: NodeRef) -> TreeNode:
        """Fresh snapshot of node. Raises NotFoundError."""
        with self._reader() as session:
            return self._repository.get(session, node)

    def find(self, node_id: int) -> Optional[TreeNode]:
        with self._reader() as session:
            return self._repository.find(session, node_id)

    def exists(self, *nodes: NodeRef) -> bool:
        """True if any of the given nodes still exists."""
        with self._reader() as session:
            return self._repository.exists(session, nodes)

    # ------------------------------------------------------------------
    # Traversal Engine
    # ------------------------------------------------------------------

    def self_and_ancestors(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.self_and_ancestors(session, node, type_tag)

    def ancestors(self, node: NodeRef, type_tag: Optional[str] = None) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.ancestors(session, node, type_tag)

    def parent(self, node: NodeRef) -> Optional[TreeNode]:
        with self._reader() as session:
            return self._traversal.parent(session, node)

    def root(self, node: NodeRef) -> TreeNode:
        with self._reader() as session:
            return self._traversal.root(session, node)

    def depth(self, node: NodeRef) -> int:
        with self._reader() as session:
            return self._traversal.depth(session, node)

    def self_and_descendants(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.self_and_descendants(session, node, type_tag)

    def descendants(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.descendants(session, node, type_tag)

    def children(self, node: NodeRef, type_tag: Optional[str] = None) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.children(session, node, type_tag)

    def is_leaf(self, node: NodeRef) -> bool:
        with self._reader() as session:
            return self._traversal.is_leaf(session, node)

    def is_root(self, node: NodeRef) -> bool:
        return self.get(node).is_root

    def self_and_siblings(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.self_and_siblings(session, node, type_tag)

    def siblings(self, node: NodeRef, type_tag: Optional[str] = None) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.siblings(session, node, type_tag)

    def siblings_before(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.siblings_before(session, node, type_tag)

    def siblings_after(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.siblings_after(session, node, type_tag)

    def roots(self, type_tag: Optional[str] = None) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.roots(session, type_tag)

    def first_root(self, type_tag: Optional[str] = None) -> Optional[TreeNode]:
        with self._reader() as session:
            return self._traversal.first_root(session, type_tag)

    def all_nodes(self, type_tag: Optional[str] = None) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.all_nodes(session, type_tag)

    def leaves(
        self, node: Optional[NodeRef] = None, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.leaves(session, node, type_tag)

    def find_all_by_generation(
        self,
        generation: int,
        node: Optional[NodeRef] = None,
        type_tag: Optional[str] = None,
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.find_all_by_generation(
                session, generation, node, type_tag
            )

    def self_and_descendants_preordered(
        self, node: NodeRef, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.self_and_descendants_preordered(
                session, node, type_tag
            )

    def roots_and_descendants_preordered(
        self, type_tag: Optional[str] = None
    ) -> List[TreeNode]:
        with self._reader() as session:
            return self._traversal.roots_and_descendants_preordered(session, type_tag)

    def ancestor_ids(self, node: NodeRef) -> List[int]:
        with self._reader() as session:
            return self._traversal.ancestor_ids(session, node)

    def descendant_ids(self, node: NodeRef) -> Set[int]:
        with self._reader() as session:
            return self._traversal.descendant_ids(session, node)

    def edges_for_subtree(self, node: NodeRef) -> List[Tuple[int, int, int]]:
        with self._reader() as session:
            return self._traversal.edges_for_subtree(session, node)

    # ------------------------------------------------------------------
    # Path Resolver
    # ------------------------------------------------------------------

    def find_or_create_by_path(
        self,
        path: PathLike,
        type_tag: Optional[str] = None,
        parent: Optional[NodeRef] = None,
    ) -> TreeNode:
        """Resolve path from the roots (or parent), creating missing levels."""
        with self._unit_of_work() as session:
            return self._paths.find_or_create_by_path(session, path, type_tag, parent)

    def find_by_path(
        self,
        path: PathLike,
        type_tag: Optional[str] = None,
        parent: Optional[NodeRef] = None,
    ) -> Optional[TreeNode]:
        with self._reader() as session:
            return self._paths.find_by_path(session, path, type_tag, parent)

    def ancestry_path(self, node: NodeRef) -> List[str]:
        with self._reader() as session:
            return self._paths.ancestry_path(session, node)

    # ------------------------------------------------------------------
    # Integrity and repair
    # ------------------------------------------------------------------

    def check(self) -> IntegrityReport:
        """Compare the closure and order values against the parent links."""
        with self._reader() as session:
            return check_integrity(session, self._node_model, self._edges, self._order)

    def repair_order(self, parent: Optional[NodeRef] = None) -> int:
        """
        Renumber one sibling group to 0..n-1 (parent None for the roots).

        This is the repair path for OrderConflictError. Returns the number of
        nodes in the group.
        """
        with self._unit_of_work() as session:
            parent_id = None
            if parent is not None:
                parent_id = self._repository.get(session, parent, kind="parent").id
            return self._order.renumber(session, parent_id)

    def rebuild(self) -> IntegrityReport:
        """
        Regenerate the whole closure table from the parent links and renumber
        every non-dense sibling group, in one transaction.

        Raises:
            ClosureTreeError: If the parent links themselves contain a cycle
        """
        with self._unit_of_work() as session:
            graph = parent_graph(session, self._node_model)
            cycles = parent_cycles(graph)
            if cycles:
                raise ClosureTreeError(
                    f"Cannot rebuild: parent links contain cycles {cycles}"
                )
            written = self._edges.replace_all(session, expected_edges(graph))
            groups = order_conflicts(session, self._node_model, self._order)
            for parent_id, _ in groups:
                self._order.renumber(session, parent_id)
            logger.info(
                "Rebuilt %d edges for %d nodes; renumbered %d sibling groups",
                written,
                graph.number_of_nodes(),
                len(groups),
            )
        return self.check()

    # ------------------------------------------------------------------
    # Typed scopes
    # ------------------------------------------------------------------

    def scoped(self, type_tag: str) -> "TypedTree":
        """
        View of this tree bound to one type tag.

        Raises:
            ValueError: If type_tag is not configured
        """
        if type_tag not in self._settings.type_tags:
            raise ValueError(
                f"Unknown type tag: '{type_tag}'. "
                f"Valid tags: {self._settings.type_tags}"
            )
        return TypedTree(self, type_tag)


class TypedTree:
    """
    A ClosureTree seen through one type tag.

    Creation and path resolution use the tag; global scans (roots, all nodes,
    generations) return only nodes with the tag. Node-anchored traversals
    still walk the whole heterogeneous tree and filter only their results.
    """

    def __init__(self, tree: ClosureTree, type_tag: str):
        self.tree = tree
        self.type_tag = type_tag

    def _tagged(self, attrs: Attrs) -> NewNode:
        if isinstance(attrs, str):
            return NewNode(name=attrs, type_tag=self.type_tag)
        if isinstance(attrs, NewNode):
            name, tag, metadata = attrs.name, attrs.type_tag, attrs.metadata
        else:
            name, tag, metadata = (
                attrs.get("name"),
                attrs.get("type_tag"),
                attrs.get("metadata"),
            )
        if tag is not None and tag != self.type_tag:
            raise ValueError(
                f"Node type tag '{tag}' does not match scope '{self.type_tag}'"
            )
        return NewNode(name=name, type_tag=self.type_tag, metadata=metadata)

    def create(
        self,
        attrs: Attrs,
        parent: Optional[NodeRef] = None,
        position: Optional[int] = None,
    ) -> TreeNode:
        return self.tree.create(self._tagged(attrs), parent=parent, position=position)

    def add_child(self, parent: NodeRef, child: Attrs, at: str = "end") -> TreeNode:
        return self.tree.add_child(parent, self._tagged(child), at=at)

    def roots(self) -> List[TreeNode]:
        return self.tree.roots(self.type_tag)

    def first_root(self) -> Optional[TreeNode]:
        return self.tree.first_root(self.type_tag)

    def all_nodes(self) -> List[TreeNode]:
        return self.tree.all_nodes(self.type_tag)

    def find_all_by_generation(
        self, generation: int, node: Optional[NodeRef] = None
    ) -> List[TreeNode]:
        return self.tree.find_all_by_generation(generation, node, self.type_tag)

    def find_or_create_by_path(
        self, path: PathLike, parent: Optional[NodeRef] = None
    ) -> TreeNode:
        return self.tree.find_or_create_by_path(path, self.type_tag, parent)

    def find_by_path(
        self, path: PathLike, parent: Optional[NodeRef] = None
    ) -> Optional[TreeNode]:
        return self.tree.find_by_path(path, self.type_tag, parent)

    def self_and_ancestors(self, node: NodeRef) -> List[TreeNode]:
        return self.tree.self_and_ancestors(node, self.type_tag)

    def ancestors(self, node: NodeRef) -> List[TreeNode]:
        return self.tree.ancestors(node, self.type_tag)

    def self_and_descendants(self, node: NodeRef) -> List[TreeNode]:
        return self.tree.self_and_descendants(node, self.type_tag)

    def descendants(self, node: NodeRef) -> List[TreeNode]:
        return self.tree.descendants(node, self.type_tag)

    def children(self, node: NodeRef) -> List[TreeNode]:
        return self.tree.children(node, self.type_tag)

    def leaves(self, node: Optional[NodeRef] = None) -> List[TreeNode]:
        return self.tree.leaves(node, self.type_tag)

    def roots_and_descendants_preordered(self) -> List[TreeNode]:
        return self.tree.roots_and_descendants_preordered(self.type_tag)

    def __repr__(self) -> str:
        return f"TypedTree(type_tag={self.type_tag!r})"


__all__ = ["ClosureTree", "TypedTree"]
