"""
Path Resolver.

Resolves a sequence of names to a chain of nodes, walking down from the roots
(or from a given parent). Missing levels are created through NodeRepository,
appended at the end of their sibling group, so resolution is idempotent.

Matching always includes the effective type tag: a "date_label" path never
reuses "label" nodes with the same names, and vice versa.
"""

import logging
from typing import List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from .models import NewNode, NodeRef, TreeNode, node_id_of
from .repository import NodeRepository
from .traversal import TraversalEngine

logger = logging.getLogger(__name__)

PathLike = Union[str, Sequence[str]]


class PathResolver:
    """
    find_or_create_by_path / find_by_path / ancestry_path.

    Args:
        node_model: ORM model of the node table
        repository: NodeRepository used to create missing levels
        traversal: TraversalEngine used for ancestry
        settings: TreeSettings (path separator)
    """

    def __init__(
        self,
        node_model,
        repository: NodeRepository,
        traversal: TraversalEngine,
        settings,
    ):
        self._node = node_model
        self._repository = repository
        self._traversal = traversal
        self._separator = settings.path_separator

    def split(self, path: PathLike) -> List[str]:
        """
        Normalise a path into a list of names.

        Strings are split on the configured separator, with empty segments
        from leading, trailing or doubled separators dropped.

        Raises:
            ValueError: If the path has no names or contains an empty name
        """
        if isinstance(path, str):
            names = [part for part in path.split(self._separator) if part]
        else:
            if any(part is None or str(part) == "" for part in path):
                raise ValueError(f"Path contains an empty name: {list(path)}")
            names = [str(part) for part in path]
        if not names:
            raise ValueError("Path must contain at least one name")
        return names

    def _child_named(
        self,
        session: Session,
        parent_id: Optional[int],
        name: str,
        type_tag: str,
    ):
        if parent_id is None:
            group = self._node.parent_id.is_(None)
        else:
            group = self._node.parent_id == parent_id
        # Lowest order value wins if names repeat within a group.
        return (
            session.query(self._node)
            .filter(group, self._node.name == name, self._node.type_tag == type_tag)
            .order_by(self._node.order_value, self._node.id)
            .populate_existing()
            .first()
        )

    def find_by_path(
        self,
        session: Session,
        path: PathLike,
        type_tag: Optional[str] = None,
        parent: Optional[NodeRef] = None,
    ) -> Optional[TreeNode]:
        """Return the node at path, or None if any level is missing."""
        names = self.split(path)
        tag = self._repository.resolve_type_tag(type_tag)
        current_id = None
        if parent is not None:
            current_id = self._repository.get(session, parent, kind="parent").id

        row = None
        for name in names:
            row = self._child_named(session, current_id, name, tag)
            if row is None:
                return None
            current_id = row.id
        return TreeNode.from_row(row)

    def find_or_create_by_path(
        self,
        session: Session,
        path: PathLike,
        type_tag: Optional[str] = None,
        parent: Optional[NodeRef] = None,
    ) -> TreeNode:
        """
        Return the node at path, creating every missing level.

        Args:
            path: Sequence of names, or a string split on path_separator
            type_tag: Tag used both to match and to create levels
            parent: Start below this node instead of among the roots

        Returns:
            Snapshot of the last node on the path

        Raises:
            NotFoundError: If parent does not exist
            ValueError: On an empty path or unknown type tag
        """
        names = self.split(path)
        tag = self._repository.resolve_type_tag(type_tag)
        current_id = None
        if parent is not None:
            current_id = self._repository.get(session, parent, kind="parent").id

        created = 0
        node = None
        for name in names:
            row = self._child_named(session, current_id, name, tag)
            if row is not None:
                node = TreeNode.from_row(row)
            else:
                node = self._repository.create(
                    session, NewNode(name=name, type_tag=tag), parent=current_id
                )
                created += 1
            current_id = node.id

        if created:
            logger.debug(
                "Created %d of %d levels for path %s", created, len(names), names
            )
        return node

    def ancestry_path(self, session: Session, node: NodeRef) -> List[str]:
        """Names from the root down to node."""
        chain = self._traversal.self_and_ancestors(session, node_id_of(node))
        return [ancestor.name for ancestor in reversed(chain)]


__all__ = ["PathResolver", "PathLike"]
