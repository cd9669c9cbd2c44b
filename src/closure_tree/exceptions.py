"""
Exception classes for closure_tree.

These live in their own module (zero dependencies) so that every component,
from the edge store up to the CLI, can raise and catch them without import
cycles.

Hierarchy:
    ClosureTreeError
        CycleError          - a move would make a node its own ancestor
        NotFoundError       - a referenced node does not exist (stale id)
        OrderConflictError  - a sibling group is not dense at mutation start

Storage failures (sqlalchemy.exc.*) are not wrapped; they propagate unchanged
after the unit of work has been rolled back.
"""

from typing import Any, Dict, List, Optional


class ClosureTreeError(Exception):
    """Base class for all closure_tree errors."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (used by the CLI)."""
        return {"error": type(self).__name__, "message": str(self)}


class CycleError(ClosureTreeError):
    """
    Raised when a move would place a node beneath itself.

    Detected from the candidate parent's ancestor chain before any write,
    so the tree is left untouched.

    Attributes:
        node_id: The node being moved.
        new_parent_id: The rejected target parent.
    """

    def __init__(self, node_id: int, new_parent_id: int):
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(
            f"Cannot move node {node_id} under {new_parent_id}: "
            f"{new_parent_id} is {node_id} or one of its descendants"
        )


class NotFoundError(ClosureTreeError):
    """
    Raised when a node (or parent) id does not resolve to a row.

    Attributes:
        node_id: The missing id.
        kind: What was being looked up ("node", "parent", "sibling").
    """

    def __init__(self, node_id: Any, kind: str = "node"):
        self.node_id = node_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} not found: {node_id}")


class OrderConflictError(ClosureTreeError):
    """
    Raised when a sibling group's order values are not exactly 0..n-1.

    This signals a prior invariant violation (e.g. rows written behind the
    engine's back). It is not retried; repair the group with
    ``ClosureTree.repair_order(parent)`` or the whole tree with
    ``ClosureTree.rebuild()``.

    Attributes:
        parent_id: The group's parent id (None for the roots group).
        values: The order values found, in ascending order (None last).
    """

    def __init__(self, parent_id: Optional[int], values: List[Optional[int]]):
        self.parent_id = parent_id
        self.values = values
        group = "roots" if parent_id is None else f"children of {parent_id}"
        super().__init__(
            f"Sibling order for {group} is not dense: {values}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["parent_id"] = self.parent_id
        result["values"] = self.values
        return result


__all__ = [
    "ClosureTreeError",
    "CycleError",
    "NotFoundError",
    "OrderConflictError",
]
