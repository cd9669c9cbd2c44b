"""
Order Allocator.

Maintains the dense, zero-based ``order_value`` sequence of every sibling
group. Children of one parent form a group; all roots form one more group
(``parent_id IS NULL``).

Shifts run in two phases so that the (parent_id, order) unique constraint
holds after every single statement, on every dialect:

    phase 1:  o  ->  -(o + 1)            (all targeted rows become negative)
    phase 2:  o  ->  -o - 1 + delta      (restore, shifted by delta)

A node that is being moved first vacates its slot (order NULL); NULLs never
collide in a unique index.
"""

import logging
from typing import List, Optional

from sqlalchemy import case, func, inspect
from sqlalchemy.orm import Session

from .exceptions import OrderConflictError

logger = logging.getLogger(__name__)


class OrderAllocator:
    """
    Assigns and renumbers sibling order values.

    Args:
        node_model: ORM model of the node table
        order_column: Name of the order column (TreeSettings.order_column)
        repair_conflicts: Renumber a broken group in place instead of raising
    """

    def __init__(self, node_model, order_column: str, repair_conflicts: bool = False):
        self._node = node_model
        self.repair_conflicts = repair_conflicts
        self.order_column = order_column
        column = node_model.__table__.c[order_column]
        key = inspect(node_model).get_property_by_column(column).key
        self.order_key = key
        self._order = getattr(node_model, key)

    def _group_clause(self, parent_id: Optional[int]):
        if parent_id is None:
            return self._node.parent_id.is_(None)
        return self._node.parent_id == parent_id

    def order_by(self):
        """Deterministic sibling sort: unset values last, then value, then id."""
        return (
            case((self._order.is_(None), 1), else_=0),
            self._order,
            self._node.id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def values(self, session: Session, parent_id: Optional[int]) -> List[Optional[int]]:
        """Order values of a group in sibling order (None last)."""
        rows = (
            session.query(self._order)
            .filter(self._group_clause(parent_id))
            .order_by(*self.order_by())
            .all()
        )
        return [row[0] for row in rows]

    def sibling_count(
        self,
        session: Session,
        parent_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> int:
        """Number of placed siblings in a group (rows with an order value)."""
        query = session.query(func.count(self._node.id)).filter(
            self._group_clause(parent_id),
            self._order.isnot(None),
        )
        if exclude_id is not None:
            query = query.filter(self._node.id != exclude_id)
        return query.scalar() or 0

    def next_order_value(self, session: Session, parent_id: Optional[int]) -> int:
        """Order value for an append: max + 1, or 0 for an empty group."""
        current = (
            session.query(func.max(self._order))
            .filter(self._group_clause(parent_id))
            .scalar()
        )
        return 0 if current is None else current + 1

    def verify(self, session: Session, parent_id: Optional[int]) -> None:
        """
        Check that a group is exactly 0..n-1.

        With repair_conflicts set, a broken group is renumbered (keeping its
        current sibling order) and the caller carries on.

        Raises:
            OrderConflictError: On duplicates, gaps or unset values
        """
        values = self.values(session, parent_id)
        if values != list(range(len(values))):
            if self.repair_conflicts:
                logger.warning(
                    "Repairing sibling order under parent %s: %s", parent_id, values
                )
                self.renumber(session, parent_id)
                return
            logger.error(
                "Sibling order conflict under parent %s: %s", parent_id, values
            )
            raise OrderConflictError(parent_id, values)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _shift(
        self,
        session: Session,
        parent_id: Optional[int],
        threshold: int,
        delta: int,
        exclude_id: Optional[int] = None,
    ) -> int:
        """Add delta to every order >= threshold in a group."""
        query = session.query(self._node).filter(
            self._group_clause(parent_id),
            self._order >= threshold,
        )
        if exclude_id is not None:
            query = query.filter(self._node.id != exclude_id)
        shifted = query.update(
            {self._order: (self._order + 1) * -1},
            synchronize_session=False,
        )
        if shifted:
            session.query(self._node).filter(
                self._group_clause(parent_id),
                self._order < 0,
            ).update(
                {self._order: self._order * -1 - 1 + delta},
                synchronize_session=False,
            )
        return shifted

    def assign(self, session: Session, node_id: int, value: Optional[int]) -> None:
        session.query(self._node).filter(self._node.id == node_id).update(
            {self._order: value}, synchronize_session=False
        )

    def vacate(self, session: Session, node_id: int) -> None:
        """Clear a node's order value so its slot can be reused."""
        self.assign(session, node_id, None)

    def insert_at(
        self,
        session: Session,
        parent_id: Optional[int],
        index: int,
        node_id: int,
    ) -> int:
        """
        Place node_id at index within a group, shifting later siblings up.

        The node must already carry the group's parent_id. index is clamped
        to [0, sibling_count]. Returns the assigned order value.
        """
        count = self.sibling_count(session, parent_id, exclude_id=node_id)
        index = max(0, min(index, count))
        self._shift(session, parent_id, index, 1, exclude_id=node_id)
        self.assign(session, node_id, index)
        return index

    def remove_and_compact(
        self,
        session: Session,
        parent_id: Optional[int],
        removed_order_value: Optional[int],
    ) -> int:
        """Close the gap left by removed_order_value. Returns rows shifted."""
        if removed_order_value is None:
            return 0
        return self._shift(session, parent_id, removed_order_value + 1, -1)

    def renumber(self, session: Session, parent_id: Optional[int]) -> int:
        """
        Rewrite a group as 0..n-1, keeping current sibling order.

        Unset values sort after set ones, ties broken by id. This is the
        consistency-repair path for OrderConflictError.
        """
        ids = [
            row[0]
            for row in session.query(self._node.id)
            .filter(self._group_clause(parent_id))
            .order_by(*self.order_by())
            .all()
        ]
        session.query(self._node).filter(self._group_clause(parent_id)).update(
            {self._order: None}, synchronize_session=False
        )
        for index, node_id in enumerate(ids):
            self.assign(session, node_id, index)
        if ids:
            logger.warning(
                "Renumbered %d siblings under parent %s", len(ids), parent_id
            )
        return len(ids)


__all__ = ["OrderAllocator"]
