"""
Hierarchy Edge Store.

Reads and maintains the closure table. The store is entirely derived state:
it only changes as a side effect of NodeRepository operations and never
commits; atomicity comes from the caller's session.

Attaching a subtree (create or move) is two set-based statements:

    1. Delete edges (a, d) where d is in the moved subtree and a is not.
       Internal subtree edges survive untouched.
    2. Insert the cross product of the new parent's ancestor chain with the
       subtree:

           (a, d, g(a, parent) + 1 + g(node, d))

The subtree of a node is read from the closure table itself, so both steps
are O(1) round trips regardless of depth.
"""

import logging
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import or_, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _batches(ids: Sequence[int], size: int) -> Iterator[List[int]]:
    for start in range(0, len(ids), size):
        yield list(ids[start : start + size])


class EdgeStore:
    """
    Closure-table maintenance and queries.

    Args:
        node_model: ORM model of the node table
        edge_model: ORM model of the closure table
        settings: TreeSettings (table names, delete batch size)
    """

    def __init__(self, node_model, edge_model, settings):
        self._node = node_model
        self._edge = edge_model
        self._edge_table = settings.edge_table
        self._batch_size = settings.delete_batch_size

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ancestors_of(self, session: Session, node_id: int) -> List[int]:
        """Ancestor ids ordered by generations, self first, root last."""
        rows = (
            session.query(self._edge.ancestor_id)
            .filter(self._edge.descendant_id == node_id)
            .order_by(self._edge.generations)
            .all()
        )
        return [row[0] for row in rows]

    def descendants_of(self, session: Session, node_id: int) -> Set[int]:
        """Descendant ids (generation >= 1)."""
        rows = (
            session.query(self._edge.descendant_id)
            .filter(
                self._edge.ancestor_id == node_id,
                self._edge.generations >= 1,
            )
            .all()
        )
        return {row[0] for row in rows}

    def subtree_with_generations(
        self, session: Session, node_id: int
    ) -> List[Tuple[int, int]]:
        """(descendant_id, generations) for the subtree, deepest first."""
        rows = (
            session.query(self._edge.descendant_id, self._edge.generations)
            .filter(self._edge.ancestor_id == node_id)
            .order_by(self._edge.generations.desc(), self._edge.descendant_id)
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def subtree_ids(self, session: Session, node_id: int) -> List[int]:
        """Self and descendant ids, deepest first."""
        return [d for d, _ in self.subtree_with_generations(session, node_id)]

    def edges_for_subtree(
        self, session: Session, root_id: int
    ) -> List[Tuple[int, int, int]]:
        """
        All edges whose ancestor or descendant lies in the subtree of root_id.

        Returns (ancestor_id, descendant_id, generations) triples sorted by
        (descendant_id, generations). Also reports edges that still name
        root_id after its subtree is gone, so a destroyed id yields [].
        """
        ids = set(self.subtree_ids(session, root_id))
        ids.add(root_id)
        edges: Set[Tuple[int, int, int]] = set()
        for batch in _batches(sorted(ids), self._batch_size):
            rows = (
                session.query(
                    self._edge.ancestor_id,
                    self._edge.descendant_id,
                    self._edge.generations,
                )
                .filter(
                    or_(
                        self._edge.ancestor_id.in_(batch),
                        self._edge.descendant_id.in_(batch),
                    )
                )
                .all()
            )
            edges.update((row[0], row[1], row[2]) for row in rows)
        return sorted(edges, key=lambda e: (e[1], e[2], e[0]))

    def all_edges(self, session: Session) -> Set[Tuple[int, int, int]]:
        rows = session.query(
            self._edge.ancestor_id,
            self._edge.descendant_id,
            self._edge.generations,
        ).all()
        return {(row[0], row[1], row[2]) for row in rows}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert_self_edge(self, session: Session, node_id: int) -> None:
        """Insert the reflexive (node, node, 0) row."""
        session.add(
            self._edge(ancestor_id=node_id, descendant_id=node_id, generations=0)
        )
        session.flush()

    def rebuild_edges_on_attach(
        self,
        session: Session,
        node_id: int,
        new_parent_id: Optional[int],
    ) -> None:
        """
        Re-hang the subtree rooted at node_id under new_parent_id.

        Deletes the boundary edges to the old ancestor chain, then inserts
        the new parent's chain crossed with the subtree. Passing None
        detaches the subtree into a new root. Cycle validation is the
        caller's job and must happen before this call.
        """
        table = self._edge_table
        session.execute(
            text(
                f"""
                DELETE FROM {table}
                WHERE descendant_id IN (
                    SELECT sub.descendant_id FROM (
                        SELECT descendant_id FROM {table}
                        WHERE ancestor_id = :node_id
                    ) AS sub
                )
                AND ancestor_id NOT IN (
                    SELECT inner_sub.descendant_id FROM (
                        SELECT descendant_id FROM {table}
                        WHERE ancestor_id = :node_id
                    ) AS inner_sub
                )
            """
            ),
            {"node_id": node_id},
        )

        if new_parent_id is not None:
            session.execute(
                text(
                    f"""
                    INSERT INTO {table} (ancestor_id, descendant_id, generations)
                    SELECT supertree.ancestor_id,
                           subtree.descendant_id,
                           supertree.generations + subtree.generations + 1
                    FROM {table} supertree
                    CROSS JOIN {table} subtree
                    WHERE supertree.descendant_id = :parent_id
                      AND subtree.ancestor_id = :node_id
                """
                ),
                {"parent_id": new_parent_id, "node_id": node_id},
            )

        logger.debug("Rebuilt edges for subtree %s under %s", node_id, new_parent_id)

    def delete_subtree(self, session: Session, node_id: int) -> List[int]:
        """
        Remove every edge touching the subtree of node_id.

        The id set is computed up front; deletes are issued in batches of
        delete_batch_size. Returns the subtree ids, deepest first, so the
        caller can delete node rows children-before-parents.
        """
        ids = self.subtree_ids(session, node_id)
        self.delete_edges_for(session, ids)
        return ids

    def delete_edges_for(self, session: Session, ids: Iterable[int]) -> int:
        """Delete all edges whose ancestor or descendant is in ids."""
        ids = list(ids)
        deleted = 0
        for batch in _batches(ids, self._batch_size):
            deleted += (
                session.query(self._edge)
                .filter(
                    or_(
                        self._edge.ancestor_id.in_(batch),
                        self._edge.descendant_id.in_(batch),
                    )
                )
                .delete(synchronize_session=False)
            )
        return deleted

    def replace_all(
        self, session: Session, edges: Iterable[Tuple[int, int, int]]
    ) -> int:
        """Replace the whole closure table with the given triples."""
        session.query(self._edge).delete(synchronize_session=False)
        rows = [
            {"ancestor_id": a, "descendant_id": d, "generations": g}
            for a, d, g in edges
        ]
        if rows:
            session.execute(self._edge.__table__.insert(), rows)
        return len(rows)


__all__ = ["EdgeStore"]
