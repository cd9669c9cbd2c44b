"""
Tests for OrderAllocator: dense sibling order, shifting and repair.
"""

import unittest

import pytest
from parameterized import parameterized
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from closure_tree import ClosureTree, OrderConflictError


class TestOrderAllocator(unittest.TestCase):
    """Order values stay 0..n-1 within every sibling group."""

    def setUp(self):
        self.tree = ClosureTree(url="sqlite:///:memory:")
        self.root = self.tree.create("root")

    def tearDown(self):
        self.tree.close()

    def child_orders(self, parent=None):
        group = self.tree.roots() if parent is None else self.tree.children(parent)
        return [(n.name, n.order_value) for n in group]

    def corrupt(self, node, value):
        with self.tree.engine.begin() as conn:
            conn.execute(
                text("UPDATE tree_nodes SET order_value = :v WHERE id = :id"),
                {"v": value, "id": node.id},
            )

    def test_roots_get_order_values(self):
        """Roots form their own sibling group."""
        self.tree.create("second")
        self.assertEqual(self.child_orders(), [("root", 0), ("second", 1)])

    def test_children_append(self):
        for name in "abc":
            self.tree.add_child(self.root, name)
        self.assertEqual(
            self.child_orders(self.root), [("a", 0), ("b", 1), ("c", 2)]
        )

    def test_repeated_prepend_does_not_collide(self):
        """Shifting up never trips the (parent_id, order) unique constraint."""
        for i in range(20):
            self.tree.prepend_child(self.root, f"n{i}")
        self.assertEqual(
            [n.name for n in self.tree.children(self.root)],
            [f"n{i}" for i in reversed(range(20))],
        )
        self.assertEqual(
            [n.order_value for n in self.tree.children(self.root)], list(range(20))
        )

    @parameterized.expand([
        ("head", 0, ["b", "c", "d"]),
        ("mid", 2, ["a", "b", "d"]),
        ("tail", 3, ["a", "b", "c"]),
    ])
    def test_destroy_compacts(self, _, index, expected):
        nodes = [self.tree.add_child(self.root, name) for name in "abcd"]
        self.tree.destroy(nodes[index])
        self.assertEqual(
            self.child_orders(self.root), [(n, i) for i, n in enumerate(expected)]
        )

    @parameterized.expand([
        ("negative_clamps_to_zero", -5, ["x", "a", "b"]),
        ("zero", 0, ["x", "a", "b"]),
        ("middle", 1, ["a", "x", "b"]),
        ("end", 2, ["a", "b", "x"]),
        ("past_end_clamps", 99, ["a", "b", "x"]),
    ])
    def test_create_at_position(self, _, position, expected):
        self.tree.add_child(self.root, "a")
        self.tree.add_child(self.root, "b")
        x = self.tree.create("x", parent=self.root, position=position)
        self.assertEqual([n.name for n in self.tree.children(self.root)], expected)
        self.assertEqual(x.order_value, expected.index("x"))

    def test_move_within_group(self):
        a, b, c, d = [self.tree.add_child(self.root, name) for name in "abcd"]
        self.tree.move(d, self.root, 1)
        self.assertEqual(
            self.child_orders(self.root), [("a", 0), ("d", 1), ("b", 2), ("c", 3)]
        )

    def test_move_resets_old_and_new_groups(self):
        """Moving b to another root compacts a, b, c into a, c."""
        a, b, c = [self.tree.add_child(self.root, name) for name in "abc"]
        root2 = self.tree.create("root2")
        moved = self.tree.add_child(root2, b)
        self.assertEqual(moved.order_value, 0)
        self.assertEqual(self.child_orders(self.root), [("a", 0), ("c", 1)])
        self.assertEqual(self.child_orders(root2), [("b", 0)])

    # ========================================================================
    # Conflicts and repair
    # ========================================================================

    def test_gap_raises_order_conflict_before_writing(self):
        a, b = [self.tree.add_child(self.root, name) for name in "ab"]
        self.corrupt(b, 5)
        with self.assertRaises(OrderConflictError) as ctx:
            self.tree.add_child(self.root, "c")
        self.assertEqual(ctx.exception.parent_id, self.root.id)
        self.assertEqual(ctx.exception.values, [0, 5])
        self.assertIn(str(self.root.id), str(ctx.exception))
        self.assertEqual([n.name for n in self.tree.children(self.root)], ["a", "b"])

    def test_repair_order_renumbers_group(self):
        a, b, c = [self.tree.add_child(self.root, name) for name in "abc"]
        self.corrupt(a, 7)
        self.assertEqual(self.tree.repair_order(self.root), 3)
        self.assertEqual(
            self.child_orders(self.root), [("b", 0), ("c", 1), ("a", 2)]
        )
        self.tree.add_child(self.root, "d")
        self.assertEqual(len(self.tree.children(self.root)), 4)

    def test_repair_roots_group(self):
        second = self.tree.create("second")
        self.corrupt(second, 4)
        self.assertEqual(self.tree.repair_order(), 2)
        self.assertEqual(self.child_orders(), [("root", 0), ("second", 1)])

    def test_null_order_is_a_conflict(self):
        a = self.tree.add_child(self.root, "a")
        self.corrupt(a, None)
        with self.assertRaises(OrderConflictError):
            self.tree.add_child(self.root, "b")

    def test_verify_order_disabled(self):
        tree = ClosureTree(url="sqlite:///:memory:", verify_order=False)
        try:
            root = tree.create("root")
            a = tree.add_child(root, "a")
            with tree.engine.begin() as conn:
                conn.execute(
                    text("UPDATE tree_nodes SET order_value = 3 WHERE id = :id"),
                    {"id": a.id},
                )
            # Appending goes past the largest value, gap and all.
            b = tree.create("b", parent=root)
            self.assertEqual(b.order_value, 4)
            # Inserting by index counts siblings, so a is shifted up.
            c = tree.add_child(root, "c")
            self.assertEqual(c.order_value, 2)
            self.assertEqual(
                [(n.name, n.order_value) for n in tree.children(root)],
                [("c", 2), ("a", 4), ("b", 5)],
            )
        finally:
            tree.close()

    def test_roots_order_is_unique(self):
        second = self.tree.create("second")
        with self.assertRaises(IntegrityError):
            self.corrupt(second, 0)
        self.assertEqual(self.child_orders(), [("root", 0), ("second", 1)])


class TestOrderRepairOnConflict(unittest.TestCase):
    """repair_order_conflicts renumbers a broken group and carries on."""

    def setUp(self):
        self.tree = ClosureTree(url="sqlite:///:memory:", repair_order_conflicts=True)
        self.root = self.tree.create("root")
        self.a, self.b, self.c = [self.tree.add_child(self.root, n) for n in "abc"]

    def tearDown(self):
        self.tree.close()

    def corrupt(self, node, value):
        with self.tree.engine.begin() as conn:
            conn.execute(
                text("UPDATE tree_nodes SET order_value = :v WHERE id = :id"),
                {"v": value, "id": node.id},
            )

    def test_create_repairs_group(self):
        self.corrupt(self.a, 7)
        with self.assertLogs("closure_tree.ordering", level="WARNING"):
            self.tree.add_child(self.root, "d")
        self.assertEqual(
            [(n.name, n.order_value) for n in self.tree.children(self.root)],
            [("b", 0), ("c", 1), ("a", 2), ("d", 3)],
        )

    def test_destroy_repairs_group(self):
        self.corrupt(self.c, 9)
        self.tree.destroy(self.b)
        self.assertEqual(
            [(n.name, n.order_value) for n in self.tree.children(self.root)],
            [("a", 0), ("c", 1)],
        )
        self.assertTrue(self.tree.check().ok)

    def test_move_repairs_old_group(self):
        second = self.tree.create("second")
        self.corrupt(second, 5)
        self.tree.move(second, self.root)
        self.assertEqual(
            [n.name for n in self.tree.children(self.root)], ["a", "b", "c", "second"]
        )
        self.assertEqual([(n.name, n.order_value) for n in self.tree.roots()], [("root", 0)])
        self.assertTrue(self.tree.check().ok)


class TestOrderAllocatorDirect(unittest.TestCase):
    """Allocator primitives against a raw session."""

    def setUp(self):
        self.tree = ClosureTree(url="sqlite:///:memory:")
        self.root = self.tree.create("root")
        for name in "abc":
            self.tree.add_child(self.root, name)
        self.order = self.tree._order
        self.session = self.tree._get_session()

    def tearDown(self):
        self.session.close()
        self.tree.close()

    def test_sibling_count(self):
        self.assertEqual(self.order.sibling_count(self.session, self.root.id), 3)
        self.assertEqual(self.order.sibling_count(self.session, None), 1)

    def test_next_order_value(self):
        self.assertEqual(self.order.next_order_value(self.session, self.root.id), 3)
        self.assertEqual(self.order.next_order_value(self.session, 9999), 0)

    def test_values(self):
        self.assertEqual(self.order.values(self.session, self.root.id), [0, 1, 2])

    def test_verify_passes_on_dense_group(self):
        self.order.verify(self.session, self.root.id)
        self.order.verify(self.session, None)

    def test_remove_and_compact_none_is_noop(self):
        self.assertEqual(
            self.order.remove_and_compact(self.session, self.root.id, None), 0
        )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
