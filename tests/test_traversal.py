"""
Tests for TraversalEngine.

Covers ancestor/descendant scopes, generation lookups, the a..r preorder
sequence, heterogeneous (mixed tag) trees and single-query loading.
"""

import random
import unittest

import pytest

from closure_tree import NewNode, NotFoundError
from conftest import (
    PREORDER_PATHS,
    QueryCounter,
    create_label_tree,
    create_preorder_tree,
    make_label_tree,
    names,
)

LABEL_CLASSES = ["label", "date_label", "directory_label", "event_label"]
A_TO_R = [chr(c) for c in range(ord("a"), ord("r") + 1)]


class TestFindAllByGeneration(unittest.TestCase):
    """Generation lookups over the a1/a2 label tree."""

    def setUp(self):
        self.tree = make_label_tree()
        self.n = create_label_tree(self.tree)

    def tearDown(self):
        self.tree.close()

    def gen(self, generation, node=None):
        return names(self.tree.find_all_by_generation(generation, node))

    def test_roots_from_the_tree(self):
        self.assertEqual(self.gen(0), ["a1", "a2"])

    def test_roots_from_themselves(self):
        self.assertEqual(self.gen(0, self.n["a1"]), ["a1"])

    def test_itself_for_non_roots(self):
        self.assertEqual(self.gen(0, self.n["b1"]), ["b1"])

    def test_children_for_roots(self):
        self.assertEqual(self.gen(1), ["b1", "b2"])

    def test_children(self):
        self.assertEqual(self.gen(1, self.n["a1"]), ["b1"])
        self.assertEqual(self.gen(1, self.n["b1"]), ["c1", "c2"])

    def test_grandchildren_for_roots(self):
        self.assertEqual(self.gen(2), ["c1", "c2", "c3"])

    def test_grandchildren(self):
        self.assertEqual(self.gen(2, self.n["a1"]), ["c1", "c2"])
        self.assertEqual(self.gen(2, self.n["b1"]), ["d1", "d2"])

    def test_great_grandchildren_for_roots(self):
        self.assertEqual(self.gen(3), ["d1", "d2", "d3"])

    def test_beyond_depth_is_empty(self):
        self.assertEqual(self.gen(4), [])

    def test_negative_generation(self):
        with self.assertRaises(ValueError):
            self.tree.find_all_by_generation(-1)


class TestScopes(unittest.TestCase):
    """Ancestor, descendant and sibling scopes."""

    def setUp(self):
        self.tree = make_label_tree()
        self.n = create_label_tree(self.tree)

    def tearDown(self):
        self.tree.close()

    def test_self_and_descendants_single_query(self):
        with QueryCounter(self.tree.engine) as counter:
            nodes = self.tree.self_and_descendants(self.n["a1"])
        self.assertEqual(names(nodes), ["a1", "b1", "c1", "c2", "d1", "d2"])
        self.assertEqual(counter.count, 1)

    def test_self_and_ancestors_single_query(self):
        with QueryCounter(self.tree.engine) as counter:
            nodes = self.tree.self_and_ancestors(self.n["d1"])
        self.assertEqual(names(nodes), ["d1", "c1", "b1", "a1"])
        self.assertEqual(counter.count, 1)

    def test_preorder_single_query(self):
        with QueryCounter(self.tree.engine) as counter:
            self.tree.roots_and_descendants_preordered()
        self.assertEqual(counter.count, 1)

    def test_ancestors_and_descendants(self):
        self.assertEqual(names(self.tree.ancestors(self.n["d1"])), ["c1", "b1", "a1"])
        self.assertEqual(
            names(self.tree.descendants(self.n["b1"])), ["c1", "c2", "d1", "d2"]
        )
        self.assertEqual(self.tree.ancestors(self.n["a1"]), [])

    def test_parent_root_depth(self):
        d1 = self.n["d1"]
        self.assertEqual(self.tree.parent(d1).name, "c1")
        self.assertIsNone(self.tree.parent(self.n["a1"]))
        self.assertEqual(self.tree.root(d1).name, "a1")
        self.assertEqual(self.tree.depth(d1), 3)
        self.assertEqual(self.tree.depth(self.n["a2"]), 0)

    def test_leaf_and_root_predicates(self):
        self.assertTrue(self.tree.is_leaf(self.n["d1"]))
        self.assertFalse(self.tree.is_leaf(self.n["c1"]))
        self.assertTrue(self.tree.is_root(self.n["a1"]))
        self.assertFalse(self.tree.is_root(self.n["b1"]))

    def test_leaves(self):
        self.assertEqual(names(self.tree.leaves()), ["d1", "d2", "d3"])
        self.assertEqual(names(self.tree.leaves(self.n["b1"])), ["d1", "d2"])
        self.assertEqual(names(self.tree.leaves(self.n["d3"])), ["d3"])

    def test_children_and_siblings(self):
        self.assertEqual(names(self.tree.children(self.n["b1"])), ["c1", "c2"])
        self.assertEqual(names(self.tree.siblings(self.n["c1"])), ["c2"])
        self.assertEqual(names(self.tree.self_and_siblings(self.n["c2"])), ["c1", "c2"])
        self.assertEqual(names(self.tree.siblings_before(self.n["c2"])), ["c1"])
        self.assertEqual(names(self.tree.siblings_after(self.n["c1"])), ["c2"])
        self.assertEqual(names(self.tree.siblings(self.n["a1"])), ["a2"])

    def test_roots(self):
        self.assertEqual(names(self.tree.roots()), ["a1", "a2"])
        self.assertEqual(self.tree.first_root().name, "a1")

    def test_unknown_node(self):
        with self.assertRaises(NotFoundError):
            self.tree.self_and_descendants(9999)
        with self.assertRaises(NotFoundError):
            self.tree.self_and_ancestors(9999)
        with self.assertRaises(NotFoundError):
            self.tree.siblings(9999)
        with self.assertRaises(NotFoundError):
            self.tree.self_and_descendants_preordered(9999)


class TestRootOrdering(unittest.TestCase):
    """Roots come back ordered by order value."""

    def test_roots_sorted_by_order(self):
        tree = make_label_tree()
        try:
            for i in range(11):
                tree.create(f"root {i}")
            self.assertEqual([r.order_value for r in tree.roots()], list(range(11)))
            self.assertEqual(
                names(tree.roots()), [f"root {i}" for i in range(11)]
            )
        finally:
            tree.close()


class TestPreorder(unittest.TestCase):
    """Path-array preorder."""

    def setUp(self):
        self.tree = make_label_tree()

    def tearDown(self):
        self.tree.close()

    def test_descendants_in_preorder(self):
        a = create_preorder_tree(self.tree)
        self.assertEqual(a.name, "a")
        self.assertEqual(names(self.tree.self_and_descendants_preordered(a)), A_TO_R)
        self.assertEqual(names(self.tree.roots_and_descendants_preordered()), A_TO_R)

        self.tree.create("a1")
        create_preorder_tree(self.tree, suffix="1")
        self.assertEqual(names(self.tree.self_and_descendants_preordered(a)), A_TO_R)
        self.assertEqual(
            names(self.tree.roots_and_descendants_preordered()),
            A_TO_R + [f"{name}1" for name in A_TO_R],
        )

    def test_preorder_after_reordering_shuffled_creation(self):
        """Children created in arbitrary order, then sorted by moves."""
        paths = list(PREORDER_PATHS)
        random.Random(3).shuffle(paths)
        for path in paths:
            self.tree.find_or_create_by_path(path)
        for node in self.tree.all_nodes():
            kids = sorted(self.tree.children(node), key=lambda n: n.name)
            for index, kid in enumerate(kids):
                self.tree.move(kid, node, index)
        a = self.tree.first_root()
        self.assertEqual(names(self.tree.self_and_descendants_preordered(a)), A_TO_R)
        self.assertTrue(self.tree.check().ok)

    def test_preorder_of_subtree(self):
        create_preorder_tree(self.tree)
        l_node = self.tree.find_by_path("a/l")
        self.assertEqual(
            names(self.tree.self_and_descendants_preordered(l_node)),
            ["l", "m", "n", "o", "p", "q", "r"],
        )

    def test_leaves_in_preorder(self):
        create_preorder_tree(self.tree)
        self.assertEqual(
            names(self.tree.leaves()), ["e", "f", "g", "k", "m", "o", "p", "q", "r"]
        )


class TestMixedTagTree(unittest.TestCase):
    """Type tags filter results, never reachability."""

    def setUp(self):
        self.tree = make_label_tree()
        create_preorder_tree(
            self.tree, tag_for_index=lambda i: LABEL_CLASSES[i % 4]
        )

    def tearDown(self):
        self.tree.close()

    def test_roots_with_specific_tags(self):
        self.assertEqual(names(self.tree.roots("label")), ["a"])
        self.assertEqual(self.tree.roots("directory_label"), [])
        self.assertEqual(self.tree.roots("event_label"), [])

    def test_all_is_limited_to_tag(self):
        self.assertEqual(
            sorted(names(self.tree.all_nodes("date_label"))), ["f", "h", "l", "n", "p"]
        )
        self.assertEqual(
            sorted(names(self.tree.all_nodes("directory_label"))), ["g", "q"]
        )
        self.assertEqual(names(self.tree.all_nodes("event_label")), ["r"])

    def test_descendants_regardless_of_tag(self):
        root = self.tree.first_root()
        tags = {n.type_tag for n in self.tree.descendants(root)}
        self.assertEqual(tags, set(LABEL_CLASSES))

    def test_filter_applies_to_projection_only(self):
        """q and r sit under date_label n; a label-scoped walk from a still finds them."""
        root = self.tree.first_root()
        self.assertEqual(
            sorted(names(self.tree.descendants(root, type_tag="directory_label"))),
            ["g", "q"],
        )
        self.assertEqual(
            names(self.tree.self_and_descendants_preordered(root, type_tag="event_label")),
            ["r"],
        )
        r = self.tree.find_by_path("a/l/n/r", type_tag="event_label")
        self.assertIsNone(r)
        r = [n for n in self.tree.all_nodes("event_label")][0]
        self.assertEqual(
            names(self.tree.self_and_ancestors(r, type_tag="date_label")), ["n", "l"]
        )

    def test_generation_filtered_by_tag(self):
        self.assertEqual(names(self.tree.find_all_by_generation(1, type_tag="date_label")), ["l"])

    def test_children_of_mixed_tags(self):
        tree = self.tree
        a = tree.create({"name": "x", "type_tag": "event_label"})
        b = tree.add_child(a, NewNode(name="y", type_tag="date_label"))
        tree.add_child(b, NewNode(name="z", type_tag="label"))
        nodes = tree.self_and_descendants(a)
        self.assertEqual([n.type_tag for n in nodes], ["event_label", "date_label", "label"])
        self.assertEqual(names(nodes), ["x", "y", "z"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
