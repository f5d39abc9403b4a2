"""
Commitment tree manager tests.

Run with: pytest tests/test_merkle.py -v
"""

import pytest

from shieldcore.errors import FatalStateDivergence, InvalidIndex, TreeFull
from shieldcore.field import poseidon
from shieldcore.merkle import (
    TREE_DEPTH,
    ZERO_LEAF,
    MerkleForest,
    MerkleTree,
    hash_pair,
    zero_values,
)


def commitments(count, offset=0):
    return [poseidon([offset + i + 1]) for i in range(count)]


def naive_root(leaves, depth):
    """Full rebuild of the tree from scratch."""
    level = list(leaves) + [ZERO_LEAF] * ((1 << depth) - len(leaves))
    for _ in range(depth):
        level = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


class TestZeroValues:

    def test_levels(self):
        zeros = zero_values(3)
        assert len(zeros) == 4
        assert zeros[0] == ZERO_LEAF
        assert zeros[1] == hash_pair(ZERO_LEAF, ZERO_LEAF)

    def test_empty_root(self):
        tree = MerkleTree(depth=4)
        assert tree.root() == zero_values(4)[4]
        assert tree.root() == naive_root([], 4)

    def test_full_depth_empty_root_vector(self):
        assert TREE_DEPTH == 16
        assert MerkleTree().root() == (
            9493149700940509817378043077993653487291699154667385859234945399563579865744
        )

    def test_full_depth_root_vector(self):
        tree = MerkleTree()
        tree.insert(list(range(1, 11)))
        assert tree.root() == (
            13360826432759445967430837006844965422592495092152969583910134058984357610665
        )
        assert all(tree.path_to(i).verify() for i in range(10))


class TestMerkleTree:

    def test_incremental_matches_full_rebuild(self):
        tree = MerkleTree(depth=4)
        leaves = commitments(11)
        tree.insert(leaves[:3])
        tree.insert(leaves[3:4])
        tree.insert(leaves[4:])
        assert tree.root() == naive_root(leaves, 4)

    def test_insert_returns_start_position(self):
        tree = MerkleTree(depth=4)
        assert tree.insert(commitments(3)) == 0
        assert tree.insert(commitments(2, 10)) == 3
        assert len(tree) == 5

    def test_path_survives_later_insert(self):
        tree = MerkleTree()
        c = commitments(6)
        tree.insert(c[:5])
        old_path = tree.path_to(2)
        old_root = tree.root()
        assert old_path.verify(old_root)

        tree.insert(c[5:])
        new_path = tree.path_to(2)
        assert new_path.verify(tree.root())
        assert not old_path.verify(tree.root())
        assert old_path.verify()

    def test_every_path_verifies(self):
        tree = MerkleTree(depth=3)
        tree.insert(commitments(7))
        for i in range(7):
            path = tree.path_to(i)
            assert len(path.elements) == 3
            assert path.verify(tree.root())

    def test_path_out_of_range(self):
        tree = MerkleTree(depth=3)
        tree.insert(commitments(2))
        with pytest.raises(InvalidIndex):
            tree.path_to(2)
        with pytest.raises(InvalidIndex):
            tree.path_to(-1)

    def test_tree_full(self):
        tree = MerkleTree(depth=2)
        tree.insert(commitments(3))
        with pytest.raises(TreeFull):
            tree.insert(commitments(2, 10))
        assert len(tree) == 3
        tree.insert(commitments(1, 10))
        assert len(tree) == 4

    def test_rejects_non_field_commitment(self):
        with pytest.raises(ValueError):
            MerkleTree(depth=2).insert([-1])

    def test_truncate_restores_root(self):
        tree = MerkleTree(depth=4)
        tree.insert(commitments(5))
        root = tree.root()
        tree.insert(commitments(4, 10))
        tree.truncate(5)
        assert tree.root() == root
        assert len(tree) == 5

    def test_dict_round_trip(self):
        tree = MerkleTree(tree_number=2, depth=4)
        tree.insert(commitments(6))
        restored = MerkleTree.from_dict(tree.to_dict(), depth=4)
        assert restored.tree_number == 2
        assert restored.root() == tree.root()


class TestMerkleForest:

    def test_insert_rolls_over(self):
        forest = MerkleForest(depth=2)
        indices = forest.insert(commitments(6))
        assert indices == [0, 1, 2, 3, 4, 5]
        assert forest.tree_count == 2
        assert forest.locate(5) == (1, 1)
        assert forest.path_to(5).verify(forest.root(1))

    def test_insert_at_continues_tree(self):
        forest = MerkleForest(depth=3)
        assert forest.insert_at(0, 0, commitments(2)) == [0, 1]
        assert forest.insert_at(0, 2, commitments(1, 10)) == [2]

    def test_insert_at_opens_next_tree(self):
        forest = MerkleForest(depth=2)
        forest.insert_at(0, 0, commitments(3))
        assert forest.insert_at(1, 0, commitments(2, 10)) == [4, 5]
        assert forest.latest_tree_number == 1

    def test_insert_at_gap_is_divergence(self):
        forest = MerkleForest(depth=3)
        forest.insert_at(0, 0, commitments(2))
        with pytest.raises(FatalStateDivergence):
            forest.insert_at(0, 3, commitments(1, 10))

    def test_insert_at_replay_is_divergence(self):
        forest = MerkleForest(depth=3)
        forest.insert_at(0, 0, commitments(2))
        with pytest.raises(FatalStateDivergence):
            forest.insert_at(0, 0, commitments(2))

    def test_insert_at_unknown_tree(self):
        forest = MerkleForest(depth=3)
        with pytest.raises(FatalStateDivergence):
            forest.insert_at(2, 0, commitments(1))

    def test_insert_at_closed_tree(self):
        forest = MerkleForest(depth=2)
        forest.insert_at(0, 0, commitments(2))
        forest.insert_at(1, 0, commitments(1, 10))
        with pytest.raises(FatalStateDivergence):
            forest.insert_at(0, 2, commitments(1, 20))

    def test_rollback(self):
        forest = MerkleForest(depth=2)
        forest.insert(commitments(3))
        checkpoint = forest.checkpoint()
        root = forest.root(0)
        forest.insert(commitments(4, 10))
        assert forest.tree_count == 2
        forest.rollback(checkpoint)
        assert forest.tree_count == 1
        assert forest.leaf_count() == 3
        assert forest.root(0) == root

    def test_path_to_unknown_global_index(self):
        forest = MerkleForest(depth=2)
        forest.insert(commitments(2))
        with pytest.raises(InvalidIndex):
            forest.path_to(9)
        with pytest.raises(InvalidIndex):
            forest.locate(-1)

    def test_dict_round_trip(self):
        forest = MerkleForest(depth=2)
        forest.insert(commitments(6))
        restored = MerkleForest.from_dict(forest.to_dict())
        assert restored.depth == 2
        assert restored.tree_count == 2
        assert restored.root(0) == forest.root(0)
        assert restored.root(1) == forest.root(1)

    def test_from_dict_rejects_gaps(self):
        with pytest.raises(ValueError):
            MerkleForest.from_dict({"depth": 2, "trees": [{"tree_number": 1, "leaves": []}]})
