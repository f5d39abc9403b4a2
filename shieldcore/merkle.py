"""Append-only commitment tree manager.

Leaves are note commitments in on-chain emission order. Each tree has a fixed
depth (16, so 65,536 leaves); once a tree cannot take the next batch a new
tree is started. A global leaf index ``g`` lives in tree ``g // capacity`` at
position ``g % capacity``.

Design goals:
- Roots equal the verifier's roots after the same insertions
- Incremental: an insert recomputes only the parents of new leaves
- Never reorders or removes leaves; ``truncate``/``rollback`` exist only to
  undo a batch that was never committed

Hashing:
- node = Poseidon(left, right)
- empty leaf = keccak256("Railgun") mod p
- empty node at level i+1 = Poseidon(z_i, z_i), precomputed once per depth
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shieldcore.errors import FatalStateDivergence, InvalidIndex, TreeFull
from shieldcore.field import from_hex, hash_to_field, is_field_element, poseidon, to_hex32

TREE_DEPTH = 16
ZERO_LEAF = hash_to_field(b"Railgun")


def hash_pair(left: int, right: int) -> int:
    return poseidon([left, right])


@lru_cache(maxsize=None)
def zero_values(depth: int) -> Tuple[int, ...]:
    """Empty-subtree hash per level, leaf level first; ``depth + 1`` entries."""
    zeros = [ZERO_LEAF]
    for _ in range(depth):
        zeros.append(hash_pair(zeros[-1], zeros[-1]))
    return tuple(zeros)


@dataclass(frozen=True)
class MerklePath:
    """Inclusion path of one leaf, bottom-up."""
    tree_number: int
    leaf_index: int
    leaf: int
    elements: Tuple[int, ...]
    root: int

    def compute_root(self) -> int:
        node = self.leaf
        for level, sibling in enumerate(self.elements):
            if (self.leaf_index >> level) & 1:
                node = hash_pair(sibling, node)
            else:
                node = hash_pair(node, sibling)
        return node

    def verify(self, root: Optional[int] = None) -> bool:
        """True if the path hashes up to ``root`` (default: the root it was taken at)."""
        expected = self.root if root is None else root
        return self.compute_root() == expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tree_number": self.tree_number,
            "leaf_index": self.leaf_index,
            "leaf": to_hex32(self.leaf),
            "elements": [to_hex32(e) for e in self.elements],
            "root": to_hex32(self.root),
        }


class MerkleTree:
    """One fixed-depth incremental Merkle tree."""

    def __init__(self, tree_number: int = 0, depth: int = TREE_DEPTH):
        if depth < 1:
            raise ValueError("depth must be >= 1")
        self.tree_number = tree_number
        self.depth = depth
        self.capacity = 1 << depth
        self._zeros = zero_values(depth)
        # _levels[0] holds the leaves, _levels[depth] the root once non-empty.
        self._levels: List[List[int]] = [[] for _ in range(depth + 1)]

    def __len__(self) -> int:
        return len(self._levels[0])

    @property
    def leaves(self) -> Tuple[int, ...]:
        return tuple(self._levels[0])

    def _node(self, level: int, index: int) -> int:
        nodes = self._levels[level]
        return nodes[index] if index < len(nodes) else self._zeros[level]

    def insert(self, commitments: Sequence[int]) -> int:
        """Append commitments in order; returns the position of the first one."""
        for c in commitments:
            if not is_field_element(c):
                raise ValueError(f"Commitment is not a field element: {c!r}")
        start = len(self)
        if start + len(commitments) > self.capacity:
            raise TreeFull(self.tree_number, self.capacity, len(commitments))
        if not commitments:
            return start

        self._levels[0].extend(commitments)
        self._rebuild(start)
        return start

    def _rebuild(self, start: int) -> None:
        """Recompute every parent at or right of the first dirty leaf."""
        dirty = start
        for level in range(self.depth):
            parent_start = dirty // 2
            parent_end = (len(self._levels[level]) + 1) // 2
            parents = self._levels[level + 1]
            del parents[parent_start:]
            for i in range(parent_start, parent_end):
                parents.append(hash_pair(self._node(level, 2 * i), self._node(level, 2 * i + 1)))
            dirty = parent_start

    def root(self) -> int:
        top = self._levels[self.depth]
        return top[0] if top else self._zeros[self.depth]

    def path_to(self, leaf_index: int) -> MerklePath:
        if not 0 <= leaf_index < len(self):
            raise InvalidIndex(leaf_index, len(self))
        elements = tuple(
            self._node(level, (leaf_index >> level) ^ 1) for level in range(self.depth)
        )
        return MerklePath(
            tree_number=self.tree_number,
            leaf_index=leaf_index,
            leaf=self._levels[0][leaf_index],
            elements=elements,
            root=self.root(),
        )

    def truncate(self, length: int) -> None:
        """Drop leaves at and after ``length`` and re-derive the affected nodes."""
        if not 0 <= length <= len(self):
            raise InvalidIndex(length, len(self))
        if length == len(self):
            return
        del self._levels[0][length:]
        self._rebuild(length)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tree_number": self.tree_number,
            "leaves": [to_hex32(leaf) for leaf in self._levels[0]],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], depth: int = TREE_DEPTH) -> "MerkleTree":
        tree = cls(int(data["tree_number"]), depth)
        tree.insert([from_hex(h) for h in data.get("leaves", [])])
        return tree


@dataclass(frozen=True)
class ForestCheckpoint:
    """Leaf count of every tree at a point in time."""
    lengths: Tuple[int, ...]


class MerkleForest:
    """Sequence of fixed-capacity trees addressed by global leaf index."""

    def __init__(self, depth: int = TREE_DEPTH):
        self.depth = depth
        self.capacity = 1 << depth
        self._trees: List[MerkleTree] = [MerkleTree(0, depth)]

    @property
    def latest_tree_number(self) -> int:
        return len(self._trees) - 1

    @property
    def tree_count(self) -> int:
        return len(self._trees)

    def tree(self, tree_number: int) -> MerkleTree:
        if not 0 <= tree_number < len(self._trees):
            raise InvalidIndex(tree_number, len(self._trees))
        return self._trees[tree_number]

    def leaf_count(self) -> int:
        return sum(len(t) for t in self._trees)

    def global_index(self, tree_number: int, leaf_index: int) -> int:
        return tree_number * self.capacity + leaf_index

    def locate(self, global_index: int) -> Tuple[int, int]:
        """Map a global leaf index to (tree_number, leaf_index)."""
        if global_index < 0:
            raise InvalidIndex(global_index, self.leaf_count())
        return divmod(global_index, self.capacity)

    def _new_tree(self) -> MerkleTree:
        tree = MerkleTree(len(self._trees), self.depth)
        self._trees.append(tree)
        return tree

    def insert(self, commitments: Sequence[int]) -> List[int]:
        """Append commitments, rolling over into new trees; returns their global indices."""
        indices: List[int] = []
        pending = list(commitments)
        while pending:
            tree = self._trees[-1]
            room = tree.capacity - len(tree)
            if room == 0:
                tree = self._new_tree()
                room = tree.capacity
            chunk, pending = pending[:room], pending[room:]
            start = tree.insert(chunk)
            indices.extend(self.global_index(tree.tree_number, start + i) for i in range(len(chunk)))
        return indices

    def insert_at(self, tree_number: int, start_position: int, commitments: Sequence[int]) -> List[int]:
        """Insert an event-positioned batch.

        The batch must continue the named tree exactly where it ends, or open
        the next tree at position 0. Anything else means events were missed
        or replayed.
        """
        if not commitments:
            return []
        if tree_number == len(self._trees) and start_position == 0:
            tree = self._new_tree()
        elif 0 <= tree_number < len(self._trees):
            tree = self._trees[tree_number]
        else:
            raise FatalStateDivergence(
                f"Commitments for tree {tree_number} but only {len(self._trees)} trees known",
                tree_number=tree_number,
            )

        if tree_number != self.latest_tree_number:
            raise FatalStateDivergence(
                f"Commitments for closed tree {tree_number}", tree_number=tree_number
            )
        if start_position != len(tree):
            raise FatalStateDivergence(
                f"Tree {tree_number} holds {len(tree)} leaves but batch starts at {start_position}",
                tree_number=tree_number, expected=len(tree), got=start_position,
            )

        start = tree.insert(list(commitments))
        return [self.global_index(tree_number, start + i) for i in range(len(commitments))]

    def root(self, tree_number: Optional[int] = None) -> int:
        number = self.latest_tree_number if tree_number is None else tree_number
        return self.tree(number).root()

    def path_to(self, global_index: int) -> MerklePath:
        tree_number, leaf_index = self.locate(global_index)
        if tree_number >= len(self._trees):
            raise InvalidIndex(global_index, self.leaf_count())
        return self._trees[tree_number].path_to(leaf_index)

    def checkpoint(self) -> ForestCheckpoint:
        return ForestCheckpoint(tuple(len(t) for t in self._trees))

    def rollback(self, checkpoint: ForestCheckpoint) -> None:
        """Return to a checkpoint taken earlier on this forest."""
        keep = max(len(checkpoint.lengths), 1)
        del self._trees[keep:]
        for tree, length in zip(self._trees, checkpoint.lengths):
            tree.truncate(length)

    def to_dict(self) -> Dict[str, Any]:
        return {"depth": self.depth, "trees": [t.to_dict() for t in self._trees]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerkleForest":
        forest = cls(int(data.get("depth", TREE_DEPTH)))
        trees = data.get("trees") or [{"tree_number": 0, "leaves": []}]
        forest._trees = []
        for i, tree_data in enumerate(trees):
            if int(tree_data["tree_number"]) != i:
                raise ValueError(f"Tree numbers must be contiguous from 0, got {tree_data['tree_number']}")
            forest._trees.append(MerkleTree.from_dict(tree_data, forest.depth))
        return forest
