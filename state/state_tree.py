"""
State Tree
==========

Per-voter state leaves and the sparse Poseidon Merkle tree that commits to
them. Slot 0 holds a reserved blank leaf; commands that turn out to be
invalid are applied to it as identity updates so every batch slot performs
exactly one authenticated update.
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Sequence

from primitives.babyjub import EMPTY_CREDENTIAL, IDENTITY, Credential, Point
from primitives.field import PRIME
from primitives.poseidon import poseidon_hash

logger = logging.getLogger(__name__)

# Hash stored in slots that have never been written
EMPTY_LEAF_HASH = 0

BLANK_LEAF_INDEX = 0

STATE_LEAF_LENGTH = 12


@dataclass(frozen=True)
class StateLeaf:
    """Voter record; deactivated is 0 / 1 so it can be used as a signal"""
    public_key: Point
    credit_balance: int
    vote_option_index: int = 0
    vote_weight: int = 0
    nonce: int = 0
    deactivated: int = 0
    last_update_seq: int = 0
    credential: Credential = EMPTY_CREDENTIAL

    @classmethod
    def blank(cls) -> 'StateLeaf':
        return cls(public_key=IDENTITY, credit_balance=0)

    def to_fields(self) -> List[int]:
        (c1x, c1y), (c2x, c2y) = self.credential
        return [
            self.public_key[0], self.public_key[1],
            self.credit_balance,
            self.vote_option_index,
            self.vote_weight,
            self.nonce,
            self.deactivated,
            self.last_update_seq,
            c1x, c1y, c2x, c2y,
        ]

    @classmethod
    def from_fields(cls, fields: Sequence[int]) -> 'StateLeaf':
        if len(fields) != STATE_LEAF_LENGTH:
            raise ValueError(f"State leaf needs {STATE_LEAF_LENGTH} fields, got {len(fields)}")
        f = [v % PRIME for v in fields]
        return cls(
            public_key=(f[0], f[1]),
            credit_balance=f[2],
            vote_option_index=f[3],
            vote_weight=f[4],
            nonce=f[5],
            deactivated=f[6],
            last_update_seq=f[7],
            credential=((f[8], f[9]), (f[10], f[11])),
        )

    def hash(self) -> int:
        return poseidon_hash([v % PRIME for v in self.to_fields()])

    def evolve(self, **changes) -> 'StateLeaf':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {'fields': [str(v) for v in self.to_fields()]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StateLeaf':
        return cls.from_fields([int(v) for v in data['fields']])


@dataclass
class StateTree:
    """Sparse Merkle tree over Poseidon with bounds checking"""
    depth: int
    empty_nodes: List[int] = field(default_factory=list)
    nodes: Dict[int, int] = field(default_factory=dict)  # heap index -> hash
    leaves: Dict[int, StateLeaf] = field(default_factory=dict)
    next_index: int = 0

    def __post_init__(self):
        if not 0 < self.depth < 32:
            raise ValueError(f"Unsupported tree depth {self.depth}")
        self.empty_nodes = self._compute_empty_nodes()
        if not self.leaves:
            self.insert(StateLeaf.blank())

    def _compute_empty_nodes(self) -> List[int]:
        """empty_nodes[level] is the root of an empty subtree of that height"""
        empty = [EMPTY_LEAF_HASH]
        for _ in range(self.depth):
            empty.append(poseidon_hash([empty[-1], empty[-1]]))
        return empty

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def num_leaves(self) -> int:
        return self.next_index

    @property
    def root(self) -> int:
        return self.nodes.get(1, self.empty_nodes[self.depth])

    def _check_index(self, index: int):
        if not isinstance(index, int) or index < 0 or index >= self.capacity:
            raise IndexError(f"Index {index} out of bounds for depth {self.depth}")

    def _node(self, heap_index: int, level: int) -> int:
        return self.nodes.get(heap_index, self.empty_nodes[level])

    def _write_leaf_hash(self, index: int, value: int):
        heap_index = self.capacity + index
        self.nodes[heap_index] = value
        for level in range(self.depth):
            sibling = self._node(heap_index ^ 1, level)
            if heap_index & 1:
                value = poseidon_hash([sibling, value])
            else:
                value = poseidon_hash([value, sibling])
            heap_index >>= 1
            self.nodes[heap_index] = value

    # ------------------------------------------------------------------
    # Leaf operations
    # ------------------------------------------------------------------

    def insert(self, leaf: StateLeaf) -> int:
        """Append a leaf at the next free slot and return its index"""
        if self.next_index >= self.capacity:
            raise OverflowError(f"State tree of depth {self.depth} is full")
        index = self.next_index
        self.leaves[index] = leaf
        self._write_leaf_hash(index, leaf.hash())
        self.next_index += 1
        return index

    def update(self, index: int, leaf: StateLeaf):
        self._check_index(index)
        if index >= self.next_index:
            raise IndexError(f"Slot {index} has not been allocated")
        self.leaves[index] = leaf
        self._write_leaf_hash(index, leaf.hash())

    def get_leaf(self, index: int) -> StateLeaf:
        self._check_index(index)
        if index not in self.leaves:
            raise KeyError(f"No leaf at index {index}")
        return self.leaves[index]

    def get_leaf_hash(self, index: int) -> int:
        self._check_index(index)
        return self._node(self.capacity + index, 0)

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    def get_proof(self, index: int) -> List[int]:
        """Sibling hashes from leaf level up to the root"""
        self._check_index(index)
        heap_index = self.capacity + index
        siblings = []
        for level in range(self.depth):
            siblings.append(self._node(heap_index ^ 1, level))
            heap_index >>= 1
        return siblings

    @staticmethod
    def compute_root(leaf_hash: int, index: int, siblings: Sequence[int]) -> int:
        current = leaf_hash
        for level, sibling in enumerate(siblings):
            if (index >> level) & 1:
                current = poseidon_hash([sibling, current])
            else:
                current = poseidon_hash([current, sibling])
        return current

    def verify_proof(self, index: int, leaf_hash: int, siblings: Sequence[int],
                     root: int = None) -> bool:
        if index < 0 or index >= self.capacity or len(siblings) != self.depth:
            return False
        if not isinstance(leaf_hash, int) or not 0 <= leaf_hash < PRIME:
            return False
        expected = self.root if root is None else root
        return self.compute_root(leaf_hash, index, siblings) == expected

    def copy(self) -> 'StateTree':
        clone = copy.copy(self)
        clone.nodes = dict(self.nodes)
        clone.leaves = dict(self.leaves)
        return clone

    def find_by_public_key(self, public_key: Point) -> int:
        for index, leaf in self.leaves.items():
            if index != BLANK_LEAF_INDEX and leaf.public_key == public_key:
                return index
        raise KeyError(f"No leaf for public key {public_key}")
