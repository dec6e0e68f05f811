"""
Nullifiers
==========

Derivation of one-time action tokens and the append-only set that records
them. Nullifiers are permanent: there is no removal or expiry.
"""

import json
import logging
from enum import IntEnum
from typing import Iterable, Iterator, List, Optional, Set

from primitives.babyjub import Point
from primitives.field import PRIME
from primitives.poseidon import poseidon_hash
from zk.constraints import DuplicateNullifier

logger = logging.getLogger(__name__)

# "anon-maci/nullifier" as a big-endian integer, separates nullifiers from
# every other Poseidon output in the system
NULLIFIER_DOMAIN = int.from_bytes(b"anon-maci/nullifier", 'big')


class NullifierAction(IntEnum):
    """Action kinds a nullifier can be spent on"""
    ADD_NEW_KEY = 1
    DEACTIVATE = 2


def derive_nullifier(action: NullifierAction, public_key: Point, *counters: int) -> int:
    """H(DOMAIN, action, key.x, key.y, counters...)"""
    return poseidon_hash([NULLIFIER_DOMAIN, int(action), public_key[0], public_key[1]]
                         + [c % PRIME for c in counters])


def registration_nullifier(public_key: Point, action_counter: int) -> int:
    return derive_nullifier(NullifierAction.ADD_NEW_KEY, public_key, action_counter)


def deactivation_nullifier(public_key: Point, state_index: int, nonce: int) -> int:
    return derive_nullifier(NullifierAction.DEACTIVATE, public_key, state_index, nonce)


class NullifierSet:
    """
    Append-only set of spent nullifiers.

    `insert` fails on a repeat instead of silently succeeding. `insert_all`
    is all-or-nothing: if any element is already spent, or the same value
    appears twice in the argument, nothing is inserted.
    """

    def __init__(self, nullifiers: Optional[Iterable[int]] = None):
        self._spent: Set[int] = set()
        if nullifiers is not None:
            self.insert_all(nullifiers)

    def __contains__(self, nullifier: int) -> bool:
        return nullifier in self._spent

    def __len__(self) -> int:
        return len(self._spent)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._spent))

    @staticmethod
    def _validate(nullifier: int):
        if not isinstance(nullifier, int) or not 0 <= nullifier < PRIME:
            raise ValueError(f"Nullifier {nullifier!r} is not a field element")

    def insert(self, nullifier: int):
        self._validate(nullifier)
        if nullifier in self._spent:
            raise DuplicateNullifier(f"Nullifier {nullifier:#x} already spent",
                                     label="nullifier_set")
        self._spent.add(nullifier)
        logger.debug(f"Recorded nullifier {nullifier:#x}")

    def check_all(self, nullifiers: Iterable[int]) -> List[int]:
        """Validate a candidate group without inserting it"""
        candidates = list(nullifiers)
        seen = set()
        for nullifier in candidates:
            self._validate(nullifier)
            if nullifier in self._spent or nullifier in seen:
                raise DuplicateNullifier(f"Nullifier {nullifier:#x} already spent",
                                         label="nullifier_set")
            seen.add(nullifier)
        return candidates

    def insert_all(self, nullifiers: Iterable[int]):
        candidates = self.check_all(nullifiers)
        self._spent.update(candidates)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> List[str]:
        return [hex(n) for n in self]

    @classmethod
    def restore(cls, entries: Iterable[str]) -> 'NullifierSet':
        return cls(int(entry, 16) for entry in entries)

    def to_json(self) -> str:
        return json.dumps(self.snapshot())

    @classmethod
    def from_json(cls, data: str) -> 'NullifierSet':
        return cls.restore(json.loads(data))
