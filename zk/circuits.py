"""
Circuits
========

The three statements the coordinator and voters prove:

  * AddNewKeyCircuit          - key registration / rotation with credential
                                re-randomization and a nullifier
  * ProcessMessagesCircuit    - folds a batch of vote / key-change messages
                                into the state tree
  * ProcessDeactivateCircuit  - folds a batch of deactivation messages under
                                the explicit transition table

Each circuit's synthesize() records every constraint on a fresh
ConstraintSystem; satisfiability of that system is the statement.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, FrozenSet, List, Sequence, Tuple

from primitives.babyjub import (
    BASE8,
    SCALAR_BITS,
    SUBGROUP_ORDER,
    Credential,
    IDENTITY,
    Point,
)
from primitives.field import PRIME
from state.messages import COMMAND_LENGTH, MessageType, Message
from state.nullifiers import NULLIFIER_DOMAIN, NullifierAction
from state.state_tree import StateLeaf
from .constraints import (
    BatchSizeViolation,
    ConstraintSystem,
    CoordinatorKeyMismatch,
    DuplicateNullifier,
    FieldValidator,
    IllegalTransition,
    InvalidMerkleProof,
    InvalidPoint,
    MalformedPadding,
    MessageChainMismatch,
    StateRootMismatch,
    UnsatisfiedConstraint,
    WeakRandomness,
)

logger = logging.getLogger(__name__)

# ============================================================================
# PARAMETERS
# ============================================================================

FULL_SCALAR_BITS = SCALAR_BITS
RANDOMNESS_THRESHOLD_BITS = 200
RANDOMNESS_THRESHOLD = 1 << RANDOMNESS_THRESHOLD_BITS

# Width used for counters, indices and batch sizes
COUNTER_BITS = 32
VOTE_WEIGHT_BITS = 32
CREDIT_BALANCE_BITS = 64
BUDGET_BITS = 96


@dataclass(frozen=True)
class CircuitParameters:
    """Compile-time shape shared by the prover and the ledger"""
    max_batch_size: int = 32
    state_tree_depth: int = 10
    max_vote_options: int = 16

    def __post_init__(self):
        if not 0 < self.max_batch_size < (1 << COUNTER_BITS) - 1:
            raise ValueError(f"Invalid max_batch_size {self.max_batch_size}")
        if not 0 < self.state_tree_depth < COUNTER_BITS:
            raise ValueError(f"Invalid state_tree_depth {self.state_tree_depth}")
        if not 0 < self.max_vote_options < (1 << COUNTER_BITS):
            raise ValueError(f"Invalid max_vote_options {self.max_vote_options}")


# ============================================================================
# TRANSITION TABLE
# ============================================================================


class LeafStatus(IntEnum):
    ACTIVE = 0
    DEACTIVATED = 1


class TransitionTable:
    """Allowed (old, new) deactivation status pairs; anything else is denied"""

    ALLOWED: FrozenSet[Tuple[int, int]] = frozenset({
        (LeafStatus.ACTIVE, LeafStatus.ACTIVE),
        (LeafStatus.ACTIVE, LeafStatus.DEACTIVATED),
        (LeafStatus.DEACTIVATED, LeafStatus.DEACTIVATED),
    })

    @classmethod
    def is_allowed(cls, old_state: int, new_state: int) -> bool:
        return (old_state, new_state) in cls.ALLOWED

    @classmethod
    def constrain(cls, cs: ConstraintSystem, old_state: int, new_state: int,
                  label: str) -> int:
        """Sum of pair indicators; pairs are distinct so the result is 0 or 1"""
        matched = 0
        for old, new in sorted(cls.ALLOWED):
            hit = cs.mul(cs.is_equal(old_state, int(old), f"{label}.old=={int(old)}"),
                         cs.is_equal(new_state, int(new), f"{label}.new=={int(new)}"),
                         f"{label}.pair[{int(old)},{int(new)}]")
            matched = (matched + hit) % PRIME
        return matched


# ============================================================================
# SHARED GADGETS
# ============================================================================


def _element(cs: ConstraintSystem, value: int, label: str) -> int:
    """Private input that must be a canonical field element"""
    ok = isinstance(value, int) and 0 <= value < PRIME
    cs.check(ok, f"{label}.canonical", UnsatisfiedConstraint)
    return value % PRIME if isinstance(value, int) else 0


def _leaf_fields(cs: ConstraintSystem, leaf: StateLeaf, label: str) -> List[int]:
    return [_element(cs, v, f"{label}[{j}]") for j, v in enumerate(leaf.to_fields())]


def _decrypt_command(cs: ConstraintSystem, validator: FieldValidator, coord_priv_key: int,
                     payload: Sequence[int], label: str) -> Tuple[int, List[int]]:
    """ECDH with the ephemeral key, then subtract the Poseidon keystream"""
    enc_ok, enc_key = validator.safe_point((payload[0], payload[1]), f"{label}.enc_key")
    shared = cs.scalar_mul(enc_key, coord_priv_key, f"{label}.ecdh")
    seed = cs.poseidon([shared[0], shared[1], 0], f"{label}.keystream_seed")
    fields = []
    for j in range(COMMAND_LENGTH):
        key = cs.poseidon([seed, j], f"{label}.keystream[{j}]")
        fields.append((payload[2 + j] - key) % PRIME)
    return enc_ok, fields


def _state_index_flag(cs: ConstraintSystem, index: int, num_sign_ups: int, depth: int,
                      label: str, gates: Sequence[int] = ()) -> Tuple[int, int]:
    """(ok, target): target is the index when ok and every gate is set, else the blank leaf"""
    fits = cs.fits_in_bits(index, depth, f"{label}.fits")
    bounded = cs.mux(fits, 0, index, f"{label}.bounded")
    nonzero = cs.not_(cs.is_zero(bounded, f"{label}.zero"))
    signed_up = cs.less_than(bounded, num_sign_ups, COUNTER_BITS, f"{label}.signed_up")
    ok = cs.and_all([*gates, fits, nonzero, signed_up], f"{label}.ok")
    return ok, cs.mux(ok, 0, bounded, f"{label}.target")


def _signature_flag(cs: ConstraintSystem, validator: FieldValidator, public_key: Point,
                    digest: int, r8: Point, s: int, label: str) -> int:
    """EdDSA-Poseidon verification as a 0/1 signal: S * B8 == R8 + H(R8, A, m) * A"""
    r8_ok, r8_safe = validator.safe_point(r8, f"{label}.r8", allow_identity=True)
    s_fits = cs.fits_in_bits(s, FULL_SCALAR_BITS, f"{label}.s_fits")
    s_safe = cs.mux(s_fits, 0, s, f"{label}.s_safe")
    s_ok = cs.mul(s_fits, cs.less_than(s_safe, SUBGROUP_ORDER, FULL_SCALAR_BITS,
                                       f"{label}.s_below_order"), f"{label}.s_ok")
    challenge = cs.poseidon([r8_safe[0], r8_safe[1], public_key[0], public_key[1], digest],
                            f"{label}.challenge")
    left = cs.scalar_mul(BASE8, s_safe, f"{label}.s_b8")
    right = cs.point_add(r8_safe, cs.scalar_mul(public_key, challenge, f"{label}.h_a"),
                         f"{label}.r8_plus_h_a")
    equal = cs.points_equal(left, right, f"{label}.equation")
    return cs.and_all([r8_ok, s_ok, equal], f"{label}.ok")


def _enforce_coordinator_key(cs: ConstraintSystem, validator: FieldValidator,
                             coord_priv_key: int, coord_pub_key: Point) -> int:
    validator.enforce_valid_point(coord_pub_key, "coord_pub_key", InvalidPoint)
    validator.enforce_range(coord_priv_key, FULL_SCALAR_BITS, "coord_priv_key",
                            CoordinatorKeyMismatch)
    priv = coord_priv_key % PRIME if isinstance(coord_priv_key, int) else 0
    derived = cs.scalar_mul(BASE8, priv, "coord_priv_key.derive")
    cs.assert_points_equal(derived, coord_pub_key, "coord_pub_key.matches_priv",
                           CoordinatorKeyMismatch)
    return priv


def _enforce_batch_size(cs: ConstraintSystem, batch_size: int, max_batch_size: int):
    """0 < batch_size <= max_batch_size"""
    cs.num2bits(batch_size, COUNTER_BITS, "batch_size.range", BatchSizeViolation)
    cs.assert_zero(cs.is_zero(batch_size, "batch_size.zero"), "batch_size.nonzero",
                   BatchSizeViolation)
    within = cs.less_than(batch_size, max_batch_size + 1, COUNTER_BITS,
                          "batch_size.capacity", BatchSizeViolation)
    cs.assert_equal(within, 1, "batch_size.within_capacity", BatchSizeViolation)


def _message_elements(cs: ConstraintSystem, message: Message, label: str) -> List[int]:
    return [_element(cs, v, f"{label}.element[{j}]")
            for j, v in enumerate(message.elements())]


def _enforce_slot_shape(cs: ConstraintSystem, is_real: int, elements: Sequence[int],
                        expected_sequence: int, label: str):
    """Padding slots are the all-zero sentinel; real slots carry consecutive sequence indices"""
    padding = cs.not_(is_real)
    for j, value in enumerate(elements):
        cs.enforce(padding, value, 0, f"{label}.padding[{j}]", MalformedPadding)
    cs.enforce(is_real, elements[-1] - expected_sequence, 0, f"{label}.sequence",
               MessageChainMismatch)


def _mux_fields(cs: ConstraintSystem, selector: int, when_false: Sequence[int],
                when_true: Sequence[int], label: str) -> List[int]:
    return [cs.mux(selector, a, b, f"{label}[{j}]")
            for j, (a, b) in enumerate(zip(when_false, when_true))]


# ============================================================================
# addNewKey
# ============================================================================


@dataclass
class AddNewKeyInputs:
    """Public inputs of a registration or rotation proof"""
    new_pub_key: Point
    coord_pub_key: Point
    previous_credential: Credential
    new_credential: Credential
    nullifier: int
    action_counter: int

    def signals(self) -> Dict[str, int]:
        (p1, p2), (n1, n2) = self.previous_credential, self.new_credential
        return OrderedDict([
            ('new_pub_key.x', self.new_pub_key[0]), ('new_pub_key.y', self.new_pub_key[1]),
            ('coord_pub_key.x', self.coord_pub_key[0]), ('coord_pub_key.y', self.coord_pub_key[1]),
            ('previous_credential.c1.x', p1[0]), ('previous_credential.c1.y', p1[1]),
            ('previous_credential.c2.x', p2[0]), ('previous_credential.c2.y', p2[1]),
            ('new_credential.c1.x', n1[0]), ('new_credential.c1.y', n1[1]),
            ('new_credential.c2.x', n2[0]), ('new_credential.c2.y', n2[1]),
            ('nullifier', self.nullifier),
            ('action_counter', self.action_counter),
        ])


@dataclass
class AddNewKeyWitness:
    random_val: int


class AddNewKeyCircuit:
    """Key registration / rotation with an unlinkable re-randomized credential"""

    circuit_id = "add_new_key"

    def synthesize(self, public: AddNewKeyInputs, witness: AddNewKeyWitness) -> ConstraintSystem:
        cs = ConstraintSystem(self.circuit_id)
        validator = FieldValidator(cs)
        for name, value in public.signals().items():
            cs.public(name, value)

        # randomVal: full scalar range and well above the low region
        random_val = witness.random_val
        validator.enforce_range(random_val, FULL_SCALAR_BITS, "random_val", WeakRandomness)
        validator.enforce_greater_than(random_val, RANDOMNESS_THRESHOLD, FULL_SCALAR_BITS,
                                       "random_val", WeakRandomness)
        z = random_val % PRIME if isinstance(random_val, int) else 0

        keys_ok = validator.enforce_valid_point(public.coord_pub_key, "coord_pub_key")
        keys_ok &= validator.enforce_valid_point(public.new_pub_key, "new_pub_key")

        c1, c2 = public.previous_credential
        credential_ok = validator.enforce_valid_point(
            c1, "previous_credential.c1", allow_identity=True)
        credential_ok &= validator.enforce_valid_point(
            c2, "previous_credential.c2", allow_identity=True)

        if keys_ok and credential_ok:
            new_c1 = cs.point_add(c1, cs.scalar_mul(BASE8, z, "rerandomize.z_b8"),
                                  "rerandomize.c1")
            new_c2 = cs.point_add(c2, cs.scalar_mul(public.coord_pub_key, z,
                                                    "rerandomize.z_pk"), "rerandomize.c2")
        else:
            # Unsatisfiable already; keep invalid points out of curve arithmetic
            new_c1, new_c2 = IDENTITY, IDENTITY
            cs.check(False, "rerandomize.inputs_valid", InvalidPoint)

        claimed_c1, claimed_c2 = public.new_credential
        cs.assert_points_equal(claimed_c1, new_c1, "new_credential.c1")
        cs.assert_points_equal(claimed_c2, new_c2, "new_credential.c2")

        expected = cs.poseidon([NULLIFIER_DOMAIN, int(NullifierAction.ADD_NEW_KEY),
                                public.new_pub_key[0] % PRIME, public.new_pub_key[1] % PRIME,
                                public.action_counter % PRIME], "nullifier.derive")
        cs.assert_equal(public.nullifier, expected, "nullifier.matches")
        return cs


# ============================================================================
# processMessages
# ============================================================================


@dataclass
class ProcessMessagesInputs:
    old_root: int
    new_root: int
    batch_size: int
    num_sign_ups: int
    coord_pub_key: Point
    input_chain_hash: int
    output_chain_hash: int
    start_sequence: int

    def signals(self) -> Dict[str, int]:
        return OrderedDict([
            ('old_root', self.old_root),
            ('new_root', self.new_root),
            ('batch_size', self.batch_size),
            ('num_sign_ups', self.num_sign_ups),
            ('coord_pub_key.x', self.coord_pub_key[0]),
            ('coord_pub_key.y', self.coord_pub_key[1]),
            ('input_chain_hash', self.input_chain_hash),
            ('output_chain_hash', self.output_chain_hash),
            ('start_sequence', self.start_sequence),
        ])


@dataclass
class ProcessMessagesWitness:
    coord_priv_key: int
    messages: List[Message]
    current_leaves: List[StateLeaf]
    leaf_paths: List[List[int]]


class _BatchCircuit:
    """Shape checks and shared preamble of the two batch circuits"""

    circuit_id = "batch"

    def __init__(self, params: CircuitParameters = None):
        self.params = params or CircuitParameters()

    def _check_shape(self, witness):
        n = self.params.max_batch_size
        if not (len(witness.messages) == len(witness.current_leaves)
                == len(witness.leaf_paths) == n):
            raise ValueError(f"{self.circuit_id} expects exactly {n} witness slots")
        for path in witness.leaf_paths:
            if len(path) != self.params.state_tree_depth:
                raise ValueError("Merkle path length does not match the tree depth")

    def _preamble(self, cs: ConstraintSystem, validator: FieldValidator, public,
                  coord_priv_key: int) -> int:
        for name, value in public.signals().items():
            cs.public(name, value)
        _enforce_batch_size(cs, public.batch_size, self.params.max_batch_size)
        cs.num2bits(public.num_sign_ups, COUNTER_BITS, "num_sign_ups.range")
        return _enforce_coordinator_key(cs, validator, coord_priv_key, public.coord_pub_key)

    def _authenticate_leaf(self, cs: ConstraintSystem, fields: Sequence[int], target: int,
                           path: Sequence[int], root: int, label: str) -> List[int]:
        """Membership of the current leaf against the running root; returns index bits"""
        bits = cs.num2bits(target, self.params.state_tree_depth, f"{label}.target_bits")
        leaf_hash = cs.poseidon(fields, f"{label}.leaf_hash")
        computed = cs.merkle_root(leaf_hash, bits, [p % PRIME for p in path],
                                  f"{label}.membership")
        cs.assert_equal(computed, root, f"{label}.membership_root", InvalidMerkleProof)
        return bits


class ProcessMessagesCircuit(_BatchCircuit):
    """Sequential fold of vote and key-change messages into the state tree"""

    circuit_id = "process_messages"

    def synthesize(self, public: ProcessMessagesInputs,
                   witness: ProcessMessagesWitness) -> ConstraintSystem:
        self._check_shape(witness)
        cs = ConstraintSystem(self.circuit_id)
        validator = FieldValidator(cs)
        coord_priv = self._preamble(cs, validator, public, witness.coord_priv_key)

        root = public.old_root % PRIME
        chain = public.input_chain_hash % PRIME
        for i in range(self.params.max_batch_size):
            root, chain = self._process_slot(
                cs, validator, public, coord_priv, i, witness.messages[i],
                witness.current_leaves[i], witness.leaf_paths[i], root, chain)

        cs.assert_equal(root, public.new_root, "new_root", StateRootMismatch)
        cs.assert_equal(chain, public.output_chain_hash, "output_chain_hash",
                        MessageChainMismatch)
        return cs

    def _process_slot(self, cs: ConstraintSystem, validator: FieldValidator,
                      public: ProcessMessagesInputs, coord_priv: int, i: int,
                      message: Message, leaf: StateLeaf, path: Sequence[int],
                      root: int, chain: int) -> Tuple[int, int]:
        label = f"slot[{i}]"
        params = self.params
        elements = _message_elements(cs, message, label)
        msg_type, payload, sequence = elements[0], elements[1:-1], elements[-1]

        is_real = cs.less_than(i, public.batch_size, COUNTER_BITS, f"{label}.is_real",
                               BatchSizeViolation)
        _enforce_slot_shape(cs, is_real, elements, public.start_sequence + i, label)

        enc_ok, command = _decrypt_command(cs, validator, coord_priv, payload, label)
        (index, npk_x, npk_y, option, weight, nonce, salt, r8x, r8y, s) = command

        is_vote = cs.is_equal(msg_type, int(MessageType.VOTE), f"{label}.is_vote")
        is_key_change = cs.is_equal(msg_type, int(MessageType.KEY_CHANGE),
                                    f"{label}.is_key_change")
        type_ok = (is_vote + is_key_change) % PRIME

        # A slot whose ephemeral key was substituted decrypts under a public key
        index_ok, target = _state_index_flag(cs, index, public.num_sign_ups,
                                             params.state_tree_depth, f"{label}.index",
                                             gates=[is_real, enc_ok])

        old = _leaf_fields(cs, leaf, f"{label}.leaf")
        bits = self._authenticate_leaf(cs, old, target, path, root, label)
        (pk_x, pk_y, balance, old_option, old_weight, leaf_nonce, deactivated,
         _last_seq, c1x, c1y, c2x, c2y) = old

        digest = cs.poseidon([msg_type] + command[:7], f"{label}.digest")
        signature_ok = _signature_flag(cs, validator, (pk_x, pk_y), digest, (r8x, r8y), s,
                                       f"{label}.signature")
        nonce_ok = cs.is_equal(nonce, leaf_nonce + 1, f"{label}.nonce")
        active = cs.is_zero(deactivated, f"{label}.active")

        # Vote: option in range, weight in range, quadratic credit budget
        option_fits = cs.fits_in_bits(option, COUNTER_BITS, f"{label}.option_fits")
        option_safe = cs.mux(option_fits, 0, option, f"{label}.option_safe")
        option_ok = cs.mul(option_fits, cs.less_than(option_safe, params.max_vote_options,
                                                     COUNTER_BITS, f"{label}.option_max"),
                           f"{label}.option_ok")
        weight_fits = cs.fits_in_bits(weight, VOTE_WEIGHT_BITS, f"{label}.weight_fits")
        weight_safe = cs.mux(weight_fits, 0, weight, f"{label}.weight_safe")
        old_weight_fits = cs.fits_in_bits(old_weight, VOTE_WEIGHT_BITS,
                                          f"{label}.old_weight_fits")
        old_weight_safe = cs.mux(old_weight_fits, 0, old_weight, f"{label}.old_weight_safe")
        balance_fits = cs.fits_in_bits(balance, CREDIT_BALANCE_BITS, f"{label}.balance_fits")
        balance_safe = cs.mux(balance_fits, 0, balance, f"{label}.balance_safe")
        old_cost = cs.mul(old_weight_safe, old_weight_safe, f"{label}.old_cost")
        new_cost = cs.mul(weight_safe, weight_safe, f"{label}.new_cost")
        over_budget = cs.less_than(balance_safe + old_cost, new_cost, BUDGET_BITS,
                                   f"{label}.budget")
        vote_ok = cs.and_all([option_ok, weight_fits, old_weight_fits, balance_fits,
                              cs.not_(over_budget)], f"{label}.vote_ok")

        # Key change: the replacement key must be a usable subgroup point
        npk_ok, npk_safe = validator.safe_point((npk_x, npk_y), f"{label}.new_pub_key")

        kind_ok = cs.mux(is_vote, npk_ok, vote_ok, f"{label}.kind_ok")
        valid = cs.and_all([is_real, enc_ok, type_ok, index_ok, signature_ok, nonce_ok,
                            active, kind_ok], f"{label}.valid")

        next_nonce = (leaf_nonce + 1) % PRIME
        voted = [pk_x, pk_y, (balance_safe + old_cost - new_cost) % PRIME, option_safe,
                 weight_safe, next_nonce, deactivated, sequence, c1x, c1y, c2x, c2y]
        rotated = [npk_safe[0], npk_safe[1], balance, old_option, old_weight, next_nonce,
                   deactivated, sequence, c1x, c1y, c2x, c2y]
        applied = _mux_fields(cs, is_vote, rotated, voted, f"{label}.applied")
        new = _mux_fields(cs, valid, old, applied, f"{label}.new_leaf")

        new_hash = cs.poseidon(new, f"{label}.new_leaf_hash")
        root = cs.merkle_root(new_hash, bits, [p % PRIME for p in path], f"{label}.update")

        message_hash = cs.poseidon(elements, f"{label}.message_hash")
        next_chain = cs.poseidon([chain, message_hash], f"{label}.chain")
        chain = cs.mux(is_real, chain, next_chain, f"{label}.chain_select")
        return root, chain


# ============================================================================
# processDeactivate
# ============================================================================


@dataclass
class ProcessDeactivateInputs(ProcessMessagesInputs):
    nullifiers: List[int] = field(default_factory=list)

    def signals(self) -> Dict[str, int]:
        signals = super().signals()
        for i, nullifier in enumerate(self.nullifiers):
            signals[f'nullifiers[{i}]'] = nullifier
        return signals


@dataclass
class ProcessDeactivateWitness(ProcessMessagesWitness):
    old_states: List[int] = field(default_factory=list)
    new_states: List[int] = field(default_factory=list)
    valid: List[int] = field(default_factory=list)


class ProcessDeactivateCircuit(_BatchCircuit):
    """Deactivation fold under the explicit transition table"""

    circuit_id = "process_deactivate"

    def _check_shape(self, witness: ProcessDeactivateWitness):
        super()._check_shape(witness)
        n = self.params.max_batch_size
        if not (len(witness.old_states) == len(witness.new_states) == len(witness.valid) == n):
            raise ValueError(f"{self.circuit_id} expects {n} declared transitions")

    def synthesize(self, public: ProcessDeactivateInputs,
                   witness: ProcessDeactivateWitness) -> ConstraintSystem:
        self._check_shape(witness)
        if len(public.nullifiers) != self.params.max_batch_size:
            raise ValueError(f"{self.circuit_id} expects "
                             f"{self.params.max_batch_size} public nullifiers")

        cs = ConstraintSystem(self.circuit_id)
        validator = FieldValidator(cs)
        coord_priv = self._preamble(cs, validator, public, witness.coord_priv_key)
        self._enforce_distinct_nullifiers(cs, public.nullifiers)

        root = public.old_root % PRIME
        chain = public.input_chain_hash % PRIME
        previous_empty = 0
        for i in range(self.params.max_batch_size):
            root, chain, previous_empty = self._process_slot(
                cs, validator, public, witness, coord_priv, i, root, chain, previous_empty)

        cs.assert_equal(root, public.new_root, "new_root", StateRootMismatch)
        cs.assert_equal(chain, public.output_chain_hash, "output_chain_hash",
                        MessageChainMismatch)
        return cs

    @staticmethod
    def _enforce_distinct_nullifiers(cs: ConstraintSystem, nullifiers: Sequence[int]):
        """Non-zero public nullifiers are pairwise distinct"""
        for i in range(len(nullifiers)):
            present = cs.not_(cs.is_zero(nullifiers[i], f"nullifiers[{i}].zero"))
            for j in range(i + 1, len(nullifiers)):
                same = cs.is_equal(nullifiers[i], nullifiers[j], f"nullifiers[{i},{j}].equal")
                cs.enforce(present, same, 0, f"nullifiers[{i},{j}].distinct",
                           DuplicateNullifier)

    def _process_slot(self, cs: ConstraintSystem, validator: FieldValidator,
                      public: ProcessDeactivateInputs, witness: ProcessDeactivateWitness,
                      coord_priv: int, i: int, root: int, chain: int,
                      previous_empty: int) -> Tuple[int, int, int]:
        label = f"slot[{i}]"
        elements = _message_elements(cs, witness.messages[i], label)
        msg_type, payload, sequence = elements[0], elements[1:-1], elements[-1]

        # A slot is empty only if every element is zero
        empty = cs.is_all_zero(elements, f"{label}.empty")
        non_empty = cs.not_(empty)
        cs.enforce(previous_empty, non_empty, 0, f"{label}.after_empty", MalformedPadding)
        is_real = cs.less_than(i, public.batch_size, COUNTER_BITS, f"{label}.is_real",
                               BatchSizeViolation)
        cs.assert_equal(non_empty, is_real, f"{label}.matches_batch_size", MalformedPadding)
        _enforce_slot_shape(cs, is_real, elements, public.start_sequence + i, label)

        enc_ok, command = _decrypt_command(cs, validator, coord_priv, payload, label)
        index, nonce, r8x, r8y, s = command[0], command[5], command[7], command[8], command[9]

        is_deactivate = cs.is_equal(msg_type, int(MessageType.DEACTIVATE),
                                    f"{label}.is_deactivate")
        index_ok, target = _state_index_flag(cs, index, public.num_sign_ups,
                                             self.params.state_tree_depth, f"{label}.index",
                                             gates=[is_real, enc_ok])

        old = _leaf_fields(cs, witness.current_leaves[i], f"{label}.leaf")
        bits = self._authenticate_leaf(cs, old, target, witness.leaf_paths[i], root, label)
        pk_x, pk_y, deactivated, c2 = old[0], old[1], old[6], (old[10], old[11])

        digest = cs.poseidon([msg_type] + command[:7], f"{label}.digest")
        signature_ok = _signature_flag(cs, validator, (pk_x, pk_y), digest, (r8x, r8y), s,
                                       f"{label}.signature")
        command_ok = cs.and_all([non_empty, enc_ok, is_deactivate, index_ok, signature_ok],
                                f"{label}.command_ok")

        # Declared transition: bound to the leaf, in the table, valid == 1, implied by the command
        old_state = _element(cs, witness.old_states[i], f"{label}.old_state")
        new_state = _element(cs, witness.new_states[i], f"{label}.new_state")
        valid = _element(cs, witness.valid[i], f"{label}.valid")
        cs.assert_equal(old_state, deactivated, f"{label}.old_state_bound", IllegalTransition)
        rule_ok = TransitionTable.constrain(cs, old_state, new_state, f"{label}.rule")
        cs.assert_equal(rule_ok, 1, f"{label}.rule_ok", IllegalTransition)
        cs.assert_bool(valid, f"{label}.valid_bool", IllegalTransition)
        cs.assert_equal(valid, 1, f"{label}.valid_one", IllegalTransition)
        implied = cs.mux(command_ok, old_state, int(LeafStatus.DEACTIVATED),
                         f"{label}.implied_state")
        cs.assert_equal(new_state, implied, f"{label}.new_state_implied", IllegalTransition)

        # Only a real 0 -> 1 flip changes the leaf and spends a nullifier
        transition = cs.mul(command_ok, cs.not_(old_state), f"{label}.transition")
        flipped_c2 = cs.point_add(c2, BASE8, f"{label}.status_point")
        new = list(old)
        new[6] = new_state
        new[7] = cs.mux(transition, old[7], sequence, f"{label}.last_update_seq")
        new[10] = cs.mux(transition, c2[0], flipped_c2[0], f"{label}.c2.x")
        new[11] = cs.mux(transition, c2[1], flipped_c2[1], f"{label}.c2.y")

        nullifier = cs.poseidon([NULLIFIER_DOMAIN, int(NullifierAction.DEACTIVATE),
                                 pk_x, pk_y, target, nonce], f"{label}.nullifier")
        emitted = cs.mul(transition, nullifier, f"{label}.emitted_nullifier")
        cs.assert_equal(public.nullifiers[i], emitted, f"{label}.public_nullifier")

        new_hash = cs.poseidon(new, f"{label}.new_leaf_hash")
        root = cs.merkle_root(new_hash, bits, [p % PRIME for p in witness.leaf_paths[i]],
                              f"{label}.update")

        message_hash = cs.poseidon(elements, f"{label}.message_hash")
        next_chain = cs.poseidon([chain, message_hash], f"{label}.chain")
        chain = cs.mux(is_real, chain, next_chain, f"{label}.chain_select")
        return root, chain, cs.or_(previous_empty, empty, f"{label}.seen_empty")
