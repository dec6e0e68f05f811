"""
Constraint System and Gadgets
=============================

Witness-level model of an R1CS circuit: every constraint is a gate
a * b == c over the BN254 scalar field, recorded together with the label of
the check it belongs to and the error class a violation maps to. Gadgets
compute their hint values (bits, inverses) the way a witness generator would
and then constrain them, so a circuit built here is satisfiable exactly when
the equivalent circom circuit would be.

Hash and curve gadgets are evaluated natively and recorded as a single gate.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Type

from cryptography.hazmat.primitives import hashes

from primitives.field import FIELD, FIELD_BITS, PRIME
from primitives.poseidon import poseidon_hash
from primitives import babyjub
from primitives.babyjub import BASE8, IDENTITY, SUBGROUP_ORDER, Point

logger = logging.getLogger(__name__)

# ============================================================================
# ERROR TAXONOMY
# ============================================================================


class ZKError(Exception):
    """Base exception for ZK operations"""
    pass


class ConstraintViolation(ZKError):
    """Witness does not satisfy the constraint system"""

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(message)
        self.label = label


class InvalidPoint(ConstraintViolation):
    """Key or ciphertext point fails the curve / subgroup check"""
    pass


class WeakRandomness(ConstraintViolation):
    """Re-randomization scalar fails its range or threshold check"""
    pass


class BatchSizeViolation(ConstraintViolation):
    """Zero or over-capacity batch"""
    pass


class MalformedPadding(ConstraintViolation):
    """Padding slot is not the canonical sentinel"""
    pass


class IllegalTransition(ConstraintViolation):
    """Declared state transition is not in the allowed table"""
    pass


class DuplicateNullifier(ConstraintViolation):
    """Nullifier already consumed"""
    pass


class InvalidMerkleProof(ConstraintViolation):
    """Leaf is not a member of the claimed root"""
    pass


class MessageChainMismatch(ConstraintViolation):
    """Message order or chain hash does not match the published feed"""
    pass


class StateRootMismatch(ConstraintViolation):
    """Computed root differs from the claimed root"""
    pass


class CoordinatorKeyMismatch(ConstraintViolation):
    """Coordinator private key does not match its public key"""
    pass


class UnsatisfiedConstraint(ConstraintViolation):
    """Any other violated constraint"""
    pass


class ProofGenerationError(ZKError):
    """Proof generation failed"""
    pass


class ProofVerificationError(ZKError):
    """Proof did not verify against its public inputs"""
    pass


# ============================================================================
# CONSTRAINT SYSTEM
# ============================================================================


@dataclass(frozen=True)
class Gate:
    a: int
    b: int
    c: int
    label: str
    error: Type[ConstraintViolation] = UnsatisfiedConstraint

    def holds(self) -> bool:
        return (self.a * self.b - self.c) % PRIME == 0


class ConstraintSystem:
    """Gate recorder plus the gadget library used by every circuit"""

    def __init__(self, name: str):
        self.name = name
        self.public_inputs: "OrderedDict[str, int]" = OrderedDict()
        self.gates: List[Gate] = []
        self._violations: List[Gate] = []

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @property
    def constraint_count(self) -> int:
        return len(self.gates)

    def violations(self) -> List[Gate]:
        return list(self._violations)

    def is_satisfied(self) -> bool:
        return not self._violations

    def first_violation(self) -> Optional[Gate]:
        return self._violations[0] if self._violations else None

    def check_satisfied(self):
        """Raise the error of the first violated gate"""
        gate = self.first_violation()
        if gate is not None:
            raise gate.error(
                f"{self.name}: constraint '{gate.label}' unsatisfied "
                f"({len(self._violations)} violation(s))",
                label=gate.label)

    def transcript_digest(self) -> bytes:
        """SHA-256 over the gate list and public inputs"""
        digest = hashes.Hash(hashes.SHA256())
        digest.update(self.name.encode())
        for name, value in self.public_inputs.items():
            digest.update(name.encode())
            digest.update((value % PRIME).to_bytes(32, 'big'))
        for gate in self.gates:
            digest.update((gate.a % PRIME).to_bytes(32, 'big'))
            digest.update((gate.b % PRIME).to_bytes(32, 'big'))
            digest.update((gate.c % PRIME).to_bytes(32, 'big'))
        return digest.finalize()

    # ------------------------------------------------------------------
    # Signals and primitive constraints
    # ------------------------------------------------------------------

    def public(self, name: str, value: int) -> int:
        """Register a public input; must already be a canonical field element"""
        self.check(babyjub.is_field_element(value),
                   f"public.{name}.canonical", UnsatisfiedConstraint)
        self.public_inputs[name] = value if isinstance(value, int) else 0
        return self.public_inputs[name] % PRIME

    def public_point(self, name: str, point: Point) -> Point:
        return (self.public(f"{name}.x", point[0]),
                self.public(f"{name}.y", point[1]))

    def enforce(self, a: int, b: int, c: int, label: str,
                error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        gate = Gate(a % PRIME, b % PRIME, c % PRIME, label, error)
        self.gates.append(gate)
        if not gate.holds():
            self._violations.append(gate)
            logger.debug(f"{self.name}: violated '{label}'")
            return False
        return True

    def check(self, ok: bool, label: str,
              error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        """Natively evaluated predicate recorded as 1 * 1 == ok"""
        return self.enforce(1 if ok else 0, 1, 1, label, error)

    def assert_equal(self, x: int, y: int, label: str,
                     error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        return self.enforce(x - y, 1, 0, label, error)

    def assert_zero(self, x: int, label: str,
                    error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        return self.enforce(x, 1, 0, label, error)

    def assert_bool(self, x: int, label: str,
                    error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        return self.enforce(x, x - 1, 0, label, error)

    def assert_points_equal(self, p: Point, q: Point, label: str,
                            error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> bool:
        ok_x = self.assert_equal(p[0], q[0], f"{label}.x", error)
        ok_y = self.assert_equal(p[1], q[1], f"{label}.y", error)
        return ok_x and ok_y

    # ------------------------------------------------------------------
    # Arithmetic and boolean gadgets
    # ------------------------------------------------------------------

    def mul(self, a: int, b: int, label: str = "mul") -> int:
        c = a * b % PRIME
        self.enforce(a, b, c, label)
        return c

    def and_all(self, flags: Sequence[int], label: str = "and") -> int:
        acc = 1
        for i, flag in enumerate(flags):
            acc = self.mul(acc, flag, f"{label}[{i}]")
        return acc

    def or_(self, a: int, b: int, label: str = "or") -> int:
        return (a + b - self.mul(a, b, label)) % PRIME

    @staticmethod
    def not_(x: int) -> int:
        return (1 - x) % PRIME

    def mux(self, selector: int, when_false: int, when_true: int, label: str = "mux") -> int:
        """selector ? when_true : when_false"""
        return (when_false + self.mul(selector, when_true - when_false, label)) % PRIME

    def mux_point(self, selector: int, when_false: Point, when_true: Point,
                  label: str = "mux") -> Point:
        return (self.mux(selector, when_false[0], when_true[0], f"{label}.x"),
                self.mux(selector, when_false[1], when_true[1], f"{label}.y"))

    def num2bits(self, value: int, n: int, label: str,
                 error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> List[int]:
        """Little-endian bits of value; unsatisfiable if value >= 2^n"""
        v = value % PRIME
        bits = [(v >> i) & 1 for i in range(n)]
        acc = 0
        for i, bit in enumerate(bits):
            self.enforce(bit, bit - 1, 0, f"{label}.bit[{i}]", error)
            acc += bit << i
        self.enforce(acc, 1, v, f"{label}.recompose", error)
        return bits

    def is_zero(self, x: int, label: str = "is_zero") -> int:
        x %= PRIME
        inv = FIELD.inverse(x) if x else 0
        out = (1 - x * inv) % PRIME
        self.enforce(x, inv, 1 - out, f"{label}.inv")
        self.enforce(x, out, 0, f"{label}.out")
        return out

    def is_equal(self, a: int, b: int, label: str = "is_equal") -> int:
        return self.is_zero(a - b, label)

    def points_equal(self, p: Point, q: Point, label: str = "points_equal") -> int:
        return self.mul(self.is_equal(p[0], q[0], f"{label}.x"),
                        self.is_equal(p[1], q[1], f"{label}.y"), label)

    def less_than(self, a: int, b: int, n: int, label: str,
                  error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> int:
        """1 if a < b; both operands must already be below 2^n"""
        if n + 1 >= FIELD_BITS:
            raise ValueError(f"less_than supports at most {FIELD_BITS - 2} bits")
        bits = self.num2bits(a + (1 << n) - b, n + 1, label, error)
        return 1 - bits[n]

    def fits_in_bits(self, x: int, n: int, label: str) -> int:
        """Non-failing range flag: full decomposition, then high bits zero"""
        bits = self.num2bits(x, FIELD_BITS, label)
        return self.is_zero(sum(bits[n:]), f"{label}.high")

    def is_all_zero(self, values: Sequence[int], label: str = "all_zero") -> int:
        """Running product of zero indicators over every element"""
        acc = 1
        for i, value in enumerate(values):
            indicator = self.is_zero(value, f"{label}[{i}]")
            acc = self.mul(acc, indicator, f"{label}.product[{i}]")
        return acc

    # ------------------------------------------------------------------
    # Natively evaluated gadgets
    # ------------------------------------------------------------------

    def poseidon(self, inputs: Sequence[int], label: str = "poseidon") -> int:
        out = poseidon_hash([v % PRIME for v in inputs])
        self.enforce(out, 1, out, label)
        return out

    def merkle_root(self, leaf_hash: int, index_bits: Sequence[int],
                    siblings: Sequence[int], label: str = "merkle") -> int:
        if len(index_bits) != len(siblings):
            raise ValueError("Merkle path length does not match index bits")
        current = leaf_hash
        for level, (bit, sibling) in enumerate(zip(index_bits, siblings)):
            left = self.mux(bit, current, sibling, f"{label}[{level}].left")
            right = self.mux(bit, sibling, current, f"{label}[{level}].right")
            current = self.poseidon([left, right], f"{label}[{level}].hash")
        return current

    def point_add(self, p: Point, q: Point, label: str = "point_add") -> Point:
        r = babyjub.point_add(p, q)
        self.enforce(r[0], 1, r[0], f"{label}.x")
        self.enforce(r[1], 1, r[1], f"{label}.y")
        return r

    def scalar_mul(self, point: Point, scalar: int, label: str = "scalar_mul") -> Point:
        r = babyjub.scalar_mul(point, scalar % PRIME)
        self.enforce(r[0], 1, r[0], f"{label}.x")
        self.enforce(r[1], 1, r[1], f"{label}.y")
        return r


# ============================================================================
# FIELD VALIDATOR
# ============================================================================


class FieldValidator:
    """
    Range, curve and subgroup checks.

    The static methods are the pure predicates. The instance methods record
    the same checks as constraints on a ConstraintSystem: the enforce_* forms
    make the whole proof unsatisfiable, the *_flag forms return a 0/1 signal
    for data whose failure should only void the enclosing command.
    """

    def __init__(self, cs: ConstraintSystem):
        self.cs = cs

    # ------------------------------------------------------------------
    # Pure predicates
    # ------------------------------------------------------------------

    @staticmethod
    def range_check(value: int, bit_width: int) -> bool:
        return (isinstance(value, int) and 0 <= value < PRIME
                and value < (1 << bit_width))

    @staticmethod
    def point_on_curve(x: int, y: int) -> bool:
        return babyjub.is_on_curve((x, y))

    @staticmethod
    def subgroup_check(x: int, y: int) -> bool:
        return babyjub.in_subgroup((x, y))

    # ------------------------------------------------------------------
    # Constraint forms
    # ------------------------------------------------------------------

    def _curve_residual(self, point: Point, label: str) -> int:
        """a*x^2 + y^2 - 1 - d*x^2*y^2, zero iff the point is on the curve"""
        x, y = point
        xx = self.cs.mul(x, x, f"{label}.xx")
        yy = self.cs.mul(y, y, f"{label}.yy")
        xxyy = self.cs.mul(xx, yy, f"{label}.xxyy")
        return (babyjub.A * xx + yy - 1 - babyjub.D * xxyy) % PRIME

    def enforce_range(self, value: int, bit_width: int, label: str,
                      error: Type[ConstraintViolation] = UnsatisfiedConstraint) -> List[int]:
        self.cs.check(babyjub.is_field_element(value), f"{label}.canonical", error)
        return self.cs.num2bits(value, bit_width, f"{label}.range", error)

    def enforce_greater_than(self, value: int, threshold: int, bit_width: int, label: str,
                             error: Type[ConstraintViolation] = UnsatisfiedConstraint):
        """value > threshold, value already range checked to bit_width"""
        below_or_equal = self.cs.less_than(
            value, threshold + 1, bit_width, f"{label}.threshold", error)
        self.cs.assert_zero(below_or_equal, f"{label}.above_threshold", error)

    def enforce_valid_point(self, point: Point, label: str,
                            error: Type[ConstraintViolation] = InvalidPoint,
                            allow_identity: bool = False) -> bool:
        x, y = point
        canonical = babyjub.is_field_element(x) and babyjub.is_field_element(y)
        ok = self.cs.check(canonical, f"{label}.canonical", error)
        if not canonical:
            return False

        ok &= self.cs.assert_zero(self._curve_residual(point, label),
                                  f"{label}.on_curve", error)
        if not allow_identity:
            is_identity = self.cs.points_equal(point, IDENTITY, f"{label}.identity")
            ok &= self.cs.assert_zero(is_identity, f"{label}.not_identity", error)

        if not ok:
            # Off-curve inputs never reach the subgroup multiplication
            self.cs.check(False, f"{label}.subgroup", error)
            return False

        torsion = self.cs.scalar_mul(point, SUBGROUP_ORDER, f"{label}.l_times_p")
        ok &= self.cs.assert_points_equal(torsion, IDENTITY, f"{label}.subgroup", error)
        return ok

    def point_flag(self, point: Point, label: str, allow_identity: bool = False) -> int:
        """1 iff the point is a usable subgroup element; never fails the proof"""
        point = (point[0] % PRIME, point[1] % PRIME)
        on_curve = self.cs.is_zero(self._curve_residual(point, label), f"{label}.on_curve")
        safe = self.cs.mux_point(on_curve, BASE8, point, f"{label}.safe")
        torsion = self.cs.scalar_mul(safe, SUBGROUP_ORDER, f"{label}.l_times_p")
        in_subgroup = self.cs.points_equal(torsion, IDENTITY, f"{label}.subgroup")
        flag = self.cs.mul(on_curve, in_subgroup, f"{label}.valid")
        if not allow_identity:
            not_identity = self.cs.not_(
                self.cs.points_equal(point, IDENTITY, f"{label}.identity"))
            flag = self.cs.mul(flag, not_identity, f"{label}.not_identity")
        return flag

    def safe_point(self, point: Point, label: str,
                   allow_identity: bool = False) -> Tuple[int, Point]:
        """(flag, point or BASE8) so invalid points never reach curve arithmetic"""
        flag = self.point_flag(point, label, allow_identity=allow_identity)
        return flag, self.cs.mux_point(flag, BASE8, point, f"{label}.substitute")
