"""
Range, curve and subgroup checks, both as pure predicates and as constraints.
"""

import pytest

from conftest import MIXED_ORDER_POINT, OFF_CURVE_POINT, TORSION_POINT
from primitives.babyjub import BASE8, IDENTITY, Keypair, in_subgroup, is_valid_public_key
from primitives.field import PRIME
from zk import ConstraintSystem, FieldValidator, InvalidPoint, WeakRandomness


def make_validator():
    cs = ConstraintSystem("validator_test")
    return cs, FieldValidator(cs)


class TestPredicates:

    def test_range_check(self):
        assert FieldValidator.range_check(0, 8)
        assert FieldValidator.range_check(255, 8)
        assert not FieldValidator.range_check(256, 8)
        assert not FieldValidator.range_check(-1, 8)
        assert not FieldValidator.range_check(PRIME, 254)

    def test_point_on_curve(self):
        assert FieldValidator.point_on_curve(*BASE8)
        assert FieldValidator.point_on_curve(*TORSION_POINT)
        assert not FieldValidator.point_on_curve(*OFF_CURVE_POINT)

    def test_subgroup_check_rejects_cofactor_points(self):
        assert FieldValidator.subgroup_check(*BASE8)
        assert not FieldValidator.subgroup_check(*TORSION_POINT)
        assert not FieldValidator.subgroup_check(*MIXED_ORDER_POINT)
        assert not FieldValidator.subgroup_check(*OFF_CURVE_POINT)

    def test_valid_public_key(self):
        assert is_valid_public_key(Keypair.generate().public_key)
        assert not is_valid_public_key(IDENTITY)
        assert in_subgroup(IDENTITY)


class TestConstraintForms:

    def test_enforce_range_accepts_in_range(self):
        cs, validator = make_validator()
        bits = validator.enforce_range(0b1011, 4, "value")
        assert bits == [1, 1, 0, 1]
        assert cs.is_satisfied()

    def test_enforce_range_rejects_overflow(self):
        cs, validator = make_validator()
        validator.enforce_range(16, 4, "value", WeakRandomness)
        with pytest.raises(WeakRandomness):
            cs.check_satisfied()

    def test_enforce_range_rejects_non_canonical(self):
        cs, validator = make_validator()
        validator.enforce_range(PRIME + 1, 4, "value", WeakRandomness)
        assert not cs.is_satisfied()

    def test_enforce_greater_than(self):
        cs, validator = make_validator()
        validator.enforce_greater_than(101, 100, 8, "value")
        assert cs.is_satisfied()

        cs, validator = make_validator()
        validator.enforce_greater_than(100, 100, 8, "value", WeakRandomness)
        with pytest.raises(WeakRandomness):
            cs.check_satisfied()

    def test_valid_point_satisfies(self):
        cs, validator = make_validator()
        assert validator.enforce_valid_point(Keypair.generate().public_key, "pk")
        assert cs.is_satisfied()

    @pytest.mark.parametrize("point", [
        IDENTITY, TORSION_POINT, MIXED_ORDER_POINT, OFF_CURVE_POINT, (PRIME, 1),
    ])
    def test_invalid_points_raise_invalid_point(self, point):
        cs, validator = make_validator()
        assert not validator.enforce_valid_point(point, "pk")
        with pytest.raises(InvalidPoint) as exc_info:
            cs.check_satisfied()
        assert exc_info.value.label.startswith("pk.")

    def test_identity_allowed_when_requested(self):
        cs, validator = make_validator()
        assert validator.enforce_valid_point(IDENTITY, "c1", allow_identity=True)
        assert cs.is_satisfied()

    def test_point_flag_never_fails_the_proof(self):
        cs, validator = make_validator()
        assert validator.point_flag(BASE8, "good") == 1
        assert validator.point_flag(OFF_CURVE_POINT, "off_curve") == 0
        assert validator.point_flag(MIXED_ORDER_POINT, "mixed") == 0
        assert validator.point_flag(IDENTITY, "identity") == 0
        assert validator.point_flag(IDENTITY, "identity_ok", allow_identity=True) == 1
        assert cs.is_satisfied()

    def test_safe_point_substitutes_base8(self):
        cs, validator = make_validator()
        flag, point = validator.safe_point(OFF_CURVE_POINT, "enc_key")
        assert flag == 0
        assert point == BASE8

        key = Keypair.generate().public_key
        flag, point = validator.safe_point(key, "enc_key2")
        assert flag == 1
        assert point == key
        assert cs.is_satisfied()
