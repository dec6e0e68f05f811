"""
Prime field arithmetic over the BN254 scalar field.

Every circuit signal, hash input and curve coordinate in the system lives in
this field. Element validation and inversion go through galois so that the
field object is shared with anything else that wants vectorised arithmetic.
"""

import logging
from typing import Iterable, List

import galois

logger = logging.getLogger(__name__)

# BN254 scalar field prime
PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# Multiplicative generator of F_p*; passing it skips galois factoring p - 1
PRIMITIVE_ELEMENT = 5

FIELD_BITS = PRIME.bit_length()


class FieldArithmetic:
    """Finite field arithmetic for circuit signals"""

    def __init__(self, field_size: int = PRIME):
        self.field_size = field_size
        self.field = galois.GF(
            field_size, primitive_element=PRIMITIVE_ELEMENT, verify=False)
        self.zero = self.field(0)
        self.one = self.field(1)

        logger.debug(f"Initialized field GF({field_size})")

    def validate_element(self, element: int) -> bool:
        """Canonical representative check"""
        return isinstance(element, int) and 0 <= element < self.field_size

    def reduce(self, value: int) -> int:
        return value % self.field_size

    def inverse(self, value: int) -> int:
        if value % self.field_size == 0:
            raise ZeroDivisionError("Zero has no inverse in the field")
        return int(self.field(value % self.field_size) ** -1)

    def batch_inverse(self, values: Iterable[int]) -> List[int]:
        """Montgomery batch inversion, one field inversion for the lot"""
        values = [v % self.field_size for v in values]
        if not values:
            return []

        prefix = [1] * len(values)
        acc = 1
        for i, v in enumerate(values):
            if v == 0:
                raise ZeroDivisionError(f"Zero at position {i} has no inverse")
            prefix[i] = acc
            acc = acc * v % self.field_size

        inv = self.inverse(acc)
        result = [0] * len(values)
        for i in range(len(values) - 1, -1, -1):
            result[i] = inv * prefix[i] % self.field_size
            inv = inv * values[i] % self.field_size
        return result


# Shared instance, building a galois class for a 254-bit prime is not free
FIELD = FieldArithmetic()
