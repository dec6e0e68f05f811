"""
Baby Jubjub curve operations, keys, EdDSA-Poseidon signatures and ElGamal.

Twisted Edwards curve a*x^2 + y^2 = 1 + d*x^2*y^2 over the BN254 scalar field.
The full group has order 8*l; everything protocol-facing (keys, ciphertexts,
signature nonces) must sit in the prime-order subgroup generated by BASE8.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Tuple

from cryptography.hazmat.primitives import hashes

from .field import FIELD, PRIME
from .poseidon import poseidon_hash

logger = logging.getLogger(__name__)

Point = Tuple[int, int]
Credential = Tuple[Point, Point]

# ============================================================================
# CURVE PARAMETERS
# ============================================================================

A = 168700
D = 168696

SUBGROUP_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041
COFACTOR = 8
SCALAR_BITS = SUBGROUP_ORDER.bit_length()  # 251

IDENTITY: Point = (0, 1)

# Generator of the prime-order subgroup (circomlib Base8)
BASE8: Point = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)

EMPTY_CREDENTIAL: Credential = (IDENTITY, IDENTITY)


class CurveError(ValueError):
    """Point arithmetic on something that is not a usable curve point"""
    pass


# ============================================================================
# POINT ARITHMETIC
# ============================================================================


def is_field_element(value) -> bool:
    return isinstance(value, int) and 0 <= value < PRIME


def is_on_curve(point: Point) -> bool:
    x, y = point
    if not (is_field_element(x) and is_field_element(y)):
        return False
    xx = x * x % PRIME
    yy = y * y % PRIME
    return (A * xx + yy) % PRIME == (1 + D * xx * yy) % PRIME


def _proj_add(p: Tuple[int, int, int], q: Tuple[int, int, int]) -> Tuple[int, int, int]:
    """Projective twisted Edwards addition (complete for on-curve inputs)"""
    x1, y1, z1 = p
    x2, y2, z2 = q
    a = z1 * z2 % PRIME
    b = a * a % PRIME
    c = x1 * x2 % PRIME
    d = y1 * y2 % PRIME
    e = D * c % PRIME * d % PRIME
    f = (b - e) % PRIME
    g = (b + e) % PRIME
    x3 = a * f % PRIME * (((x1 + y1) * (x2 + y2) - c - d) % PRIME) % PRIME
    y3 = a * g % PRIME * ((d - A * c) % PRIME) % PRIME
    z3 = f * g % PRIME
    return x3, y3, z3


def _to_affine(p: Tuple[int, int, int]) -> Point:
    x, y, z = p
    if z % PRIME == 0:
        raise CurveError("Degenerate projective point (Z = 0)")
    z_inv = FIELD.inverse(z)
    return x * z_inv % PRIME, y * z_inv % PRIME


def point_add(p1: Point, p2: Point) -> Point:
    return _to_affine(_proj_add((p1[0], p1[1], 1), (p2[0], p2[1], 1)))


def point_neg(point: Point) -> Point:
    return (-point[0]) % PRIME, point[1]


def point_sub(p1: Point, p2: Point) -> Point:
    return point_add(p1, point_neg(p2))


def scalar_mul(point: Point, scalar: int) -> Point:
    """Left-to-right double-and-add; the scalar is NOT reduced mod l"""
    if scalar < 0:
        raise CurveError("Negative scalar")

    result = (0, 1, 1)
    base = (point[0], point[1], 1)
    for bit in bin(scalar)[2:] if scalar else "":
        result = _proj_add(result, result)
        if bit == '1':
            result = _proj_add(result, base)
    return _to_affine(result)


def in_subgroup(point: Point) -> bool:
    """l * P == O, only meaningful for on-curve points"""
    if not is_on_curve(point):
        return False
    return scalar_mul(point, SUBGROUP_ORDER) == IDENTITY


def is_valid_public_key(point: Point) -> bool:
    """On curve, not the identity, inside the prime-order subgroup"""
    return (
        is_on_curve(point)
        and point != IDENTITY
        and in_subgroup(point)
    )


# ============================================================================
# KEYS AND SIGNATURES
# ============================================================================


def random_scalar() -> int:
    """Uniform non-zero scalar below the subgroup order"""
    return secrets.randbelow(SUBGROUP_ORDER - 1) + 1


@dataclass(frozen=True)
class Keypair:
    """Baby Jubjub keypair, public key = private_key * BASE8"""
    private_key: int
    public_key: Point

    @classmethod
    def generate(cls) -> 'Keypair':
        return cls.from_private_key(random_scalar())

    @classmethod
    def from_private_key(cls, private_key: int) -> 'Keypair':
        if not 0 < private_key < SUBGROUP_ORDER:
            raise ValueError("Private key must be in [1, l)")
        return cls(private_key, scalar_mul(BASE8, private_key))

    def ecdh(self, other_public_key: Point) -> Point:
        return ecdh_shared_key(self.private_key, other_public_key)


@dataclass(frozen=True)
class Signature:
    """EdDSA-Poseidon signature (R8, S)"""
    r8: Point
    s: int

    def as_fields(self) -> Tuple[int, int, int]:
        return self.r8[0], self.r8[1], self.s


def _signing_nonce(private_key: int, message: int) -> int:
    """Deterministic nonce, SHA-512(sk || m) reduced mod l"""
    digest = hashes.Hash(hashes.SHA512())
    digest.update(private_key.to_bytes(32, 'big'))
    digest.update(message.to_bytes(32, 'big'))
    r = int.from_bytes(digest.finalize(), 'big') % SUBGROUP_ORDER
    return r or 1


def signature_challenge(r8: Point, public_key: Point, message: int) -> int:
    return poseidon_hash([r8[0], r8[1], public_key[0], public_key[1], message])


def sign(private_key: int, message: int) -> Signature:
    public_key = scalar_mul(BASE8, private_key)
    r = _signing_nonce(private_key, message)
    r8 = scalar_mul(BASE8, r)
    h = signature_challenge(r8, public_key, message)
    s = (r + h * private_key) % SUBGROUP_ORDER
    return Signature(r8=r8, s=s)


def verify_signature(public_key: Point, message: int, signature: Signature) -> bool:
    """S * B8 == R8 + h * A with R8 in the subgroup and S < l"""
    if not is_valid_public_key(public_key):
        return False
    if not in_subgroup(signature.r8):
        return False
    if not 0 <= signature.s < SUBGROUP_ORDER:
        return False

    h = signature_challenge(signature.r8, public_key, message)
    left = scalar_mul(BASE8, signature.s)
    right = point_add(signature.r8, scalar_mul(public_key, h))
    return left == right


# ============================================================================
# ECDH AND ELGAMAL
# ============================================================================


def ecdh_shared_key(private_key: int, public_key: Point) -> Point:
    if not is_valid_public_key(public_key):
        raise CurveError("ECDH with an invalid public key")
    return scalar_mul(public_key, private_key)


def elgamal_encrypt(public_key: Point, message: Point, randomness: int) -> Credential:
    """(r * B8, M + r * PK)"""
    c1 = scalar_mul(BASE8, randomness)
    c2 = point_add(message, scalar_mul(public_key, randomness))
    return c1, c2


def elgamal_decrypt(private_key: int, credential: Credential) -> Point:
    c1, c2 = credential
    return point_sub(c2, scalar_mul(c1, private_key))


def elgamal_rerandomize(credential: Credential, public_key: Point, randomness: int) -> Credential:
    """Same plaintext, fresh randomness: (c1 + z * B8, c2 + z * PK)"""
    c1, c2 = credential
    return (
        point_add(c1, scalar_mul(BASE8, randomness)),
        point_add(c2, scalar_mul(public_key, randomness)),
    )


def credential_status(private_key: int, credential: Credential) -> int:
    """0 when the credential encrypts the identity, 1 when it encrypts BASE8"""
    plaintext = elgamal_decrypt(private_key, credential)
    if plaintext == IDENTITY:
        return 0
    if plaintext == BASE8:
        return 1
    raise CurveError("Credential does not encrypt a status point")
