"""Field, hash and curve primitives shared by the circuits and the services."""

from .field import FieldArithmetic, FIELD, PRIME
from .poseidon import (
    Poseidon,
    poseidon_hash,
    poseidon_encrypt,
    poseidon_decrypt,
)
from .babyjub import (
    # Types and constants
    Point,
    Credential,
    BASE8,
    IDENTITY,
    EMPTY_CREDENTIAL,
    SUBGROUP_ORDER,
    SCALAR_BITS,

    # Keys and signatures
    Keypair,
    Signature,
    sign,
    verify_signature,

    # Curve arithmetic
    is_on_curve,
    in_subgroup,
    is_valid_public_key,
    point_add,
    point_neg,
    scalar_mul,
    random_scalar,

    # ElGamal
    elgamal_encrypt,
    elgamal_decrypt,
    elgamal_rerandomize,
    credential_status,
    ecdh_shared_key,

    CurveError,
)

__all__ = [
    'FieldArithmetic',
    'FIELD',
    'PRIME',

    'Poseidon',
    'poseidon_hash',
    'poseidon_encrypt',
    'poseidon_decrypt',

    'Point',
    'Credential',
    'BASE8',
    'IDENTITY',
    'EMPTY_CREDENTIAL',
    'SUBGROUP_ORDER',
    'SCALAR_BITS',

    'Keypair',
    'Signature',
    'sign',
    'verify_signature',

    'is_on_curve',
    'in_subgroup',
    'is_valid_public_key',
    'point_add',
    'point_neg',
    'scalar_mul',
    'random_scalar',

    'elgamal_encrypt',
    'elgamal_decrypt',
    'elgamal_rerandomize',
    'credential_status',
    'ecdh_shared_key',

    'CurveError',
]
