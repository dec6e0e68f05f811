"""
Poseidon hash over the BN254 scalar field.

Width t=3 permutation with x^5 S-box, 8 full and 57 partial rounds. Round
constants are nothing-up-my-sleeve values (SHA-256 in counter mode over a fixed
seed, reduced into the field) and the MDS matrix is a Cauchy matrix, so every
constant can be re-derived from this file alone.
"""

import logging
from functools import lru_cache
from typing import List, Sequence, Tuple

from cryptography.hazmat.primitives import hashes

from .field import FIELD, PRIME

logger = logging.getLogger(__name__)

# ============================================================================
# PARAMETERS AND CONSTANTS
# ============================================================================

WIDTH = 3
RATE = WIDTH - 1
FULL_ROUNDS = 8
PARTIAL_ROUNDS = 57
ALPHA = 5

CONSTANTS_SEED = b"anon-maci/poseidon/bn254/t3"


def _derive_round_constants(seed: bytes, count: int) -> List[int]:
    """SHA-256(seed || counter) reduced mod p, one constant per counter"""
    constants = []
    counter = 0
    while len(constants) < count:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(seed + counter.to_bytes(4, 'big'))
        value = int.from_bytes(digest.finalize(), 'big')
        counter += 1
        # Rejection sampling keeps the constants uniform in the field
        if value < PRIME:
            constants.append(value)
    return constants


def _derive_mds_matrix(width: int) -> List[List[int]]:
    """Cauchy matrix M[i][j] = 1 / (x_i + y_j), x_i = i, y_j = width + j"""
    xs = list(range(width))
    ys = list(range(width, 2 * width))
    denominators = [x + y for x in xs for y in ys]
    inverses = FIELD.batch_inverse(denominators)
    return [inverses[i * width:(i + 1) * width] for i in range(width)]


class Poseidon:
    """Poseidon permutation and sponge"""

    PRIME = PRIME
    WIDTH = WIDTH
    FULL_ROUNDS = FULL_ROUNDS
    PARTIAL_ROUNDS = PARTIAL_ROUNDS

    ROUND_CONSTANTS = _derive_round_constants(
        CONSTANTS_SEED, (FULL_ROUNDS + PARTIAL_ROUNDS) * WIDTH)
    MDS_MATRIX = _derive_mds_matrix(WIDTH)

    @staticmethod
    def ark(state: List[int], constant_idx: int) -> List[int]:
        """Add round constants"""
        rc = Poseidon.ROUND_CONSTANTS
        return [(state[i] + rc[constant_idx + i]) % PRIME for i in range(WIDTH)]

    @staticmethod
    def sbox(state: List[int], full_round: bool) -> List[int]:
        """Apply S-box (x^5 mod p)"""
        if full_round:
            return [pow(x, ALPHA, PRIME) for x in state]
        return [pow(state[0], ALPHA, PRIME)] + state[1:]

    @staticmethod
    def mix(state: List[int]) -> List[int]:
        """Apply MDS matrix multiplication"""
        mds = Poseidon.MDS_MATRIX
        return [
            sum(mds[i][j] * state[j] for j in range(WIDTH)) % PRIME
            for i in range(WIDTH)
        ]

    @staticmethod
    def permute(state: List[int]) -> List[int]:
        if len(state) != WIDTH:
            raise ValueError(f"Poseidon state must have {WIDTH} elements")

        state = [x % PRIME for x in state]
        constant_idx = 0
        half_full = FULL_ROUNDS // 2

        for _ in range(half_full):
            state = Poseidon.ark(state, constant_idx)
            constant_idx += WIDTH
            state = Poseidon.mix(Poseidon.sbox(state, True))

        for _ in range(PARTIAL_ROUNDS):
            state = Poseidon.ark(state, constant_idx)
            constant_idx += WIDTH
            state = Poseidon.mix(Poseidon.sbox(state, False))

        for _ in range(half_full):
            state = Poseidon.ark(state, constant_idx)
            constant_idx += WIDTH
            state = Poseidon.mix(Poseidon.sbox(state, True))

        return state

    @staticmethod
    def hash(inputs: Sequence[int]) -> int:
        """
        Sponge over a fixed-length input. The capacity element is seeded with
        the input length so that [a] and [a, 0] never collide.
        """
        if len(inputs) == 0:
            raise ValueError("Poseidon expects at least one input")

        for value in inputs:
            if not isinstance(value, int) or value < 0 or value >= PRIME:
                raise ValueError(f"Poseidon input {value!r} is not a field element")

        state = [len(inputs), 0, 0]
        for i in range(0, len(inputs), RATE):
            chunk = list(inputs[i:i + RATE])
            for j, value in enumerate(chunk):
                state[1 + j] = (state[1 + j] + value) % PRIME
            state = Poseidon.permute(state)

        return state[1]


poseidon_hash = Poseidon.hash


@lru_cache(maxsize=4096)
def _keystream_seed(key_x: int, key_y: int, nonce: int) -> int:
    return poseidon_hash([key_x, key_y, nonce])


def poseidon_keystream(shared_key: Tuple[int, int], length: int, nonce: int = 0) -> List[int]:
    """Keystream of field elements derived from an ECDH shared point"""
    seed = _keystream_seed(shared_key[0], shared_key[1], nonce)
    return [poseidon_hash([seed, i]) for i in range(length)]


def poseidon_encrypt(plaintext: Sequence[int], shared_key: Tuple[int, int], nonce: int = 0) -> List[int]:
    """Additive stream encryption of field elements under a shared key"""
    stream = poseidon_keystream(shared_key, len(plaintext), nonce)
    return [(m + k) % PRIME for m, k in zip(plaintext, stream)]


def poseidon_decrypt(ciphertext: Sequence[int], shared_key: Tuple[int, int], nonce: int = 0) -> List[int]:
    stream = poseidon_keystream(shared_key, len(ciphertext), nonce)
    return [(c - k) % PRIME for c, k in zip(ciphertext, stream)]
