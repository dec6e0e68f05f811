"""
Zero-Knowledge constraint layer for Anonymous MACI
Constraint system, gadgets, circuits and proof backends
"""

from .constraints import (
    # Core classes
    ConstraintSystem,
    FieldValidator,
    Gate,

    # Exceptions
    ZKError,
    ConstraintViolation,
    InvalidPoint,
    WeakRandomness,
    BatchSizeViolation,
    MalformedPadding,
    IllegalTransition,
    DuplicateNullifier,
    InvalidMerkleProof,
    MessageChainMismatch,
    StateRootMismatch,
    CoordinatorKeyMismatch,
    UnsatisfiedConstraint,
    ProofGenerationError,
    ProofVerificationError,
)
from .backend import (
    ProofType,
    ProofArtifact,
    TransparentProofBackend,
)

# Circuits live in zk.circuits; they depend on the state package, which in
# turn imports the error classes above.

__version__ = "1.0.0"

__all__ = [
    # Classes
    'ConstraintSystem',
    'FieldValidator',
    'Gate',
    'ProofType',
    'ProofArtifact',
    'TransparentProofBackend',

    # Exceptions
    'ZKError',
    'ConstraintViolation',
    'InvalidPoint',
    'WeakRandomness',
    'BatchSizeViolation',
    'MalformedPadding',
    'IllegalTransition',
    'DuplicateNullifier',
    'InvalidMerkleProof',
    'MessageChainMismatch',
    'StateRootMismatch',
    'CoordinatorKeyMismatch',
    'UnsatisfiedConstraint',
    'ProofGenerationError',
    'ProofVerificationError',
]
