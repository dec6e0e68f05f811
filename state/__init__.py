"""Voter state: leaves, Merkle tree, messages and nullifiers."""

from .state_tree import (
    StateLeaf,
    StateTree,
    BLANK_LEAF_INDEX,
    EMPTY_LEAF_HASH,
)
from .messages import (
    MessageType,
    Command,
    Message,
    Batch,
    chain_hash,
    encrypt_command,
    decrypt_message,
    EMPTY_CHAIN_HASH,
    COMMAND_LENGTH,
    PAYLOAD_LENGTH,
    MESSAGE_LENGTH,
)
from .nullifiers import (
    NullifierSet,
    NullifierAction,
    derive_nullifier,
    registration_nullifier,
    deactivation_nullifier,
    NULLIFIER_DOMAIN,
)

__all__ = [
    'StateLeaf',
    'StateTree',
    'BLANK_LEAF_INDEX',
    'EMPTY_LEAF_HASH',

    'MessageType',
    'Command',
    'Message',
    'Batch',
    'chain_hash',
    'encrypt_command',
    'decrypt_message',
    'EMPTY_CHAIN_HASH',
    'COMMAND_LENGTH',
    'PAYLOAD_LENGTH',
    'MESSAGE_LENGTH',

    'NullifierSet',
    'NullifierAction',
    'derive_nullifier',
    'registration_nullifier',
    'deactivation_nullifier',
    'NULLIFIER_DOMAIN',
]
