"""
Commands, encrypted messages and batches.

A voter signs a plaintext Command, encrypts it to the coordinator under an
ephemeral ECDH key and publishes the resulting Message. Message elements are
[msg_type, enc_pub_key.x, enc_pub_key.y, ciphertext[10], sequence_index].
"""

import logging
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from primitives import babyjub
from primitives.babyjub import IDENTITY, Keypair, Point, Signature
from primitives.field import FIELD, PRIME
from primitives.poseidon import poseidon_decrypt, poseidon_encrypt, poseidon_hash

logger = logging.getLogger(__name__)

COMMAND_LENGTH = 10
PAYLOAD_LENGTH = 2 + COMMAND_LENGTH
MESSAGE_LENGTH = 2 + PAYLOAD_LENGTH

# Chain value before the first message of a feed
EMPTY_CHAIN_HASH = 0


class MessageType(IntEnum):
    PADDING = 0
    VOTE = 1
    KEY_CHANGE = 2
    DEACTIVATE = 3


@dataclass(frozen=True)
class Command:
    """Plaintext voter instruction; the signature covers the type and fields 0..6"""
    state_index: int
    new_public_key: Point = IDENTITY
    vote_option_index: int = 0
    new_vote_weight: int = 0
    nonce: int = 0
    salt: int = 0
    signature: Optional[Signature] = None

    def signed_fields(self) -> List[int]:
        return [
            self.state_index,
            self.new_public_key[0], self.new_public_key[1],
            self.vote_option_index,
            self.new_vote_weight,
            self.nonce,
            self.salt,
        ]

    def digest(self, msg_type: int) -> int:
        return poseidon_hash([int(msg_type)] + [v % PRIME for v in self.signed_fields()])

    def sign(self, private_key: int, msg_type: int) -> 'Command':
        signature = babyjub.sign(private_key, self.digest(msg_type))
        return replace(self, signature=signature)

    def verify(self, public_key: Point, msg_type: int) -> bool:
        if self.signature is None:
            return False
        return babyjub.verify_signature(public_key, self.digest(msg_type), self.signature)

    def to_fields(self) -> List[int]:
        r8x, r8y, s = self.signature.as_fields() if self.signature else (0, 0, 0)
        return self.signed_fields() + [r8x, r8y, s]

    @classmethod
    def from_fields(cls, fields: Sequence[int]) -> 'Command':
        if len(fields) != COMMAND_LENGTH:
            raise ValueError(f"Command needs {COMMAND_LENGTH} fields, got {len(fields)}")
        f = [v % PRIME for v in fields]
        return cls(
            state_index=f[0],
            new_public_key=(f[1], f[2]),
            vote_option_index=f[3],
            new_vote_weight=f[4],
            nonce=f[5],
            salt=f[6],
            signature=Signature(r8=(f[7], f[8]), s=f[9]),
        )


@dataclass(frozen=True)
class Message:
    msg_type: int
    payload: Tuple[int, ...]
    sequence_index: int = 0

    def __post_init__(self):
        if len(self.payload) != PAYLOAD_LENGTH:
            raise ValueError(f"Message payload needs {PAYLOAD_LENGTH} elements")

    @classmethod
    def padding(cls) -> 'Message':
        return cls(int(MessageType.PADDING), (0,) * PAYLOAD_LENGTH, 0)

    @property
    def enc_public_key(self) -> Point:
        return self.payload[0], self.payload[1]

    @property
    def ciphertext(self) -> List[int]:
        return list(self.payload[2:])

    def elements(self) -> List[int]:
        return [self.msg_type] + list(self.payload) + [self.sequence_index]

    def is_field_valid(self) -> bool:
        return all(FIELD.validate_element(v) for v in self.elements())

    def is_padding(self) -> bool:
        return all(v == 0 for v in self.elements())

    def hash(self) -> int:
        return poseidon_hash(self.elements())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'msg_type': self.msg_type,
            'payload': [str(v) for v in self.payload],
            'sequence_index': self.sequence_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(int(data['msg_type']), tuple(int(v) for v in data['payload']),
                   int(data['sequence_index']))


def chain_hash(previous: int, message: Message) -> int:
    return poseidon_hash([previous, message.hash()])


def encrypt_command(command: Command, msg_type: MessageType, coord_pub_key: Point,
                    sequence_index: int, ephemeral: Optional[Keypair] = None) -> Message:
    ephemeral = ephemeral or Keypair.generate()
    shared_key = ephemeral.ecdh(coord_pub_key)
    ciphertext = poseidon_encrypt(command.to_fields(), shared_key)
    payload = (ephemeral.public_key[0], ephemeral.public_key[1], *ciphertext)
    return Message(int(msg_type), payload, sequence_index)


def decrypt_message(message: Message, coord_priv_key: int) -> Command:
    """Raises CurveError when the ephemeral key is not a valid point"""
    shared_key = babyjub.ecdh_shared_key(coord_priv_key, message.enc_public_key)
    return Command.from_fields(poseidon_decrypt(message.ciphertext, shared_key))


@dataclass
class Batch:
    """Ordered real messages plus the fixed capacity they are padded to"""
    messages: List[Message]
    capacity: int
    start_sequence: int = 0
    input_chain_hash: int = EMPTY_CHAIN_HASH
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def batch_size(self) -> int:
        return len(self.messages)

    def padded(self) -> List[Message]:
        if self.batch_size > self.capacity:
            raise ValueError(
                f"Batch of {self.batch_size} does not fit capacity {self.capacity}")
        return list(self.messages) + [Message.padding()] * (self.capacity - self.batch_size)

    def output_chain_hash(self) -> int:
        chain = self.input_chain_hash
        for message in self.messages:
            chain = chain_hash(chain, message)
        return chain
