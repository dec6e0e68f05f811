"""
Commands, encrypted messages, padding sentinels and batch chain hashes.
"""

import pytest

from conftest import OFF_CURVE_POINT
from primitives.babyjub import CurveError, Keypair
from state.messages import (
    EMPTY_CHAIN_HASH,
    MESSAGE_LENGTH,
    Batch,
    Command,
    Message,
    MessageType,
    chain_hash,
    decrypt_message,
    encrypt_command,
)


@pytest.fixture
def voter():
    return Keypair.generate()


def vote_command(voter, nonce=1, weight=3):
    return Command(state_index=1, vote_option_index=2, new_vote_weight=weight,
                   nonce=nonce, salt=99).sign(voter.private_key, MessageType.VOTE)


class TestCommand:

    def test_signature_binds_message_type(self, voter):
        command = vote_command(voter)
        assert command.verify(voter.public_key, MessageType.VOTE)
        assert not command.verify(voter.public_key, MessageType.KEY_CHANGE)
        assert not command.verify(Keypair.generate().public_key, MessageType.VOTE)

    def test_unsigned_command_does_not_verify(self, voter):
        assert not Command(state_index=1).verify(voter.public_key, MessageType.VOTE)

    def test_encrypt_decrypt(self, voter, coordinator_keypair):
        command = vote_command(voter)
        message = encrypt_command(command, MessageType.VOTE, coordinator_keypair.public_key, 7)
        assert message.sequence_index == 7
        assert len(message.elements()) == MESSAGE_LENGTH
        assert message.is_field_valid()

        decrypted = decrypt_message(message, coordinator_keypair.private_key)
        assert decrypted == command
        assert decrypted.verify(voter.public_key, MessageType.VOTE)

    def test_wrong_coordinator_key_yields_garbage(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 0)
        other = Keypair.generate()
        assert decrypt_message(message, other.private_key) != vote_command(voter)

    def test_invalid_ephemeral_key(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 0)
        forged = Message(message.msg_type, OFF_CURVE_POINT + message.payload[2:], 0)
        with pytest.raises(CurveError):
            decrypt_message(forged, coordinator_keypair.private_key)


class TestMessages:

    def test_padding_sentinel(self):
        padding = Message.padding()
        assert padding.is_padding()
        assert all(v == 0 for v in padding.elements())

    def test_real_message_is_not_padding(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 0)
        assert not message.is_padding()

    def test_dict_form(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 3)
        assert Message.from_dict(message.to_dict()) == message


class TestBatch:

    def test_padded_to_capacity(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 0)
        batch = Batch([message], capacity=4)
        slots = batch.padded()
        assert batch.batch_size == 1
        assert len(slots) == 4
        assert slots[0] == message
        assert all(slot.is_padding() for slot in slots[1:])

    def test_overfull_batch(self):
        with pytest.raises(ValueError):
            Batch([Message.padding()] * 5, capacity=4).padded()

    def test_chain_hash_is_order_sensitive(self, voter, coordinator_keypair):
        first = encrypt_command(vote_command(voter, nonce=1), MessageType.VOTE,
                                coordinator_keypair.public_key, 0)
        second = encrypt_command(vote_command(voter, nonce=2), MessageType.VOTE,
                                 coordinator_keypair.public_key, 1)
        forward = Batch([first, second], capacity=4).output_chain_hash()
        backward = Batch([second, first], capacity=4).output_chain_hash()
        assert forward != backward
        assert forward == chain_hash(chain_hash(EMPTY_CHAIN_HASH, first), second)

    def test_padding_does_not_extend_the_chain(self, voter, coordinator_keypair):
        message = encrypt_command(vote_command(voter), MessageType.VOTE,
                                  coordinator_keypair.public_key, 0)
        assert (Batch([message], capacity=4).output_chain_hash()
                == Batch([message], capacity=32).output_chain_hash())
