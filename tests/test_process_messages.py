"""
processMessages: vote and key-change batches end to end, plus tampered statements.
"""

import asyncio
from dataclasses import replace

import pytest

from conftest import IDENTITY_POINT, OFF_CURVE_POINT, sealed_under_public_key
from coordinator import BatchStatus
from primitives.babyjub import Keypair
from state.messages import Batch, Command, Message, MessageType, encrypt_command
from zk import (
    BatchSizeViolation,
    CoordinatorKeyMismatch,
    MalformedPadding,
    MessageChainMismatch,
    StateRootMismatch,
)


def sealed(system, signer, state_index, weight=3, nonce=1, option=1,
           msg_type=MessageType.VOTE, signed_as=None):
    command = Command(state_index=state_index, vote_option_index=option,
                      new_vote_weight=weight, nonce=nonce, salt=7)
    command = command.sign(signer.private_key, signed_as or msg_type)
    return encrypt_command(command, msg_type, system.coordinator.public_key, 0)


async def registered(system, count=1):
    await system.initialize()
    return [await system.register_voter(f"voter_{i}") for i in range(count)]


def under_public_key(system, voter, enc_key, msg_type=MessageType.VOTE):
    """Validly signed vote whose ephemeral key the circuit replaces with BASE8"""
    command = Command(state_index=voter.state_index, vote_option_index=1, new_vote_weight=3,
                      nonce=1, salt=7).sign(voter.keypair.private_key, msg_type)
    return sealed_under_public_key(command, msg_type, system.coordinator.public_key, enc_key)


def prepared_vote_batch(system):
    """One registered voter, one pending vote, batch prepared but not proved"""
    async def scenario():
        voter, = await registered(system)
        await system.cast_vote(voter, 1, 3)
    asyncio.run(scenario())

    batch = system.next_batch(system.ledger.vote_feed)
    return system.coordinator.prepare_message_batch(batch, system.ledger.num_sign_ups)


class TestValidBatches:

    def test_single_vote(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            await system.cast_vote(voter, 2, 6)
            return voter, await system.process_messages()

        voter, outcomes = asyncio.run(scenario())
        assert [o.status for o in outcomes] == [BatchStatus.VERIFIED]
        assert outcomes[0].batch_size == 1

        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.credit_balance == 100 - 36
        assert leaf.vote_option_index == 2
        assert leaf.vote_weight == 6
        assert leaf.nonce == 1
        assert system.coordinator.tree.root == system.ledger.state_root
        assert outcomes[0].new_root == system.ledger.state_root
        assert system.ledger.vote_feed.pending == 0

    @pytest.mark.parametrize("batch_size", [1, 2, 3, 4])
    def test_partial_and_full_batches(self, make_system, batch_size):
        system = make_system()

        async def scenario():
            voters = await registered(system, batch_size)
            for voter in voters:
                await system.cast_vote(voter, 0, 2)
            return voters, await system.process_messages()

        voters, outcomes = asyncio.run(scenario())
        assert len(outcomes) == 1
        assert outcomes[0].status == BatchStatus.VERIFIED
        assert outcomes[0].batch_size == batch_size
        for voter in voters:
            assert system.coordinator.tree.get_leaf(voter.state_index).vote_weight == 2

    def test_feed_spanning_several_batches(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            for weight in range(1, 7):
                await system.cast_vote(voter, 0, weight)
            return voter, await system.process_messages()

        voter, outcomes = asyncio.run(scenario())
        assert [o.batch_size for o in outcomes] == [4, 2]
        assert all(o.status == BatchStatus.VERIFIED for o in outcomes)
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.nonce == 6
        assert leaf.vote_weight == 6
        assert leaf.credit_balance == 100 - 36

    def test_revote_refunds_previous_weight(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            await system.cast_vote(voter, 0, 10)
            await system.cast_vote(voter, 1, 4)
            await system.process_messages()
            return voter

        voter = asyncio.run(scenario())
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.vote_option_index == 1
        assert leaf.credit_balance == 100 - 16


class TestInvalidCommands:
    """Invalid commands are identity updates; the batch still verifies"""

    @pytest.mark.parametrize("build", [
        lambda system, voter: sealed(system, voter.keypair, voter.state_index, nonce=5),
        lambda system, voter: sealed(system, Keypair.generate(), voter.state_index),
        lambda system, voter: sealed(system, voter.keypair, voter.state_index, weight=11),
        lambda system, voter: sealed(system, voter.keypair, voter.state_index, option=4),
        lambda system, voter: sealed(system, voter.keypair, 0),
        lambda system, voter: sealed(system, voter.keypair, 9),
        lambda system, voter: sealed(system, voter.keypair, voter.state_index,
                                     signed_as=MessageType.KEY_CHANGE),
        lambda system, voter: Message(
            int(MessageType.VOTE),
            OFF_CURVE_POINT + sealed(system, voter.keypair, voter.state_index).payload[2:]),
        lambda system, voter: under_public_key(system, voter, (0, 0)),
        lambda system, voter: under_public_key(system, voter, IDENTITY_POINT),
    ], ids=["wrong_nonce", "wrong_signer", "over_budget", "option_out_of_range",
            "blank_slot", "unregistered_slot", "signed_for_other_type", "invalid_enc_key",
            "zero_enc_key", "identity_enc_key"])
    def test_invalid_only_batch_keeps_root(self, make_system, build):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            before = system.ledger.state_root
            await system.ledger.publish_message(build(system, voter))
            return voter, before, await system.process_messages()

        voter, before, outcomes = asyncio.run(scenario())
        assert outcomes[0].status == BatchStatus.VERIFIED
        assert system.ledger.state_root == before
        assert system.ledger.vote_feed.processed == 1
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.nonce == 0
        assert leaf.credit_balance == 100

    @pytest.mark.parametrize("enc_key", [(0, 0), IDENTITY_POINT], ids=["zero", "identity"])
    def test_rejected_ephemeral_key_targets_blank_leaf(self, make_system, enc_key):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            await system.ledger.publish_message(under_public_key(system, voter, enc_key))
            await system.cast_vote(voter, 2, 2)
            return voter, await system.process_messages()

        voter, outcomes = asyncio.run(scenario())
        assert [o.status for o in outcomes] == [BatchStatus.VERIFIED]
        assert system.ledger.vote_feed.processed == 2
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert (leaf.vote_option_index, leaf.vote_weight, leaf.nonce) == (2, 2, 1)
        assert leaf.credit_balance == 100 - 4

    def test_exact_budget_is_accepted(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            await system.cast_vote(voter, 0, 10)
            await system.process_messages()
            return voter

        voter = asyncio.run(scenario())
        assert system.coordinator.tree.get_leaf(voter.state_index).credit_balance == 0

    def test_message_order_matters(self, make_system):
        system = make_system()

        async def scenario():
            first, second = await registered(system, 2)
            # first voter in nonce order, second voter reversed
            await system.cast_vote(first, 0, 3, nonce=1)
            await system.cast_vote(first, 0, 4, nonce=2)
            await system.cast_vote(second, 0, 4, nonce=2)
            await system.cast_vote(second, 0, 3, nonce=1)
            await system.process_messages()
            return first, second

        first, second = asyncio.run(scenario())
        tree = system.coordinator.tree
        assert (tree.get_leaf(first.state_index).nonce,
                tree.get_leaf(first.state_index).vote_weight) == (2, 4)
        assert (tree.get_leaf(second.state_index).nonce,
                tree.get_leaf(second.state_index).vote_weight) == (1, 3)


class TestKeyChange:

    def test_new_key_votes_after_change(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            new_key = Keypair.generate()
            await system.change_key(voter, new_key)
            await system.cast_vote(voter, 3, 5)
            await system.process_messages()
            return voter, new_key

        voter, new_key = asyncio.run(scenario())
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.public_key == new_key.public_key
        assert leaf.nonce == 2
        assert leaf.vote_option_index == 3
        assert leaf.credit_balance == 100 - 25

    def test_old_key_is_ignored_after_change(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            old_key = voter.keypair
            await system.change_key(voter)
            await system.ledger.publish_message(
                sealed(system, old_key, voter.state_index, weight=5, nonce=2))
            outcomes = await system.process_messages()
            return voter, outcomes

        voter, outcomes = asyncio.run(scenario())
        assert outcomes[0].status == BatchStatus.VERIFIED
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.public_key == voter.public_key
        assert leaf.nonce == 1
        assert leaf.vote_weight == 0

    def test_invalid_replacement_key_is_ignored(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            command = Command(state_index=voter.state_index, new_public_key=OFF_CURVE_POINT,
                              nonce=1, salt=3).sign(voter.keypair.private_key,
                                                    MessageType.KEY_CHANGE)
            await system.ledger.publish_message(encrypt_command(
                command, MessageType.KEY_CHANGE, system.coordinator.public_key, 0))
            await system.process_messages()
            return voter

        voter = asyncio.run(scenario())
        leaf = system.coordinator.tree.get_leaf(voter.state_index)
        assert leaf.public_key == voter.public_key
        assert leaf.nonce == 0

    def test_deactivated_slot_cannot_vote(self, make_system):
        system = make_system()

        async def scenario():
            voter, = await registered(system)
            await system.deactivate_key(voter)
            await system.process_deactivations()
            root = system.ledger.state_root
            await system.cast_vote(voter, 0, 3)
            outcomes = await system.process_messages()
            return voter, root, outcomes

        voter, root, outcomes = asyncio.run(scenario())
        assert outcomes[0].status == BatchStatus.VERIFIED
        assert system.ledger.state_root == root
        assert system.coordinator.tree.get_leaf(voter.state_index).vote_weight == 0


class TestBatchStatement:

    @pytest.mark.parametrize("batch_size", [0, 5])
    def test_batch_size_out_of_range(self, make_system, batch_size):
        system = make_system()
        prepared = prepared_vote_batch(system)
        forged = replace(prepared, public=replace(prepared.public, batch_size=batch_size))
        with pytest.raises(BatchSizeViolation):
            system.coordinator.prove(forged)

    def test_empty_batch_cannot_be_proved(self, make_system):
        system = make_system()
        asyncio.run(registered(system))
        prepared = system.coordinator.prepare_message_batch(
            Batch([], capacity=4), system.ledger.num_sign_ups)
        assert prepared.public.batch_size == 0
        with pytest.raises(BatchSizeViolation):
            system.coordinator.prove(prepared)

    def test_message_in_padding_slot(self, make_system):
        system = make_system()
        prepared = prepared_vote_batch(system)
        messages = list(prepared.witness.messages)
        messages[-1] = messages[0]
        forged = replace(prepared, witness=replace(prepared.witness, messages=messages))
        with pytest.raises(MalformedPadding):
            system.coordinator.prove(forged)

    def test_wrong_coordinator_private_key(self, make_system):
        system = make_system()
        prepared = prepared_vote_batch(system)
        forged = replace(prepared, witness=replace(
            prepared.witness, coord_priv_key=Keypair.generate().private_key))
        with pytest.raises(CoordinatorKeyMismatch):
            system.coordinator.prove(forged)

    def test_claimed_new_root_must_match(self, make_system):
        system = make_system()
        prepared = prepared_vote_batch(system)
        forged = replace(prepared, public=replace(prepared.public,
                                                  new_root=prepared.public.old_root))
        with pytest.raises(StateRootMismatch):
            system.coordinator.prove(forged)

    def test_claimed_output_chain_must_match(self, make_system):
        system = make_system()
        prepared = prepared_vote_batch(system)
        forged = replace(prepared, public=replace(prepared.public, output_chain_hash=12345))
        with pytest.raises(MessageChainMismatch):
            system.coordinator.prove(forged)

    def test_rejected_proof_does_not_touch_the_ledger(self, make_system):
        system = make_system()
        prepared = prepared_vote_batch(system)
        root = system.ledger.state_root
        forged = replace(prepared, public=replace(prepared.public, batch_size=0))

        outcome = asyncio.run(system.coordinator.prove_batch(forged))
        assert outcome.status == BatchStatus.REJECTED
        assert outcome.error_type == "BatchSizeViolation"
        assert outcome.new_root is None
        assert system.ledger.state_root == root
        assert system.ledger.vote_feed.processed == 0
