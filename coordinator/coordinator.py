"""
Coordinator
===========

Keeps a shadow copy of the state tree, decrypts published messages, simulates
each batch in order to build the circuit witness, and proves it off the event
loop. The shadow tree only advances once the ledger accepts the batch.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

from primitives import babyjub
from primitives.babyjub import BASE8, CurveError, Keypair
from primitives.field import PRIME
from state.messages import Batch, Command, Message, MessageType, decrypt_message
from state.nullifiers import deactivation_nullifier
from state.state_tree import BLANK_LEAF_INDEX, StateLeaf, StateTree
from zk.backend import ProofArtifact
from zk.circuits import (
    CREDIT_BALANCE_BITS,
    VOTE_WEIGHT_BITS,
    CircuitParameters,
    LeafStatus,
    ProcessDeactivateCircuit,
    ProcessDeactivateInputs,
    ProcessDeactivateWitness,
    ProcessMessagesCircuit,
    ProcessMessagesInputs,
    ProcessMessagesWitness,
)
from zk.constraints import ProofGenerationError, ZKError

logger = logging.getLogger(__name__)


class BatchStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class BatchOutcome:
    """Result of one batch; only VERIFIED carries a new root"""
    kind: str
    old_root: int
    batch_size: int
    status: BatchStatus = BatchStatus.PENDING
    new_root: Optional[int] = None
    nullifiers: List[int] = field(default_factory=list)
    proof: Optional[ProofArtifact] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    processing_time: float = 0.0

    def verified(self, new_root: int):
        self.status = BatchStatus.VERIFIED
        self.new_root = new_root

    def rejected(self, error: Exception):
        self.status = BatchStatus.REJECTED
        self.new_root = None
        self.error = str(error)
        self.error_type = type(error).__name__


@dataclass
class PreparedBatch:
    """Statement, witness and the shadow tree it leads to"""
    public: Any
    witness: Any
    tree: StateTree


class Coordinator:
    """Off-chain batch processor"""

    def __init__(self, keypair: Keypair, params: CircuitParameters, backend,
                 max_workers: int = 2):
        self.keypair = keypair
        self.params = params
        self.backend = backend
        self.tree = StateTree(params.state_tree_depth)
        self.message_circuit = ProcessMessagesCircuit(params)
        self.deactivate_circuit = ProcessDeactivateCircuit(params)
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._event_cursor = 0

    @property
    def public_key(self):
        return self.keypair.public_key

    def shutdown(self):
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Shadow tree maintenance
    # ------------------------------------------------------------------

    def apply_leaf(self, state_index: int, leaf: StateLeaf):
        if state_index == self.tree.next_index:
            self.tree.insert(leaf)
        else:
            self.tree.update(state_index, leaf)

    def sync(self, ledger):
        """Replay what the ledger accepted since the last sync"""
        for event in ledger.events[self._event_cursor:]:
            if event.kind == 'batch':
                self._replay_batch(ledger, event)
            else:
                self.apply_leaf(event.state_index, event.leaf)
        self._event_cursor = len(ledger.events)
        if self.tree.root != ledger.state_root:
            raise ZKError("Shadow state tree diverged from the ledger root")

    def _replay_batch(self, ledger, event):
        """Re-simulate an accepted batch unless its tree was already committed"""
        if self.tree.root == event.new_root:
            return
        feed = ledger.feed(event.feed)
        end = event.start_sequence + event.batch_size
        batch = Batch(
            messages=feed.messages[event.start_sequence:end],
            capacity=self.params.max_batch_size,
            start_sequence=event.start_sequence,
            input_chain_hash=feed.checkpoints[event.start_sequence],
        )
        if feed is ledger.deactivation_feed:
            prepared = self.prepare_deactivation_batch(batch, event.num_sign_ups)
        else:
            prepared = self.prepare_message_batch(batch, event.num_sign_ups)
        if prepared.public.new_root != event.new_root:
            raise ZKError(f"Replay of {event.feed} batch at #{event.start_sequence} "
                          f"does not reproduce the accepted root")
        logger.debug(f"Replayed {event.feed} batch at #{event.start_sequence}")
        self.commit(prepared)

    def commit(self, prepared: PreparedBatch):
        self.tree = prepared.tree

    # ------------------------------------------------------------------
    # Command evaluation
    # ------------------------------------------------------------------

    def _decrypt(self, message: Message) -> Optional[Command]:
        if message.is_padding():
            return None
        try:
            return decrypt_message(message, self.keypair.private_key)
        except CurveError:
            logger.debug(f"Message #{message.sequence_index} has an invalid ephemeral key")
            return None

    @staticmethod
    def _target(command: Optional[Command], num_sign_ups: int) -> int:
        if command is None:
            return BLANK_LEAF_INDEX
        index = command.state_index
        if 0 < index < num_sign_ups:
            return index
        return BLANK_LEAF_INDEX

    def _vote_allowed(self, command: Command, leaf: StateLeaf) -> bool:
        weight_bound = 1 << VOTE_WEIGHT_BITS
        if not command.vote_option_index < self.params.max_vote_options:
            return False
        if not (command.new_vote_weight < weight_bound and leaf.vote_weight < weight_bound):
            return False
        if not leaf.credit_balance < 1 << CREDIT_BALANCE_BITS:
            return False
        return leaf.credit_balance + leaf.vote_weight ** 2 >= command.new_vote_weight ** 2

    def _apply_command(self, message: Message, command: Optional[Command],
                       target: int, leaf: StateLeaf) -> StateLeaf:
        """Leaf after one vote / key-change slot; invalid commands leave it unchanged"""
        if command is None or target == BLANK_LEAF_INDEX:
            return leaf
        msg_type = message.msg_type
        if msg_type not in (MessageType.VOTE, MessageType.KEY_CHANGE):
            return leaf
        if not command.verify(leaf.public_key, msg_type):
            return leaf
        if command.nonce != (leaf.nonce + 1) % PRIME or leaf.deactivated != 0:
            return leaf

        if msg_type == MessageType.VOTE:
            if not self._vote_allowed(command, leaf):
                return leaf
            return leaf.evolve(
                credit_balance=leaf.credit_balance + leaf.vote_weight ** 2
                - command.new_vote_weight ** 2,
                vote_option_index=command.vote_option_index,
                vote_weight=command.new_vote_weight,
                nonce=command.nonce,
                last_update_seq=message.sequence_index,
            )

        if not babyjub.is_valid_public_key(command.new_public_key):
            return leaf
        return leaf.evolve(
            public_key=command.new_public_key,
            nonce=command.nonce,
            last_update_seq=message.sequence_index,
        )

    # ------------------------------------------------------------------
    # Witness construction
    # ------------------------------------------------------------------

    def _slots(self, batch: Batch) -> List[Message]:
        if batch.capacity != self.params.max_batch_size:
            raise ValueError(f"Batch capacity {batch.capacity} != "
                             f"{self.params.max_batch_size}")
        return batch.padded()

    def prepare_message_batch(self, batch: Batch, num_sign_ups: int) -> PreparedBatch:
        tree = self.tree.copy()
        old_root = tree.root
        leaves, paths = [], []

        for message in self._slots(batch):
            command = self._decrypt(message)
            target = self._target(command, num_sign_ups)
            leaf = tree.get_leaf(target)
            leaves.append(leaf)
            paths.append(tree.get_proof(target))
            tree.update(target, self._apply_command(message, command, target, leaf))

        public = ProcessMessagesInputs(
            old_root=old_root,
            new_root=tree.root,
            batch_size=batch.batch_size,
            num_sign_ups=num_sign_ups,
            coord_pub_key=self.public_key,
            input_chain_hash=batch.input_chain_hash,
            output_chain_hash=batch.output_chain_hash(),
            start_sequence=batch.start_sequence,
        )
        witness = ProcessMessagesWitness(
            coord_priv_key=self.keypair.private_key,
            messages=self._slots(batch),
            current_leaves=leaves,
            leaf_paths=paths,
        )
        return PreparedBatch(public, witness, tree)

    def prepare_deactivation_batch(self, batch: Batch, num_sign_ups: int) -> PreparedBatch:
        tree = self.tree.copy()
        old_root = tree.root
        leaves, paths, nullifiers = [], [], []
        old_states, new_states = [], []

        for message in self._slots(batch):
            command = self._decrypt(message)
            target = self._target(command, num_sign_ups)
            leaf = tree.get_leaf(target)
            leaves.append(leaf)
            paths.append(tree.get_proof(target))

            valid = (command is not None
                     and target != BLANK_LEAF_INDEX
                     and message.msg_type == MessageType.DEACTIVATE
                     and command.verify(leaf.public_key, message.msg_type))
            old_state = leaf.deactivated
            new_state = int(LeafStatus.DEACTIVATED) if valid else old_state
            old_states.append(old_state)
            new_states.append(new_state)

            if valid and old_state == LeafStatus.ACTIVE:
                c1, c2 = leaf.credential
                tree.update(target, leaf.evolve(
                    deactivated=int(LeafStatus.DEACTIVATED),
                    last_update_seq=message.sequence_index,
                    credential=(c1, babyjub.point_add(c2, BASE8)),
                ))
                nullifiers.append(deactivation_nullifier(leaf.public_key, target,
                                                         command.nonce))
            else:
                nullifiers.append(0)

        public = ProcessDeactivateInputs(
            old_root=old_root,
            new_root=tree.root,
            batch_size=batch.batch_size,
            num_sign_ups=num_sign_ups,
            coord_pub_key=self.public_key,
            input_chain_hash=batch.input_chain_hash,
            output_chain_hash=batch.output_chain_hash(),
            start_sequence=batch.start_sequence,
            nullifiers=nullifiers,
        )
        witness = ProcessDeactivateWitness(
            coord_priv_key=self.keypair.private_key,
            messages=self._slots(batch),
            current_leaves=leaves,
            leaf_paths=paths,
            old_states=old_states,
            new_states=new_states,
            valid=[1] * self.params.max_batch_size,
        )
        return PreparedBatch(public, witness, tree)

    # ------------------------------------------------------------------
    # Proving
    # ------------------------------------------------------------------

    def _circuit_for(self, public):
        if isinstance(public, ProcessDeactivateInputs):
            return self.deactivate_circuit
        return self.message_circuit

    def prove(self, prepared: PreparedBatch) -> ProofArtifact:
        """Synthesize and prove; raises the first violated constraint"""
        circuit = self._circuit_for(prepared.public)
        try:
            cs = circuit.synthesize(prepared.public, prepared.witness)
        except CurveError as e:
            raise ProofGenerationError(f"Witness reached invalid curve arithmetic: {e}") from e
        return self.backend.prove(cs, {'public': prepared.public, 'witness': prepared.witness})

    async def prove_batch(self, prepared: PreparedBatch) -> BatchOutcome:
        """PENDING outcome with a proof, or REJECTED with the violation"""
        outcome = BatchOutcome(
            kind=self._circuit_for(prepared.public).circuit_id,
            old_root=prepared.public.old_root,
            batch_size=prepared.public.batch_size,
            nullifiers=[n for n in getattr(prepared.public, 'nullifiers', []) if n != 0],
        )
        start = time.time()
        loop = asyncio.get_running_loop()
        try:
            outcome.proof = await loop.run_in_executor(self._executor, self.prove, prepared)
        except ZKError as e:
            logger.warning(f"{outcome.kind} batch rejected: {type(e).__name__}: {e}")
            outcome.rejected(e)
        outcome.processing_time = time.time() - start
        return outcome
