"""
Ledger Acceptor
===============

The single place protocol state advances. Holds the state root, the spent
nullifiers, the sign-up count and the two published message feeds with their
chain-hash checkpoints. Every acceptance is linearized through one
asyncio.Lock and checks everything before mutating anything, so a rejected
submission leaves the ledger exactly as it was.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from coordinator.key_registry import rotation_digest
from primitives.babyjub import EMPTY_CREDENTIAL, Point, Signature, verify_signature
from state.messages import EMPTY_CHAIN_HASH, Message, MessageType, chain_hash
from state.nullifiers import NullifierSet
from state.state_tree import EMPTY_LEAF_HASH, StateLeaf, StateTree
from zk.backend import ProofArtifact
from zk.circuits import (
    AddNewKeyInputs,
    CircuitParameters,
    ProcessDeactivateInputs,
    ProcessMessagesInputs,
)
from zk.constraints import MessageChainMismatch, ProofVerificationError, ZKError

logger = logging.getLogger(__name__)


class StaleRootError(ZKError):
    """Submission was built against a root or pointer that is no longer current"""
    pass


@dataclass
class MessageFeed:
    """Published messages with the chain hash after every prefix"""
    name: str
    allowed_types: Tuple[int, ...]
    messages: List[Message] = field(default_factory=list)
    checkpoints: List[int] = field(default_factory=lambda: [EMPTY_CHAIN_HASH])
    processed: int = 0

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def pending(self) -> int:
        return len(self.messages) - self.processed

    def append(self, message: Message) -> Message:
        stamped = replace(message, sequence_index=len(self.messages))
        self.messages.append(stamped)
        self.checkpoints.append(chain_hash(self.checkpoints[-1], stamped))
        return stamped

    def unprocessed(self, limit: int) -> List[Message]:
        return self.messages[self.processed:self.processed + limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messages': [m.to_dict() for m in self.messages],
            'processed': self.processed,
        }

    def load(self, data: Dict[str, Any]):
        self.messages = []
        self.checkpoints = [EMPTY_CHAIN_HASH]
        for entry in data['messages']:
            self.append(Message.from_dict(entry))
        self.processed = int(data['processed'])


@dataclass
class LeafEvent:
    """Registration or rotation written by the ledger, replayed by the coordinator"""
    state_index: int
    leaf: StateLeaf
    kind: str


@dataclass
class BatchEvent:
    """Accepted batch: the feed range it folded and the root it produced"""
    feed: str
    start_sequence: int
    batch_size: int
    num_sign_ups: int
    new_root: int
    kind: str = 'batch'


class Ledger:
    """On-chain acceptor model"""

    def __init__(self, params: CircuitParameters, coord_pub_key: Point, verifier,
                 initial_credit_balance: int = 100):
        self.params = params
        self.coord_pub_key = coord_pub_key
        self.verifier = verifier
        self.initial_credit_balance = initial_credit_balance

        genesis = StateTree(params.state_tree_depth)
        self.state_root = genesis.root
        self.num_sign_ups = genesis.num_leaves
        self.nullifiers = NullifierSet()
        self.key_action_count = 0
        self.events: List[Union[LeafEvent, BatchEvent]] = []

        self.vote_feed = MessageFeed(
            'vote', (int(MessageType.VOTE), int(MessageType.KEY_CHANGE)))
        self.deactivation_feed = MessageFeed(
            'deactivation', (int(MessageType.DEACTIVATE),))

        self.accepted_batches = 0
        self.rejected_submissions = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Message feeds
    # ------------------------------------------------------------------

    def feed(self, name: str) -> MessageFeed:
        for feed in (self.vote_feed, self.deactivation_feed):
            if feed.name == name:
                return feed
        raise KeyError(f"Unknown feed {name}")

    async def _publish(self, feed: MessageFeed, message: Message) -> Message:
        if not message.is_field_valid():
            raise ValueError("Message elements must be field elements")
        if message.msg_type not in feed.allowed_types:
            raise ValueError(f"Message type {message.msg_type} not accepted on the "
                             f"{feed.name} feed")
        async with self._lock:
            stamped = feed.append(message)
        logger.debug(f"Published {feed.name} message #{stamped.sequence_index}")
        return stamped

    async def publish_message(self, message: Message) -> Message:
        """Append a vote / key-change message; returns it with its sequence index"""
        return await self._publish(self.vote_feed, message)

    async def publish_deactivation(self, message: Message) -> Message:
        return await self._publish(self.deactivation_feed, message)

    # ------------------------------------------------------------------
    # Key registration and rotation
    # ------------------------------------------------------------------

    def _reject(self, error: Exception):
        self.rejected_submissions += 1
        logger.warning(f"Rejected submission: {error}")
        raise error

    def _check_key_statement(self, public: AddNewKeyInputs, leaf: StateLeaf,
                             proof: ProofArtifact):
        if public.coord_pub_key != self.coord_pub_key:
            self._reject(ValueError("Statement uses a different coordinator key"))
        if public.action_counter != self.key_action_count:
            self._reject(StaleRootError(
                f"Action counter {public.action_counter} != {self.key_action_count}"))
        if leaf.public_key != public.new_pub_key or leaf.credential != public.new_credential:
            self._reject(ValueError("Leaf does not carry the proven key and credential"))
        try:
            self.nullifiers.check_all([public.nullifier])
        except ZKError as e:
            self._reject(e)
        if not self.verifier.verify(proof, public.signals()):
            self._reject(ProofVerificationError("addNewKey proof did not verify"))

    async def accept_registration(self, leaf: StateLeaf, path: Sequence[int],
                                  public: AddNewKeyInputs, proof: ProofArtifact) -> int:
        """Insert a fresh leaf at the next slot; returns its index"""
        async with self._lock:
            index = self.num_sign_ups
            if index >= 1 << self.params.state_tree_depth:
                self._reject(OverflowError("State tree is full"))
            if public.previous_credential != EMPTY_CREDENTIAL:
                self._reject(ValueError("Registration must start from the empty credential"))
            fresh = StateLeaf(public_key=leaf.public_key,
                              credit_balance=self.initial_credit_balance,
                              credential=leaf.credential)
            if leaf != fresh:
                self._reject(ValueError("Registration leaf is not a fresh leaf"))
            if StateTree.compute_root(EMPTY_LEAF_HASH, index, path) != self.state_root:
                self._reject(StaleRootError(f"Insertion path for slot {index} is stale"))
            self._check_key_statement(public, leaf, proof)

            self.state_root = StateTree.compute_root(leaf.hash(), index, path)
            self.nullifiers.insert(public.nullifier)
            self.num_sign_ups += 1
            self.key_action_count += 1
            self.events.append(LeafEvent(index, leaf, 'registration'))

        logger.info(f"Registered slot {index}")
        return index

    async def accept_rotation(self, state_index: int, old_leaf: StateLeaf, path: Sequence[int],
                              new_leaf: StateLeaf, public: AddNewKeyInputs,
                              proof: ProofArtifact, signature: Signature) -> int:
        """Replace the key and credential of an existing slot"""
        async with self._lock:
            if not 0 < state_index < self.num_sign_ups:
                self._reject(IndexError(f"Slot {state_index} is not registered"))
            if StateTree.compute_root(old_leaf.hash(), state_index, path) != self.state_root:
                self._reject(StaleRootError(f"Leaf path for slot {state_index} is stale"))
            if public.previous_credential != old_leaf.credential:
                self._reject(ValueError("Rotation must start from the slot's credential"))
            if new_leaf != old_leaf.evolve(public_key=public.new_pub_key,
                                           credential=public.new_credential):
                self._reject(ValueError("Rotation may only change key and credential"))
            digest = rotation_digest(state_index, public.new_pub_key, public.action_counter)
            if not verify_signature(old_leaf.public_key, digest, signature):
                self._reject(ProofVerificationError("Rotation not signed by the current key"))
            self._check_key_statement(public, new_leaf, proof)

            self.state_root = StateTree.compute_root(new_leaf.hash(), state_index, path)
            self.nullifiers.insert(public.nullifier)
            self.key_action_count += 1
            self.events.append(LeafEvent(state_index, new_leaf, 'rotation'))

        logger.info(f"Rotated key of slot {state_index}")
        return state_index

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _check_batch(self, feed: MessageFeed, public: ProcessMessagesInputs,
                     proof: ProofArtifact):
        if public.old_root != self.state_root:
            self._reject(StaleRootError("Batch built against a stale state root"))
        if public.coord_pub_key != self.coord_pub_key:
            self._reject(ValueError("Batch uses a different coordinator key"))
        if public.num_sign_ups != self.num_sign_ups:
            self._reject(StaleRootError("Batch built against a stale sign-up count"))
        if public.start_sequence != feed.processed:
            self._reject(StaleRootError(
                f"Batch starts at {public.start_sequence}, expected {feed.processed}"))
        end = public.start_sequence + public.batch_size
        if not 0 < public.batch_size <= self.params.max_batch_size or end > len(feed):
            self._reject(ValueError(f"Batch size {public.batch_size} out of range"))
        if public.input_chain_hash != feed.checkpoints[public.start_sequence]:
            self._reject(MessageChainMismatch("Input chain hash does not match the feed"))
        if public.output_chain_hash != feed.checkpoints[end]:
            self._reject(MessageChainMismatch("Output chain hash does not match the feed"))
        if not self.verifier.verify(proof, public.signals()):
            self._reject(ProofVerificationError(f"{proof.proof_type.value} proof did not verify"))

    def _record_batch(self, feed: MessageFeed, public: ProcessMessagesInputs):
        self.events.append(BatchEvent(feed.name, public.start_sequence, public.batch_size,
                                      public.num_sign_ups, public.new_root))
        self.state_root = public.new_root
        feed.processed += public.batch_size
        self.accepted_batches += 1

    async def accept_message_batch(self, public: ProcessMessagesInputs,
                                   proof: ProofArtifact) -> int:
        async with self._lock:
            self._check_batch(self.vote_feed, public, proof)
            self._record_batch(self.vote_feed, public)

        logger.info(f"Accepted message batch of {public.batch_size}, "
                    f"root {public.new_root:#x}")
        return self.state_root

    async def accept_deactivation_batch(self, public: ProcessDeactivateInputs,
                                        proof: ProofArtifact) -> int:
        async with self._lock:
            emitted = [n for n in public.nullifiers if n != 0]
            try:
                self.nullifiers.check_all(emitted)
            except ZKError as e:
                self._reject(e)
            self._check_batch(self.deactivation_feed, public, proof)

            self.nullifiers.insert_all(emitted)
            self._record_batch(self.deactivation_feed, public)

        logger.info(f"Accepted deactivation batch of {public.batch_size}, "
                    f"{len(emitted)} deactivation(s)")
        return self.state_root

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _event_to_dict(event) -> Dict[str, Any]:
        if isinstance(event, BatchEvent):
            data = asdict(event)
            data['new_root'] = str(event.new_root)
            return data
        return {'state_index': event.state_index, 'kind': event.kind,
                'leaf': event.leaf.to_dict()}

    @staticmethod
    def _event_from_dict(data: Dict[str, Any]):
        if data['kind'] == 'batch':
            return BatchEvent(data['feed'], int(data['start_sequence']), int(data['batch_size']),
                              int(data['num_sign_ups']), int(data['new_root']))
        return LeafEvent(int(data['state_index']), StateLeaf.from_dict(data['leaf']),
                         data['kind'])

    def snapshot(self) -> Dict[str, Any]:
        return {
            'state_root': str(self.state_root),
            'num_sign_ups': self.num_sign_ups,
            'key_action_count': self.key_action_count,
            'nullifiers': self.nullifiers.snapshot(),
            'events': [self._event_to_dict(e) for e in self.events],
            'vote_feed': self.vote_feed.to_dict(),
            'deactivation_feed': self.deactivation_feed.to_dict(),
            'accepted_batches': self.accepted_batches,
        }

    def save(self, path: Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.snapshot(), f, indent=2)

    def restore(self, data: Dict[str, Any]):
        self.state_root = int(data['state_root'])
        self.num_sign_ups = int(data['num_sign_ups'])
        self.key_action_count = int(data['key_action_count'])
        self.nullifiers = NullifierSet.restore(data['nullifiers'])
        self.events = [self._event_from_dict(e) for e in data['events']]
        self.vote_feed.load(data['vote_feed'])
        self.deactivation_feed.load(data['deactivation_feed'])
        self.accepted_batches = int(data.get('accepted_batches', 0))

    @classmethod
    def load(cls, path: Path, params: CircuitParameters, coord_pub_key: Point, verifier,
             initial_credit_balance: int = 100) -> 'Ledger':
        with open(path, 'r') as f:
            data = json.load(f)
        ledger = cls(params, coord_pub_key, verifier, initial_credit_balance)
        ledger.restore(data)
        return ledger
