#!/usr/bin/env python3
"""
Anonymous MACI System
=====================
Wires the voter key registry, the ledger acceptor and the coordinator into
one asyncio service:

1. Voters register (or rotate) keys with an addNewKey proof
2. Votes, key changes and deactivations are published encrypted to the ledger
3. The coordinator folds fixed-capacity batches into the state tree, proves
   each batch and submits it; only accepted batches advance its shadow tree
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.config import SystemConfig
from coordinator import BatchOutcome, BatchStatus, Coordinator, KeyRegistry
from ledger import Ledger, MessageFeed
from primitives.babyjub import Keypair, credential_status
from primitives.field import PRIME
from state.messages import Batch, Command, Message, MessageType, encrypt_command
from zk import TransparentProofBackend, ZKError
from utils.utils import PerformanceMonitor, setup_logging

logger = logging.getLogger(__name__)

# ============================================================================
# VOTER SIDE
# ============================================================================


@dataclass
class VoterIdentity:
    """Client-side view of one voter slot"""
    voter_id: str
    keypair: Keypair
    state_index: int
    nonce: int = 0
    registration_time: float = field(default_factory=time.time)
    rotations: int = 0

    @property
    def public_key(self):
        return self.keypair.public_key

    def next_nonce(self) -> int:
        self.nonce += 1
        return self.nonce


# ============================================================================
# SYSTEM
# ============================================================================


class AnonMaciSystem:
    """
    Coordinator, ledger and key registry behind one async API.

    The ledger is the only component that advances protocol state; the
    coordinator's shadow tree is re-synchronised from ledger events before
    every operation that reads it.
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 coordinator_keypair: Optional[Keypair] = None):
        self.config = config or SystemConfig()
        self.params = self.config.maci_config.circuit_parameters()
        self._coordinator_keypair = coordinator_keypair

        self.backend = None
        self.ledger: Optional[Ledger] = None
        self.coordinator: Optional[Coordinator] = None
        self.key_registry: Optional[KeyRegistry] = None
        self.performance_monitor = PerformanceMonitor()

        self.voters: Dict[str, VoterIdentity] = {}
        self.batch_history: List[BatchOutcome] = []
        self._initialized = False
        self._lock = asyncio.Lock()

    def _create_backend(self):
        return TransparentProofBackend(proof_ttl=self.config.prover_config.proof_ttl)

    async def initialize(self):
        """Create the backend, ledger, coordinator and key registry"""
        async with self._lock:
            if self._initialized:
                return

            logger.info("Initializing Anonymous MACI system...")
            maci = self.config.maci_config
            keypair = self._coordinator_keypair or Keypair.generate()

            self.backend = self._create_backend()
            snapshot = self.config.ledger_snapshot
            if snapshot is not None and Path(snapshot).exists():
                logger.info(f"Restoring ledger from {snapshot}")
                self.ledger = Ledger.load(snapshot, self.params, keypair.public_key,
                                          self.backend, maci.initial_credit_balance)
            else:
                self.ledger = Ledger(self.params, keypair.public_key, self.backend,
                                     maci.initial_credit_balance)

            self.coordinator = Coordinator(keypair, self.params, self.backend,
                                           max_workers=self.config.prover_config.prover_workers)
            self.coordinator.sync(self.ledger)
            self.key_registry = KeyRegistry(keypair.public_key, self.backend,
                                            maci.initial_credit_balance)

            self._initialized = True
            logger.info(f"System ready: batch capacity {self.params.max_batch_size}, "
                        f"tree depth {self.params.state_tree_depth}, "
                        f"{self.params.max_vote_options} vote options, "
                        f"{self.config.prover_config.backend} prover")

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    def shutdown(self):
        if self.coordinator is not None:
            self.coordinator.shutdown()

    def save_ledger(self, path: Optional[Path] = None):
        target = path or self.config.ledger_snapshot or self.config.results_dir / "ledger.json"
        self.ledger.save(target)
        logger.info(f"Ledger snapshot written to {target}")

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    async def _prove_key_statement(self, registration):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.key_registry.prove, registration)

    async def register_voter(self, voter_id: str,
                             keypair: Optional[Keypair] = None) -> VoterIdentity:
        """addNewKey from the empty credential into the next free slot"""
        await self._ensure_initialized()
        if voter_id in self.voters:
            raise ValueError(f"Voter {voter_id} already registered")

        with self.performance_monitor.start_operation("register_voter"):
            keypair = keypair or Keypair.generate()
            self.coordinator.sync(self.ledger)

            registration = self.key_registry.prepare_registration(
                keypair.public_key, self.ledger.key_action_count)
            proof = await self._prove_key_statement(registration)

            path = self.coordinator.tree.get_proof(self.ledger.num_sign_ups)
            state_index = await self.ledger.accept_registration(
                registration.leaf, path, registration.public, proof)
            self.coordinator.sync(self.ledger)

        voter = VoterIdentity(voter_id=voter_id, keypair=keypair, state_index=state_index)
        self.voters[voter_id] = voter
        logger.info(f"Voter {voter_id} registered at slot {state_index}")
        return voter

    async def rotate_key(self, voter: VoterIdentity,
                         new_keypair: Optional[Keypair] = None) -> VoterIdentity:
        """addNewKey over the slot's current credential, signed by the current key"""
        await self._ensure_initialized()

        with self.performance_monitor.start_operation("rotate_key"):
            new_keypair = new_keypair or Keypair.generate()
            self.coordinator.sync(self.ledger)

            current_leaf = self.coordinator.tree.get_leaf(voter.state_index)
            registration = self.key_registry.prepare_rotation(
                voter.keypair, voter.state_index, current_leaf,
                new_keypair.public_key, self.ledger.key_action_count)
            proof = await self._prove_key_statement(registration)

            path = self.coordinator.tree.get_proof(voter.state_index)
            await self.ledger.accept_rotation(
                voter.state_index, current_leaf, path, registration.leaf,
                registration.public, proof, registration.rotation_signature)
            self.coordinator.sync(self.ledger)

        voter.keypair = new_keypair
        voter.rotations += 1
        logger.info(f"Voter {voter.voter_id} rotated key at slot {voter.state_index}")
        return voter

    def credential_status(self, voter: VoterIdentity) -> int:
        """Coordinator-side decryption of the slot credential: 0 active, 1 deactivated"""
        leaf = self.coordinator.tree.get_leaf(voter.state_index)
        return credential_status(self.coordinator.keypair.private_key, leaf.credential)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _encrypt(self, command: Command, msg_type: MessageType, signer: Keypair,
                 feed: MessageFeed) -> Message:
        signed = command.sign(signer.private_key, msg_type)
        return encrypt_command(signed, msg_type, self.coordinator.public_key, len(feed))

    async def cast_vote(self, voter: VoterIdentity, vote_option_index: int,
                        vote_weight: int, nonce: Optional[int] = None) -> Message:
        """Publish an encrypted vote; the nonce advances optimistically"""
        await self._ensure_initialized()
        command = Command(
            state_index=voter.state_index,
            vote_option_index=vote_option_index,
            new_vote_weight=vote_weight,
            nonce=voter.next_nonce() if nonce is None else nonce,
            salt=secrets.randbelow(PRIME),
        )
        message = self._encrypt(command, MessageType.VOTE, voter.keypair, self.ledger.vote_feed)
        published = await self.ledger.publish_message(message)
        logger.info(f"Voter {voter.voter_id} published vote #{published.sequence_index}")
        return published

    async def change_key(self, voter: VoterIdentity,
                         new_keypair: Optional[Keypair] = None) -> Message:
        """In-band key change; takes effect when the batch carrying it is accepted"""
        await self._ensure_initialized()
        new_keypair = new_keypair or Keypair.generate()
        command = Command(
            state_index=voter.state_index,
            new_public_key=new_keypair.public_key,
            nonce=voter.next_nonce(),
            salt=secrets.randbelow(PRIME),
        )
        message = self._encrypt(command, MessageType.KEY_CHANGE, voter.keypair,
                                self.ledger.vote_feed)
        published = await self.ledger.publish_message(message)
        voter.keypair = new_keypair
        logger.info(f"Voter {voter.voter_id} published key change "
                    f"#{published.sequence_index}")
        return published

    async def deactivate_key(self, voter: VoterIdentity) -> Message:
        await self._ensure_initialized()
        command = Command(
            state_index=voter.state_index,
            nonce=voter.nonce + 1,
            salt=secrets.randbelow(PRIME),
        )
        message = self._encrypt(command, MessageType.DEACTIVATE, voter.keypair,
                                self.ledger.deactivation_feed)
        published = await self.ledger.publish_deactivation(message)
        logger.info(f"Voter {voter.voter_id} requested deactivation "
                    f"#{published.sequence_index}")
        return published

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def next_batch(self, feed: MessageFeed) -> Batch:
        messages = feed.unprocessed(self.params.max_batch_size)
        return Batch(
            messages=messages,
            capacity=self.params.max_batch_size,
            start_sequence=feed.processed,
            input_chain_hash=feed.checkpoints[feed.processed],
            metadata={'feed': feed.name},
        )

    async def _process_feed(self, feed: MessageFeed, prepare, accept) -> List[BatchOutcome]:
        outcomes = []
        while feed.pending > 0:
            self.coordinator.sync(self.ledger)
            batch = self.next_batch(feed)

            with self.performance_monitor.start_operation(f"process_{feed.name}_batch",
                                                          batch_size=batch.batch_size):
                prepared = prepare(batch, self.ledger.num_sign_ups)
                outcome = await self.coordinator.prove_batch(prepared)
                if outcome.status != BatchStatus.REJECTED:
                    try:
                        await accept(prepared.public, outcome.proof)
                    except (ZKError, ValueError) as e:
                        outcome.rejected(e)
                    else:
                        outcome.verified(prepared.public.new_root)
                        self.coordinator.commit(prepared)

            outcomes.append(outcome)
            self.batch_history.append(outcome)
            if outcome.status == BatchStatus.REJECTED:
                logger.error(f"{outcome.kind} batch at #{batch.start_sequence} rejected: "
                             f"{outcome.error_type}: {outcome.error}")
                break
            logger.info(f"{outcome.kind} batch of {outcome.batch_size} verified in "
                        f"{outcome.processing_time:.2f}s")
        return outcomes

    async def process_messages(self) -> List[BatchOutcome]:
        """Fold every pending vote / key-change message, one batch at a time"""
        await self._ensure_initialized()
        return await self._process_feed(self.ledger.vote_feed,
                                        self.coordinator.prepare_message_batch,
                                        self.ledger.accept_message_batch)

    async def process_deactivations(self) -> List[BatchOutcome]:
        await self._ensure_initialized()
        return await self._process_feed(self.ledger.deactivation_feed,
                                        self.coordinator.prepare_deactivation_batch,
                                        self.ledger.accept_deactivation_batch)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get comprehensive system metrics"""
        verified = [o for o in self.batch_history if o.status == BatchStatus.VERIFIED]
        return {
            'registered_voters': len(self.voters),
            'num_sign_ups': self.ledger.num_sign_ups if self.ledger else 0,
            'state_root': hex(self.ledger.state_root) if self.ledger else None,
            'nullifiers': len(self.ledger.nullifiers) if self.ledger else 0,
            'pending_messages': self.ledger.vote_feed.pending if self.ledger else 0,
            'pending_deactivations': self.ledger.deactivation_feed.pending if self.ledger else 0,
            'batches_verified': len(verified),
            'batches_rejected': len(self.batch_history) - len(verified),
            'rejected_submissions': self.ledger.rejected_submissions if self.ledger else 0,
            'max_batch_size': self.params.max_batch_size,
            'state_tree_depth': self.params.state_tree_depth,
            'performance': self.performance_monitor.get_summary(),
        }


# ============================================================================
# DEMONSTRATION
# ============================================================================


async def demonstrate_anon_maci(config: Optional[SystemConfig] = None,
                                num_voters: int = 3) -> Dict[str, Any]:
    """Register voters, vote, change a key, deactivate one voter and process everything"""
    print("\n" + "=" * 80)
    print("ANONYMOUS MACI DEMONSTRATION")
    print("=" * 80 + "\n")

    system = AnonMaciSystem(config)
    await system.initialize()
    try:
        print(f"Registering {num_voters} voters...")
        voters = [await system.register_voter(f"voter_{i:03d}") for i in range(num_voters)]
        for voter in voters:
            print(f"  {voter.voter_id}: slot {voter.state_index}")

        print("\nCasting votes...")
        options = system.params.max_vote_options
        for i, voter in enumerate(voters):
            await system.cast_vote(voter, i % options, vote_weight=3)
        if len(voters) > 1:
            await system.change_key(voters[1])
            await system.cast_vote(voters[1], 0, vote_weight=2)

        outcomes = await system.process_messages()
        for outcome in outcomes:
            print(f"  {outcome.kind}: {outcome.status.value} "
                  f"({outcome.batch_size} messages, {outcome.processing_time:.2f}s)")

        print("\nDeactivating the first voter...")
        await system.deactivate_key(voters[0])
        outcomes = await system.process_deactivations()
        for outcome in outcomes:
            print(f"  {outcome.kind}: {outcome.status.value}, "
                  f"{len(outcome.nullifiers)} nullifier(s)")
        print(f"  credential status of {voters[0].voter_id}: "
              f"{system.credential_status(voters[0])}")

        print("\nRotating the last voter's key...")
        await system.rotate_key(voters[-1])

        metrics = system.get_system_metrics()
        print("\n" + "=" * 80)
        print(f"State root:  {metrics['state_root']}")
        print(f"Sign-ups:    {metrics['num_sign_ups']}")
        print(f"Nullifiers:  {metrics['nullifiers']}")
        print(f"Batches:     {metrics['batches_verified']} verified, "
              f"{metrics['batches_rejected']} rejected")
        print("=" * 80 + "\n")
        return metrics
    finally:
        system.shutdown()


if __name__ == "__main__":
    setup_logging("INFO")
    asyncio.run(demonstrate_anon_maci())
