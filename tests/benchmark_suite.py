#!/usr/bin/env python3
"""
Benchmark Suite
Measures the cost of every layer of the constraint core:
- Primitives: Poseidon, Baby Jubjub arithmetic, EdDSA, message encryption
- addNewKey: synthesis, proving and verification
- processMessages / processDeactivate: end-to-end batch cost per batch size
"""

import asyncio
import sys
import time
import statistics
from pathlib import Path
from typing import List, Dict, Any, Tuple
import logging

import psutil

sys.path.insert(0, str(Path(__file__).parent.parent))

from anon_maci_system import AnonMaciSystem
from config.config import MaciConfig, SystemConfig
from coordinator.key_registry import KeyRegistry
from primitives.babyjub import BASE8, Keypair, scalar_mul, sign, verify_signature
from primitives.poseidon import poseidon_hash
from state.messages import Command, MessageType, decrypt_message, encrypt_command
from utils.utils import get_system_info, save_results, setup_logging
from zk import TransparentProofBackend

logger = logging.getLogger(__name__)


class BenchmarkSuite:
    """Timing and memory statistics for the coordinator pipeline"""

    def __init__(self, config: SystemConfig = None):
        self.config = config or SystemConfig()
        self.results = {
            'benchmarks': {},
            'batches': {},
            'system_info': get_system_info()
        }

    def measure_time_and_memory(self, func, *args, **kwargs) -> Tuple[Any, float, float]:
        """Measure execution time and memory usage"""
        process = psutil.Process()
        mem_before = process.memory_info().rss / 1024 / 1024  # MB

        start_time = time.time()
        result = func(*args, **kwargs)
        elapsed_time = time.time() - start_time

        mem_after = process.memory_info().rss / 1024 / 1024  # MB
        return result, elapsed_time, mem_after - mem_before

    def run_multiple_trials(self, func, trials: int = 10) -> Dict[str, float]:
        """Run multiple trials and compute statistics"""
        times = []
        memories = []

        for _ in range(trials):
            _, elapsed, mem_delta = self.measure_time_and_memory(func)
            times.append(elapsed)
            memories.append(mem_delta)

        return {
            'mean_time': statistics.mean(times),
            'median_time': statistics.median(times),
            'std_time': statistics.stdev(times) if len(times) > 1 else 0,
            'min_time': min(times),
            'max_time': max(times),
            'mean_memory_mb': statistics.mean(memories),
            'trials': trials
        }

    def _log_stats(self, name: str, stats: Dict[str, float]):
        self.results['benchmarks'][name] = stats
        logger.info(
            f"   Mean: {stats['mean_time']*1000:.2f}ms (±{stats['std_time']*1000:.2f}ms)")

    def benchmark_primitives(self):
        logger.info("=" * 80)
        logger.info("BENCHMARKING PRIMITIVES")
        logger.info("=" * 80)

        keypair = Keypair.generate()
        coordinator = Keypair.generate()
        scalar = keypair.private_key

        logger.info("\n[1] Poseidon (2 inputs)")
        self._log_stats('poseidon_t3', self.run_multiple_trials(
            lambda: poseidon_hash([1, 2]), trials=200))

        logger.info("\n[2] Baby Jubjub scalar multiplication")
        self._log_stats('scalar_mul', self.run_multiple_trials(
            lambda: scalar_mul(BASE8, scalar), trials=50))

        logger.info("\n[3] EdDSA-Poseidon sign / verify")
        signature = sign(keypair.private_key, 42)
        self._log_stats('eddsa_sign', self.run_multiple_trials(
            lambda: sign(keypair.private_key, 42), trials=50))
        self._log_stats('eddsa_verify', self.run_multiple_trials(
            lambda: verify_signature(keypair.public_key, 42, signature), trials=50))

        logger.info("\n[4] Command encryption / decryption")
        command = Command(state_index=1, vote_option_index=0, new_vote_weight=3,
                          nonce=1).sign(keypair.private_key, MessageType.VOTE)
        message = encrypt_command(command, MessageType.VOTE, coordinator.public_key, 0)
        self._log_stats('encrypt_command', self.run_multiple_trials(
            lambda: encrypt_command(command, MessageType.VOTE, coordinator.public_key, 0),
            trials=50))
        self._log_stats('decrypt_message', self.run_multiple_trials(
            lambda: decrypt_message(message, coordinator.private_key), trials=50))

    def benchmark_add_new_key(self):
        logger.info("\n" + "=" * 80)
        logger.info("BENCHMARKING addNewKey")
        logger.info("=" * 80)

        coordinator = Keypair.generate()
        backend = TransparentProofBackend()
        registry = KeyRegistry(coordinator.public_key, backend)
        voter = Keypair.generate()

        logger.info("\n[1] Synthesis")
        registration = registry.prepare_registration(voter.public_key, 0)
        self._log_stats('add_new_key_synthesis', self.run_multiple_trials(
            lambda: registry.circuit.synthesize(registration.public, registration.witness),
            trials=10))

        logger.info("\n[2] Prove")
        self._log_stats('add_new_key_prove', self.run_multiple_trials(
            lambda: registry.prove(registration), trials=10))

        logger.info("\n[3] Verify")
        proof = registry.prove(registration)
        self._log_stats('add_new_key_verify', self.run_multiple_trials(
            lambda: backend.verify(proof, registration.public.signals()), trials=100))
        self.results['benchmarks']['add_new_key_constraints'] = proof.constraint_count
        logger.info(f"\n[4] Constraints: {proof.constraint_count}")

    async def benchmark_batch(self, batch_size: int) -> Dict[str, Any]:
        """One vote batch and one deactivation batch with batch_size real messages each"""
        maci = self.config.maci_config
        batch_size = min(batch_size, maci.max_batch_size)
        system = AnonMaciSystem(SystemConfig(
            maci_config=MaciConfig(
                max_batch_size=maci.max_batch_size,
                state_tree_depth=maci.state_tree_depth,
                max_vote_options=maci.max_vote_options,
                initial_credit_balance=maci.initial_credit_balance,
            ),
            log_dir=self.config.log_dir,
            results_dir=self.config.results_dir,
        ))
        await system.initialize()
        try:
            start = time.time()
            voters = [await system.register_voter(f"bench_{i}") for i in range(batch_size)]
            registration_time = time.time() - start

            for i, voter in enumerate(voters):
                await system.cast_vote(voter, i % maci.max_vote_options, vote_weight=1)
            start = time.time()
            messages = await system.process_messages()
            message_time = time.time() - start

            for voter in voters:
                await system.deactivate_key(voter)
            start = time.time()
            deactivations = await system.process_deactivations()
            deactivation_time = time.time() - start
        finally:
            system.shutdown()

        outcomes = messages + deactivations
        return {
            'batch_size': batch_size,
            'capacity': maci.max_batch_size,
            'registration_time': registration_time,
            'registration_throughput': batch_size / registration_time,
            'process_messages_time': message_time,
            'process_deactivate_time': deactivation_time,
            'process_messages_constraints': messages[0].proof.constraint_count
            if messages and messages[0].proof else 0,
            'process_deactivate_constraints': deactivations[0].proof.constraint_count
            if deactivations and deactivations[0].proof else 0,
            'all_verified': all(o.status.value == 'verified' for o in outcomes),
        }

    async def benchmark_batches(self, batch_sizes: List[int]):
        logger.info("\n" + "=" * 80)
        logger.info("BENCHMARKING BATCH PROCESSING (END-TO-END)")
        logger.info("=" * 80)

        for batch_size in batch_sizes:
            logger.info(f"\n[Batch] {batch_size} real messages")
            result = await self.benchmark_batch(batch_size)
            self.results['batches'][str(batch_size)] = result
            logger.info(f"   processMessages:   {result['process_messages_time']:.2f}s")
            logger.info(f"   processDeactivate: {result['process_deactivate_time']:.2f}s")

    async def run_all_benchmarks(self, batch_sizes: List[int] = None):
        """Run complete benchmark suite"""
        batch_sizes = batch_sizes or [1, 8, 32]
        info = self.results['system_info']
        logger.info(f"System: {info['cpu_count_physical']} CPU cores, "
                    f"{info['total_memory_gb']:.1f} GB RAM")

        total_start = time.time()
        self.benchmark_primitives()
        self.benchmark_add_new_key()
        await self.benchmark_batches(batch_sizes)
        total_time = time.time() - total_start

        logger.info("\n" + "=" * 80)
        logger.info(f"BENCHMARKING COMPLETE - Total time: {total_time:.2f}s")
        logger.info("=" * 80)

        self.save_results()
        self.print_summary()

    def save_results(self):
        results_file = self.config.results_dir / 'benchmark_results.json'
        save_results(self.results, results_file)
        logger.info(f"\n Results saved to: {results_file}")

    def print_summary(self):
        logger.info("\n" + "=" * 80)
        logger.info("PERFORMANCE SUMMARY")
        logger.info("=" * 80)

        bench = self.results['benchmarks']
        logger.info(f"   Poseidon:          {bench['poseidon_t3']['mean_time']*1000:.3f} ms")
        logger.info(f"   Scalar mul:        {bench['scalar_mul']['mean_time']*1000:.2f} ms")
        logger.info(f"   EdDSA verify:      {bench['eddsa_verify']['mean_time']*1000:.2f} ms")
        logger.info(f"   addNewKey prove:   {bench['add_new_key_prove']['mean_time']*1000:.2f} ms")

        for size, result in self.results['batches'].items():
            logger.info(f"   batch {size}/{result['capacity']}: "
                        f"messages {result['process_messages_time']:.2f}s, "
                        f"deactivations {result['process_deactivate_time']:.2f}s")

        logger.info("\n" + "=" * 80)


async def main():
    """Main benchmark execution"""
    setup_logging("INFO")
    benchmark = BenchmarkSuite()
    await benchmark.run_all_benchmarks()


if __name__ == "__main__":
    asyncio.run(main())
