import asyncio
import logging
import time
from typing import List, Dict, Any
from pathlib import Path
import argparse
import sys

from anon_maci_system import AnonMaciSystem, VoterIdentity
from config.config import SystemConfig, load_config
from coordinator import BatchStatus
from primitives.babyjub import credential_status
from state.state_tree import StateTree
from zk import ZKError
from utils.utils import setup_logging, save_results, create_performance_report, format_duration

logger = logging.getLogger(__name__)


class ElectionRunner:
    """Drives one full round: sign-ups, votes, key changes, deactivations"""

    def __init__(self, config: SystemConfig):
        self.config = config
        self.system = AnonMaciSystem(config)
        self.results = {
            'voters': [],
            'batches': [],
            'system_metrics': {},
            'integrity_checks': {}
        }

    async def register_voters(self, num_voters: int) -> List[VoterIdentity]:
        voters = []
        for i in range(num_voters):
            voter = await self.system.register_voter(f"voter_{i:04d}")
            voters.append(voter)
            self.results['voters'].append({
                'voter_id': voter.voter_id,
                'state_index': voter.state_index,
            })
        logger.info(f"Registered {len(voters)} voters")
        return voters

    async def run_election(self, num_voters: int, num_key_changes: int = 1,
                           num_deactivations: int = 1) -> Dict[str, Any]:
        logger.info(f"Starting round with {num_voters} voters")
        start = time.time()
        await self.system.initialize()

        voters = await self.register_voters(num_voters)
        options = self.config.maci_config.max_vote_options

        for i, voter in enumerate(voters):
            await self.system.cast_vote(voter, i % options, vote_weight=1 + i % 5)

        # Key change followed by a re-vote signed with the new key
        for voter in voters[:num_key_changes]:
            await self.system.change_key(voter)
            await self.system.cast_vote(voter, options - 1, vote_weight=2)

        message_outcomes = await self.system.process_messages()

        deactivated = voters[len(voters) - num_deactivations:] if num_deactivations else []
        for voter in deactivated:
            await self.system.deactivate_key(voter)
        deactivation_outcomes = await self.system.process_deactivations()

        self.results['batches'] = message_outcomes + deactivation_outcomes
        self.results['system_metrics'] = self.system.get_system_metrics()
        self.results['integrity_checks'] = self._perform_integrity_checks(voters, deactivated)
        self.results['total_time'] = time.time() - start

        logger.info(f"Round completed in {format_duration(self.results['total_time'])}")
        return self.results

    def _perform_integrity_checks(self, voters: List[VoterIdentity],
                                  deactivated: List[VoterIdentity]) -> Dict[str, bool]:
        checks = {}
        ledger = self.system.ledger
        coordinator = self.system.coordinator

        checks['all_batches_verified'] = all(
            o.status == BatchStatus.VERIFIED for o in self.results['batches'])
        checks['feeds_fully_processed'] = (ledger.vote_feed.pending == 0
                                           and ledger.deactivation_feed.pending == 0)
        checks['shadow_tree_matches_ledger'] = coordinator.tree.root == ledger.state_root

        # Rebuild the tree from the coordinator's leaves as an independent check
        rebuilt = StateTree(coordinator.tree.depth)
        for index in range(1, coordinator.tree.num_leaves):
            rebuilt.insert(coordinator.tree.get_leaf(index))
        checks['state_root_reproducible'] = rebuilt.root == ledger.state_root

        deactivated_slots = {v.state_index for v in deactivated}
        priv = coordinator.keypair.private_key
        checks['deactivation_flags_consistent'] = all(
            coordinator.tree.get_leaf(v.state_index).deactivated == (v.state_index in deactivated_slots)
            for v in voters)
        checks['credentials_consistent'] = all(
            credential_status(priv, coordinator.tree.get_leaf(v.state_index).credential)
            == (v.state_index in deactivated_slots)
            for v in voters)
        checks['nullifiers_recorded'] = (
            len(ledger.nullifiers) == len(voters) + len(deactivated))

        checks['all_integrity_checks_passed'] = all(checks.values())
        return checks


async def run_demo(config: SystemConfig, num_voters: int = 8) -> bool:
    print("=" * 80)
    print("ANONYMOUS MACI - DEMONSTRATION")
    print("=" * 80)

    maci = config.maci_config
    print(f"\n   Batch capacity:   {maci.max_batch_size}")
    print(f"   State tree depth: {maci.state_tree_depth} "
          f"({2 ** maci.state_tree_depth - 1} voter slots)")
    print(f"   Vote options:     {maci.max_vote_options}")
    print(f"   Credit balance:   {maci.initial_credit_balance}")
    print(f"   Prover:           {config.prover_config.backend}")

    runner = ElectionRunner(config)
    try:
        results = await runner.run_election(num_voters)

        print("\nBatches:")
        for outcome in results['batches']:
            print(f"  {outcome.kind}: {outcome.status.value} "
                  f"({outcome.batch_size} messages, {format_duration(outcome.processing_time)})")

        metrics = results['system_metrics']
        print(f"\nState root:  {metrics['state_root']}")
        print(f"Sign-ups:    {metrics['num_sign_ups'] - 1}")
        print(f"Nullifiers:  {metrics['nullifiers']}")

        print(f"\nIntegrity Checks:")
        for check, passed in results['integrity_checks'].items():
            status = "PASSED" if passed else "FAILED"
            print(f"  {check}: {status}")

        results_dir = config.results_dir
        report_path = results_dir / "demo_report.json"
        save_results(results, report_path)
        with open(results_dir / "performance_report.txt", "w") as f:
            f.write(create_performance_report(runner.system.performance_monitor))
        runner.system.save_ledger(config.ledger_snapshot or results_dir / "ledger.json")

        print(f"\nFull results saved to: {report_path}")
        return results['integrity_checks']['all_integrity_checks_passed']

    except (ZKError, ValueError, OSError) as e:
        logger.error(f"Demo failed: {e}", exc_info=True)
        print(f"\nDemo failed: {e}")
        return False
    finally:
        runner.system.shutdown()


async def run_benchmark(config: SystemConfig, batch_sizes: List[int]) -> bool:
    from tests.benchmark_suite import BenchmarkSuite

    suite = BenchmarkSuite(config)
    await suite.run_all_benchmarks(batch_sizes)
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Anonymous MACI coordinator')
    parser.add_argument('--voters', type=int, default=8,
                        help='Number of voters')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')
    parser.add_argument(
        '--mode', choices=['demo', 'benchmark'], default='demo')
    parser.add_argument('--batch-sizes', type=int, nargs='+', default=[1, 8, 32],
                        help='Real messages per batch in benchmark mode')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args()

    config = load_config(Path(args.config))
    log_level = 'DEBUG' if config.enable_debug_mode else args.log_level
    setup_logging(log_level, config.log_dir / f"anon_maci_{args.mode}.log")

    if args.mode == 'demo':
        success = asyncio.run(run_demo(config, args.voters))
    else:
        success = asyncio.run(run_benchmark(config, args.batch_sizes))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
