"""Shared fixtures: small circuit shapes and a ready-made system factory."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from anon_maci_system import AnonMaciSystem
from config.config import MaciConfig, SystemConfig
from primitives.babyjub import BASE8, Keypair, point_add
from primitives.field import PRIME
from primitives.poseidon import poseidon_encrypt
from state.messages import Message
from zk import TransparentProofBackend
from zk.circuits import CircuitParameters

# Order-2 point (0, -1); adding it to a subgroup point leaves the subgroup
TORSION_POINT = (0, PRIME - 1)
MIXED_ORDER_POINT = point_add(BASE8, TORSION_POINT)
OFF_CURVE_POINT = (1, 2)
IDENTITY_POINT = (0, 1)


def sealed_under_public_key(command, msg_type, coord_pub_key, enc_key):
    """Ciphertext keyed by coord_pub_key itself, which is what coord_priv * BASE8 yields"""
    ciphertext = poseidon_encrypt(command.to_fields(), coord_pub_key)
    return Message(int(msg_type), (enc_key[0], enc_key[1], *ciphertext))


@pytest.fixture
def params():
    return CircuitParameters(max_batch_size=4, state_tree_depth=4, max_vote_options=4)


@pytest.fixture(scope="session")
def coordinator_keypair():
    return Keypair.from_private_key(
        1234567890123456789012345678901234567890123456789012345678901234567)


@pytest.fixture
def backend():
    return TransparentProofBackend()


@pytest.fixture
def make_system(tmp_path, coordinator_keypair):
    """Factory for an AnonMaciSystem writing its logs and results under tmp_path"""
    systems = []

    def _make(max_batch_size=4, state_tree_depth=4, max_vote_options=4,
              initial_credit_balance=100, ledger_snapshot=None):
        config = SystemConfig(
            maci_config=MaciConfig(
                max_batch_size=max_batch_size,
                state_tree_depth=state_tree_depth,
                max_vote_options=max_vote_options,
                initial_credit_balance=initial_credit_balance,
            ),
            log_dir=tmp_path / "logs",
            results_dir=tmp_path / "results",
            ledger_snapshot=ledger_snapshot,
        )
        system = AnonMaciSystem(config, coordinator_keypair=coordinator_keypair)
        systems.append(system)
        return system

    yield _make

    for system in systems:
        system.shutdown()
