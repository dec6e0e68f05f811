"""
Transparent proof backend: HMAC binding over the constraint transcript.
"""

import json

import pytest

from coordinator import KeyRegistry
from primitives.babyjub import Keypair
from zk import (
    ProofArtifact,
    ProofType,
    TransparentProofBackend,
    WeakRandomness,
)


@pytest.fixture
def registration(coordinator_keypair, backend):
    registry = KeyRegistry(coordinator_keypair.public_key, backend)
    return registry.prepare_registration(Keypair.generate().public_key, 0)


def proved(backend, coordinator_keypair, registration):
    return KeyRegistry(coordinator_keypair.public_key, backend).prove(registration)


class TestTransparentBackend:

    def test_verifies_own_proof(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        assert artifact.proof_type == ProofType.ADD_NEW_KEY
        assert artifact.backend == "transparent"
        assert artifact.constraint_count > 0
        assert artifact.public_inputs()['action_counter'] == 0
        assert artifact.nullifiers() == [registration.public.nullifier]
        assert backend.verify(artifact, registration.public.signals())

    def test_other_secret_rejects(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        assert not TransparentProofBackend().verify(artifact, registration.public.signals())

    def test_expired_proof(self, coordinator_keypair, registration):
        backend = TransparentProofBackend(proof_ttl=-1)
        artifact = proved(backend, coordinator_keypair, registration)
        assert artifact.is_expired()
        assert not backend.verify(artifact, registration.public.signals())

    def test_public_inputs_must_match(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        signals = registration.public.signals()
        signals['action_counter'] = 1
        assert not backend.verify(artifact, signals)

    def test_tampered_transcript(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        artifact.proof['transcript'] = "00" * 32
        assert not backend.verify(artifact, registration.public.signals())

    def test_malformed_proof(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        artifact.proof = {'scheme': 'hmac-sha256'}
        assert not backend.verify(artifact, registration.public.signals())

    def test_foreign_backend_artifact(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        artifact.backend = "groth16"
        assert not backend.verify(artifact, registration.public.signals())

    def test_artifact_dict_form(self, backend, coordinator_keypair, registration):
        artifact = proved(backend, coordinator_keypair, registration)
        data = json.loads(json.dumps(artifact.to_dict()))
        restored = ProofArtifact.from_dict(data)
        assert restored == artifact
        assert backend.verify(restored, registration.public.signals())

    def test_violation_reported_before_binding(self, backend, coordinator_keypair):
        registry = KeyRegistry(coordinator_keypair.public_key, backend)
        weak = registry.prepare_registration(Keypair.generate().public_key, 0, random_val=3)
        with pytest.raises(WeakRandomness):
            registry.prove(weak)
