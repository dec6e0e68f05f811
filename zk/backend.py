"""
Proof Backends
==============

prove(constraint_system, witness) -> ProofArtifact
verify(artifact, public_inputs) -> bool

TransparentProofBackend checks satisfiability directly and binds the result
with an HMAC over the circuit id, the public inputs and the constraint
transcript; it is the backend the ledger runs against in-process.
"""

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from primitives.field import PRIME
from .constraints import ConstraintSystem

logger = logging.getLogger(__name__)


class ProofType(Enum):
    """Types of proofs in the system"""
    ADD_NEW_KEY = "add_new_key"
    PROCESS_MESSAGES = "process_messages"
    PROCESS_DEACTIVATE = "process_deactivate"


@dataclass
class ProofArtifact:
    """Container for proof and metadata"""
    proof: Dict[str, Any]
    public_signals: Dict[str, str]
    proof_type: ProofType
    generation_time: float
    constraint_count: int
    backend: str
    timestamp: float = field(default_factory=time.time)
    expires_at: float = field(
        default_factory=lambda: time.time() + 3600)  # 1 hour

    def is_expired(self) -> bool:
        return time.time() > self.expires_at

    def public_inputs(self) -> Dict[str, int]:
        return {name: int(value) for name, value in self.public_signals.items()}

    def nullifiers(self) -> List[int]:
        """Non-zero nullifier signals carried by the proof"""
        return [int(v) for k, v in self.public_signals.items()
                if k.startswith('nullifier') and int(v) != 0]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['proof_type'] = self.proof_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProofArtifact':
        data = dict(data)
        data['proof_type'] = ProofType(data['proof_type'])
        return cls(**data)


def _signal_strings(public_inputs: Mapping[str, int]) -> Dict[str, str]:
    return {name: str(value % PRIME) for name, value in public_inputs.items()}


# ============================================================================
# TRANSPARENT BACKEND
# ============================================================================


class TransparentProofBackend:
    """Direct satisfiability check bound by HMAC-SHA256"""

    name = "transparent"

    def __init__(self, secret: Optional[bytes] = None, proof_ttl: float = 3600.0):
        self._secret = secret or secrets.token_bytes(32)
        self.proof_ttl = proof_ttl

    def _tag(self, circuit_id: str, signals: Mapping[str, str], transcript: bytes) -> hmac.HMAC:
        mac = hmac.HMAC(self._secret, hashes.SHA256())
        mac.update(circuit_id.encode())
        mac.update(json.dumps(dict(signals), sort_keys=True).encode())
        mac.update(transcript)
        return mac

    def prove(self, cs: ConstraintSystem, witness: Any = None) -> ProofArtifact:
        start_time = time.time()
        cs.check_satisfied()

        transcript = cs.transcript_digest()
        signals = _signal_strings(cs.public_inputs)
        tag = self._tag(cs.name, signals, transcript).finalize()
        generation_time = time.time() - start_time

        logger.info(f"Proved {cs.name}: {cs.constraint_count} constraints "
                    f"in {generation_time:.2f}s")
        return ProofArtifact(
            proof={'scheme': 'hmac-sha256', 'transcript': transcript.hex(), 'tag': tag.hex()},
            public_signals=signals,
            proof_type=ProofType(cs.name),
            generation_time=generation_time,
            constraint_count=cs.constraint_count,
            backend=self.name,
            expires_at=time.time() + self.proof_ttl,
        )

    def verify(self, artifact: ProofArtifact, public_inputs: Mapping[str, int]) -> bool:
        if artifact.backend != self.name:
            logger.warning(f"Artifact produced by {artifact.backend}, not {self.name}")
            return False
        if artifact.is_expired():
            logger.warning(f"Proof expired at {artifact.expires_at}")
            return False

        expected = _signal_strings(public_inputs)
        if artifact.public_signals != expected:
            logger.warning(f"Public inputs do not match the {artifact.proof_type.value} proof")
            return False

        try:
            transcript = bytes.fromhex(artifact.proof['transcript'])
            tag = bytes.fromhex(artifact.proof['tag'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed proof: {e}")
            return False

        try:
            self._tag(artifact.proof_type.value, expected, transcript).verify(tag)
        except InvalidSignature:
            logger.warning(f"Proof tag mismatch for {artifact.proof_type.value}")
            return False
        return True
