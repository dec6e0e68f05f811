"""
Key registry: builds and proves addNewKey statements for registration and
rotation.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from primitives.babyjub import (
    EMPTY_CREDENTIAL,
    Keypair,
    Point,
    Signature,
    elgamal_rerandomize,
    sign,
)
from primitives.poseidon import poseidon_hash
from state.nullifiers import NullifierAction, registration_nullifier
from state.state_tree import StateLeaf
from zk.backend import ProofArtifact
from zk.circuits import (
    FULL_SCALAR_BITS,
    RANDOMNESS_THRESHOLD,
    AddNewKeyCircuit,
    AddNewKeyInputs,
    AddNewKeyWitness,
)

logger = logging.getLogger(__name__)


def generate_random_val() -> int:
    """Uniform in (2^200, 2^251)"""
    while True:
        value = secrets.randbits(FULL_SCALAR_BITS)
        if value > RANDOMNESS_THRESHOLD:
            return value


def rotation_digest(state_index: int, new_pub_key: Point, action_counter: int) -> int:
    """Message the current key signs to authorise replacing itself"""
    return poseidon_hash([int(NullifierAction.ADD_NEW_KEY), state_index,
                          new_pub_key[0], new_pub_key[1], action_counter])


@dataclass
class KeyRegistration:
    """An addNewKey statement with the leaf it produces"""
    public: AddNewKeyInputs
    witness: AddNewKeyWitness
    leaf: StateLeaf
    state_index: Optional[int] = None
    rotation_signature: Optional[Signature] = None
    proof: Optional[ProofArtifact] = None


class KeyRegistry:
    """Voter-side construction of registrations and rotations"""

    def __init__(self, coord_pub_key: Point, backend, initial_credit_balance: int = 100):
        self.coord_pub_key = coord_pub_key
        self.backend = backend
        self.initial_credit_balance = initial_credit_balance
        self.circuit = AddNewKeyCircuit()

    def _statement(self, new_pub_key: Point, previous_credential, action_counter: int,
                   random_val: Optional[int]):
        random_val = generate_random_val() if random_val is None else random_val
        new_credential = elgamal_rerandomize(previous_credential, self.coord_pub_key,
                                             random_val)
        public = AddNewKeyInputs(
            new_pub_key=new_pub_key,
            coord_pub_key=self.coord_pub_key,
            previous_credential=previous_credential,
            new_credential=new_credential,
            nullifier=registration_nullifier(new_pub_key, action_counter),
            action_counter=action_counter,
        )
        return public, AddNewKeyWitness(random_val=random_val)

    def prepare_registration(self, new_pub_key: Point, action_counter: int,
                             random_val: Optional[int] = None) -> KeyRegistration:
        public, witness = self._statement(new_pub_key, EMPTY_CREDENTIAL, action_counter,
                                          random_val)
        leaf = StateLeaf(
            public_key=new_pub_key,
            credit_balance=self.initial_credit_balance,
            credential=public.new_credential,
        )
        return KeyRegistration(public=public, witness=witness, leaf=leaf)

    def prepare_rotation(self, current: Keypair, state_index: int, current_leaf: StateLeaf,
                         new_pub_key: Point, action_counter: int,
                         random_val: Optional[int] = None) -> KeyRegistration:
        if current_leaf.public_key != current.public_key:
            raise ValueError(f"Keypair does not own slot {state_index}")

        public, witness = self._statement(new_pub_key, current_leaf.credential,
                                          action_counter, random_val)
        leaf = current_leaf.evolve(public_key=new_pub_key, credential=public.new_credential)
        signature = sign(current.private_key,
                         rotation_digest(state_index, new_pub_key, action_counter))
        return KeyRegistration(public=public, witness=witness, leaf=leaf,
                               state_index=state_index, rotation_signature=signature)

    def prove(self, registration: KeyRegistration) -> ProofArtifact:
        """Raises the ConstraintViolation of the first failed check"""
        cs = self.circuit.synthesize(registration.public, registration.witness)
        registration.proof = self.backend.prove(cs, {
            'public': registration.public, 'witness': registration.witness})
        return registration.proof
