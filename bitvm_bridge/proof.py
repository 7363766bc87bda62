"""
BitVM Bridge SDK - Assertions and Fraud Witnesses

The operator's assertion is split over assert_commit_1 / assert_commit_2 and
bound together in assert_final. Each of the three 32-byte values is signed
with the operator's Winternitz keys, so the values the assert transactions put
on-chain are the ones the disprove leaf later checks.

A fraud witness exists when:
  - the assertion is internally inconsistent (final is not the digit-wise
    sum mod 16 of commit_1 and commit_2), provable from the signed values
    alone, or
  - the proof does not verify. The zk verifier is opaque here (any callable
    `verify(proof) -> bool`), so on-chain this needs the proof oracle's
    attestation: the preimage of the lock embedded in the disprove leaf.
"""

import hashlib
import hmac
import importlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import wots


ProofVerifier = Callable[[bytes], bool]

COMMIT_1 = "commit_1"
COMMIT_2 = "commit_2"
FINAL = "final"
ASSERTION_MESSAGES = (COMMIT_1, COMMIT_2, FINAL)


def accept_all(proof: bytes) -> bool:
    return True


def reject_all(proof: bytes) -> bool:
    return False


def load_proof_verifier(path: str) -> ProofVerifier:
    """Resolve a "package.module:function" verifier reference."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"proof verifier must look like module:function, got {path!r}")
    try:
        verify = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"cannot load proof verifier {path}: {e}")
    if not callable(verify):
        raise ValueError(f"proof verifier {path} is not callable")
    return verify


class FraudKind(Enum):
    INVALID_PROOF = "invalid_proof"
    INCONSISTENT_ASSERTION = "inconsistent_assertion"


def _check_hash(name: str, value: str):
    if len(value) != 64:
        raise ValueError(f"{name} must be 32 bytes of hex")
    bytes.fromhex(value)


def expected_final(commit_1: str, commit_2: str) -> str:
    """Digit-wise sum (mod 16) of the two halves, the relation the disprove leaf checks."""
    return "".join(f"{(int(a, 16) + int(b, 16)) % 16:x}"
                   for a, b in zip(commit_1.lower(), commit_2.lower()))


@dataclass(frozen=True)
class Assertion:
    """
    Operator assertion.

    Fields:
      - commit_1: first half commitment (hex, 32 bytes)
      - commit_2: second half commitment (hex, 32 bytes)
      - final: binding commitment, expected_final(commit_1, commit_2)
      - proof: opaque proof bytes (hex)
      - signatures: Winternitz signature per message name
    """
    commit_1: str
    commit_2: str
    final: str
    proof: str
    signatures: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        _check_hash("commit_1", self.commit_1)
        _check_hash("commit_2", self.commit_2)
        _check_hash("final", self.final)
        bytes.fromhex(self.proof)

    def values(self) -> Dict[str, str]:
        return {COMMIT_1: self.commit_1, COMMIT_2: self.commit_2, FINAL: self.final}

    def is_consistent(self) -> bool:
        return self.final.lower() == expected_final(self.commit_1, self.commit_2)

    def verify_signatures(self, public_keys: Dict[str, List[str]]) -> bool:
        """Every value carries a valid Winternitz signature under the graph's keys."""
        for name, value in self.values().items():
            if name not in public_keys or name not in self.signatures:
                return False
            if not wots.verify(public_keys[name], value, self.signatures[name]):
                return False
        return True

    def witness_items(self, name: str) -> List[str]:
        """Witness items revealing one signed value."""
        return wots.witness_items(self.values()[name], self.signatures[name])

    def digest(self) -> str:
        data = bytes.fromhex(self.commit_1 + self.commit_2 + self.final) + bytes.fromhex(self.proof)
        return hashlib.sha256(data).hexdigest()

    def to_dict(self) -> dict:
        return {
            "commit_1": self.commit_1,
            "commit_2": self.commit_2,
            "final": self.final,
            "proof": self.proof,
            "signatures": {name: list(sig) for name, sig in self.signatures.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Assertion":
        return cls(data["commit_1"], data["commit_2"], data["final"], data["proof"],
                   {name: list(sig) for name, sig in data.get("signatures", {}).items()})


class AssertionSigner:
    """
    Operator's Winternitz keys for one peg-out graph.

    Usage:
        signer = AssertionSigner(operator_key.secret_bytes, assertion_label(funding))
        params = GraphParams(..., assertion_keys=signer.public_keys())
        assertion = signer.build(commit_1, commit_2, proof)
    """

    def __init__(self, seed: bytes, label: str):
        self.seed = seed
        self.label = label
        self._public_keys: Optional[Dict[str, List[str]]] = None

    def _secrets(self, name: str) -> List[bytes]:
        return wots.derive_secrets(self.seed, f"{self.label}/{name}")

    def public_keys(self) -> Dict[str, List[str]]:
        if self._public_keys is None:
            self._public_keys = {name: wots.public_key(self._secrets(name))
                                 for name in ASSERTION_MESSAGES}
        return self._public_keys

    def sign(self, commit_1: str, commit_2: str, final: str, proof: str) -> Assertion:
        """Sign the given values as they are, consistent or not."""
        unsigned = Assertion(commit_1, commit_2, final, proof)
        signatures = {name: wots.sign(self._secrets(name), value)
                      for name, value in unsigned.values().items()}
        return Assertion(commit_1, commit_2, final, proof, signatures)

    def build(self, commit_1: str, commit_2: str, proof: str) -> Assertion:
        """Honest assertion with a consistent final commitment."""
        return self.sign(commit_1, commit_2, expected_final(commit_1, commit_2), proof)


def assertion_label(funding) -> str:
    """Key derivation label of a peg-out graph, from its funding UTXO."""
    return f"bitvm-bridge/assert/{funding.outpoint}"


# =============================================================================
# PROOF ORACLE
# =============================================================================

class ProofOracle:
    """
    Attests that an asserted proof does not verify.

    lock(label) = sha256(attestation(label)) is published before the graph is
    built and embedded in the disprove leaf; the oracle only reveals the
    attestation for an assertion whose proof fails `verify`.
    """

    def __init__(self, secret: bytes, verify: ProofVerifier):
        self.secret = secret
        self.verify = verify

    def attestation(self, label: str) -> bytes:
        return hmac.new(self.secret, f"bitvm-bridge/invalid-proof/{label}".encode(),
                        hashlib.sha256).digest()

    def lock(self, label: str) -> str:
        return hashlib.sha256(self.attestation(label)).hexdigest()

    def attest(self, label: str, assertion: Assertion) -> Optional[str]:
        if self.verify(bytes.fromhex(assertion.proof)):
            return None
        return self.attestation(label).hex()


def opens_lock(attestation: str, lock: str) -> bool:
    try:
        return bool(lock) and hashlib.sha256(bytes.fromhex(attestation)).hexdigest() == lock.lower()
    except ValueError:
        return False


# =============================================================================
# FRAUD WITNESSES
# =============================================================================

@dataclass(frozen=True)
class FraudWitness:
    """
    Evidence behind a disprove: the digest of the assertion it refutes and,
    for an invalid proof, the oracle attestation opening the disprove lock.
    """
    kind: FraudKind
    digest: str
    attestation: str = ""

    def __post_init__(self):
        _check_hash("digest", self.digest)
        bytes.fromhex(self.attestation)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "digest": self.digest, "attestation": self.attestation}

    @classmethod
    def from_dict(cls, data: dict) -> "FraudWitness":
        return cls(FraudKind(data["kind"]), data["digest"], data.get("attestation", ""))


def evaluate_fraud(assertion: Assertion, verify: ProofVerifier,
                   attestation: str = "") -> Optional[FraudWitness]:
    """
    Check an assertion.

    Returns:
        FraudWitness if the assertion is fraudulent, None if it holds
    """
    if not assertion.is_consistent():
        return FraudWitness(FraudKind.INCONSISTENT_ASSERTION, assertion.digest())
    if not verify(bytes.fromhex(assertion.proof)):
        return FraudWitness(FraudKind.INVALID_PROOF, assertion.digest(), attestation)
    return None


def is_valid_witness(witness: FraudWitness, assertion: Optional[Assertion],
                     verify: Optional[ProofVerifier] = None, lock: str = "") -> bool:
    """
    A witness is valid if it matches the stored assertion and can spend the
    disprove leaf: an inconsistent assertion, or an invalid proof whose oracle
    attestation opens the graph's lock (and, when a local verifier is
    configured, whose proof that verifier rejects too).
    """
    if assertion is None:
        return False
    if witness.digest != assertion.digest():
        return False
    if witness.kind == FraudKind.INCONSISTENT_ASSERTION:
        return not assertion.is_consistent()
    if not opens_lock(witness.attestation, lock):
        return False
    if verify is not None and verify(bytes.fromhex(assertion.proof)):
        return False
    return True
