"""
BitVM Bridge SDK - Errors

Every failure raised by the SDK derives from BridgeError. Each error carries a
short machine-readable code and a `retryable` flag so the CLI can tell
"not yet ready, retry later" apart from "permanently invalid input".
"""

from enum import Enum
from typing import List, Optional


# Exit codes (sysexits.h)
EXIT_OK = 0
EXIT_PERMANENT = 65     # EX_DATAERR
EXIT_RETRY = 75         # EX_TEMPFAIL


class BridgeError(Exception):
    """Base class for bridge errors."""
    code = "bridge_error"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


def exit_code_for(error: Exception) -> int:
    """Map an exception to a CLI exit code."""
    if isinstance(error, BridgeError) and error.retryable:
        return EXIT_RETRY
    return EXIT_PERMANENT


# =============================================================================
# DERIVATION ERRORS (fatal, configuration or programmer error)
# =============================================================================

class DerivationError(BridgeError):
    code = "derivation_error"


class InvalidCommittee(DerivationError):
    code = "invalid_committee"


class InvalidParams(DerivationError):
    code = "invalid_params"


# =============================================================================
# GRAPH ERRORS
# =============================================================================

class UnknownGraph(BridgeError):
    code = "unknown_graph"

    def __init__(self, graph_id: str):
        self.graph_id = graph_id
        super().__init__(f"graph {graph_id} not found in store")


class UnknownLinkedGraph(BridgeError):
    """Linked peg-in graph is missing (permanent) or not yet confirmed (retry)."""
    code = "unknown_linked_graph"

    def __init__(self, graph_id: str, reason: str, retryable: bool = False):
        self.graph_id = graph_id
        self.retryable = retryable
        super().__init__(f"linked graph {graph_id}: {reason}")


class AmountMismatch(BridgeError):
    code = "amount_mismatch"

    def __init__(self, available: int, required: int, what: str = "funding"):
        self.available = available
        self.required = required
        super().__init__(f"{what} value {available} sats below required {required} sats")


# =============================================================================
# SIGNING PROTOCOL ERRORS
# =============================================================================

class SigningError(BridgeError):
    """Signing errors always name the offending (verifier, input) pair when known."""
    code = "signing_error"

    def __init__(self, message: str, verifier: Optional[str] = None, input_ref=None):
        self.verifier = verifier
        self.input_ref = input_ref
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["verifier"] = self.verifier
        data["input"] = str(self.input_ref) if self.input_ref is not None else None
        return data


class UnknownVerifier(SigningError):
    code = "unknown_verifier"

    def __init__(self, verifier: str):
        super().__init__(f"{verifier} is not a committee member", verifier=verifier)


class UnknownInput(SigningError):
    code = "unknown_input"

    def __init__(self, input_ref, reason: str = "not signed by the committee"):
        super().__init__(f"input {input_ref} {reason}", input_ref=input_ref)


class MissingNonce(SigningError):
    code = "missing_nonce"
    retryable = True

    def __init__(self, input_ref, missing: List[str]):
        self.missing = missing
        super().__init__(
            f"input {input_ref} still waiting for nonces from {len(missing)} verifier(s)",
            input_ref=input_ref)


class InvalidNonce(SigningError):
    code = "invalid_nonce"

    def __init__(self, verifier: str, input_ref, reason: str):
        super().__init__(f"nonce from {verifier} for {input_ref} rejected: {reason}",
                         verifier=verifier, input_ref=input_ref)


class InvalidPartialSignature(SigningError):
    code = "invalid_partial_signature"

    def __init__(self, verifier: str, input_ref):
        super().__init__(f"partial signature from {verifier} for {input_ref} does not verify",
                         verifier=verifier, input_ref=input_ref)


class DuplicateSubmissionConflict(SigningError):
    code = "duplicate_submission_conflict"

    def __init__(self, key: str, verifier: Optional[str] = None, input_ref=None):
        self.key = key
        super().__init__(f"{key} already holds a different value",
                         verifier=verifier, input_ref=input_ref)


class SessionTimeout(SigningError):
    code = "session_timeout"
    retryable = True

    def __init__(self, input_ref, waited: float):
        self.waited = waited
        super().__init__(f"gave up on {input_ref} after {waited:.1f}s", input_ref=input_ref)


class MissingSecretNonce(SigningError):
    """Secret nonce is gone (used or lost); the input needs a fresh round."""
    code = "missing_secret_nonce"

    def __init__(self, verifier: str, input_ref):
        super().__init__(f"no secret nonce for {input_ref}, restart the session",
                         verifier=verifier, input_ref=input_ref)


# =============================================================================
# CHAIN STATE ERRORS
# =============================================================================

class BroadcastErrorKind(Enum):
    ALREADY_SPENT = "already_spent"
    INSUFFICIENT_FEE = "insufficient_fee"
    REJECTED_BY_NETWORK = "rejected_by_network"


class ChainError(BridgeError):
    code = "chain_error"
    retryable = True


class BroadcastError(ChainError):
    code = "broadcast_error"

    def __init__(self, kind: BroadcastErrorKind, message: str):
        self.kind = kind
        super().__init__(f"{kind.value}: {message}")


class ChainUnavailable(ChainError):
    code = "chain_unavailable"


class OutOfOrderConfirmation(ChainError):
    code = "out_of_order_confirmation"

    def __init__(self, tx_name, missing: List[str]):
        self.missing = missing
        super().__init__(f"{tx_name} confirmed before {', '.join(missing)} was recorded")


class StaleBroadcastRejected(ChainError):
    """The other terminal branch already confirmed; this one can never land."""
    code = "stale_broadcast_rejected"
    retryable = False

    def __init__(self, graph_id: str, tx_name, winner):
        self.graph_id = graph_id
        self.winner = winner
        super().__init__(f"{tx_name} lost the race in graph {graph_id}, {winner} confirmed first")


# =============================================================================
# INELIGIBILITY ERRORS (precondition failures, never queued)
# =============================================================================

class TransactionNotEligible(BridgeError):
    code = "transaction_not_eligible"
    retryable = True

    def __init__(self, tx_name, reason: str):
        self.tx_name = tx_name
        self.reason = reason
        super().__init__(f"{tx_name} not eligible: {reason}")


class TransactionNoLongerEligible(TransactionNotEligible):
    """Condition can never clear (already confirmed, graph resolved, window closed)."""
    code = "transaction_no_longer_eligible"
    retryable = False


class InsufficientConfirmations(TransactionNotEligible):
    code = "insufficient_confirmations"


class TimelockNotElapsed(TransactionNotEligible):
    code = "timelock_not_elapsed"


class IncompleteTransaction(BridgeError):
    code = "incomplete_transaction"
    retryable = True

    def __init__(self, tx_name, missing: List[str]):
        self.tx_name = tx_name
        self.missing = missing
        super().__init__(f"{tx_name} is missing signatures for input(s) {', '.join(missing)}")


class InvalidFraudWitness(BridgeError):
    code = "invalid_fraud_witness"

    def __init__(self, graph_id: str, reason: str):
        super().__init__(f"fraud witness for graph {graph_id} rejected: {reason}")


class InvalidAssertion(BridgeError):
    code = "invalid_assertion"

    def __init__(self, graph_id: str, reason: str):
        super().__init__(f"assertion for graph {graph_id} rejected: {reason}")


class UnknownTransaction(BridgeError):
    code = "unknown_transaction"

    def __init__(self, graph_id: str, tx_name):
        super().__init__(f"graph {graph_id} has no transaction {tx_name}")


# =============================================================================
# STORE ERRORS
# =============================================================================

class StoreError(BridgeError):
    code = "store_error"
    retryable = True
