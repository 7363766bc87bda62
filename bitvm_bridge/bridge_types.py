"""
BitVM Bridge SDK - Data Types

Graph roles, transaction names, protocol states and the small value objects
shared between the graph builder, the signing coordinator and the dispute
state machine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import re


class GraphRole(Enum):
    """Graph role: PEG_IN locks BTC into the bridge, PEG_OUT pays it back out"""
    PEG_IN = "peg_in"
    PEG_OUT = "peg_out"


class TransactionName(Enum):
    """Named transactions of a peg-in or peg-out graph"""
    PEG_IN_CONFIRM = "peg_in_confirm"
    PEG_IN_REFUND = "peg_in_refund"
    PEG_OUT = "peg_out"
    PEG_OUT_CONFIRM = "peg_out_confirm"
    KICK_OFF_1 = "kick_off_1"
    KICK_OFF_2 = "kick_off_2"
    ASSERT_INITIAL = "assert_initial"
    ASSERT_COMMIT_1 = "assert_commit_1"
    ASSERT_COMMIT_2 = "assert_commit_2"
    ASSERT_FINAL = "assert_final"
    DISPROVE = "disprove"
    TIMEOUT_CLAIM = "timeout_claim"
    TAKE_1 = "take_1"

    @classmethod
    def parse(cls, name: str) -> "TransactionName":
        try:
            return cls(name.strip().lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown transaction name: {name}")


PEG_IN_TRANSACTIONS = (
    TransactionName.PEG_IN_CONFIRM,
    TransactionName.PEG_IN_REFUND,
)

PEG_OUT_TRANSACTIONS = (
    TransactionName.PEG_OUT,
    TransactionName.PEG_OUT_CONFIRM,
    TransactionName.KICK_OFF_1,
    TransactionName.KICK_OFF_2,
    TransactionName.ASSERT_INITIAL,
    TransactionName.ASSERT_COMMIT_1,
    TransactionName.ASSERT_COMMIT_2,
    TransactionName.ASSERT_FINAL,
    TransactionName.DISPROVE,
    TransactionName.TIMEOUT_CLAIM,
    TransactionName.TAKE_1,
)


class SignerRole(Enum):
    """Who authorizes a given transaction input"""
    COMMITTEE = "committee"
    DEPOSITOR = "depositor"
    OPERATOR = "operator"


class SigningState(Enum):
    """Per-input signing session state"""
    AWAITING_NONCES = "awaiting_nonces"
    AWAITING_SIGNATURES = "awaiting_signatures"
    COMPLETE = "complete"


class DisputeState(Enum):
    """Peg-out graph state, derived from confirmed transactions only"""
    CREATED = "created"
    PEG_OUT_BROADCAST = "peg_out_broadcast"
    PEG_OUT_CONFIRMED = "peg_out_confirmed"
    KICK_OFF_1_BROADCAST = "kick_off_1_broadcast"
    KICK_OFF_2_BROADCAST = "kick_off_2_broadcast"
    ASSERT_INITIAL_BROADCAST = "assert_initial_broadcast"
    ASSERT_COMMIT_BROADCAST = "assert_commit_broadcast"
    ASSERT_FINAL_BROADCAST = "assert_final_broadcast"
    DISPROVED = "disproved"
    TIMED_OUT_CLAIMED = "timed_out_claimed"
    REIMBURSED = "reimbursed"


class PegInState(Enum):
    """Peg-in graph state"""
    CREATED = "created"
    CONFIRMED = "confirmed"
    REFUNDED = "refunded"


class OutcomeKind(Enum):
    """Terminal outcome of a graph. Exactly one per graph, first confirmation wins."""
    PEG_IN_CONFIRMED = "peg_in_confirmed"
    PEG_IN_REFUNDED = "peg_in_refunded"
    DISPROVED = "disproved"
    TIMED_OUT_CLAIMED = "timed_out_claimed"
    REIMBURSED = "reimbursed"


# Terminal transactions and the outcome they resolve to
TERMINAL_OUTCOMES = {
    TransactionName.PEG_IN_CONFIRM: OutcomeKind.PEG_IN_CONFIRMED,
    TransactionName.PEG_IN_REFUND: OutcomeKind.PEG_IN_REFUNDED,
    TransactionName.DISPROVE: OutcomeKind.DISPROVED,
    TransactionName.TIMEOUT_CLAIM: OutcomeKind.TIMED_OUT_CLAIMED,
    TransactionName.TAKE_1: OutcomeKind.REIMBURSED,
}


_TXID_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class Outpoint:
    """Bitcoin outpoint, written TXID:VOUT"""
    txid: str
    vout: int

    def __post_init__(self):
        if not _TXID_RE.match(self.txid):
            raise ValueError(f"Invalid txid: {self.txid}")
        if self.vout < 0:
            raise ValueError(f"Invalid vout: {self.vout}")
        object.__setattr__(self, "txid", self.txid.lower())

    @classmethod
    def parse(cls, value: str) -> "Outpoint":
        """Parse "TXID:VOUT"."""
        txid, sep, vout = value.strip().partition(":")
        if not sep or not vout.isdigit():
            raise ValueError(f"Invalid outpoint (expected TXID:VOUT): {value}")
        return cls(txid, int(vout))

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class Utxo:
    """Funding UTXO: an outpoint and its value in sats"""
    outpoint: Outpoint
    amount: int

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Invalid amount: {self.amount}")

    def to_dict(self) -> dict:
        return {"outpoint": str(self.outpoint), "amount": self.amount}

    @classmethod
    def from_dict(cls, data: dict) -> "Utxo":
        return cls(Outpoint.parse(data["outpoint"]), int(data["amount"]))


@dataclass(frozen=True)
class InputRef:
    """One input of one graph transaction, written tx_name/index"""
    tx_name: TransactionName
    index: int

    def key(self) -> str:
        return f"{self.tx_name.value}/{self.index}"

    @classmethod
    def parse(cls, value: str) -> "InputRef":
        name, _, index = value.partition("/")
        return cls(TransactionName.parse(name), int(index or 0))

    def __str__(self) -> str:
        return self.key()


@dataclass(frozen=True)
class ChainState:
    """Observed chain tip"""
    height: int


@dataclass
class AggregationStatus:
    """Result of a partial-signature submission"""
    input_ref: InputRef
    state: SigningState
    received: int
    required: int
    signature: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "input": self.input_ref.key(),
            "state": self.state.value,
            "received": self.received,
            "required": self.required,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class TerminalOutcome:
    """
    Resolved end of a graph.

    A single tagged value instead of one flag per branch, so a graph can
    never hold both a disprove and a timeout claim.
    """
    kind: OutcomeKind
    tx_name: TransactionName
    height: int

    @classmethod
    def for_transaction(cls, tx_name: TransactionName, height: int) -> "TerminalOutcome":
        return cls(TERMINAL_OUTCOMES[tx_name], tx_name, height)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "tx_name": self.tx_name.value,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TerminalOutcome":
        return cls(
            kind=OutcomeKind(data["kind"]),
            tx_name=TransactionName(data["tx_name"]),
            height=int(data["height"]),
        )
