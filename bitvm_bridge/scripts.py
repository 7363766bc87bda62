"""
BitVM Bridge SDK - Script Derivation

Derives the taproot outputs ("connectors") used by peg-in and peg-out graphs
from the committee keys and the graph parameters.

Every connector has the committee aggregate key as taproot internal key and a
two-leaf script tree:

  leaf 0  cooperative / forward path (normally the committee aggregate key)
  leaf 1  timelocked fallback (CSV) for the party that owns the funds

The assert connectors additionally check the operator's Winternitz signature
over the value the spending transaction reveals. The challenge connector's
leaf 0 (disprove) re-checks all three signed values and only passes when
final differs from the digit-wise sum of commit_1 and commit_2, or when the
proof oracle's attestation opens the invalid-proof lock.

derive_scripts() is pure: identical inputs give byte-identical scripts on
every verifier, which is what lets their partial signatures combine.
"""

import hashlib
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from bitcoinutils.constants import TYPE_RELATIVE_TIMELOCK
from bitcoinutils.keys import PublicKey, P2trAddress, P2wpkhAddress, P2wshAddress
from bitcoinutils.script import Script
from bitcoinutils.transactions import Sequence
from bitcoinutils.utils import ControlBlock

from .bridge_types import GraphRole
from .config import ProtocolParams
from .errors import InvalidParams
from .keys import Committee, normalize_pubkey
from .proof import ASSERTION_MESSAGES, COMMIT_1, COMMIT_2, FINAL
from . import wots


# Connector names
DEPOSIT = "deposit"
BRIDGE_VAULT = "bridge_vault"
OPERATOR_FUNDING = "operator_funding"
PEG_OUT_COMMIT = "peg_out_commit"
KICK_OFF = "kick_off"
KICK_OFF_TIMELOCK = "kick_off_timelock"
ASSERT_BOND = "assert_bond"
ASSERT_COMMIT_1 = "assert_commit_1"
ASSERT_COMMIT_2 = "assert_commit_2"
ASSERT_RESULT_1 = "assert_result_1"
ASSERT_RESULT_2 = "assert_result_2"
ASSERT_CARRY = "assert_carry"
CHALLENGE = "challenge"

COOPERATIVE_LEAF = 0
FALLBACK_LEAF = 1

# Challenge connector: leaf 0 is the disprove path, leaf 1 the timeout path
DISPROVE_LEAF = 0
TIMEOUT_LEAF = 1


@dataclass(frozen=True)
class GraphParams:
    """
    Per-graph parameters.

    Peg-in graphs use the depositor fields; peg-out graphs use the operator,
    withdrawer and disprove payout fields, a positive peg_out_amount and the
    operator's Winternitz public keys (one list per assertion value).
    invalid_proof_lock is the proof oracle's sha256 lock; without it only
    inconsistent assertions can be disproved.
    """
    protocol: ProtocolParams
    depositor_pubkey: str = ""
    depositor_evm_address: str = ""
    operator_pubkey: str = ""
    withdrawer_address: str = ""
    disprove_payout_address: str = ""
    peg_out_amount: int = 0
    assertion_keys: Dict[str, List[str]] = field(default_factory=dict)
    invalid_proof_lock: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["protocol"] = self.protocol.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "GraphParams":
        data = dict(data)
        data["protocol"] = ProtocolParams.from_dict(data["protocol"])
        return cls(**data)


def csv_delay(blocks: int) -> int:
    """Script operand for a relative block timelock."""
    return Sequence(TYPE_RELATIVE_TIMELOCK, blocks).for_script()


def csv_sequence(blocks: int) -> bytes:
    """nSequence bytes for an input spending through a CSV leaf."""
    return Sequence(TYPE_RELATIVE_TIMELOCK, blocks).for_input_sequence()


def address_script(address: str) -> Script:
    """scriptPubKey for a segwit payout address (v0 or v1)."""
    addr = address.strip()
    hrp, sep, data = addr.lower().rpartition("1")
    if not sep or not hrp or not data:
        raise InvalidParams(f"not a segwit address: {address}")
    try:
        if data[0] == "p":
            return P2trAddress(addr).to_script_pub_key()
        if data[0] == "q" and len(data) == 39:
            return P2wpkhAddress(addr).to_script_pub_key()
        if data[0] == "q":
            return P2wshAddress(addr).to_script_pub_key()
    except Exception as e:
        raise InvalidParams(f"invalid address {address}: {e}")
    raise InvalidParams(f"unsupported address type: {address}")


def key_path_address(pubkey: str) -> P2trAddress:
    """Single-key taproot address (key path only) for a compressed pubkey."""
    return PublicKey(normalize_pubkey(pubkey)).get_taproot_address()


class Connector:
    """
    A taproot output with a fixed two-leaf script tree.

    Usage:
        connector.script_pubkey()        # output script
        connector.leaf(0)                # tapleaf script for signing
        connector.control_block(0)       # witness control block
    """

    def __init__(self, name: str, internal_key: PublicKey, leaves: List[Script]):
        if len(leaves) != 2:
            raise InvalidParams(f"connector {name} needs exactly two leaves")
        self.name = name
        self.internal_key = internal_key
        self.leaves = leaves
        self._address: Optional[P2trAddress] = None

    def address(self) -> P2trAddress:
        if self._address is None:
            self._address = self.internal_key.get_taproot_address(self.leaves)
        return self._address

    def script_pubkey(self) -> Script:
        return self.address().to_script_pub_key()

    def leaf(self, index: int) -> Script:
        return self.leaves[index]

    def control_block(self, index: int) -> ControlBlock:
        return ControlBlock(self.internal_key, self.leaves, index,
                            is_odd=self.address().is_odd())

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "address": self.address().to_string(),
            "script_pubkey": self.script_pubkey().to_hex(),
            "leaves": [leaf.to_hex() for leaf in self.leaves],
        }


@dataclass
class ScriptSet:
    """All connectors of one graph, keyed by connector name."""
    role: GraphRole
    connectors: Dict[str, Connector] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Connector:
        return self.connectors[name]

    def __contains__(self, name: str) -> bool:
        return name in self.connectors

    def names(self) -> List[str]:
        return list(self.connectors)

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "connectors": {name: c.to_dict() for name, c in self.connectors.items()},
        }

    def fingerprint(self) -> str:
        """Hash over every leaf and output script, for cross-verifier comparison."""
        h = hashlib.sha256()
        for name in sorted(self.connectors):
            connector = self.connectors[name]
            h.update(name.encode())
            h.update(bytes.fromhex(connector.script_pubkey().to_hex()))
            for leaf in connector.leaves:
                h.update(bytes.fromhex(leaf.to_hex()))
        return h.hexdigest()


# =============================================================================
# LEAF TEMPLATES
# =============================================================================

def _checksig(xonly_key: str) -> Script:
    return Script([xonly_key, "OP_CHECKSIG"])


def _after(blocks: int, xonly_key: str) -> Script:
    return Script([csv_delay(blocks), "OP_CHECKSEQUENCEVERIFY", "OP_DROP",
                   xonly_key, "OP_CHECKSIG"])


def _committed(pubkey: List[str], xonly_key: str) -> Script:
    # witness: <sig> <signed value items>
    return Script(wots.verify_script(pubkey) + [xonly_key, "OP_CHECKSIG"])


def _mismatch_check() -> list:
    # stack: c1 digits (last digit deepest), c2 digits, final digits (first on top).
    # Flags a digit where final != c1 + c2 (mod 16) and requires at least one.
    ops = ["OP_0", "OP_TOALTSTACK"]
    for i in range(wots.MESSAGE_DIGITS):
        remaining = wots.MESSAGE_DIGITS - i
        ops += [2 * remaining, "OP_ROLL", remaining + 1, "OP_ROLL", "OP_ADD",
                "OP_DUP", wots.MAX_DIGIT + 1, "OP_GREATERTHANOREQUAL",
                "OP_IF", wots.MAX_DIGIT + 1, "OP_SUB", "OP_ENDIF",
                "OP_NUMNOTEQUAL", "OP_FROMALTSTACK", "OP_BOOLOR", "OP_TOALTSTACK"]
    ops += ["OP_FROMALTSTACK", "OP_VERIFY"]
    return ops


def _disprove_leaf(keys: Dict[str, List[str]], agg: str, lock: str = "") -> Script:
    # witness: <sig> <c1 items> <c2 items> <final items> [01]
    #      or: <sig> <attestation> <>   (invalid-proof branch, needs a lock)
    ops = []
    for name in (FINAL, COMMIT_2, COMMIT_1):
        ops += wots.verify_script(keys[name], keep=True)
    ops += ["OP_FROMALTSTACK"] * (len(ASSERTION_MESSAGES) * wots.MESSAGE_DIGITS)
    ops += _mismatch_check()
    if lock:
        ops = ["OP_IF"] + ops + ["OP_ELSE", "OP_SHA256", lock, "OP_EQUALVERIFY", "OP_ENDIF"]
    return Script(ops + [agg, "OP_CHECKSIG"])


# =============================================================================
# DERIVATION
# =============================================================================

def _validate(role: GraphRole, params: GraphParams):
    params.protocol.validate()
    if role == GraphRole.PEG_IN:
        if not params.depositor_pubkey or not params.depositor_evm_address:
            raise InvalidParams("peg-in graph needs depositor_pubkey and depositor_evm_address")
        if params.peg_out_amount:
            raise InvalidParams("peg-in graph cannot carry a peg_out_amount")
        _check_pubkey("depositor_pubkey", params.depositor_pubkey)
    elif role == GraphRole.PEG_OUT:
        for name in ("operator_pubkey", "withdrawer_address", "disprove_payout_address"):
            if not getattr(params, name):
                raise InvalidParams(f"peg-out graph needs {name}")
        if params.peg_out_amount <= params.protocol.dust_amount:
            raise InvalidParams(
                f"peg_out_amount {params.peg_out_amount} must exceed dust "
                f"({params.protocol.dust_amount})")
        _check_pubkey("operator_pubkey", params.operator_pubkey)
        for name in ASSERTION_MESSAGES:
            if not wots.check_public_key(params.assertion_keys.get(name)):
                raise InvalidParams(
                    f"peg-out graph needs {wots.TOTAL_DIGITS} Winternitz keys for {name}")
        if params.invalid_proof_lock:
            try:
                size = len(bytes.fromhex(params.invalid_proof_lock))
            except ValueError:
                size = 0
            if size != 32:
                raise InvalidParams("invalid_proof_lock must be a 32-byte sha256 hash (hex)")
    else:
        raise InvalidParams(f"unknown graph role: {role}")


def _check_pubkey(name: str, pubkey: str):
    try:
        normalize_pubkey(pubkey)
    except Exception as e:
        raise InvalidParams(f"{name}: {e}")


def derive_scripts(committee, graph_role: GraphRole, graph_params: GraphParams) -> ScriptSet:
    """
    Derive every connector of a graph.

    Args:
        committee: Committee or ordered list of compressed pubkeys (hex)
        graph_role: PEG_IN or PEG_OUT
        graph_params: per-graph parameters

    Returns:
        ScriptSet keyed by connector name

    Raises:
        InvalidCommittee: empty, duplicate or malformed committee keys
        InvalidParams: inconsistent role / amount / parameter combination
    """
    committee = Committee.from_any(committee)
    _validate(graph_role, graph_params)

    protocol = graph_params.protocol
    internal = committee.aggregate_public_key()
    agg = committee.aggregate_xonly
    scripts = ScriptSet(role=graph_role)

    def add(name: str, leaf0: Script, leaf1: Script):
        scripts.connectors[name] = Connector(name, internal, [leaf0, leaf1])

    if graph_role == GraphRole.PEG_IN:
        depositor = normalize_pubkey(graph_params.depositor_pubkey)[2:]
        # The EVM destination is committed as opaque bytes, never parsed here
        destination = graph_params.depositor_evm_address.encode().hex()
        add(DEPOSIT,
            Script([destination, "OP_DROP", agg, "OP_CHECKSIG"]),
            _after(protocol.peg_in_refund_delay, depositor))
        add(BRIDGE_VAULT,
            _checksig(agg),
            _after(protocol.vault_recovery_delay, agg))
        return scripts

    operator = normalize_pubkey(graph_params.operator_pubkey)[2:]
    reclaim = protocol.operator_reclaim_delay
    keys = graph_params.assertion_keys
    scripts.connectors[OPERATOR_FUNDING] = operator_funding_connector(committee, graph_params)
    for name in (PEG_OUT_COMMIT, KICK_OFF, ASSERT_RESULT_1, ASSERT_RESULT_2):
        add(name, _checksig(agg), _after(reclaim, operator))
    add(KICK_OFF_TIMELOCK, _checksig(agg), _after(protocol.kick_off_delay, agg))
    # assert_initial forces the operator to assert, take_1 reimburses it if nobody did
    add(ASSERT_BOND, _checksig(agg), _after(protocol.take_1_delay, agg))
    add(ASSERT_COMMIT_1, _committed(keys[COMMIT_1], agg), _after(reclaim, operator))
    add(ASSERT_COMMIT_2, _committed(keys[COMMIT_2], agg), _after(reclaim, operator))
    add(ASSERT_CARRY, _committed(keys[FINAL], agg), _after(reclaim, operator))
    add(CHALLENGE,
        _disprove_leaf(keys, agg, graph_params.invalid_proof_lock),
        _after(protocol.challenge_window, agg))
    return scripts


def operator_funding_connector(committee, graph_params: GraphParams) -> Connector:
    """
    Output the operator funds before a peg-out graph exists. Depends only on
    the committee, the operator key and the protocol parameters.
    """
    committee = Committee.from_any(committee)
    graph_params.protocol.validate()
    _check_pubkey("operator_pubkey", graph_params.operator_pubkey)
    operator = normalize_pubkey(graph_params.operator_pubkey)[2:]
    reclaim = graph_params.protocol.operator_reclaim_delay
    return Connector(OPERATOR_FUNDING, committee.aggregate_public_key(),
                     [_checksig(operator), _after(reclaim, operator)])
