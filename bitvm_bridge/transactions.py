"""
BitVM Bridge SDK - Transaction Nodes

One unsigned graph transaction: its inputs (which prior output, which
connector leaf, who signs, which relative timelock) and its outputs. Builds
the bitcoinutils Transaction, the BIP-341 script-path signature hashes and,
once signatures exist, the final witnesses.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from bitcoinutils.script import Script
from bitcoinutils.transactions import Transaction, TxInput, TxOutput, TxWitnessInput

from .bridge_types import SignerRole, TransactionName
from .scripts import Connector, csv_sequence


@dataclass
class TxInputSpec:
    """
    Input of a graph transaction.

    parent is the graph transaction that creates the spent output; it is None
    for the funding UTXO and for outputs of a linked graph (linked_graph_id
    and linked_parent are set for the latter).
    """
    prev_txid: str
    prev_vout: int
    amount: int
    connector: Connector
    leaf_index: int
    signer: SignerRole
    relative_delay: int = 0
    parent: Optional[TransactionName] = None
    linked_graph_id: Optional[str] = None
    linked_parent: Optional[TransactionName] = None

    @property
    def spends_funding(self) -> bool:
        return self.parent is None and self.linked_graph_id is None

    def leaf(self) -> Script:
        return self.connector.leaf(self.leaf_index)

    def to_tx_input(self) -> TxInput:
        if self.relative_delay:
            return TxInput(self.prev_txid, self.prev_vout, sequence=csv_sequence(self.relative_delay))
        return TxInput(self.prev_txid, self.prev_vout)

    def to_dict(self) -> dict:
        return {
            "outpoint": f"{self.prev_txid}:{self.prev_vout}",
            "amount": self.amount,
            "connector": self.connector.name,
            "leaf": self.leaf_index,
            "signer": self.signer.value,
            "relative_delay": self.relative_delay,
            "parent": self.parent.value if self.parent else None,
            "linked_graph_id": self.linked_graph_id,
        }


@dataclass
class TxOutputSpec:
    """Output of a graph transaction; connector is None for external payouts."""
    amount: int
    script_pubkey: Script
    connector: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "script_pubkey": self.script_pubkey.to_hex(),
            "connector": self.connector,
        }


class TransactionNode:
    """
    Unsigned transaction of a graph. Immutable once constructed.

    Usage:
        node.txid                      # fixed at construction
        node.sighash(0)                # message every signer signs for input 0
        tx = node.finalize({0: sig})   # signed bitcoinutils Transaction
    """

    def __init__(self, name: TransactionName, inputs: List[TxInputSpec],
                 outputs: List[TxOutputSpec], alternative_to: Optional[TransactionName] = None):
        self.name = name
        self.inputs = inputs
        self.outputs = outputs
        self.alternative_to = alternative_to
        self.txid = self.build().get_txid()

    def build(self, segwit: bool = True) -> Transaction:
        return Transaction(
            [i.to_tx_input() for i in self.inputs],
            [TxOutput(o.amount, o.script_pubkey) for o in self.outputs],
            has_segwit=segwit,
        )

    def unsigned_hex(self) -> str:
        return self.build(segwit=False).serialize()

    @property
    def parents(self) -> Set[TransactionName]:
        return {i.parent for i in self.inputs if i.parent is not None}

    @property
    def spends_funding(self) -> bool:
        return any(i.spends_funding for i in self.inputs)

    def input_value(self) -> int:
        return sum(i.amount for i in self.inputs)

    def output_value(self) -> int:
        return sum(o.amount for o in self.outputs)

    def fee(self) -> int:
        return self.input_value() - self.output_value()

    def inputs_signed_by(self, role: SignerRole) -> List[int]:
        return [idx for idx, i in enumerate(self.inputs) if i.signer == role]

    def sighash(self, index: int) -> bytes:
        """BIP-341 script-path signature hash (SIGHASH_DEFAULT) of one input."""
        tx = self.build()
        script_pubkeys = [i.connector.script_pubkey() for i in self.inputs]
        amounts = [i.amount for i in self.inputs]
        return tx.get_transaction_taproot_digest(index, script_pubkeys, amounts, 1,
                                                 self.inputs[index].leaf())

    def finalize(self, signatures: Dict[int, str],
                 extras: Optional[Dict[int, List[str]]] = None) -> Transaction:
        """
        Attach witnesses: <signature> [extra items...] <leaf script> <control block>.

        Args:
            signatures: input index -> 64-byte signature (hex)
            extras: input index -> witness items pushed above the signature
                (the values a leaf checks before its final CHECKSIG)
        """
        extras = extras or {}
        tx = self.build()
        for idx, spec in enumerate(self.inputs):
            cb = spec.connector.control_block(spec.leaf_index)
            stack = [signatures[idx]] + list(extras.get(idx, [])) + [spec.leaf().to_hex(), cb.to_hex()]
            tx.witnesses.append(TxWitnessInput(stack))
        return tx

    def to_dict(self) -> dict:
        return {
            "name": self.name.value,
            "txid": self.txid,
            "inputs": [i.to_dict() for i in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "fee": self.fee(),
        }
