"""
BitVM Bridge SDK - Chain Observer / Broadcaster

Bitcoin backends (Esplora REST client, in-memory MockChain) behind one small
interface, the observer that feeds confirmations into the dispute state
machine, and the mock L2 withdrawal watcher.
"""

import logging
import re
import time
from typing import Dict, List, Optional, Tuple

import requests
from web3 import Web3

from .bridge_types import ChainState, TransactionName
from .dispute import DisputeStateMachine, FUNDING
from .errors import (
    BroadcastError, BroadcastErrorKind, ChainUnavailable, InvalidParams,
    OutOfOrderConfirmation, StaleBroadcastRejected,
)
from .graph import GraphBuilder
from .signing import SignedTransaction
from .store import GraphStore, l2_key


log = logging.getLogger(__name__)


def classify_broadcast_error(message: str) -> BroadcastErrorKind:
    """Map a node / Esplora rejection message to a BroadcastErrorKind."""
    text = message.lower()
    if any(m in text for m in ("missingorspent", "missing-inputs", "mempool-conflict",
                               "txn-already-known", "already spent", "conflict")):
        return BroadcastErrorKind.ALREADY_SPENT
    if any(m in text for m in ("min relay fee", "insufficient fee", "mempool min fee",
                               "fee not met", "insufficient priority")):
        return BroadcastErrorKind.INSUFFICIENT_FEE
    return BroadcastErrorKind.REJECTED_BY_NETWORK


class ChainClient:
    """Interface the core needs from a Bitcoin backend."""

    def broadcast(self, signed_tx: SignedTransaction) -> str:
        raise NotImplementedError

    def tip_height(self) -> int:
        raise NotImplementedError

    def tx_height(self, txid: str) -> Optional[int]:
        """Block height of a confirmed transaction, None if unconfirmed or unknown."""
        raise NotImplementedError

    def confirmations(self, txid: str) -> int:
        height = self.tx_height(txid)
        if height is None:
            return 0
        return max(0, self.tip_height() - height + 1)

    def chain_state(self) -> ChainState:
        return ChainState(height=self.tip_height())


# =============================================================================
# ESPLORA
# =============================================================================

class EsploraClient(ChainClient):
    """
    Esplora REST client (blockstream / mempool.space / electrs).

    Usage:
        chain = EsploraClient("http://localhost:3002")
        txid = chain.broadcast(signed)
        chain.confirmations(txid)
    """

    def __init__(self, base_url: str = "http://localhost:3002", timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, path: str) -> requests.Response:
        try:
            return requests.get(f"{self.base_url}{path}", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"GET {path} failed: {e}")

    def broadcast(self, signed_tx: SignedTransaction) -> str:
        try:
            resp = requests.post(f"{self.base_url}/tx", data=signed_tx.hex, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"broadcast failed: {e}")
        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            if resp.status_code >= 500:
                raise ChainUnavailable(f"broadcast failed: {error_msg}")
            raise BroadcastError(classify_broadcast_error(error_msg), error_msg.strip())
        # Esplora returns the txid as plain text
        return resp.text.strip()

    def tip_height(self) -> int:
        resp = self._get("/blocks/tip/height")
        if not resp.ok:
            raise ChainUnavailable(f"tip height: HTTP {resp.status_code}")
        return int(resp.text.strip())

    def tx_height(self, txid: str) -> Optional[int]:
        resp = self._get(f"/tx/{txid}/status")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise ChainUnavailable(f"tx status {txid}: HTTP {resp.status_code}")
        status = resp.json() or {}
        if not status.get("confirmed", False):
            return None
        return int(status["block_height"])

    def outspend(self, txid: str, vout: int) -> Optional[str]:
        """Txid spending an output, None while unspent."""
        resp = self._get(f"/tx/{txid}/outspend/{vout}")
        if not resp.ok:
            raise ChainUnavailable(f"outspend {txid}:{vout}: HTTP {resp.status_code}")
        data = resp.json() or {}
        return data.get("txid") if data.get("spent") else None


# =============================================================================
# MOCK CHAIN
# =============================================================================

SEQUENCE_DISABLE_FLAG = 1 << 31
SEQUENCE_TYPE_FLAG = 1 << 22
SEQUENCE_MASK = 0xFFFF


class MockChain(ChainClient):
    """
    In-memory chain for tests and local demos.

    Enforces double spends, value conservation, a minimum fee and BIP-68
    block-based relative timelocks. Scripts and signatures are not executed.

    Usage:
        chain = MockChain(height=100)
        chain.fund("ab" * 32, 0, 2_100_000)
        chain.broadcast(signed)
        chain.mine()
    """

    def __init__(self, height: int = 100, min_fee: int = 0):
        self.height = height
        self.min_fee = min_fee
        self.utxos: Dict[Tuple[str, int], dict] = {}
        self.spent: Dict[Tuple[str, int], str] = {}
        self.txs: Dict[str, dict] = {}
        self.mempool: List[str] = []

    def fund(self, txid: str, vout: int, amount: int, confirmed: bool = True):
        """Create an output out of thin air (a confirmed external funding tx)."""
        txid = txid.lower()
        height = self.height if confirmed else None
        self.utxos[(txid, vout)] = {"amount": amount, "height": height}
        record = self.txs.setdefault(txid, {"height": height, "hex": None})
        if confirmed and record["height"] is None:
            record["height"] = height

    def broadcast(self, signed_tx: SignedTransaction) -> str:
        tx = signed_tx.tx
        txid = signed_tx.txid
        if txid in self.txs:
            return txid

        value_in = 0
        spends = []
        for txin in tx.inputs:
            key = (txin.txid, txin.txout_index)
            if key in self.spent:
                raise BroadcastError(BroadcastErrorKind.ALREADY_SPENT,
                                     f"bad-txns-inputs-missingorspent ({txin.txid}:{txin.txout_index})")
            utxo = self.utxos.get(key)
            if utxo is None:
                raise BroadcastError(BroadcastErrorKind.REJECTED_BY_NETWORK,
                                     f"missing input {txin.txid}:{txin.txout_index}")
            sequence = txin.sequence
            if isinstance(sequence, bytes):
                sequence = int.from_bytes(sequence, byteorder="little")
            if not sequence & SEQUENCE_DISABLE_FLAG and not sequence & SEQUENCE_TYPE_FLAG:
                delay = sequence & SEQUENCE_MASK
                if utxo["height"] is None or self.height + 1 - utxo["height"] < delay:
                    raise BroadcastError(BroadcastErrorKind.REJECTED_BY_NETWORK, "non-BIP68-final")
            value_in += utxo["amount"]
            spends.append(key)

        value_out = sum(out.amount for out in tx.outputs)
        if value_out > value_in:
            raise BroadcastError(BroadcastErrorKind.REJECTED_BY_NETWORK, "bad-txns-in-belowout")
        if value_in - value_out < self.min_fee:
            raise BroadcastError(BroadcastErrorKind.INSUFFICIENT_FEE, "min relay fee not met")

        for key in spends:
            self.spent[key] = txid
        for vout, out in enumerate(tx.outputs):
            self.utxos[(txid, vout)] = {"amount": out.amount, "height": None}
        self.txs[txid] = {"height": None, "hex": signed_tx.hex}
        self.mempool.append(txid)
        log.debug(f"mock mempool accepted {signed_tx.tx_name.value} {txid[:16]}")
        return txid

    def mine(self, blocks: int = 1, include_mempool: bool = True) -> int:
        """Mine blocks; the first one confirms the whole mempool unless include_mempool is False."""
        for _ in range(blocks):
            self.height += 1
            if not include_mempool:
                continue
            for txid in self.mempool:
                self.txs[txid]["height"] = self.height
                for key, utxo in self.utxos.items():
                    if key[0] == txid:
                        utxo["height"] = self.height
            self.mempool = []
        return self.height

    def tip_height(self) -> int:
        return self.height

    def tx_height(self, txid: str) -> Optional[int]:
        record = self.txs.get(txid.lower())
        return record["height"] if record else None

    def spender_of(self, txid: str, vout: int) -> Optional[str]:
        return self.spent.get((txid.lower(), vout))


# =============================================================================
# OBSERVER
# =============================================================================

class ChainObserver:
    """
    Feeds on-chain confirmations of a graph into the dispute state machine.
    The only path by which broadcast eligibility advances.
    """

    def __init__(self, chain: ChainClient, dsm: DisputeStateMachine,
                 builder: Optional[GraphBuilder] = None):
        self.chain = chain
        self.dsm = dsm
        self.builder = builder or dsm.builder

    def chain_state(self) -> ChainState:
        return self.chain.chain_state()

    def sync(self, graph_id: str) -> List[TransactionName]:
        """
        Record every newly confirmed transaction of a graph, in graph order.

        Returns:
            transactions recorded by this call
        """
        graph = self.builder.load_graph(graph_id)
        if graph.linked_graph_id:
            self.sync(graph.linked_graph_id)

        if self.dsm.confirmation_height(graph_id, FUNDING) is None:
            height = self.chain.tx_height(graph.funding.outpoint.txid)
            if height is not None:
                self.dsm.record_funding_confirmation(graph_id, height)

        recorded = []
        for name, node in graph.nodes.items():
            if self.dsm.confirmation_height(graph_id, name) is not None:
                continue
            height = self.chain.tx_height(node.txid)
            if height is None:
                continue
            try:
                self.dsm.record_confirmation(graph_id, name, height)
                recorded.append(name)
            except StaleBroadcastRejected as e:
                log.warning(f"Ignoring confirmation of {name.value}: {e.message}")
            except OutOfOrderConfirmation as e:
                log.warning(f"Deferring {name.value}: {e.message}")
        return recorded


# =============================================================================
# MOCK L2 WATCHER
# =============================================================================

_L2_TX_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class MockL2Watcher:
    """
    Stand-in for the L2 bridge contract watcher: records that the withdrawal
    backing a peg-out graph was burned/confirmed on L2.
    """

    def __init__(self, store: GraphStore):
        self.store = store

    def confirm_withdrawal(self, graph_id: str, l2_tx_hash: str,
                           sender: Optional[str] = None) -> dict:
        if not _L2_TX_RE.match(l2_tx_hash):
            raise InvalidParams(f"invalid L2 transaction hash: {l2_tx_hash}")
        if sender is not None:
            if not Web3.is_address(sender):
                raise InvalidParams(f"invalid L2 sender address: {sender}")
            sender = Web3.to_checksum_address(sender)
        record = {"l2_tx_hash": l2_tx_hash.lower(), "sender": sender, "ts": int(time.time())}
        existing = self.store.get(l2_key(graph_id))
        if existing is not None:
            return existing
        self.store.put_once(l2_key(graph_id), record)
        log.info(f"L2 withdrawal confirmed for graph {graph_id[:16]} ({l2_tx_hash[:18]}...)")
        return record

    def is_confirmed(self, graph_id: str) -> bool:
        return self.store.exists(l2_key(graph_id))
