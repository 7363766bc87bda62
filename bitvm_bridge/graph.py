"""
BitVM Bridge SDK - Transaction Graph Builder

Builds the deterministic DAG of unsigned transactions for a peg-in or a
peg-out. Every verifier running build_graph() with the same funding UTXO,
committee and parameters gets byte-identical transactions.

Peg-in:
    funding --deposit.leaf0--> peg_in_confirm --> bridge_vault
    funding --deposit.leaf1 (CSV)--> peg_in_refund --> depositor

Peg-out (dispute branch):
    funding --> peg_out --> [withdrawer payout, reserve]
    reserve --> peg_out_confirm --> kick_off_1 --(CSV)--> kick_off_2
            --> assert_initial --> assert_commit_1 --\
                               --> assert_commit_2 ----> assert_final
                               --> (carry) ----------/
    assert_final --challenge.leaf0--> disprove
                 --challenge.leaf1 (CSV window)--> timeout_claim (+ peg-in vault)

Peg-out (happy path, nobody broadcast assert_initial):
    kick_off_2 --assert_bond.leaf1 (CSV take_1_delay)--> take_1 (+ peg-in vault)
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .bridge_types import (
    GraphRole, InputRef, SignerRole, TransactionName, Utxo,
)
from .errors import (
    AmountMismatch, InvalidParams, UnknownGraph, UnknownLinkedGraph, UnknownTransaction,
)
from .keys import Committee
from .scripts import (
    GraphParams, ScriptSet, derive_scripts, address_script, key_path_address,
    DEPOSIT, BRIDGE_VAULT, OPERATOR_FUNDING, PEG_OUT_COMMIT, KICK_OFF, KICK_OFF_TIMELOCK,
    ASSERT_BOND, ASSERT_COMMIT_1, ASSERT_COMMIT_2, ASSERT_RESULT_1, ASSERT_RESULT_2,
    ASSERT_CARRY, CHALLENGE, COOPERATIVE_LEAF, FALLBACK_LEAF, DISPROVE_LEAF, TIMEOUT_LEAF,
)
from .store import GraphStore, graph_key, confirm_key
from .transactions import TransactionNode, TxInputSpec, TxOutputSpec


log = logging.getLogger(__name__)

T = TransactionName


def compute_graph_id(role: GraphRole, funding: Utxo) -> str:
    """Graph id from the role tag and the funding outpoint."""
    return hashlib.sha256(f"{role.value}:{funding.outpoint}".encode()).hexdigest()


@dataclass
class Graph:
    """Immutable graph of unsigned transactions."""
    graph_id: str
    role: GraphRole
    funding: Utxo
    committee: Committee
    params: GraphParams
    scripts: ScriptSet
    nodes: Dict[TransactionName, TransactionNode] = field(default_factory=dict)
    entry: Optional[TransactionName] = None
    linked_graph_id: Optional[str] = None

    def node(self, tx_name: TransactionName) -> TransactionNode:
        try:
            return self.nodes[tx_name]
        except KeyError:
            raise UnknownTransaction(self.graph_id, tx_name.value)

    def txid(self, tx_name: TransactionName) -> str:
        return self.node(tx_name).txid

    def names(self) -> List[TransactionName]:
        return list(self.nodes)

    def input_refs(self, role: Optional[SignerRole] = SignerRole.COMMITTEE) -> List[InputRef]:
        """Inputs (in graph order) signed by the given role, all inputs if role is None."""
        refs = []
        for name, node in self.nodes.items():
            for idx, spec in enumerate(node.inputs):
                if role is None or spec.signer == role:
                    refs.append(InputRef(name, idx))
        return refs

    def conflicts(self, tx_name: TransactionName) -> List[TransactionName]:
        """Other transactions spending an outpoint tx_name also spends."""
        spent = {(i.prev_txid, i.prev_vout) for i in self.node(tx_name).inputs}
        return [name for name, node in self.nodes.items()
                if name != tx_name and any((i.prev_txid, i.prev_vout) in spent for i in node.inputs)]

    def input_spec(self, input_ref: InputRef) -> TxInputSpec:
        node = self.node(input_ref.tx_name)
        if not 0 <= input_ref.index < len(node.inputs):
            raise UnknownTransaction(self.graph_id, input_ref.key())
        return node.inputs[input_ref.index]

    def to_dict(self) -> dict:
        """Definition record. Rebuilding from it must give the same txids."""
        return {
            "graph_id": self.graph_id,
            "role": self.role.value,
            "funding": self.funding.to_dict(),
            "committee": self.committee.to_list(),
            "params": self.params.to_dict(),
            "linked_graph_id": self.linked_graph_id,
            "txids": {name.value: node.txid for name, node in self.nodes.items()},
        }

    def describe(self) -> dict:
        """Full human-readable dump (status / API)."""
        data = self.to_dict()
        data["entry"] = self.entry.value if self.entry else None
        data["scripts"] = self.scripts.to_dict()
        data["transactions"] = {name.value: node.to_dict() for name, node in self.nodes.items()}
        return data


def validate_graph(graph: Graph):
    """
    Check the structural invariants: parents exist, no cycles, exactly one
    entry spends the funding UTXO (plus its declared alternatives).
    """
    names = set(graph.nodes)
    indegree = {name: 0 for name in names}
    children: Dict[TransactionName, List[TransactionName]] = {name: [] for name in names}
    for name, node in graph.nodes.items():
        for parent in node.parents:
            if parent not in names:
                raise InvalidParams(f"{name.value} spends unknown transaction {parent.value}")
            indegree[name] += 1
            children[parent].append(name)

    ready = [name for name, deg in indegree.items() if deg == 0]
    visited = 0
    while ready:
        current = ready.pop()
        visited += 1
        for child in children[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
    if visited != len(names):
        raise InvalidParams(f"graph {graph.graph_id} contains a cycle")

    funding_spenders = [name for name, node in graph.nodes.items() if node.spends_funding]
    primary = [name for name in funding_spenders if graph.nodes[name].alternative_to is None]
    if primary != [graph.entry]:
        raise InvalidParams(f"graph must have exactly one entry, found {[n.value for n in primary]}")
    for name in funding_spenders:
        alternative = graph.nodes[name].alternative_to
        if alternative is not None and alternative != graph.entry:
            raise InvalidParams(f"{name.value} is an alternative of a non-entry transaction")


def peg_out_reserve(params: GraphParams) -> int:
    """Minimum value of the peg-out reserve output (bond plus every dispute fee)."""
    protocol = params.protocol
    fees = sum(protocol.fee(name) for name in (
        T.PEG_OUT_CONFIRM, T.KICK_OFF_1, T.KICK_OFF_2, T.ASSERT_INITIAL,
        T.ASSERT_COMMIT_1, T.ASSERT_COMMIT_2, T.ASSERT_FINAL))
    terminal = max(protocol.fee(T.DISPROVE), protocol.fee(T.TIMEOUT_CLAIM), protocol.fee(T.TAKE_1))
    return protocol.bond_amount + fees + terminal


def required_funding(role: GraphRole, params: GraphParams) -> int:
    protocol = params.protocol
    if role == GraphRole.PEG_IN:
        return protocol.dust_amount + max(protocol.fee(T.PEG_IN_CONFIRM), protocol.fee(T.PEG_IN_REFUND))
    return params.peg_out_amount + protocol.fee(T.PEG_OUT) + peg_out_reserve(params)


class GraphBuilder:
    """
    Deterministic graph construction.

    Usage:
        builder = GraphBuilder(store)
        graph = builder.build_graph(funding, committee, GraphRole.PEG_IN, params=params)
        store.put_once(graph_key(graph.graph_id), graph.to_dict())
        same = builder.load_graph(graph.graph_id)
    """

    def __init__(self, store: Optional[GraphStore] = None):
        self.store = store
        self._cache: Dict[str, Graph] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════

    def build_graph(self, funding_utxo: Utxo, committee, role: GraphRole,
                    linked_graph_id: Optional[str] = None,
                    params: Optional[GraphParams] = None) -> Graph:
        """
        Build every unsigned transaction of a graph. Never signs, never persists.

        Raises:
            InvalidCommittee, InvalidParams: bad committee or parameters
            UnknownLinkedGraph: peg-in graph missing or its peg_in_confirm not confirmed
            AmountMismatch: funding too small for the graph's fee reservation
        """
        if params is None:
            raise InvalidParams("graph parameters are required")
        committee = Committee.from_any(committee)
        linked = None
        if role == GraphRole.PEG_OUT:
            linked = self._confirmed_peg_in(linked_graph_id, committee)
        elif linked_graph_id:
            raise InvalidParams("peg-in graphs cannot link another graph")
        graph = self._build(funding_utxo, committee, role, params, linked)
        log.info(f"Built {role.value} graph {graph.graph_id[:16]} "
                 f"({len(graph.nodes)} transactions, committee {committee.fingerprint()})")
        return graph

    def load_graph(self, graph_id: str) -> Graph:
        """Rebuild a stored graph and check it against the stored txids."""
        if graph_id in self._cache:
            return self._cache[graph_id]
        if self.store is None:
            raise UnknownGraph(graph_id)
        record = self.store.get(graph_key(graph_id))
        if record is None:
            raise UnknownGraph(graph_id)
        graph = self.from_dict(record)
        self._cache[graph_id] = graph
        return graph

    def from_dict(self, record: dict) -> Graph:
        role = GraphRole(record["role"])
        linked = None
        if record.get("linked_graph_id"):
            linked = self.load_graph(record["linked_graph_id"])
        graph = self._build(
            Utxo.from_dict(record["funding"]),
            Committee(record["committee"]),
            role,
            GraphParams.from_dict(record["params"]),
            linked,
        )
        if graph.graph_id != record["graph_id"]:
            raise InvalidParams(f"stored graph id {record['graph_id']} does not match its funding")
        expected = record.get("txids", {})
        actual = {name.value: node.txid for name, node in graph.nodes.items()}
        if expected and expected != actual:
            raise InvalidParams(f"graph {graph.graph_id} rebuilds to different transactions")
        return graph

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════

    def _confirmed_peg_in(self, linked_graph_id: Optional[str], committee: Committee) -> Graph:
        if not linked_graph_id:
            raise UnknownLinkedGraph("<none>", "peg-out graph needs a linked peg-in graph")
        try:
            linked = self.load_graph(linked_graph_id)
        except UnknownGraph:
            raise UnknownLinkedGraph(linked_graph_id, "does not exist")
        if linked.role != GraphRole.PEG_IN:
            raise UnknownLinkedGraph(linked_graph_id, "is not a peg-in graph")
        if linked.committee != committee:
            raise InvalidParams(f"linked graph {linked_graph_id[:16]} uses a different committee")
        if self.store is None:
            raise UnknownLinkedGraph(linked_graph_id, "no store to read its confirmation from")
        if self.store.get(confirm_key(linked_graph_id, T.PEG_IN_CONFIRM.value)) is None:
            raise UnknownLinkedGraph(linked_graph_id, "peg_in_confirm not yet confirmed",
                                     retryable=True)
        return linked

    def _build(self, funding: Utxo, committee: Committee, role: GraphRole,
               params: GraphParams, linked: Optional[Graph]) -> Graph:
        scripts = derive_scripts(committee, role, params)
        required = required_funding(role, params)
        if funding.amount < required:
            raise AmountMismatch(funding.amount, required)

        graph = Graph(
            graph_id=compute_graph_id(role, funding),
            role=role,
            funding=funding,
            committee=committee,
            params=params,
            scripts=scripts,
            linked_graph_id=linked.graph_id if linked else None,
        )
        if role == GraphRole.PEG_IN:
            self._build_peg_in(graph)
        else:
            self._build_peg_out(graph, linked)
        validate_graph(graph)
        return graph

    def _add(self, graph: Graph, node: TransactionNode) -> TransactionNode:
        graph.nodes[node.name] = node
        return node

    def _spend(self, graph: Graph, parent: TransactionNode, vout: int, connector: str,
               leaf: int, signer: SignerRole = SignerRole.COMMITTEE,
               delay: int = 0) -> TxInputSpec:
        return TxInputSpec(
            prev_txid=parent.txid,
            prev_vout=vout,
            amount=parent.outputs[vout].amount,
            connector=graph.scripts[connector],
            leaf_index=leaf,
            signer=signer,
            relative_delay=delay,
            parent=parent.name,
        )

    def _to(self, graph: Graph, connector: str, amount: int) -> TxOutputSpec:
        return TxOutputSpec(amount, graph.scripts[connector].script_pubkey(), connector)

    def _build_peg_in(self, graph: Graph):
        protocol = graph.params.protocol
        funding = graph.funding

        def from_funding(leaf: int, signer: SignerRole, delay: int = 0) -> TxInputSpec:
            return TxInputSpec(
                prev_txid=funding.outpoint.txid,
                prev_vout=funding.outpoint.vout,
                amount=funding.amount,
                connector=graph.scripts[DEPOSIT],
                leaf_index=leaf,
                signer=signer,
                relative_delay=delay,
            )

        confirm = self._add(graph, TransactionNode(
            T.PEG_IN_CONFIRM,
            [from_funding(COOPERATIVE_LEAF, SignerRole.COMMITTEE)],
            [self._to(graph, BRIDGE_VAULT, funding.amount - protocol.fee(T.PEG_IN_CONFIRM))],
        ))
        graph.entry = confirm.name

        refund_script = key_path_address(graph.params.depositor_pubkey).to_script_pub_key()
        self._add(graph, TransactionNode(
            T.PEG_IN_REFUND,
            [from_funding(FALLBACK_LEAF, SignerRole.DEPOSITOR, protocol.peg_in_refund_delay)],
            [TxOutputSpec(funding.amount - protocol.fee(T.PEG_IN_REFUND), refund_script)],
            alternative_to=T.PEG_IN_CONFIRM,
        ))

    def _build_peg_out(self, graph: Graph, linked: Graph):
        params = graph.params
        protocol = params.protocol
        funding = graph.funding
        fee = protocol.fee
        dust = protocol.dust_amount

        # peg_out: operator fronts the withdrawal and locks the dispute reserve
        reserve = funding.amount - params.peg_out_amount - fee(T.PEG_OUT)
        peg_out = self._add(graph, TransactionNode(
            T.PEG_OUT,
            [TxInputSpec(
                prev_txid=funding.outpoint.txid,
                prev_vout=funding.outpoint.vout,
                amount=funding.amount,
                connector=graph.scripts[OPERATOR_FUNDING],
                leaf_index=COOPERATIVE_LEAF,
                signer=SignerRole.OPERATOR,
            )],
            [TxOutputSpec(params.peg_out_amount, address_script(params.withdrawer_address)),
             self._to(graph, PEG_OUT_COMMIT, reserve)],
        ))
        graph.entry = peg_out.name

        def chain(name: TransactionName, parent: TransactionNode, connector_in: str,
                  connector_out: str, delay: int = 0, leaf: int = COOPERATIVE_LEAF):
            spend = self._spend(graph, parent, 0, connector_in, leaf, delay=delay)
            return self._add(graph, TransactionNode(
                name, [spend], [self._to(graph, connector_out, spend.amount - fee(name))]))

        peg_out_confirm = self._add(graph, TransactionNode(
            T.PEG_OUT_CONFIRM,
            [self._spend(graph, peg_out, 1, PEG_OUT_COMMIT, COOPERATIVE_LEAF)],
            [self._to(graph, KICK_OFF, reserve - fee(T.PEG_OUT_CONFIRM))],
        ))
        kick_off_1 = chain(T.KICK_OFF_1, peg_out_confirm, KICK_OFF, KICK_OFF_TIMELOCK)
        kick_off_2 = chain(T.KICK_OFF_2, kick_off_1, KICK_OFF_TIMELOCK, ASSERT_BOND,
                           delay=protocol.kick_off_delay, leaf=FALLBACK_LEAF)

        # assert_initial splits the bond: one output per commit tx plus the carry
        bond_in = self._spend(graph, kick_off_2, 0, ASSERT_BOND, COOPERATIVE_LEAF)
        commit_1_value = dust + fee(T.ASSERT_COMMIT_1)
        commit_2_value = dust + fee(T.ASSERT_COMMIT_2)
        carry = bond_in.amount - fee(T.ASSERT_INITIAL) - commit_1_value - commit_2_value
        if carry < dust:
            raise AmountMismatch(carry, dust, what="assert carry")
        assert_initial = self._add(graph, TransactionNode(
            T.ASSERT_INITIAL,
            [bond_in],
            [self._to(graph, ASSERT_COMMIT_1, commit_1_value),
             self._to(graph, ASSERT_COMMIT_2, commit_2_value),
             self._to(graph, ASSERT_CARRY, carry)],
        ))

        commit_1 = self._add(graph, TransactionNode(
            T.ASSERT_COMMIT_1,
            [self._spend(graph, assert_initial, 0, ASSERT_COMMIT_1, COOPERATIVE_LEAF)],
            [self._to(graph, ASSERT_RESULT_1, dust)],
        ))
        commit_2 = self._add(graph, TransactionNode(
            T.ASSERT_COMMIT_2,
            [self._spend(graph, assert_initial, 1, ASSERT_COMMIT_2, COOPERATIVE_LEAF)],
            [self._to(graph, ASSERT_RESULT_2, dust)],
        ))

        final_inputs = [
            self._spend(graph, commit_1, 0, ASSERT_RESULT_1, COOPERATIVE_LEAF),
            self._spend(graph, commit_2, 0, ASSERT_RESULT_2, COOPERATIVE_LEAF),
            self._spend(graph, assert_initial, 2, ASSERT_CARRY, COOPERATIVE_LEAF),
        ]
        bond = sum(i.amount for i in final_inputs) - fee(T.ASSERT_FINAL)
        assert_final = self._add(graph, TransactionNode(
            T.ASSERT_FINAL, final_inputs, [self._to(graph, CHALLENGE, bond)]))

        # Terminal pair: both spend assert_final:0, so at most one can ever confirm
        self._add(graph, TransactionNode(
            T.DISPROVE,
            [self._spend(graph, assert_final, 0, CHALLENGE, DISPROVE_LEAF)],
            [TxOutputSpec(bond - fee(T.DISPROVE), address_script(params.disprove_payout_address))],
        ))

        vault_node = linked.node(T.PEG_IN_CONFIRM)
        vault_in = TxInputSpec(
            prev_txid=vault_node.txid,
            prev_vout=0,
            amount=vault_node.outputs[0].amount,
            connector=linked.scripts[BRIDGE_VAULT],
            leaf_index=COOPERATIVE_LEAF,
            signer=SignerRole.COMMITTEE,
            linked_graph_id=linked.graph_id,
            linked_parent=T.PEG_IN_CONFIRM,
        )
        timeout_in = self._spend(graph, assert_final, 0, CHALLENGE, TIMEOUT_LEAF,
                                 delay=protocol.challenge_window)
        operator_script = key_path_address(params.operator_pubkey).to_script_pub_key()
        self._add(graph, TransactionNode(
            T.TIMEOUT_CLAIM,
            [timeout_in, vault_in],
            [TxOutputSpec(bond + vault_in.amount - fee(T.TIMEOUT_CLAIM), operator_script)],
        ))

        # take_1 and assert_initial both spend kick_off_2:0
        take_1_in = self._spend(graph, kick_off_2, 0, ASSERT_BOND, FALLBACK_LEAF,
                                delay=protocol.take_1_delay)
        self._add(graph, TransactionNode(
            T.TAKE_1,
            [take_1_in, vault_in],
            [TxOutputSpec(take_1_in.amount + vault_in.amount - fee(T.TAKE_1), operator_script)],
        ))
