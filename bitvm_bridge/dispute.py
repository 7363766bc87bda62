"""
BitVM Bridge SDK - Dispute State Machine

Decides which graph transaction may legally be broadcast next. State is
derived only from confirmation records written by the chain observer; local
intent (having a signed transaction, having broadcast it) never advances it.

Guards for broadcasting a transaction:
  - every spent output is confirmed at least `confirmation_depth` deep
  - every CSV input's parent has at least `relative_delay` confirmations
  - peg_out needs the L2 withdrawal confirmation
  - disprove: assert_final confirmed, challenge window still open
    (conf < challenge_window) and a valid fraud witness recorded
  - timeout_claim: challenge window closed (conf >= challenge_window)
  - take_1: kick_off_2 has take_1_delay confirmations and assert_initial
    (which spends the same output) never confirmed

The terminal transactions of a graph (disprove / timeout_claim / take_1, or
peg_in_confirm / peg_in_refund) resolve to a single TerminalOutcome, written
once. The first confirmation wins; the others get StaleBroadcastRejected, as
does any transaction whose spent output a confirmed transaction already took.
Conditions that can never clear again (already confirmed, graph resolved,
challenge window closed) raise TransactionNoLongerEligible (not retryable).
"""

import logging
from typing import List, Optional, Union

from .bridge_types import (
    ChainState, DisputeState, GraphRole, PegInState, TERMINAL_OUTCOMES, OutcomeKind,
    TerminalOutcome, TransactionName,
)
from .errors import (
    DuplicateSubmissionConflict, InsufficientConfirmations, InvalidAssertion, InvalidFraudWitness,
    OutOfOrderConfirmation, StaleBroadcastRejected, TimelockNotElapsed, TransactionNoLongerEligible,
    TransactionNotEligible,
)
from .graph import Graph, GraphBuilder
from .proof import Assertion, FraudWitness, ProofVerifier, is_valid_witness
from .store import GraphStore, assertion_key, confirm_key, fraud_key, l2_key, outcome_key


log = logging.getLogger(__name__)

T = TransactionName

FUNDING = "funding"

# Peg-out states in order, with the transactions that must all be confirmed
PEG_OUT_STAGES = [
    ((T.PEG_OUT,), DisputeState.PEG_OUT_BROADCAST),
    ((T.PEG_OUT_CONFIRM,), DisputeState.PEG_OUT_CONFIRMED),
    ((T.KICK_OFF_1,), DisputeState.KICK_OFF_1_BROADCAST),
    ((T.KICK_OFF_2,), DisputeState.KICK_OFF_2_BROADCAST),
    ((T.ASSERT_INITIAL,), DisputeState.ASSERT_INITIAL_BROADCAST),
    ((T.ASSERT_COMMIT_1, T.ASSERT_COMMIT_2), DisputeState.ASSERT_COMMIT_BROADCAST),
    ((T.ASSERT_FINAL,), DisputeState.ASSERT_FINAL_BROADCAST),
]

OUTCOME_STATES = {
    OutcomeKind.PEG_IN_CONFIRMED: PegInState.CONFIRMED,
    OutcomeKind.PEG_IN_REFUNDED: PegInState.REFUNDED,
    OutcomeKind.DISPROVED: DisputeState.DISPROVED,
    OutcomeKind.TIMED_OUT_CLAIMED: DisputeState.TIMED_OUT_CLAIMED,
    OutcomeKind.REIMBURSED: DisputeState.REIMBURSED,
}


class DisputeStateMachine:
    """
    Per-graph broadcast eligibility.

    Usage:
        dsm = DisputeStateMachine(store, builder)
        dsm.record_confirmation(graph_id, T.ASSERT_FINAL, 812)
        dsm.next_eligible(graph_id, ChainState(height=815))   # T.DISPROVE / T.TIMEOUT_CLAIM / None
    """

    def __init__(self, store: GraphStore, builder: Optional[GraphBuilder] = None,
                 proof_verifier: Optional[ProofVerifier] = None):
        self.store = store
        self.builder = builder or GraphBuilder(store)
        self.proof_verifier = proof_verifier

    def graph(self, graph_id: str) -> Graph:
        return self.builder.load_graph(graph_id)

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIRMATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def confirmation_height(self, graph_id: str, name: Union[TransactionName, str]) -> Optional[int]:
        label = name.value if isinstance(name, TransactionName) else name
        record = self.store.get(confirm_key(graph_id, label))
        return int(record["height"]) if record else None

    def confirmations(self, graph_id: str, name: Union[TransactionName, str],
                      chain_state: ChainState) -> int:
        height = self.confirmation_height(graph_id, name)
        if height is None:
            return 0
        return max(0, chain_state.height - height + 1)

    def record_funding_confirmation(self, graph_id: str, chain_height: int):
        self.graph(graph_id)
        self._write_confirmation(graph_id, FUNDING, chain_height)

    def _write_confirmation(self, graph_id: str, label: str, chain_height: int) -> bool:
        key = confirm_key(graph_id, label)
        existing = self.store.get(key)
        if existing is not None:
            if int(existing["height"]) != chain_height:
                log.warning(f"{graph_id[:16]}/{label} already recorded at height "
                            f"{existing['height']}, ignoring {chain_height}")
            return False
        self.store.put_once(key, {"height": chain_height})
        return True

    def record_confirmation(self, graph_id: str, tx_name: TransactionName, chain_height: int):
        """
        Record that a graph transaction confirmed at `chain_height`.

        Recording the same transaction again is a no-op.

        Raises:
            OutOfOrderConfirmation: a spent parent has no earlier confirmation record
            StaleBroadcastRejected: another terminal transaction already won, or a
                transaction spending the same output confirmed first
        """
        graph = self.graph(graph_id)
        node = graph.node(tx_name)
        if self.confirmation_height(graph_id, tx_name) is not None:
            self._write_confirmation(graph_id, tx_name.value, chain_height)
            return

        missing = []
        for spec in node.inputs:
            if spec.spends_funding:
                if self.confirmation_height(graph_id, FUNDING) is None:
                    # The entry confirming proves the funding output confirmed
                    self._write_confirmation(graph_id, FUNDING, chain_height)
                continue
            if spec.linked_graph_id:
                parent_height = self.confirmation_height(spec.linked_graph_id, spec.linked_parent)
                label = f"{spec.linked_graph_id[:16]}/{spec.linked_parent.value}"
            else:
                parent_height = self.confirmation_height(graph_id, spec.parent)
                label = spec.parent.value
            if parent_height is None or parent_height > chain_height:
                missing.append(label)
        if missing:
            raise OutOfOrderConfirmation(tx_name.value, missing)
        winner = self._confirmed_conflict(graph, tx_name)
        if winner is not None:
            raise StaleBroadcastRejected(graph_id, tx_name.value, winner.value)

        if tx_name in TERMINAL_OUTCOMES:
            self._resolve(graph_id, TerminalOutcome.for_transaction(tx_name, chain_height))

        self._write_confirmation(graph_id, tx_name.value, chain_height)
        log.info(f"Confirmed {tx_name.value} of {graph_id[:16]} at height {chain_height} "
                 f"-> {self.state(graph_id).value}")

    def _confirmed_conflict(self, graph: Graph, tx_name: TransactionName) -> Optional[TransactionName]:
        for other in graph.conflicts(tx_name):
            if self.confirmation_height(graph.graph_id, other) is not None:
                return other
        return None

    def _resolve(self, graph_id: str, outcome: TerminalOutcome):
        current = self.outcome(graph_id)
        if current is not None and current.tx_name != outcome.tx_name:
            raise StaleBroadcastRejected(graph_id, outcome.tx_name.value, current.tx_name.value)
        try:
            self.store.put_once(outcome_key(graph_id), outcome.to_dict())
        except DuplicateSubmissionConflict:
            winner = self.outcome(graph_id)
            raise StaleBroadcastRejected(graph_id, outcome.tx_name.value, winner.tx_name.value)
        log.info(f"Graph {graph_id[:16]} resolved: {outcome.kind.value}")

    # ═══════════════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════════════

    def outcome(self, graph_id: str) -> Optional[TerminalOutcome]:
        record = self.store.get(outcome_key(graph_id))
        return TerminalOutcome.from_dict(record) if record else None

    def is_terminal(self, graph_id: str) -> bool:
        return self.outcome(graph_id) is not None

    def state(self, graph_id: str) -> Union[DisputeState, PegInState]:
        graph = self.graph(graph_id)
        outcome = self.outcome(graph_id)
        if outcome is not None:
            return OUTCOME_STATES[outcome.kind]
        if graph.role == GraphRole.PEG_IN:
            return PegInState.CREATED
        state = DisputeState.CREATED
        for names, stage in PEG_OUT_STAGES:
            if all(self.confirmation_height(graph_id, name) is not None for name in names):
                state = stage
            else:
                break
        return state

    # ═══════════════════════════════════════════════════════════════════════
    # ELIGIBILITY
    # ═══════════════════════════════════════════════════════════════════════

    def check_eligible(self, graph_id: str, tx_name: TransactionName, chain_state: ChainState):
        """
        Raise unless tx_name may be broadcast now.

        Raises:
            StaleBroadcastRejected: the graph resolved through another branch, or a
                conflicting transaction already spent one of its inputs
            InsufficientConfirmations: a parent is unconfirmed or not deep enough
            TimelockNotElapsed: a relative timelock has not expired
            TransactionNoLongerEligible: already confirmed, graph resolved or window closed
            TransactionNotEligible: any other unmet precondition
        """
        graph = self.graph(graph_id)
        node = graph.node(tx_name)
        protocol = graph.params.protocol
        depth = protocol.confirmation_depth

        outcome = self.outcome(graph_id)
        if outcome is not None:
            if outcome.tx_name == tx_name:
                raise TransactionNoLongerEligible(tx_name.value, "already confirmed")
            if tx_name in TERMINAL_OUTCOMES:
                raise StaleBroadcastRejected(graph_id, tx_name.value, outcome.tx_name.value)
            if self.confirmation_height(graph_id, tx_name) is None:
                raise TransactionNoLongerEligible(tx_name.value, f"graph resolved ({outcome.kind.value})")
        if self.confirmation_height(graph_id, tx_name) is not None:
            raise TransactionNoLongerEligible(tx_name.value, "already confirmed")
        winner = self._confirmed_conflict(graph, tx_name)
        if winner is not None:
            raise StaleBroadcastRejected(graph_id, tx_name.value, winner.value)

        if tx_name == T.PEG_OUT and not self.store.exists(l2_key(graph_id)):
            raise TransactionNotEligible(tx_name.value, "L2 withdrawal not confirmed")

        for spec in node.inputs:
            if spec.spends_funding:
                label = FUNDING
                conf = self.confirmations(graph_id, FUNDING, chain_state)
            elif spec.linked_graph_id:
                label = spec.linked_parent.value
                conf = self.confirmations(spec.linked_graph_id, spec.linked_parent, chain_state)
            else:
                label = spec.parent.value
                conf = self.confirmations(graph_id, spec.parent, chain_state)
            if conf == 0:
                raise InsufficientConfirmations(tx_name.value, f"{label} not confirmed")
            if conf < depth:
                raise InsufficientConfirmations(tx_name.value, f"{label} has {conf}/{depth} confirmations")
            if spec.relative_delay and conf < spec.relative_delay:
                raise TimelockNotElapsed(
                    tx_name.value, f"{label} has {conf}/{spec.relative_delay} blocks of relative timelock")

        if tx_name == T.DISPROVE:
            conf = self.confirmations(graph_id, T.ASSERT_FINAL, chain_state)
            if conf >= protocol.challenge_window:
                raise TransactionNoLongerEligible(tx_name.value, "challenge window closed")
            if self.fraud_witness(graph_id) is None:
                raise TransactionNotEligible(tx_name.value, "no valid fraud witness")

    def is_eligible(self, graph_id: str, tx_name: TransactionName, chain_state: ChainState) -> bool:
        try:
            self.check_eligible(graph_id, tx_name, chain_state)
        except (TransactionNotEligible, StaleBroadcastRejected):
            return False
        return True

    def eligible_transactions(self, graph_id: str, chain_state: ChainState) -> List[TransactionName]:
        graph = self.graph(graph_id)
        return [name for name in graph.names() if self.is_eligible(graph_id, name, chain_state)]

    def next_eligible(self, graph_id: str, chain_state: ChainState) -> Optional[TransactionName]:
        """First broadcastable transaction in graph order, None if nothing is."""
        eligible = self.eligible_transactions(graph_id, chain_state)
        return eligible[0] if eligible else None

    # ═══════════════════════════════════════════════════════════════════════
    # CHALLENGES
    # ═══════════════════════════════════════════════════════════════════════

    def challenge_window(self, graph_id: str, chain_state: ChainState) -> dict:
        graph = self.graph(graph_id)
        protocol = graph.params.protocol
        height = self.confirmation_height(graph_id, T.ASSERT_FINAL)
        conf = self.confirmations(graph_id, T.ASSERT_FINAL, chain_state)
        return {
            "assert_final_height": height,
            "confirmations": conf,
            "opens_at": height + protocol.confirmation_depth - 1 if height is not None else None,
            "closes_at": height + protocol.challenge_window - 1 if height is not None else None,
            "open": height is not None and protocol.confirmation_depth <= conf < protocol.challenge_window,
        }

    def record_assertion(self, graph_id: str, assertion: Assertion):
        """
        Operator assertion backing the assert transactions (written once).

        Raises:
            InvalidAssertion: a value is not signed with the graph's Winternitz keys
            DuplicateSubmissionConflict: a different assertion is already recorded
        """
        graph = self.graph(graph_id)
        if graph.role != GraphRole.PEG_OUT:
            raise InvalidAssertion(graph_id, "not a peg-out graph")
        if not assertion.verify_signatures(graph.params.assertion_keys):
            raise InvalidAssertion(graph_id, "Winternitz signatures do not match the graph's keys")
        self.store.put_once(assertion_key(graph_id), assertion.to_dict())

    def assertion(self, graph_id: str) -> Optional[Assertion]:
        record = self.store.get(assertion_key(graph_id))
        return Assertion.from_dict(record) if record else None

    def fraud_witness(self, graph_id: str) -> Optional[FraudWitness]:
        record = self.store.get(fraud_key(graph_id))
        return FraudWitness.from_dict(record) if record else None

    def submit_fraud_witness(self, graph_id: str, witness: FraudWitness, chain_state: ChainState):
        """
        Record a fraud witness. Only accepted while the challenge window is open.

        Raises:
            TransactionNotEligible: window not open yet
            TransactionNoLongerEligible: window already closed
            InvalidFraudWitness: witness does not prove fraud in the stored assertion
        """
        graph = self.graph(graph_id)
        window = self.challenge_window(graph_id, chain_state)
        if not window["open"]:
            if window["confirmations"] >= graph.params.protocol.challenge_window:
                raise TransactionNoLongerEligible(T.DISPROVE.value, "challenge window closed")
            raise TransactionNotEligible(T.DISPROVE.value, "challenge window not open")
        if not is_valid_witness(witness, self.assertion(graph_id), self.proof_verifier,
                                graph.params.invalid_proof_lock):
            raise InvalidFraudWitness(graph_id, "assertion holds, digest mismatch or no attestation")
        self.store.put_once(fraud_key(graph_id), witness.to_dict())
        log.warning(f"Fraud witness ({witness.kind.value}) recorded for graph {graph_id[:16]}")
