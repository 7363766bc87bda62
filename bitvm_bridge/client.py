"""
BitVM Bridge SDK - Client

High-level facade used by the CLI and the status API. Wires together the
store, graph builder, signing coordinator, dispute state machine and chain
observer for one local party.

Usage:
    client = BridgeClient(config, key=VerifierKey.load(config.key_path))
    graph = client.create_peg_in_graph(funding, depositor_pubkey, "0xabc...")
    client.push_verifier_nonces(graph.graph_id)
    client.push_verifier_signatures(graph.graph_id)
    client.broadcast_peg_in_confirm(graph.graph_id)
"""

import logging
import time
from typing import List, Optional

from bitcoinutils.setup import setup

from .bridge_types import (
    AggregationStatus, ChainState, GraphRole, TERMINAL_OUTCOMES, TransactionName, Utxo,
)
from .chain import ChainClient, ChainObserver, EsploraClient, MockL2Watcher
from .config import Config
from .dispute import DisputeStateMachine
from .errors import (
    BroadcastError, BroadcastErrorKind, InvalidFraudWitness, InvalidParams, StaleBroadcastRejected,
    TransactionNotEligible,
)
from .graph import Graph, GraphBuilder
from .keys import Committee, VerifierKey, mask_secret
from .proof import (
    COMMIT_1, COMMIT_2, FINAL, Assertion, AssertionSigner, FraudKind, FraudWitness, ProofOracle,
    ProofVerifier, accept_all, assertion_label, evaluate_fraud, reject_all,
)
from .scripts import DEPOSIT, GraphParams, derive_scripts, operator_funding_connector
from .signing import NonceVault, SignedTransaction, SigningCoordinator, VerifierSigner
from .store import GraphStore, JsonFileStore, broadcast_key, graph_key


log = logging.getLogger(__name__)

T = TransactionName


class BridgeClient:
    """Verifier node facade."""

    def __init__(self, config: Config, store: Optional[GraphStore] = None,
                 chain: Optional[ChainClient] = None, key: Optional[VerifierKey] = None,
                 proof_verifier: Optional[ProofVerifier] = None,
                 nonce_vault: Optional[NonceVault] = None,
                 proof_oracle: Optional[ProofOracle] = None):
        setup(config.network)
        if proof_verifier is None and proof_oracle is not None:
            proof_verifier = proof_oracle.verify
        self.config = config
        self.protocol = config.protocol_params()
        self.committee = Committee(config.committee) if config.committee else None
        self.store = store if store is not None else JsonFileStore(config.store_path)
        self.chain = chain if chain is not None else EsploraClient(config.esplora_url, config.http_timeout)
        self.key = key

        self.builder = GraphBuilder(self.store)
        self.coordinator = SigningCoordinator(self.store, self.builder)
        self.dsm = DisputeStateMachine(self.store, self.builder, proof_verifier)
        self.observer = ChainObserver(self.chain, self.dsm, self.builder)
        self.l2 = MockL2Watcher(self.store)
        self.proof_verifier = proof_verifier
        self.proof_oracle = proof_oracle

        self.signer = None
        if key is not None:
            self.signer = VerifierSigner(
                self.coordinator, key,
                vault=nonce_vault if nonce_vault is not None else NonceVault(config.nonce_vault_path),
                poll_interval=config.poll_interval,
                backoff=config.backoff_factor,
                max_interval=config.max_poll_interval,
                timeout=config.session_timeout,
            )

    # ═══════════════════════════════════════════════════════════════════════
    # GRAPHS
    # ═══════════════════════════════════════════════════════════════════════

    def _require_committee(self) -> Committee:
        if self.committee is None:
            raise InvalidParams("no committee configured")
        return self.committee

    def deposit_address(self, depositor_pubkey: str, evm_address: str) -> str:
        """Address the depositor funds before a peg-in graph is created."""
        params = GraphParams(self.protocol, depositor_pubkey=depositor_pubkey,
                             depositor_evm_address=evm_address)
        scripts = derive_scripts(self._require_committee(), GraphRole.PEG_IN, params)
        return scripts[DEPOSIT].address().to_string()

    def operator_funding_address(self, operator_pubkey: str) -> str:
        """Address the operator funds before a peg-out graph is created."""
        params = GraphParams(self.protocol, operator_pubkey=operator_pubkey)
        connector = operator_funding_connector(self._require_committee(), params)
        return connector.address().to_string()

    def assertion_signer(self, funding: Utxo, key: Optional[VerifierKey] = None) -> AssertionSigner:
        """Operator's Winternitz signer for the peg-out graph funded by `funding`."""
        key = key or self.key
        if key is None:
            raise InvalidParams("no operator key loaded")
        return AssertionSigner(key.secret_bytes, assertion_label(funding))

    def _persist(self, graph: Graph) -> Graph:
        self.store.put_once(graph_key(graph.graph_id), graph.to_dict())
        return self.builder.load_graph(graph.graph_id)

    def create_peg_in_graph(self, funding: Utxo, depositor_pubkey: str, evm_address: str) -> Graph:
        params = GraphParams(self.protocol, depositor_pubkey=depositor_pubkey,
                             depositor_evm_address=evm_address)
        graph = self.builder.build_graph(funding, self._require_committee(), GraphRole.PEG_IN,
                                         params=params)
        return self._persist(graph)

    def create_peg_out_graph(self, funding: Utxo, peg_in_graph_id: str, operator_pubkey: str,
                             withdrawer_address: str, peg_out_amount: int,
                             disprove_payout_address: str, assertion_keys: dict,
                             invalid_proof_lock: str = "") -> Graph:
        """
        Build and store a peg-out graph.

        assertion_keys are the operator's Winternitz public keys
        (AssertionSigner.public_keys()); invalid_proof_lock is the proof
        oracle's lock for this graph, if one is used.
        """
        params = GraphParams(self.protocol, operator_pubkey=operator_pubkey,
                             withdrawer_address=withdrawer_address,
                             disprove_payout_address=disprove_payout_address,
                             peg_out_amount=peg_out_amount,
                             assertion_keys=assertion_keys,
                             invalid_proof_lock=invalid_proof_lock)
        graph = self.builder.build_graph(funding, self._require_committee(), GraphRole.PEG_OUT,
                                         linked_graph_id=peg_in_graph_id, params=params)
        return self._persist(graph)

    def get_graph(self, graph_id: str) -> Graph:
        return self.builder.load_graph(graph_id)

    # ═══════════════════════════════════════════════════════════════════════
    # SIGNING
    # ═══════════════════════════════════════════════════════════════════════

    def _require_signer(self) -> VerifierSigner:
        if self.signer is None:
            raise InvalidParams("no verifier key loaded")
        return self.signer

    def push_verifier_nonces(self, graph_id: str) -> int:
        return self._require_signer().push_nonces(graph_id)

    def push_verifier_signatures(self, graph_id: str, wait: bool = False) -> List[AggregationStatus]:
        return self._require_signer().push_signatures(graph_id, wait=wait)

    def sign_external(self, graph_id: str, tx_name: TransactionName,
                      key: Optional[VerifierKey] = None) -> list:
        """Depositor / operator signs its own inputs of a transaction."""
        key = key or self.key
        if key is None:
            raise InvalidParams("no key loaded")
        return self.coordinator.sign_external(graph_id, tx_name, key)

    # ═══════════════════════════════════════════════════════════════════════
    # CHAIN
    # ═══════════════════════════════════════════════════════════════════════

    def chain_state(self) -> ChainState:
        return self.observer.chain_state()

    def sync(self, graph_id: str) -> List[TransactionName]:
        return self.observer.sync(graph_id)

    def _witness_extras(self, graph_id: str, tx_name: TransactionName) -> Optional[dict]:
        # assert transactions reveal the signed values their leaves check
        if tx_name not in (T.ASSERT_COMMIT_1, T.ASSERT_COMMIT_2, T.ASSERT_FINAL, T.DISPROVE):
            return None
        assertion = self.dsm.assertion(graph_id)
        if assertion is None:
            raise TransactionNotEligible(tx_name.value, "no assertion recorded")
        if tx_name == T.ASSERT_COMMIT_1:
            return {0: assertion.witness_items(COMMIT_1)}
        if tx_name == T.ASSERT_COMMIT_2:
            return {0: assertion.witness_items(COMMIT_2)}
        if tx_name == T.ASSERT_FINAL:
            return {2: assertion.witness_items(FINAL)}

        witness = self.dsm.fraud_witness(graph_id)
        if witness is None:
            raise TransactionNotEligible(tx_name.value, "no valid fraud witness")
        if witness.kind == FraudKind.INVALID_PROOF:
            return {0: [witness.attestation, ""]}
        items = (assertion.witness_items(COMMIT_1) + assertion.witness_items(COMMIT_2)
                 + assertion.witness_items(FINAL))
        if self.get_graph(graph_id).params.invalid_proof_lock:
            items.append("01")
        return {0: items}

    def signed_transaction(self, graph_id: str, tx_name: TransactionName) -> SignedTransaction:
        extras = self._witness_extras(graph_id, tx_name)
        return self.coordinator.require_signed_transaction(graph_id, tx_name, extras)

    def broadcast(self, graph_id: str, tx_name: TransactionName) -> str:
        """
        Broadcast a graph transaction if it is complete and eligible.

        Raises:
            IncompleteTransaction: not every input is signed
            TransactionNotEligible (and subclasses): preconditions not met
            StaleBroadcastRejected: the other terminal branch already won
            BroadcastError: the backend refused the transaction
        """
        self.sync(graph_id)
        chain_state = self.chain_state()
        outcome = self.dsm.outcome(graph_id)
        if outcome is not None and outcome.tx_name != tx_name and tx_name in TERMINAL_OUTCOMES:
            raise StaleBroadcastRejected(graph_id, tx_name.value, outcome.tx_name.value)

        signed = self.signed_transaction(graph_id, tx_name)
        self.dsm.check_eligible(graph_id, tx_name, chain_state)

        try:
            txid = self.chain.broadcast(signed)
        except BroadcastError as e:
            if e.kind != BroadcastErrorKind.ALREADY_SPENT:
                raise
            log.info(f"{tx_name.value} input already spent, re-syncing graph {graph_id[:16]}")
            self.sync(graph_id)
            outcome = self.dsm.outcome(graph_id)
            if outcome is not None and outcome.tx_name != tx_name:
                raise StaleBroadcastRejected(graph_id, tx_name.value, outcome.tx_name.value)
            raise

        self.store.put(broadcast_key(graph_id, tx_name.value),
                       {"txid": txid, "height": chain_state.height, "ts": int(time.time())})
        log.info(f"Broadcast {tx_name.value} of {graph_id[:16]}: {txid}")
        return txid

    def broadcast_peg_in_confirm(self, graph_id: str) -> str:
        return self.broadcast(graph_id, T.PEG_IN_CONFIRM)

    def confirm_l2_withdrawal(self, graph_id: str, l2_tx_hash: str,
                              sender: Optional[str] = None) -> dict:
        graph = self.get_graph(graph_id)
        if graph.role != GraphRole.PEG_OUT:
            raise InvalidParams(f"graph {graph_id[:16]} is not a peg-out graph")
        return self.l2.confirm_withdrawal(graph_id, l2_tx_hash, sender)

    # ═══════════════════════════════════════════════════════════════════════
    # CHALLENGES
    # ═══════════════════════════════════════════════════════════════════════

    def sign_assertion(self, graph_id: str, commit_1: str, commit_2: str, proof: str,
                       final: Optional[str] = None, key: Optional[VerifierKey] = None) -> Assertion:
        """Operator side: Winternitz-sign the assertion values of a peg-out graph."""
        graph = self.get_graph(graph_id)
        signer = self.assertion_signer(graph.funding, key)
        if signer.public_keys() != graph.params.assertion_keys:
            raise InvalidParams(f"key does not own the assertion keys of graph {graph_id[:16]}")
        if final is None:
            return signer.build(commit_1, commit_2, proof)
        return signer.sign(commit_1, commit_2, final, proof)

    def submit_assertion(self, graph_id: str, assertion: Assertion):
        self.dsm.record_assertion(graph_id, assertion)
        log.info(f"Assertion recorded for graph {graph_id[:16]} (digest {mask_secret(assertion.digest())})")

    def challenge(self, graph_id: str, attestation: Optional[str] = None) -> Optional[FraudWitness]:
        """
        Check the operator's assertion and, if fraudulent, record the fraud
        witness that makes disprove eligible.

        An invalid proof is only disprovable with the proof oracle's
        attestation (passed in, or asked from the configured oracle).

        Raises:
            InvalidFraudWitness: the proof fails but no attestation is available,
                or the attestation does not open the graph's lock
        """
        assertion = self.dsm.assertion(graph_id)
        if assertion is None:
            raise TransactionNotEligible(T.DISPROVE.value, "no assertion recorded")
        graph = self.get_graph(graph_id)
        if attestation is None and self.proof_oracle is not None:
            attestation = self.proof_oracle.attest(assertion_label(graph.funding), assertion)

        verify = self.proof_verifier
        if verify is None:
            if attestation:
                verify = reject_all
            else:
                log.warning("No proof verifier configured, only checking assertion consistency")
                verify = accept_all
        witness = evaluate_fraud(assertion, verify, attestation or "")
        if witness is None:
            log.info(f"Assertion of graph {graph_id[:16]} holds, nothing to challenge")
            return None
        if witness.kind == FraudKind.INVALID_PROOF and not witness.attestation:
            raise InvalidFraudWitness(graph_id, "proof does not verify but no oracle attestation is available")
        self.sync(graph_id)
        self.dsm.submit_fraud_witness(graph_id, witness, self.chain_state())
        return witness

    # ═══════════════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════════════

    def status(self, graph_id: str, chain_state: Optional[ChainState] = None) -> dict:
        graph = self.get_graph(graph_id)
        chain_state = chain_state or self.chain_state()
        outcome = self.dsm.outcome(graph_id)
        next_tx = self.dsm.next_eligible(graph_id, chain_state)
        data = {
            "graph_id": graph_id,
            "role": graph.role.value,
            "state": self.dsm.state(graph_id).value,
            "terminal": outcome is not None,
            "outcome": outcome.to_dict() if outcome else None,
            "height": chain_state.height,
            "next_eligible": next_tx.value if next_tx else None,
            "eligible": [name.value for name in self.dsm.eligible_transactions(graph_id, chain_state)],
            "signing_complete": self.coordinator.status(graph_id)["complete"],
            "transactions": {
                name.value: {
                    "txid": node.txid,
                    "confirmed_height": self.dsm.confirmation_height(graph_id, name),
                }
                for name, node in graph.nodes.items()
            },
        }
        if graph.role == GraphRole.PEG_OUT:
            data["challenge_window"] = self.dsm.challenge_window(graph_id, chain_state)
            data["l2_confirmed"] = self.l2.is_confirmed(graph_id)
        return data
