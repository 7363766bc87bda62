"""
BitVM Bridge SDK - Signing Coordinator

Runs the two-round MuSig2 ceremony for every committee-signed input of a
graph, entirely through the shared store:

    AWAITING_NONCES --(all N public nonces)--> AWAITING_SIGNATURES
    AWAITING_SIGNATURES --(all N valid partial sigs)--> COMPLETE

Sessions are per input and independent. A failed input is restarted alone by
bumping its round; nonces and partial signatures of older rounds are ignored.

SigningCoordinator validates and aggregates submissions (any party can run
it). VerifierSigner is one verifier's side: it generates nonces, keeps the
secret halves in a private vault and computes partial signatures.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar

from bitcoinutils.transactions import Transaction

from . import musig
from .bridge_types import AggregationStatus, InputRef, SignerRole, SigningState, TransactionName
from .errors import (
    DuplicateSubmissionConflict, IncompleteTransaction, InvalidNonce, InvalidPartialSignature,
    MissingNonce, MissingSecretNonce, SessionTimeout, StoreError, UnknownInput, UnknownVerifier,
)
from .graph import Graph, GraphBuilder
from .keys import VerifierKey, mask_secret, normalize_pubkey
from .store import GraphStore, nonce_key, psig_key, round_key, sig_key, xsig_key


log = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class SignedTransaction:
    """Fully signed, broadcast-ready transaction."""
    graph_id: str
    tx_name: TransactionName
    tx: Transaction

    @property
    def txid(self) -> str:
        return self.tx.get_txid()

    @property
    def hex(self) -> str:
        return self.tx.serialize()

    def to_dict(self) -> dict:
        return {
            "graph_id": self.graph_id,
            "tx_name": self.tx_name.value,
            "txid": self.txid,
            "hex": self.hex,
        }


def poll_until(check: Callable[[], Optional[R]], timeout: float, interval: float = 2.0,
               backoff: float = 1.5, max_interval: float = 30.0, input_ref=None,
               sleep: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> R:
    """
    Re-run `check` with exponential backoff until it returns a value.

    Raises:
        SessionTimeout: nothing after `timeout` seconds
    """
    start = clock()
    while True:
        result = check()
        if result is not None:
            return result
        waited = clock() - start
        if waited >= timeout:
            raise SessionTimeout(input_ref, waited)
        sleep(min(interval, max(timeout - waited, 0)))
        interval = min(interval * backoff, max_interval)


class SigningCoordinator:
    """
    Store-backed signing sessions.

    Usage:
        coordinator = SigningCoordinator(store, GraphBuilder(store))
        coordinator.submit_nonce(graph_id, pubkey, InputRef(T.PEG_IN_CONFIRM, 0), nonce_hex)
        status = coordinator.submit_signature(graph_id, pubkey, input_ref, psig_hex)
        signed = coordinator.signed_transaction(graph_id, T.PEG_IN_CONFIRM)
    """

    def __init__(self, store: GraphStore, builder: Optional[GraphBuilder] = None):
        self.store = store
        self.builder = builder or GraphBuilder(store)
        self._messages: Dict[tuple, bytes] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # SESSION LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════

    def graph(self, graph_id: str) -> Graph:
        return self.builder.load_graph(graph_id)

    def message(self, graph_id: str, input_ref: InputRef) -> bytes:
        """Signature hash the committee signs for an input."""
        cache_key = (graph_id, input_ref)
        if cache_key not in self._messages:
            node = self.graph(graph_id).node(input_ref.tx_name)
            self._messages[cache_key] = node.sighash(input_ref.index)
        return self._messages[cache_key]

    def _committee_input(self, graph: Graph, input_ref: InputRef):
        spec = graph.input_spec(input_ref)
        if spec.signer != SignerRole.COMMITTEE:
            raise UnknownInput(input_ref, f"is signed by the {spec.signer.value}")

    def _member(self, graph: Graph, verifier: str):
        try:
            verifier = normalize_pubkey(verifier)
        except ValueError:
            raise UnknownVerifier(verifier)
        return verifier, graph.committee.index_of(verifier)

    def session_round(self, graph_id: str, input_ref: InputRef) -> int:
        return int(self.store.get(round_key(graph_id, input_ref.key()), 0))

    def nonces(self, graph_id: str, input_ref: InputRef,
               session_round: Optional[int] = None) -> Optional[List[bytes]]:
        """All public nonces in committee order, or None while any is missing."""
        graph = self.graph(graph_id)
        if session_round is None:
            session_round = self.session_round(graph_id, input_ref)
        result = []
        for pk in graph.committee:
            value = self.store.get(nonce_key(graph_id, input_ref.key(), session_round, pk))
            if value is None:
                return None
            result.append(bytes.fromhex(value))
        return result

    def missing_nonces(self, graph_id: str, input_ref: InputRef) -> List[str]:
        graph = self.graph(graph_id)
        session_round = self.session_round(graph_id, input_ref)
        return [pk for pk in graph.committee
                if not self.store.exists(nonce_key(graph_id, input_ref.key(), session_round, pk))]

    def session(self, graph_id: str, input_ref: InputRef) -> Optional[musig.SessionContext]:
        """Session context for the current round, None until all nonces are in."""
        pubnonces = self.nonces(graph_id, input_ref)
        if pubnonces is None:
            return None
        graph = self.graph(graph_id)
        return musig.SessionContext(
            musig.nonce_agg(pubnonces),
            graph.committee.pubkey_bytes(),
            self.message(graph_id, input_ref),
            graph.committee.keyagg,
        )

    def aggregated_signature(self, graph_id: str, input_ref: InputRef) -> Optional[str]:
        session_round = self.session_round(graph_id, input_ref)
        return self.store.get(sig_key(graph_id, input_ref.key(), session_round))

    def signing_state(self, graph_id: str, input_ref: InputRef) -> SigningState:
        if self.aggregated_signature(graph_id, input_ref) is not None:
            return SigningState.COMPLETE
        if self.nonces(graph_id, input_ref) is not None:
            return SigningState.AWAITING_SIGNATURES
        return SigningState.AWAITING_NONCES

    # ═══════════════════════════════════════════════════════════════════════
    # ROUND 1: NONCES
    # ═══════════════════════════════════════════════════════════════════════

    def submit_nonce(self, graph_id: str, verifier: str, input_ref: InputRef,
                     nonce: str) -> SigningState:
        """
        Publish a verifier's public nonce for one input.

        Submitting the same nonce twice is a no-op; a different nonce for the
        same (verifier, input, round) raises DuplicateSubmissionConflict.
        """
        graph = self.graph(graph_id)
        self._committee_input(graph, input_ref)
        verifier, _ = self._member(graph, verifier)
        try:
            musig.validate_pubnonce(bytes.fromhex(nonce))
        except ValueError as e:
            raise InvalidNonce(verifier, input_ref, str(e))

        session_round = self.session_round(graph_id, input_ref)
        key = nonce_key(graph_id, input_ref.key(), session_round, verifier)
        try:
            written = self.store.put_once(key, nonce.lower())
        except DuplicateSubmissionConflict:
            raise DuplicateSubmissionConflict(key, verifier=verifier, input_ref=input_ref)
        if written:
            log.info(f"Nonce {mask_secret(verifier)} -> {graph_id[:16]}/{input_ref} r{session_round}")
        return self.signing_state(graph_id, input_ref)

    # ═══════════════════════════════════════════════════════════════════════
    # ROUND 2: PARTIAL SIGNATURES
    # ═══════════════════════════════════════════════════════════════════════

    def partial_signatures(self, graph_id: str, input_ref: InputRef) -> Dict[str, str]:
        graph = self.graph(graph_id)
        session_round = self.session_round(graph_id, input_ref)
        found = {}
        for pk in graph.committee:
            value = self.store.get(psig_key(graph_id, input_ref.key(), session_round, pk))
            if value is not None:
                found[pk] = value
        return found

    def submit_signature(self, graph_id: str, verifier: str, input_ref: InputRef,
                         partial_sig: str) -> AggregationStatus:
        """
        Publish a verifier's partial signature for one input.

        The partial signature is checked against the verifier's public nonce
        before it is stored. When the last one arrives the aggregate is built,
        verified against the committee key and stored.

        Raises:
            MissingNonce: not all committee nonces observed yet
            InvalidPartialSignature: the signature does not verify (not stored)
            DuplicateSubmissionConflict: a different signature is already stored
        """
        graph = self.graph(graph_id)
        self._committee_input(graph, input_ref)
        verifier, index = self._member(graph, verifier)
        required = len(graph.committee)

        if self.aggregated_signature(graph_id, input_ref) is not None:
            return AggregationStatus(input_ref, SigningState.COMPLETE, required, required,
                                     self.aggregated_signature(graph_id, input_ref))

        session = self.session(graph_id, input_ref)
        if session is None:
            raise MissingNonce(input_ref, self.missing_nonces(graph_id, input_ref))
        pubnonces = self.nonces(graph_id, input_ref)

        try:
            psig = bytes.fromhex(partial_sig)
        except ValueError:
            raise InvalidPartialSignature(verifier, input_ref)
        if not musig.partial_sig_verify(psig, pubnonces[index], bytes.fromhex(verifier), session):
            log.warning(f"Rejected partial signature from {mask_secret(verifier)} "
                        f"for {graph_id[:16]}/{input_ref}")
            raise InvalidPartialSignature(verifier, input_ref)

        session_round = self.session_round(graph_id, input_ref)
        key = psig_key(graph_id, input_ref.key(), session_round, verifier)
        try:
            self.store.put_once(key, partial_sig.lower())
        except DuplicateSubmissionConflict:
            raise DuplicateSubmissionConflict(key, verifier=verifier, input_ref=input_ref)

        psigs = self.partial_signatures(graph_id, input_ref)
        if len(psigs) < required:
            return AggregationStatus(input_ref, SigningState.AWAITING_SIGNATURES,
                                     len(psigs), required)

        ordered = [bytes.fromhex(psigs[pk]) for pk in graph.committee]
        signature = musig.partial_sig_agg(ordered, session)
        if not musig.schnorr_verify(session.msg, graph.committee.keyagg.xonly, signature):
            # Every partial signature verified individually, so this is a bug
            raise InvalidPartialSignature(verifier, input_ref)
        self.store.put_once(sig_key(graph_id, input_ref.key(), session_round), signature.hex())
        log.info(f"Input {graph_id[:16]}/{input_ref} fully signed (round {session_round})")
        return AggregationStatus(input_ref, SigningState.COMPLETE, required, required,
                                 signature.hex())

    def restart_input(self, graph_id: str, input_ref: InputRef) -> int:
        """
        Abandon the current session of one input and open a fresh round.
        A completed input keeps its signature and is not restarted.

        Returns:
            the round now in effect
        """
        graph = self.graph(graph_id)
        self._committee_input(graph, input_ref)
        current = self.session_round(graph_id, input_ref)
        if self.aggregated_signature(graph_id, input_ref) is not None:
            return current
        self.store.put(round_key(graph_id, input_ref.key()), current + 1)
        log.warning(f"Restarted signing session {graph_id[:16]}/{input_ref} at round {current + 1}")
        return current + 1

    # ═══════════════════════════════════════════════════════════════════════
    # DEPOSITOR / OPERATOR INPUTS
    # ═══════════════════════════════════════════════════════════════════════

    def signer_xonly(self, graph: Graph, role: SignerRole) -> str:
        if role == SignerRole.DEPOSITOR:
            return normalize_pubkey(graph.params.depositor_pubkey)[2:]
        if role == SignerRole.OPERATOR:
            return normalize_pubkey(graph.params.operator_pubkey)[2:]
        return graph.committee.aggregate_xonly

    def submit_external_signature(self, graph_id: str, input_ref: InputRef, signature: str):
        """Store a depositor or operator signature after checking it (BIP-340)."""
        graph = self.graph(graph_id)
        spec = graph.input_spec(input_ref)
        if spec.signer == SignerRole.COMMITTEE:
            raise UnknownInput(input_ref, "is signed by the committee")
        sig = bytes.fromhex(signature)
        msg = self.message(graph_id, input_ref)
        signer = self.signer_xonly(graph, spec.signer)
        if len(sig) != 64 or not musig.schnorr_verify(msg, bytes.fromhex(signer), sig):
            raise InvalidPartialSignature(signer, input_ref)
        self.store.put_once(xsig_key(graph_id, input_ref.key()), signature.lower())
        log.info(f"{spec.signer.value} signature stored for {graph_id[:16]}/{input_ref}")

    def sign_external(self, graph_id: str, tx_name: TransactionName, key: VerifierKey) -> List[InputRef]:
        """Sign every input of a transaction that belongs to `key` (depositor/operator)."""
        graph = self.graph(graph_id)
        node = graph.node(tx_name)
        tx = node.build()
        script_pubkeys = [i.connector.script_pubkey() for i in node.inputs]
        amounts = [i.amount for i in node.inputs]
        signed = []
        for idx, spec in enumerate(node.inputs):
            if spec.signer == SignerRole.COMMITTEE:
                continue
            if self.signer_xonly(graph, spec.signer) != key.xonly_hex:
                continue
            sig = key.private_key.sign_taproot_input(
                tx, idx, script_pubkeys, amounts,
                script_path=True, tapleaf_script=spec.leaf(), tweak=False)
            input_ref = InputRef(tx_name, idx)
            self.submit_external_signature(graph_id, input_ref, sig)
            signed.append(input_ref)
        return signed

    # ═══════════════════════════════════════════════════════════════════════
    # SIGNED TRANSACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    def input_signature(self, graph_id: str, input_ref: InputRef) -> Optional[str]:
        spec = self.graph(graph_id).input_spec(input_ref)
        if spec.signer == SignerRole.COMMITTEE:
            return self.aggregated_signature(graph_id, input_ref)
        return self.store.get(xsig_key(graph_id, input_ref.key()))

    def missing_inputs(self, graph_id: str, tx_name: TransactionName) -> List[InputRef]:
        node = self.graph(graph_id).node(tx_name)
        refs = [InputRef(tx_name, idx) for idx in range(len(node.inputs))]
        return [ref for ref in refs if self.input_signature(graph_id, ref) is None]

    def signed_transaction(self, graph_id: str, tx_name: TransactionName,
                           witness_extras: Optional[Dict[int, List[str]]] = None
                           ) -> Optional[SignedTransaction]:
        """Fully signed transaction, or None while any input lacks its signature."""
        node = self.graph(graph_id).node(tx_name)
        signatures = {}
        for idx in range(len(node.inputs)):
            sig = self.input_signature(graph_id, InputRef(tx_name, idx))
            if sig is None:
                return None
            signatures[idx] = sig
        return SignedTransaction(graph_id, tx_name, node.finalize(signatures, witness_extras))

    def require_signed_transaction(self, graph_id: str, tx_name: TransactionName,
                                   witness_extras: Optional[Dict[int, List[str]]] = None
                                   ) -> SignedTransaction:
        signed = self.signed_transaction(graph_id, tx_name, witness_extras)
        if signed is None:
            missing = self.missing_inputs(graph_id, tx_name)
            raise IncompleteTransaction(tx_name.value, [ref.key() for ref in missing])
        return signed

    def status(self, graph_id: str) -> dict:
        """Signing progress of every input of a graph."""
        graph = self.graph(graph_id)
        inputs = {}
        for ref in graph.input_refs(role=None):
            spec = graph.input_spec(ref)
            if spec.signer == SignerRole.COMMITTEE:
                inputs[ref.key()] = {
                    "signer": spec.signer.value,
                    "round": self.session_round(graph_id, ref),
                    "state": self.signing_state(graph_id, ref).value,
                    "partial_signatures": len(self.partial_signatures(graph_id, ref)),
                }
            else:
                done = self.input_signature(graph_id, ref) is not None
                inputs[ref.key()] = {
                    "signer": spec.signer.value,
                    "state": (SigningState.COMPLETE if done else SigningState.AWAITING_SIGNATURES).value,
                }
        return {
            "graph_id": graph_id,
            "complete": all(v["state"] == SigningState.COMPLETE.value for v in inputs.values()),
            "inputs": inputs,
        }


# =============================================================================
# VERIFIER SIDE
# =============================================================================

class NonceVault:
    """
    Private secret-nonce storage of one verifier. Never shared.

    take() removes the nonce, so a secret nonce is used at most once.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._lock = threading.Lock()
        self._nonces: Dict[str, str] = {}
        if self.path and os.path.exists(self.path):
            try:
                with open(self.path, "r") as f:
                    self._nonces = json.load(f)
            except (OSError, ValueError) as e:
                raise StoreError(f"failed to load nonce vault {self.path}: {e}")

    def _save(self):
        if not self.path:
            return
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(self._nonces, f)

    def put(self, key: str, secnonce: bytes):
        with self._lock:
            self._nonces[key] = secnonce.hex()
            self._save()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._nonces

    def take(self, key: str) -> Optional[bytes]:
        with self._lock:
            value = self._nonces.pop(key, None)
            self._save()
        return bytes.fromhex(value) if value else None


class VerifierSigner:
    """
    One committee member's participation in the ceremony.

    Usage:
        signer = VerifierSigner(coordinator, key)
        signer.push_nonces(graph_id)          # round 1, idempotent
        signer.push_signatures(graph_id)      # round 2, idempotent
    """

    def __init__(self, coordinator: SigningCoordinator, key: VerifierKey,
                 vault: Optional[NonceVault] = None, poll_interval: float = 2.0,
                 backoff: float = 1.5, max_interval: float = 30.0, timeout: float = 600.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.coordinator = coordinator
        self.key = key
        self.vault = vault or NonceVault()
        self.poll_interval = poll_interval
        self.backoff = backoff
        self.max_interval = max_interval
        self.timeout = timeout
        self._sleep = sleep

    @property
    def pubkey(self) -> str:
        return self.key.pubkey_hex

    def _vault_key(self, graph_id: str, input_ref: InputRef, session_round: int) -> str:
        return f"{graph_id}/{input_ref.key()}/r{session_round}"

    def push_nonces(self, graph_id: str) -> int:
        """
        Generate and publish a nonce for every committee input of the graph
        that has none from this verifier in the current round.

        Returns:
            number of nonces newly published
        """
        coordinator = self.coordinator
        graph = coordinator.graph(graph_id)
        graph.committee.index_of(self.pubkey)
        pushed = 0
        for input_ref in graph.input_refs(SignerRole.COMMITTEE):
            session_round = coordinator.session_round(graph_id, input_ref)
            key = nonce_key(graph_id, input_ref.key(), session_round, self.pubkey)
            if coordinator.store.exists(key):
                continue
            secnonce, pubnonce = musig.nonce_gen(
                self.key.secret_bytes, bytes.fromhex(self.pubkey),
                graph.committee.keyagg.xonly, coordinator.message(graph_id, input_ref))
            self.vault.put(self._vault_key(graph_id, input_ref, session_round), secnonce)
            coordinator.submit_nonce(graph_id, self.pubkey, input_ref, pubnonce.hex())
            pushed += 1
        log.info(f"Pushed {pushed} nonce(s) for graph {graph_id[:16]} as {mask_secret(self.pubkey)}")
        return pushed

    def push_signatures(self, graph_id: str, wait: bool = False) -> List[AggregationStatus]:
        """
        Publish partial signatures for every input whose nonces are complete.

        Args:
            wait: poll (with backoff) for missing nonces instead of skipping

        Returns:
            AggregationStatus per input signed in this call

        Raises:
            MissingSecretNonce: this verifier's secret nonce is gone (restart the input)
            SessionTimeout: wait=True and nonces did not arrive in time
        """
        coordinator = self.coordinator
        graph = coordinator.graph(graph_id)
        graph.committee.index_of(self.pubkey)
        results = []
        for input_ref in graph.input_refs(SignerRole.COMMITTEE):
            if coordinator.signing_state(graph_id, input_ref) == SigningState.COMPLETE:
                continue
            session_round = coordinator.session_round(graph_id, input_ref)
            if coordinator.store.exists(psig_key(graph_id, input_ref.key(), session_round, self.pubkey)):
                continue

            session = coordinator.session(graph_id, input_ref)
            if session is None and wait:
                session = poll_until(
                    lambda ref=input_ref: coordinator.session(graph_id, ref),
                    timeout=self.timeout, interval=self.poll_interval, backoff=self.backoff,
                    max_interval=self.max_interval, input_ref=input_ref, sleep=self._sleep)
            if session is None:
                log.debug(f"Skipping {input_ref}: nonces incomplete")
                continue

            secnonce = self.vault.take(self._vault_key(graph_id, input_ref, session_round))
            if secnonce is None:
                raise MissingSecretNonce(self.pubkey, input_ref)
            psig = musig.partial_sign(secnonce, self.key.secret_bytes, session)
            results.append(coordinator.submit_signature(graph_id, self.pubkey, input_ref, psig.hex()))
        log.info(f"Pushed {len(results)} partial signature(s) for graph {graph_id[:16]}")
        return results
