"""
BitVM Bridge SDK

Verifier-side engine of a BitVM-style Bitcoin bridge: deterministic peg-in /
peg-out transaction graphs, two-round MuSig2 signing of every committee input,
and the dispute state machine that decides what may be broadcast next.

Architecture:
  - Verifiers share nothing but the graph store (append-only records)
  - Graphs are rebuilt from their definition, never trusted from the store
  - Broadcast eligibility advances only on observed confirmations

Usage:
    from bitvm_bridge import BridgeClient, Config, MockChain, MemoryStore

    config = Config(network="regtest", committee=[pk1, pk2])
    client = BridgeClient(config, store=MemoryStore(), chain=MockChain(), key=key)

    graph = client.create_peg_in_graph(funding, depositor_pubkey, evm_address)
    client.push_verifier_nonces(graph.graph_id)
    client.push_verifier_signatures(graph.graph_id)
    client.broadcast_peg_in_confirm(graph.graph_id)
"""

from .bridge_types import (
    GraphRole, TransactionName, SignerRole, SigningState, DisputeState, PegInState,
    OutcomeKind, Outpoint, Utxo, InputRef, ChainState, AggregationStatus, TerminalOutcome,
)
from .config import Config, ProtocolParams, load_config, num_blocks_per_network
from .errors import BridgeError
from .keys import Committee, VerifierKey
from .scripts import GraphParams, ScriptSet, derive_scripts
from .graph import Graph, GraphBuilder
from .store import GraphStore, MemoryStore, JsonFileStore
from .signing import SigningCoordinator, VerifierSigner, NonceVault, SignedTransaction
from .proof import Assertion, AssertionSigner, FraudWitness, ProofOracle
from .dispute import DisputeStateMachine
from .chain import ChainClient, EsploraClient, MockChain, ChainObserver, MockL2Watcher
from .client import BridgeClient

__version__ = "0.3.0"
__all__ = [
    # Types
    "GraphRole", "TransactionName", "SignerRole", "SigningState", "DisputeState",
    "PegInState", "OutcomeKind", "Outpoint", "Utxo", "InputRef", "ChainState",
    "AggregationStatus", "TerminalOutcome",
    # Config
    "Config", "ProtocolParams", "load_config", "num_blocks_per_network",
    # Core
    "BridgeError", "Committee", "VerifierKey", "GraphParams", "ScriptSet", "derive_scripts",
    "Graph", "GraphBuilder", "GraphStore", "MemoryStore", "JsonFileStore",
    "SigningCoordinator", "VerifierSigner", "NonceVault", "SignedTransaction",
    "Assertion", "AssertionSigner", "FraudWitness", "ProofOracle", "DisputeStateMachine",
    # Chain
    "ChainClient", "EsploraClient", "MockChain", "ChainObserver", "MockL2Watcher",
    "BridgeClient",
]
