"""Pytest configuration and fixtures for the bridge SDK tests."""

import hashlib

import pytest
from bitcoinutils.setup import setup

from bitvm_bridge import musig
from bitvm_bridge.bridge_types import Outpoint, TransactionName, Utxo
from bitvm_bridge.chain import MockChain
from bitvm_bridge.client import BridgeClient
from bitvm_bridge.config import Config, num_blocks_per_network
from bitvm_bridge.keys import Committee, VerifierKey
from bitvm_bridge.proof import AssertionSigner, ProofOracle, assertion_label
from bitvm_bridge.scripts import GraphParams
from bitvm_bridge.signing import NonceVault
from bitvm_bridge.store import MemoryStore


T = TransactionName

EVM_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"
PEG_IN_AMOUNT = 2_100_000
PEG_OUT_AMOUNT = 500_000
# peg-out amount + peg_out fee + reserve (bond + dispute fees) on regtest defaults
PEG_OUT_FUNDING = 618_000

PEG_OUT_PATH = [
    T.PEG_OUT, T.PEG_OUT_CONFIRM, T.KICK_OFF_1, T.KICK_OFF_2,
    T.ASSERT_INITIAL, T.ASSERT_COMMIT_1, T.ASSERT_COMMIT_2, T.ASSERT_FINAL,
]

# Proof the stub zk verifier rejects
BAD_PROOF = "badbad"
GOOD_PROOF = "c0ffee"


def make_key(label: str) -> VerifierKey:
    """Deterministic key from a label."""
    return VerifierKey(int.from_bytes(hashlib.sha256(label.encode()).digest(), "big") % musig.n)


def make_txid(label: str) -> str:
    return hashlib.sha256(f"txid:{label}".encode()).hexdigest()


def stub_verify(proof: bytes) -> bool:
    return proof != bytes.fromhex(BAD_PROOF)


def peg_out_funding_utxo() -> Utxo:
    return Utxo(Outpoint(make_txid("operator-funding"), 0), PEG_OUT_FUNDING)


# === Fixtures ===

@pytest.fixture(autouse=True)
def regtest():
    """bitcoinutils network for every test."""
    setup("regtest")


@pytest.fixture
def verifier_keys():
    return [make_key("verifier-0"), make_key("verifier-1")]


@pytest.fixture
def committee(verifier_keys):
    return Committee([k.pubkey_hex for k in verifier_keys])


@pytest.fixture
def depositor_key():
    return make_key("depositor")


@pytest.fixture
def operator_key():
    return make_key("operator")


@pytest.fixture
def withdrawer_address():
    return make_key("withdrawer").public_key.get_segwit_address().to_string()


@pytest.fixture
def disprove_address():
    return make_key("challenger").public_key.get_taproot_address().to_string()


@pytest.fixture
def protocol():
    return num_blocks_per_network("regtest")


@pytest.fixture
def peg_in_params(protocol, depositor_key):
    return GraphParams(protocol, depositor_pubkey=depositor_key.pubkey_hex,
                       depositor_evm_address=EVM_ADDRESS)


@pytest.fixture(scope="session")
def assertion_signer():
    """Operator Winternitz keys of the peg-out graph (public keys computed once)."""
    return AssertionSigner(make_key("operator").secret_bytes, assertion_label(peg_out_funding_utxo()))


@pytest.fixture
def proof_oracle():
    return ProofOracle(b"proof-oracle-secret", stub_verify)


@pytest.fixture
def invalid_proof_lock(proof_oracle):
    return proof_oracle.lock(assertion_label(peg_out_funding_utxo()))


@pytest.fixture
def honest_assertion(assertion_signer):
    return assertion_signer.build("11" * 32, "22" * 32, GOOD_PROOF)


@pytest.fixture
def fraudulent_assertion(assertion_signer):
    """Signed assertion whose final is not the digit-wise sum of the commits."""
    return assertion_signer.sign("11" * 32, "22" * 32, "44" * 32, GOOD_PROOF)


@pytest.fixture
def bad_proof_assertion(assertion_signer):
    return assertion_signer.build("11" * 32, "22" * 32, BAD_PROOF)


@pytest.fixture
def peg_out_params(protocol, operator_key, withdrawer_address, disprove_address,
                   assertion_signer, invalid_proof_lock):
    return GraphParams(protocol, operator_pubkey=operator_key.pubkey_hex,
                       withdrawer_address=withdrawer_address,
                       disprove_payout_address=disprove_address,
                       peg_out_amount=PEG_OUT_AMOUNT,
                       assertion_keys=assertion_signer.public_keys(),
                       invalid_proof_lock=invalid_proof_lock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def chain():
    return MockChain(height=100)


@pytest.fixture
def config(committee):
    return Config(network="regtest", committee=committee.to_list())


@pytest.fixture
def clients(config, store, chain, verifier_keys):
    """One BridgeClient per verifier, sharing the store and the chain."""
    return [BridgeClient(config, store=store, chain=chain, key=key, nonce_vault=NonceVault())
            for key in verifier_keys]


@pytest.fixture
def client(clients):
    return clients[0]


@pytest.fixture
def peg_in_funding(chain):
    """Confirmed 2,100,000 sat deposit UTXO."""
    txid = make_txid("deposit")
    chain.fund(txid, 0, PEG_IN_AMOUNT)
    return Utxo(Outpoint(txid, 0), PEG_IN_AMOUNT)


@pytest.fixture
def peg_out_funding(chain):
    funding = peg_out_funding_utxo()
    chain.fund(funding.outpoint.txid, 0, funding.amount)
    return funding


@pytest.fixture
def sign_all_inputs(clients):
    """Run both signing rounds for every verifier."""
    def run(graph_id):
        for c in clients:
            c.push_verifier_nonces(graph_id)
        for c in clients:
            c.push_verifier_signatures(graph_id)
    return run


@pytest.fixture
def peg_in_graph(client, peg_in_funding, depositor_key):
    """Peg-in graph stored but not signed."""
    return client.create_peg_in_graph(peg_in_funding, depositor_key.pubkey_hex, EVM_ADDRESS)


@pytest.fixture
def confirmed_peg_in(client, chain, peg_in_graph, sign_all_inputs):
    """Peg-in graph with peg_in_confirm confirmed and observed."""
    sign_all_inputs(peg_in_graph.graph_id)
    client.broadcast_peg_in_confirm(peg_in_graph.graph_id)
    chain.mine()
    client.sync(peg_in_graph.graph_id)
    return peg_in_graph


@pytest.fixture
def peg_out_graph(client, confirmed_peg_in, peg_out_funding, operator_key, withdrawer_address,
                  disprove_address, sign_all_inputs, assertion_signer, invalid_proof_lock):
    """Fully signed peg-out graph (committee and operator inputs)."""
    graph = client.create_peg_out_graph(
        peg_out_funding, confirmed_peg_in.graph_id, operator_key.pubkey_hex,
        withdrawer_address, PEG_OUT_AMOUNT, disprove_address,
        assertion_signer.public_keys(), invalid_proof_lock=invalid_proof_lock)
    sign_all_inputs(graph.graph_id)
    client.sign_external(graph.graph_id, T.PEG_OUT, operator_key)
    return graph


@pytest.fixture
def run_dispute(client, chain, honest_assertion):
    """Broadcast and confirm every transaction up to assert_final.

    Records the honest assertion first unless the test already submitted one.
    """
    def run(graph_id):
        if client.dsm.assertion(graph_id) is None:
            client.submit_assertion(graph_id, honest_assertion)
        client.confirm_l2_withdrawal(graph_id, "0x" + "ab" * 32)
        for name in PEG_OUT_PATH:
            if name == T.KICK_OFF_2:
                chain.mine(client.protocol.kick_off_delay - 1)
            client.broadcast(graph_id, name)
            chain.mine()
        client.sync(graph_id)
    return run


@pytest.fixture
def key_factory():
    return make_key


@pytest.fixture
def evm_address():
    return EVM_ADDRESS
