"""CLI commands and exit codes."""

import json
import os

from bitvm_bridge.bridge_types import TransactionName
from bitvm_bridge.cli import main
from bitvm_bridge.errors import EXIT_OK, EXIT_PERMANENT, EXIT_RETRY
from bitvm_bridge.proof import assertion_label


def run(capsys, client, *argv):
    code = main(list(argv), client=client)
    out = capsys.readouterr().out
    return code, (json.loads(out) if code == EXIT_OK and out.strip() else None)


class TestGraphCommands:

    def test_no_command(self, client, capsys):
        assert main([], client=client) == EXIT_PERMANENT

    def test_deposit_address(self, client, capsys, depositor_key, evm_address):
        code, out = run(capsys, client, "deposit-address",
                        "--depositor-pubkey", depositor_key.pubkey_hex,
                        "--evm-address", evm_address.lower())
        assert code == EXIT_OK
        assert out["deposit_address"].startswith("bcrt1p")

    def test_invalid_evm_address(self, client, capsys, depositor_key):
        code, _ = run(capsys, client, "deposit-address",
                      "--depositor-pubkey", depositor_key.pubkey_hex, "--evm-address", "0x1234")
        assert code == EXIT_PERMANENT

    def test_initiate_peg_in(self, client, capsys, peg_in_funding, depositor_key, evm_address):
        code, out = run(capsys, client, "initiate-peg-in",
                        "--utxo", str(peg_in_funding.outpoint), "--amount", "2100000",
                        "--depositor-pubkey", depositor_key.pubkey_hex, "--evm-address", evm_address)
        assert code == EXIT_OK
        assert client.get_graph(out["graph_id"]).funding == peg_in_funding

    def test_malformed_outpoint(self, client, capsys, depositor_key, evm_address):
        code, _ = run(capsys, client, "initiate-peg-in", "--utxo", "not-an-outpoint",
                      "--amount", "2100000", "--depositor-pubkey", depositor_key.pubkey_hex,
                      "--evm-address", evm_address)
        assert code == EXIT_PERMANENT

    def test_unknown_graph(self, client, capsys):
        code, _ = run(capsys, client, "status", "ff" * 32)
        assert code == EXIT_PERMANENT


class TestSigningAndBroadcast:

    def test_peg_in_flow(self, clients, chain, capsys, peg_in_graph):
        gid = peg_in_graph.graph_id
        assert run(capsys, clients[0], "broadcast", "pegin-confirm", gid)[0] == EXIT_RETRY

        for c in clients:
            code, out = run(capsys, c, "push-nonces", gid)
            assert (code, out["nonces_pushed"]) == (EXIT_OK, 1)
        for c in clients:
            code, out = run(capsys, c, "push-signatures", gid)
            assert code == EXIT_OK
        assert out["complete"]

        code, out = run(capsys, clients[0], "broadcast", "pegin-confirm", gid)
        assert code == EXIT_OK
        assert out["txid"] == peg_in_graph.txid(TransactionName.PEG_IN_CONFIRM)

        chain.mine()
        code, out = run(capsys, clients[1], "status", gid)
        assert (code, out["state"]) == (EXIT_OK, "confirmed")

    def test_refund_too_early(self, client, capsys, peg_in_graph, depositor_key, tmp_path):
        key_path = str(tmp_path / "depositor.json")
        depositor_key.save(key_path)
        code, out = run(capsys, client, "sign-external", peg_in_graph.graph_id, "peg-in-refund",
                        "--signer-key", key_path)
        assert (code, out["signed_inputs"]) == (EXIT_OK, ["peg_in_refund/0"])
        assert run(capsys, client, "broadcast", "tx", peg_in_graph.graph_id, "peg_in_refund")[0] == EXIT_RETRY

    def test_unknown_transaction_name(self, client, capsys, peg_in_graph):
        code, _ = run(capsys, client, "broadcast", "tx", peg_in_graph.graph_id, "kick_off_3")
        assert code == EXIT_PERMANENT


class TestPegOutCommands:

    def test_operator_address(self, client, capsys, operator_key):
        code, out = run(capsys, client, "operator-address", "--operator-pubkey", operator_key.pubkey_hex)
        assert code == EXIT_OK
        assert out["operator_funding_address"] == client.operator_funding_address(operator_key.pubkey_hex)

    def test_create_peg_out(self, client, capsys, tmp_path, confirmed_peg_in, peg_out_funding,
                            operator_key, withdrawer_address, disprove_address, assertion_signer,
                            invalid_proof_lock):
        key_path = str(tmp_path / "operator.json")
        operator_key.save(key_path)
        code, out = run(capsys, client, "assertion-keys", "--utxo", str(peg_out_funding.outpoint),
                        "--amount", str(peg_out_funding.amount), "--signer-key", key_path)
        assert code == EXIT_OK
        assert out["assertion_keys"] == assertion_signer.public_keys()
        keys_path = tmp_path / "assertion_keys.json"
        keys_path.write_text(json.dumps(out))

        code, out = run(capsys, client, "create-peg-out", "--utxo", str(peg_out_funding.outpoint),
                        "--amount", str(peg_out_funding.amount),
                        "--peg-in-graph", confirmed_peg_in.graph_id,
                        "--operator-pubkey", operator_key.pubkey_hex,
                        "--withdrawer-address", withdrawer_address,
                        "--peg-out-amount", "500000", "--disprove-address", disprove_address,
                        "--assertion-keys", str(keys_path),
                        "--invalid-proof-lock", invalid_proof_lock)
        assert code == EXIT_OK
        params = client.get_graph(out["graph_id"]).params
        assert params.assertion_keys == assertion_signer.public_keys()
        assert params.invalid_proof_lock == invalid_proof_lock

    def test_create_peg_out_bad_keys(self, client, capsys, tmp_path, confirmed_peg_in,
                                     peg_out_funding, operator_key, withdrawer_address,
                                     disprove_address):
        keys_path = tmp_path / "assertion_keys.json"
        keys_path.write_text(json.dumps({"commit_1": ["00" * 20]}))
        code, _ = run(capsys, client, "create-peg-out", "--utxo", str(peg_out_funding.outpoint),
                      "--amount", str(peg_out_funding.amount),
                      "--peg-in-graph", confirmed_peg_in.graph_id,
                      "--operator-pubkey", operator_key.pubkey_hex,
                      "--withdrawer-address", withdrawer_address,
                      "--peg-out-amount", "500000", "--disprove-address", disprove_address,
                      "--assertion-keys", str(keys_path))
        assert code == EXIT_PERMANENT


class TestDisputeCommands:

    def test_assertion_and_challenge(self, client, capsys, peg_out_graph, run_dispute,
                                     operator_key, tmp_path):
        gid = peg_out_graph.graph_id
        key_path = str(tmp_path / "operator.json")
        operator_key.save(key_path)
        code, out = run(capsys, client, "submit-assertion", gid, "--commit-1", "11" * 32,
                        "--commit-2", "22" * 32, "--final", "44" * 32, "--proof", "c0ffee",
                        "--signer-key", key_path)
        assert code == EXIT_OK
        assert out["assertion"]["final"] == "44" * 32
        run_dispute(gid)
        code, out = run(capsys, client, "challenge", gid)
        assert code == EXIT_OK
        assert out["fraud"]["kind"] == "inconsistent_assertion"
        code, out = run(capsys, client, "broadcast", "tx", gid, "disprove")
        assert code == EXIT_OK

    def test_assertion_needs_operator_key(self, client, capsys, peg_out_graph):
        # --key defaults to the committee key, which does not own the graph's keys
        code, _ = run(capsys, client, "submit-assertion", peg_out_graph.graph_id,
                      "--commit-1", "11" * 32, "--commit-2", "22" * 32, "--proof", "c0ffee")
        assert code == EXIT_PERMANENT
        assert client.dsm.assertion(peg_out_graph.graph_id) is None

    def test_challenge_with_attestation(self, client, capsys, peg_out_graph, run_dispute,
                                        bad_proof_assertion, proof_oracle):
        gid = peg_out_graph.graph_id
        client.submit_assertion(gid, bad_proof_assertion)
        run_dispute(gid)
        assert run(capsys, client, "challenge", gid, "--attestation", "00" * 32)[0] == EXIT_PERMANENT

        attestation = proof_oracle.attest(assertion_label(peg_out_graph.funding), bad_proof_assertion)
        code, out = run(capsys, client, "challenge", gid, "--attestation", attestation)
        assert code == EXIT_OK
        assert out["fraud"]["kind"] == "invalid_proof"

    def test_mock_l2_confirm(self, client, capsys, peg_out_graph, evm_address):
        code, out = run(capsys, client, "mock-l2-confirm", peg_out_graph.graph_id,
                        "--l2-tx-hash", "0x" + "ab" * 32, "--sender", evm_address)
        assert code == EXIT_OK
        assert out["l2"]["sender"] == evm_address

    def test_malformed_l2_hash(self, client, capsys, peg_out_graph):
        code, _ = run(capsys, client, "mock-l2-confirm", peg_out_graph.graph_id, "--l2-tx-hash", "0x12")
        assert code == EXIT_PERMANENT


class TestKeys:

    def test_generate_and_show(self, client, capsys, tmp_path):
        path = str(tmp_path / "verifier.json")
        code, out = run(capsys, client, "--key", path, "keys", "generate")
        assert code == EXIT_OK
        assert os.path.exists(path)
        pubkey = out["pubkey"]

        assert run(capsys, client, "--key", path, "keys", "generate")[0] == EXIT_PERMANENT
        code, out = run(capsys, client, "--key", path, "keys", "show")
        assert (code, out["pubkey"], out["committee_member"]) == (EXIT_OK, pubkey, False)

        code, out = run(capsys, client, "--key", path, "keys", "generate", "--force")
        assert code == EXIT_OK
        assert out["pubkey"] != pubkey

    def test_show_missing_key(self, client, capsys, tmp_path):
        code, _ = run(capsys, client, "--key", str(tmp_path / "none.json"), "keys", "show")
        assert code == EXIT_PERMANENT


def test_bad_config_file(capsys, tmp_path):
    path = tmp_path / "bridge.json"
    path.write_text("{not json")
    assert main(["--config", str(path), "status", "ab" * 32]) == EXIT_PERMANENT


def test_unknown_graph_with_file_store(capsys, tmp_path):
    store = str(tmp_path / "store.json")
    code = main(["--network", "regtest", "--store", store, "--key", str(tmp_path / "k.json"),
                 "status", "ab" * 32])
    assert code == EXIT_PERMANENT
