"""Connector derivation."""

from dataclasses import replace

import pytest

from bitvm_bridge import scripts as s
from bitvm_bridge.bridge_types import GraphRole
from bitvm_bridge.errors import InvalidCommittee, InvalidParams
from bitvm_bridge.scripts import address_script, derive_scripts


PEG_IN_CONNECTORS = {s.DEPOSIT, s.BRIDGE_VAULT}
PEG_OUT_CONNECTORS = {
    s.OPERATOR_FUNDING, s.PEG_OUT_COMMIT, s.KICK_OFF, s.KICK_OFF_TIMELOCK, s.ASSERT_BOND,
    s.ASSERT_COMMIT_1, s.ASSERT_COMMIT_2, s.ASSERT_RESULT_1, s.ASSERT_RESULT_2,
    s.ASSERT_CARRY, s.CHALLENGE,
}


class TestDerivation:

    def test_peg_in_connectors(self, committee, peg_in_params):
        scripts = derive_scripts(committee, GraphRole.PEG_IN, peg_in_params)
        assert set(scripts.names()) == PEG_IN_CONNECTORS
        for name in scripts.names():
            assert len(scripts[name].leaves) == 2
            assert scripts[name].address().to_string().startswith("bcrt1p")

    def test_peg_out_connectors(self, committee, peg_out_params):
        scripts = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        assert set(scripts.names()) == PEG_OUT_CONNECTORS
        assert all(len(scripts[name].leaves) == 2 for name in scripts.names())

    def test_deterministic(self, committee, peg_out_params):
        a = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        b = derive_scripts(committee.to_list(), GraphRole.PEG_OUT, peg_out_params)
        assert a.to_dict() == b.to_dict()
        assert a.fingerprint() == b.fingerprint()

    def test_committee_order_changes_scripts(self, committee, peg_in_params):
        a = derive_scripts(committee, GraphRole.PEG_IN, peg_in_params)
        b = derive_scripts(committee.to_list()[::-1], GraphRole.PEG_IN, peg_in_params)
        assert a[s.DEPOSIT].address().to_string() != b[s.DEPOSIT].address().to_string()

    def test_deposit_commits_to_evm_address(self, committee, peg_in_params):
        a = derive_scripts(committee, GraphRole.PEG_IN, peg_in_params)
        other = replace(peg_in_params, depositor_evm_address="0x" + "11" * 20)
        b = derive_scripts(committee, GraphRole.PEG_IN, other)
        assert a[s.DEPOSIT].address().to_string() != b[s.DEPOSIT].address().to_string()
        # The vault does not depend on the depositor
        assert a[s.BRIDGE_VAULT].address().to_string() == b[s.BRIDGE_VAULT].address().to_string()

    def test_challenge_window_in_timeout_leaf(self, committee, peg_out_params, protocol):
        a = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        longer = replace(peg_out_params, protocol=replace(protocol, challenge_window=7))
        b = derive_scripts(committee, GraphRole.PEG_OUT, longer)
        assert a[s.CHALLENGE].leaf(s.DISPROVE_LEAF).to_hex() == b[s.CHALLENGE].leaf(s.DISPROVE_LEAF).to_hex()
        assert a[s.CHALLENGE].leaf(s.TIMEOUT_LEAF).to_hex() != b[s.CHALLENGE].leaf(s.TIMEOUT_LEAF).to_hex()

    def test_assert_leaves_commit_to_winternitz_keys(self, committee, peg_out_params, assertion_signer):
        scripts = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        keys = assertion_signer.public_keys()
        commit_1 = scripts[s.ASSERT_COMMIT_1].leaf(s.COOPERATIVE_LEAF).to_hex()
        assert keys["commit_1"][0] in commit_1
        assert keys["commit_2"][0] not in commit_1
        assert keys["commit_2"][0] in scripts[s.ASSERT_COMMIT_2].leaf(s.COOPERATIVE_LEAF).to_hex()
        assert keys["final"][0] in scripts[s.ASSERT_CARRY].leaf(s.COOPERATIVE_LEAF).to_hex()
        disprove = scripts[s.CHALLENGE].leaf(s.DISPROVE_LEAF).to_hex()
        assert all(keys[name][0] in disprove for name in ("commit_1", "commit_2", "final"))

    def test_disprove_lock(self, committee, peg_out_params, invalid_proof_lock):
        with_lock = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        tokens = with_lock[s.CHALLENGE].leaf(s.DISPROVE_LEAF).script
        assert tokens[0] == "OP_IF"
        assert tokens[-6:] == ["OP_SHA256", invalid_proof_lock, "OP_EQUALVERIFY", "OP_ENDIF",
                               tokens[-2], "OP_CHECKSIG"]
        without = derive_scripts(committee, GraphRole.PEG_OUT, replace(peg_out_params, invalid_proof_lock=""))
        tokens = without[s.CHALLENGE].leaf(s.DISPROVE_LEAF).script
        assert tokens[0] != "OP_IF"
        assert "OP_ELSE" not in tokens

    def test_operator_funding_ignores_graph_keys(self, committee, peg_out_params, protocol, operator_key):
        graph = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        alone = s.operator_funding_connector(
            committee, s.GraphParams(protocol, operator_pubkey=operator_key.pubkey_hex))
        assert alone.address().to_string() == graph[s.OPERATOR_FUNDING].address().to_string()

    def test_take_1_delay_in_bond_leaf(self, committee, peg_out_params, protocol):
        a = derive_scripts(committee, GraphRole.PEG_OUT, peg_out_params)
        b = derive_scripts(committee, GraphRole.PEG_OUT,
                           replace(peg_out_params, protocol=replace(protocol, take_1_delay=4)))
        assert a[s.ASSERT_BOND].leaf(s.COOPERATIVE_LEAF).to_hex() == b[s.ASSERT_BOND].leaf(s.COOPERATIVE_LEAF).to_hex()
        assert a[s.ASSERT_BOND].leaf(s.FALLBACK_LEAF).to_hex() != b[s.ASSERT_BOND].leaf(s.FALLBACK_LEAF).to_hex()


class TestInvalidInput:

    def test_empty_committee(self, peg_in_params):
        with pytest.raises(InvalidCommittee):
            derive_scripts([], GraphRole.PEG_IN, peg_in_params)

    def test_peg_in_without_depositor(self, committee, protocol):
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_IN, s.GraphParams(protocol))

    def test_peg_in_with_peg_out_amount(self, committee, peg_in_params):
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_IN, replace(peg_in_params, peg_out_amount=1))

    def test_peg_out_amount_at_dust(self, committee, peg_out_params, protocol):
        params = replace(peg_out_params, peg_out_amount=protocol.dust_amount)
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, params)

    def test_peg_out_bad_operator_key(self, committee, peg_out_params):
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, replace(peg_out_params, operator_pubkey="02zz"))

    def test_window_not_above_depth(self, committee, peg_out_params, protocol):
        params = replace(peg_out_params, protocol=replace(protocol, challenge_window=1))
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, params)

    def test_peg_out_without_assertion_keys(self, committee, peg_out_params):
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, replace(peg_out_params, assertion_keys={}))

    def test_peg_out_truncated_assertion_key(self, committee, peg_out_params):
        keys = dict(peg_out_params.assertion_keys)
        keys["final"] = keys["final"][:-1]
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, replace(peg_out_params, assertion_keys=keys))

    @pytest.mark.parametrize("lock", ["ab" * 31, "zz" * 32])
    def test_malformed_lock(self, committee, peg_out_params, lock):
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, replace(peg_out_params, invalid_proof_lock=lock))

    def test_take_1_delay_not_above_depth(self, committee, peg_out_params, protocol):
        params = replace(peg_out_params, protocol=replace(protocol, take_1_delay=1))
        with pytest.raises(InvalidParams):
            derive_scripts(committee, GraphRole.PEG_OUT, params)


class TestAddressScript:

    def test_p2wpkh(self, withdrawer_address):
        assert address_script(withdrawer_address).to_hex().startswith("0014")

    def test_p2tr(self, disprove_address):
        assert address_script(disprove_address).to_hex().startswith("5120")

    @pytest.mark.parametrize("address", ["", "not-an-address", "bcrt1zzzz"])
    def test_rejected(self, address):
        with pytest.raises(InvalidParams):
            address_script(address)
