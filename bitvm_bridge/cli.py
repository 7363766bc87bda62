#!/usr/bin/env python3
"""
BitVM Bridge - Verifier CLI

Commands:
  keys generate|show                   - Local key file
  deposit-address                      - Peg-in deposit address for a depositor
  initiate-peg-in                      - Build and store a peg-in graph
  operator-address                     - Peg-out funding address for an operator
  assertion-keys                       - Operator Winternitz keys for a peg-out funding UTXO
  create-peg-out                       - Build and store a peg-out graph
  push-nonces GRAPH                    - Signing round 1 (this verifier)
  push-signatures GRAPH [--wait]       - Signing round 2 (this verifier)
  sign-external GRAPH TX               - Depositor / operator input signatures
  broadcast pegin-confirm GRAPH        - Broadcast peg_in_confirm
  broadcast tx GRAPH NAME              - Broadcast any graph transaction
  submit-assertion GRAPH               - Sign and record the operator assertion
  challenge GRAPH [--attestation]      - Check the assertion, record fraud witness
  mock-l2-confirm GRAPH                - Record the L2 withdrawal (mock watcher)
  status GRAPH                         - Dispute / signing status
  serve                                - Run the status API

Exit codes: 0 ok, 75 retry later (not yet eligible, chain unavailable,
signatures pending), 65 permanent failure.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from web3 import Web3

from .api import create_app
from .bridge_types import Outpoint, TransactionName, Utxo
from .client import BridgeClient
from .config import load_config
from .errors import EXIT_OK, EXIT_PERMANENT, BridgeError, InvalidParams, exit_code_for
from .keys import VerifierKey, mask_secret
from .proof import load_proof_verifier


log = logging.getLogger("bitvm_bridge")


def _print(data):
    print(json.dumps(data, indent=2, sort_keys=False))


def _utxo(args) -> Utxo:
    try:
        return Utxo(Outpoint.parse(args.utxo), args.amount)
    except ValueError as e:
        raise InvalidParams(str(e))


def _evm_address(value: str) -> str:
    if not Web3.is_address(value):
        raise InvalidParams(f"invalid EVM address: {value}")
    return Web3.to_checksum_address(value)


def _tx_name(value: str) -> TransactionName:
    try:
        return TransactionName.parse(value)
    except ValueError as e:
        raise InvalidParams(str(e))


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_keys(args, config, client):
    path = args.key or config.key_path
    if args.keys_command == "generate":
        if os.path.exists(os.path.expanduser(path)) and not args.force:
            raise InvalidParams(f"key file {path} exists (use --force to overwrite)")
        key = VerifierKey.generate()
        key.save(path)
        _print({"pubkey": key.pubkey_hex, "xonly": key.xonly_hex, "path": path})
    else:
        key = VerifierKey.load(path)
        _print({"pubkey": key.pubkey_hex, "xonly": key.xonly_hex, "path": path,
                "committee_member": key.pubkey_hex in config.committee})


def cmd_deposit_address(args, config, client):
    address = client.deposit_address(args.depositor_pubkey, _evm_address(args.evm_address))
    _print({"deposit_address": address})


def cmd_initiate_peg_in(args, config, client):
    graph = client.create_peg_in_graph(_utxo(args), args.depositor_pubkey,
                                       _evm_address(args.evm_address))
    _print(graph.to_dict())


def cmd_operator_address(args, config, client):
    _print({"operator_funding_address": client.operator_funding_address(args.operator_pubkey)})


def cmd_assertion_keys(args, config, client):
    key = VerifierKey.load(args.signer_key) if args.signer_key else None
    signer = client.assertion_signer(_utxo(args), key)
    _print({"utxo": args.utxo, "assertion_keys": signer.public_keys()})


def _load_assertion_keys(path: str) -> dict:
    with open(os.path.expanduser(path), "r") as f:
        data = json.load(f)
    return data.get("assertion_keys", data)


def cmd_create_peg_out(args, config, client):
    graph = client.create_peg_out_graph(
        _utxo(args), args.peg_in_graph, args.operator_pubkey, args.withdrawer_address,
        args.peg_out_amount, args.disprove_address, _load_assertion_keys(args.assertion_keys),
        invalid_proof_lock=args.invalid_proof_lock or "")
    _print(graph.to_dict())


def cmd_push_nonces(args, config, client):
    pushed = client.push_verifier_nonces(args.graph_id)
    _print({"graph_id": args.graph_id, "nonces_pushed": pushed})


def cmd_push_signatures(args, config, client):
    results = client.push_verifier_signatures(args.graph_id, wait=args.wait)
    status = client.coordinator.status(args.graph_id)
    _print({"graph_id": args.graph_id,
            "submitted": [r.to_dict() for r in results],
            "complete": status["complete"]})


def cmd_sign_external(args, config, client):
    key = VerifierKey.load(args.signer_key) if args.signer_key else None
    signed = client.sign_external(args.graph_id, _tx_name(args.tx_name), key)
    _print({"graph_id": args.graph_id, "signed_inputs": [ref.key() for ref in signed]})


def cmd_broadcast(args, config, client):
    if args.broadcast_command == "pegin-confirm":
        txid = client.broadcast_peg_in_confirm(args.graph_id)
        name = TransactionName.PEG_IN_CONFIRM
    else:
        name = _tx_name(args.tx_name)
        txid = client.broadcast(args.graph_id, name)
    _print({"graph_id": args.graph_id, "tx_name": name.value, "txid": txid})


def cmd_submit_assertion(args, config, client):
    key = VerifierKey.load(args.signer_key) if args.signer_key else None
    assertion = client.sign_assertion(args.graph_id, args.commit_1, args.commit_2, args.proof,
                                      final=args.final, key=key)
    client.submit_assertion(args.graph_id, assertion)
    _print({"graph_id": args.graph_id, "assertion": assertion.values(),
            "digest": assertion.digest()})


def cmd_challenge(args, config, client):
    witness = client.challenge(args.graph_id, attestation=args.attestation)
    _print({"graph_id": args.graph_id, "fraud": witness.to_dict() if witness else None})


def cmd_mock_l2_confirm(args, config, client):
    record = client.confirm_l2_withdrawal(args.graph_id, args.l2_tx_hash, args.sender)
    _print({"graph_id": args.graph_id, "l2": record})


def cmd_status(args, config, client):
    client.sync(args.graph_id)
    _print(client.status(args.graph_id))


def cmd_serve(args, config, client):
    host = args.host or config.api_host
    port = args.port or config.api_port
    log.info(f"Starting status API on {host}:{port} ({config.network})")
    create_app(client).run(host=host, port=port, debug=False)


COMMANDS = {
    "keys": cmd_keys,
    "deposit-address": cmd_deposit_address,
    "initiate-peg-in": cmd_initiate_peg_in,
    "operator-address": cmd_operator_address,
    "assertion-keys": cmd_assertion_keys,
    "create-peg-out": cmd_create_peg_out,
    "push-nonces": cmd_push_nonces,
    "push-signatures": cmd_push_signatures,
    "sign-external": cmd_sign_external,
    "broadcast": cmd_broadcast,
    "submit-assertion": cmd_submit_assertion,
    "challenge": cmd_challenge,
    "mock-l2-confirm": cmd_mock_l2_confirm,
    "status": cmd_status,
    "serve": cmd_serve,
}


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bitvm-bridge", description="BitVM bridge verifier")
    parser.add_argument("--config", "-c", help="Config file path (JSON)")
    parser.add_argument("--network", choices=["mainnet", "testnet", "signet", "regtest"])
    parser.add_argument("--committee", help="Comma separated committee public keys")
    parser.add_argument("--store", dest="store_path", help="Graph store file")
    parser.add_argument("--key", help="Verifier key file")
    parser.add_argument("--esplora-url", help="Esplora API base URL")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keys
    keys_parser = subparsers.add_parser("keys", help="Manage the local key file")
    keys_sub = keys_parser.add_subparsers(dest="keys_command", required=True)
    gen_parser = keys_sub.add_parser("generate", help="Generate a new key")
    gen_parser.add_argument("--force", action="store_true", help="Overwrite an existing key file")
    keys_sub.add_parser("show", help="Show the public key")

    # graphs
    deposit_parser = subparsers.add_parser("deposit-address", help="Peg-in deposit address")
    deposit_parser.add_argument("--depositor-pubkey", required=True, help="Compressed pubkey (hex)")
    deposit_parser.add_argument("--evm-address", required=True, help="L2 destination (0x...)")

    pegin_parser = subparsers.add_parser("initiate-peg-in", help="Create a peg-in graph")
    pegin_parser.add_argument("--utxo", required=True, help="Deposit outpoint (txid:n)")
    pegin_parser.add_argument("--amount", type=int, required=True, help="Deposit value (sats)")
    pegin_parser.add_argument("--depositor-pubkey", required=True, help="Compressed pubkey (hex)")
    pegin_parser.add_argument("--evm-address", required=True, help="L2 destination (0x...)")

    opaddr_parser = subparsers.add_parser("operator-address", help="Peg-out funding address")
    opaddr_parser.add_argument("--operator-pubkey", required=True, help="Compressed pubkey (hex)")

    akeys_parser = subparsers.add_parser("assertion-keys", help="Operator Winternitz public keys")
    akeys_parser.add_argument("--utxo", required=True, help="Operator funding outpoint (txid:n)")
    akeys_parser.add_argument("--amount", type=int, required=True, help="Funding value (sats)")
    akeys_parser.add_argument("--signer-key", help="Operator key file (default: --key)")

    pegout_parser = subparsers.add_parser("create-peg-out", help="Create a peg-out graph")
    pegout_parser.add_argument("--utxo", required=True, help="Operator funding outpoint (txid:n)")
    pegout_parser.add_argument("--amount", type=int, required=True, help="Funding value (sats)")
    pegout_parser.add_argument("--peg-in-graph", required=True, help="Linked peg-in graph id")
    pegout_parser.add_argument("--operator-pubkey", required=True, help="Compressed pubkey (hex)")
    pegout_parser.add_argument("--withdrawer-address", required=True, help="BTC payout address")
    pegout_parser.add_argument("--peg-out-amount", type=int, required=True, help="Payout (sats)")
    pegout_parser.add_argument("--disprove-address", required=True, help="Disprove reward address")
    pegout_parser.add_argument("--assertion-keys", required=True,
                               help="JSON file with the operator's assertion-keys output")
    pegout_parser.add_argument("--invalid-proof-lock", help="Proof oracle lock (sha256 hex)")

    # signing
    nonces_parser = subparsers.add_parser("push-nonces", help="Publish this verifier's nonces")
    nonces_parser.add_argument("graph_id")

    sigs_parser = subparsers.add_parser("push-signatures", help="Publish partial signatures")
    sigs_parser.add_argument("graph_id")
    sigs_parser.add_argument("--wait", action="store_true", help="Wait for missing nonces")

    ext_parser = subparsers.add_parser("sign-external", help="Sign depositor/operator inputs")
    ext_parser.add_argument("graph_id")
    ext_parser.add_argument("tx_name")
    ext_parser.add_argument("--signer-key", help="Depositor/operator key file (default: --key)")

    # chain
    bc_parser = subparsers.add_parser("broadcast", help="Broadcast a graph transaction")
    bc_sub = bc_parser.add_subparsers(dest="broadcast_command", required=True)
    bc_pegin = bc_sub.add_parser("pegin-confirm", help="Broadcast peg_in_confirm")
    bc_pegin.add_argument("graph_id")
    bc_tx = bc_sub.add_parser("tx", help="Broadcast a named transaction")
    bc_tx.add_argument("graph_id")
    bc_tx.add_argument("tx_name")

    assert_parser = subparsers.add_parser("submit-assertion", help="Record the operator assertion")
    assert_parser.add_argument("graph_id")
    assert_parser.add_argument("--commit-1", required=True, help="32-byte hex")
    assert_parser.add_argument("--commit-2", required=True, help="32-byte hex")
    assert_parser.add_argument("--final", help="32-byte hex (default: consistent value)")
    assert_parser.add_argument("--proof", required=True, help="Proof bytes (hex)")
    assert_parser.add_argument("--signer-key", help="Operator key file (default: --key)")

    challenge_parser = subparsers.add_parser("challenge", help="Challenge a fraudulent assertion")
    challenge_parser.add_argument("graph_id")
    challenge_parser.add_argument("--attestation", help="Proof oracle attestation (hex)")

    l2_parser = subparsers.add_parser("mock-l2-confirm", help="Record an L2 withdrawal")
    l2_parser.add_argument("graph_id")
    l2_parser.add_argument("--l2-tx-hash", required=True, help="L2 transaction hash (0x...)")
    l2_parser.add_argument("--sender", help="L2 sender address")

    status_parser = subparsers.add_parser("status", help="Graph status")
    status_parser.add_argument("graph_id")

    serve_parser = subparsers.add_parser("serve", help="Run the status API")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)

    return parser


def _make_client(config):
    key = None
    if os.path.exists(os.path.expanduser(config.key_path)):
        key = VerifierKey.load(config.key_path)
        log.debug(f"Loaded verifier key {mask_secret(key.pubkey_hex)}")
    verifier = load_proof_verifier(config.proof_verifier) if config.proof_verifier else None
    return BridgeClient(config, key=key, proof_verifier=verifier)


def main(argv: Optional[List[str]] = None, client=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_PERMANENT

    try:
        committee = [pk.strip() for pk in args.committee.split(",")] if args.committee else None
        config = client.config if client is not None else load_config(
            args.config,
            network=args.network,
            committee=committee,
            store_path=args.store_path,
            key_path=args.key,
            esplora_url=args.esplora_url,
            log_level=args.log_level,
        )
    except (OSError, ValueError) as e:
        print(f"Error: bad configuration: {e}", file=sys.stderr)
        return EXIT_PERMANENT
    except BridgeError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return exit_code_for(e)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    try:
        if client is None and args.command != "keys":
            client = _make_client(config)
        COMMANDS[args.command](args, config, client)
    except BridgeError as e:
        log.error(e.message)
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return exit_code_for(e)
    except (OSError, ValueError) as e:
        log.error(str(e))
        print(json.dumps({"error": "invalid_input", "message": str(e), "retryable": False}),
              file=sys.stderr)
        return EXIT_PERMANENT
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
