"""
BitVM Bridge SDK - Configuration

Node configuration (where the store, keys and chain backend live) and the
per-network protocol parameters (timelocks, confirmation depth, fees) that get
embedded into every graph.
"""

import json
import os
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, List, Optional

from .bridge_types import TransactionName
from .errors import InvalidParams


SUPPORTED_NETWORKS = ["mainnet", "testnet", "signet", "regtest"]

# =============================================================================
# PROTOCOL PARAMETERS
# =============================================================================
#
# Timelocks are relative (BIP-68 / CSV) block counts.
#
#   kick_off_delay        kick_off_1 -> kick_off_2
#   challenge_window      assert_final -> timeout_claim (disprove only before)
#   peg_in_refund_delay   deposit -> depositor refund
#   operator_reclaim_delay  operator takes back unused peg-out reserve
#   take_1_delay          kick_off_2 -> take_1 (operator reimbursed, nobody challenged)
#   vault_recovery_delay  committee recovery of the bridge vault
#
# Rule: challenge_window > confirmation_depth, otherwise a disprove can never
# be confirmed deep enough before the window closes. Same for take_1_delay:
# verifiers need time to get assert_initial confirmed before take_1 matures.

NUM_BLOCKS_PER_NETWORK = {
    "mainnet": {
        "confirmation_depth": 6,
        "peg_in_refund_delay": 1008,     # ~1 week
        "kick_off_delay": 144,           # ~1 day
        "challenge_window": 432,         # ~3 days
        "vault_recovery_delay": 4320,    # ~30 days
        "operator_reclaim_delay": 2016,  # ~2 weeks
        "take_1_delay": 288,             # ~2 days
    },
    "testnet": {
        "confirmation_depth": 3,
        "peg_in_refund_delay": 36,
        "kick_off_delay": 6,
        "challenge_window": 18,
        "vault_recovery_delay": 144,
        "operator_reclaim_delay": 72,
        "take_1_delay": 12,
    },
    "regtest": {
        "confirmation_depth": 1,
        "peg_in_refund_delay": 4,
        "kick_off_delay": 2,
        "challenge_window": 6,
        "vault_recovery_delay": 20,
        "operator_reclaim_delay": 12,
        "take_1_delay": 3,
    },
}
NUM_BLOCKS_PER_NETWORK["signet"] = NUM_BLOCKS_PER_NETWORK["testnet"]

DUST_AMOUNT = 1_000
BOND_AMOUNT = 100_000
DEFAULT_TX_FEE = 2_000


def default_fees() -> Dict[str, int]:
    return {name.value: DEFAULT_TX_FEE for name in TransactionName}


@dataclass(frozen=True)
class ProtocolParams:
    """Protocol constants embedded in a graph. All amounts in sats."""
    confirmation_depth: int
    peg_in_refund_delay: int
    kick_off_delay: int
    challenge_window: int
    vault_recovery_delay: int
    operator_reclaim_delay: int
    take_1_delay: int
    dust_amount: int = DUST_AMOUNT
    bond_amount: int = BOND_AMOUNT
    fees: Dict[str, int] = field(default_factory=default_fees)

    def fee(self, tx_name: TransactionName) -> int:
        return self.fees.get(tx_name.value, DEFAULT_TX_FEE)

    def validate(self):
        """Raise InvalidParams on an inconsistent parameter set."""
        for name in ("confirmation_depth", "peg_in_refund_delay", "kick_off_delay",
                     "challenge_window", "vault_recovery_delay", "operator_reclaim_delay",
                     "take_1_delay"):
            value = getattr(self, name)
            if value <= 0 or value > 0xFFFF:
                raise InvalidParams(f"{name} must be in 1..65535 blocks, got {value}")
        if self.challenge_window <= self.confirmation_depth:
            raise InvalidParams(
                f"challenge_window ({self.challenge_window}) must exceed "
                f"confirmation_depth ({self.confirmation_depth})")
        if self.take_1_delay <= self.confirmation_depth:
            raise InvalidParams(
                f"take_1_delay ({self.take_1_delay}) must exceed "
                f"confirmation_depth ({self.confirmation_depth})")
        if self.dust_amount <= 0:
            raise InvalidParams("dust_amount must be positive")
        if self.bond_amount < 3 * self.dust_amount:
            raise InvalidParams(f"bond_amount must be at least {3 * self.dust_amount} sats")
        for name, fee in self.fees.items():
            if fee < 0:
                raise InvalidParams(f"negative fee for {name}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fees"] = dict(sorted(self.fees.items()))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProtocolParams":
        fees = default_fees()
        fees.update({k: int(v) for k, v in data.get("fees", {}).items()})
        return cls(
            confirmation_depth=int(data["confirmation_depth"]),
            peg_in_refund_delay=int(data["peg_in_refund_delay"]),
            kick_off_delay=int(data["kick_off_delay"]),
            challenge_window=int(data["challenge_window"]),
            vault_recovery_delay=int(data["vault_recovery_delay"]),
            operator_reclaim_delay=int(data["operator_reclaim_delay"]),
            take_1_delay=int(data["take_1_delay"]),
            dust_amount=int(data.get("dust_amount", DUST_AMOUNT)),
            bond_amount=int(data.get("bond_amount", BOND_AMOUNT)),
            fees=fees,
        )


def num_blocks_per_network(network: str) -> ProtocolParams:
    """Default protocol parameters for a network."""
    if network not in NUM_BLOCKS_PER_NETWORK:
        raise InvalidParams(f"Unsupported network: {network}")
    return ProtocolParams(**NUM_BLOCKS_PER_NETWORK[network])


# =============================================================================
# NODE CONFIGURATION
# =============================================================================

@dataclass
class Config:
    """Verifier node configuration"""
    network: str = "regtest"
    committee: List[str] = field(default_factory=list)

    # Local paths
    store_path: str = "bridge_store.json"
    key_path: str = "verifier_key.json"
    nonce_vault_path: str = "nonce_vault.json"

    # Chain backend
    esplora_url: str = "http://localhost:3002"
    http_timeout: int = 30

    # Polling (nonce/signature join points)
    poll_interval: float = 2.0
    backoff_factor: float = 1.5
    max_poll_interval: float = 30.0
    session_timeout: float = 600.0

    # Status API
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    # zk proof verifier used to check assertions, "package.module:function"
    proof_verifier: str = ""

    log_level: str = "INFO"

    # Optional overrides of the network protocol parameters
    protocol_overrides: Dict[str, object] = field(default_factory=dict)

    def protocol_params(self) -> ProtocolParams:
        params = num_blocks_per_network(self.network)
        if self.protocol_overrides:
            overrides = dict(self.protocol_overrides)
            if "fees" in overrides:
                fees = dict(params.fees)
                fees.update({k: int(v) for k, v in overrides.pop("fees").items()})
                overrides["fees"] = fees
            params = replace(params, **overrides)
        return params

    def validate(self):
        """Raise InvalidParams on an unusable configuration."""
        if self.network not in SUPPORTED_NETWORKS:
            raise InvalidParams(f"Unsupported network: {self.network}")
        if self.poll_interval <= 0 or self.max_poll_interval < self.poll_interval:
            raise InvalidParams("poll_interval must be positive and <= max_poll_interval")
        if self.backoff_factor < 1.0:
            raise InvalidParams("backoff_factor must be >= 1.0")
        if self.session_timeout <= 0:
            raise InvalidParams("session_timeout must be positive")
        if self.proof_verifier and ":" not in self.proof_verifier:
            raise InvalidParams(f"proof_verifier must look like module:function, got {self.proof_verifier}")
        try:
            self.protocol_params().validate()
        except TypeError as e:
            raise InvalidParams(f"Bad protocol override: {e}")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """Load configuration from a JSON file. Missing keys keep their defaults."""
        with open(os.path.expanduser(path), "r") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: str):
        with open(os.path.expanduser(path), "w") as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(path: Optional[str] = None, **overrides) -> Config:
    """Config from defaults, then file, then explicit overrides (None values skipped)."""
    config = Config.from_file(path) if path else Config()
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    config.validate()
    return config
