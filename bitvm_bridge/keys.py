"""
BitVM Bridge SDK - Keys

Committee membership (ordered compressed public keys and their MuSig2
aggregate) and local verifier key files.
"""

import hashlib
import json
import logging
import os
import secrets
from typing import Dict, Iterator, List, Sequence, Union

from bitcoinutils.keys import PrivateKey, PublicKey

from . import musig
from .errors import InvalidCommittee, UnknownVerifier


log = logging.getLogger(__name__)


def mask_secret(secret: str, visible_prefix: int = 8, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full secrets/nonces/keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


def normalize_pubkey(pubkey: str) -> str:
    """Validate a 33-byte compressed public key in hex and lowercase it."""
    pubkey = pubkey.strip().lower()
    if len(pubkey) != 66 or pubkey[:2] not in ("02", "03"):
        raise ValueError(f"not a compressed public key: {pubkey}")
    musig.cpoint(bytes.fromhex(pubkey))
    return pubkey


def xonly(pubkey: str) -> str:
    """x-only (32-byte) form of a compressed public key."""
    return normalize_pubkey(pubkey)[2:]


class Committee:
    """
    Ordered verifier committee.

    The order is part of every derived script and of the MuSig2 key
    aggregation, so the same keys in a different order form a different
    committee.

    Usage:
        committee = Committee(["02ab...", "03cd..."])
        committee.aggregate_xonly      # taproot internal key / leaf key
        committee.index_of("03cd...")  # 1
    """

    def __init__(self, pubkeys: Sequence[str]):
        if not pubkeys:
            raise InvalidCommittee("committee is empty")
        normalized = []
        for pk in pubkeys:
            try:
                normalized.append(normalize_pubkey(pk))
            except (ValueError, musig.MuSigError) as e:
                raise InvalidCommittee(f"invalid member key {pk}: {e}")
        if len(set(normalized)) != len(normalized):
            raise InvalidCommittee("committee contains duplicate keys")
        self.pubkeys: List[str] = normalized
        self._keyagg = musig.key_agg([bytes.fromhex(pk) for pk in normalized])

    @classmethod
    def from_any(cls, committee: Union["Committee", Sequence[str]]) -> "Committee":
        if isinstance(committee, Committee):
            return committee
        return cls(list(committee))

    @property
    def keyagg(self) -> musig.KeyAggContext:
        return self._keyagg

    @property
    def aggregate_xonly(self) -> str:
        return self._keyagg.xonly.hex()

    def aggregate_public_key(self) -> PublicKey:
        """Aggregate key as a bitcoinutils PublicKey (even y), for taproot."""
        return PublicKey("02" + self.aggregate_xonly)

    def pubkey_bytes(self) -> List[bytes]:
        return [bytes.fromhex(pk) for pk in self.pubkeys]

    def index_of(self, pubkey: str) -> int:
        try:
            return self.pubkeys.index(pubkey.strip().lower())
        except ValueError:
            raise UnknownVerifier(pubkey)

    def fingerprint(self) -> str:
        return hashlib.sha256("".join(self.pubkeys).encode()).hexdigest()[:16]

    def to_list(self) -> List[str]:
        return list(self.pubkeys)

    def __len__(self) -> int:
        return len(self.pubkeys)

    def __iter__(self) -> Iterator[str]:
        return iter(self.pubkeys)

    def __eq__(self, other) -> bool:
        return isinstance(other, Committee) and self.pubkeys == other.pubkeys

    def __repr__(self) -> str:
        return f"Committee(n={len(self)}, agg={mask_secret(self.aggregate_xonly)})"


class VerifierKey:
    """
    Long-term signing key of one party (verifier, depositor or operator).

    Usage:
        key = VerifierKey.generate()
        key.save("~/.bitvm/verifier_key.json")
        key = VerifierKey.load("~/.bitvm/verifier_key.json")
    """

    def __init__(self, secret: int):
        if not 0 < secret < musig.n:
            raise ValueError("secret key out of range")
        self._secret = secret
        self.private_key = PrivateKey(secret_exponent=secret)
        self.public_key: PublicKey = self.private_key.get_public_key()

    @classmethod
    def generate(cls) -> "VerifierKey":
        return cls(secrets.randbelow(musig.n - 1) + 1)

    @classmethod
    def from_hex(cls, secret_hex: str) -> "VerifierKey":
        return cls(int(secret_hex, 16))

    @property
    def secret_bytes(self) -> bytes:
        return self._secret.to_bytes(32, byteorder="big")

    @property
    def pubkey_hex(self) -> str:
        return self.public_key.to_hex(compressed=True)

    @property
    def xonly_hex(self) -> str:
        return self.public_key.to_x_only_hex()

    def to_dict(self) -> Dict[str, str]:
        return {"secret": self.secret_bytes.hex(), "pubkey": self.pubkey_hex}

    def save(self, path: str):
        """Write the key file readable by the owner only."""
        path = os.path.expanduser(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        log.info(f"Saved key {mask_secret(self.pubkey_hex)} to {path}")

    @classmethod
    def load(cls, path: str) -> "VerifierKey":
        with open(os.path.expanduser(path), "r") as f:
            data = json.load(f)
        key = cls.from_hex(data["secret"])
        if data.get("pubkey") and data["pubkey"].lower() != key.pubkey_hex:
            raise ValueError(f"key file {path} pubkey does not match its secret")
        return key

    def __repr__(self) -> str:
        return f"VerifierKey({mask_secret(self.pubkey_hex)})"
