"""
BitVM Bridge SDK - MuSig2

Two-round multi-signature scheme (BIP-327) producing BIP-340 Schnorr
signatures for the committee aggregate key.

Round 1: every signer publishes a 66-byte public nonce (two points).
Round 2: once all public nonces are known, every signer publishes a 32-byte
partial signature. Anyone can aggregate the partial signatures into a single
64-byte signature.

BIP-340 primitives (tagged hashes, lift_x, signature verification) come from
bitcoinutils.schnorr. Scalar multiplication during signing uses the `ecdsa`
package (secp256k1, Jacobian points). Public keys are 33-byte compressed
encodings. Keys are combined in the order given by the caller, which must be
committee order; the aggregate nonce is a point sum and does not depend on
the order of the public nonces, but each partial signature is bound to its
signer's own nonce.
"""

import secrets
from typing import List, Optional, Sequence, Tuple

from bitcoinutils import schnorr as bip340
from bitcoinutils.schnorr import bytes_from_int, int_from_bytes, tagged_hash
from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, PointJacobi


curve = SECP256k1.curve
G = SECP256k1.generator
n = SECP256k1.order
p = curve.p()


class MuSigError(ValueError):
    """Malformed key, nonce or signature material."""


# =============================================================================
# HELPERS
# =============================================================================

def is_infinite(P) -> bool:
    return P is None or P is INFINITY or P == INFINITY


def _point(x: int, y: int) -> PointJacobi:
    return PointJacobi(curve, x, y, 1, n)


def point_add(P1, P2):
    if is_infinite(P1):
        return P2
    if is_infinite(P2):
        return P1
    return P1 + P2


def point_mul(P, k: int):
    k = k % n
    if is_infinite(P) or k == 0:
        return INFINITY
    return P * k


def point_neg(P):
    if is_infinite(P):
        return P
    return _point(P.x(), p - P.y())


def has_even_y(P) -> bool:
    return P.y() % 2 == 0


def xbytes(P) -> bytes:
    return bytes_from_int(P.x())


def cbytes(P) -> bytes:
    prefix = b"\x02" if has_even_y(P) else b"\x03"
    return prefix + xbytes(P)


def cbytes_ext(P) -> bytes:
    if is_infinite(P):
        return bytes(33)
    return cbytes(P)


def lift_x(x: int) -> PointJacobi:
    """Point with the given x coordinate and even y (BIP-340)."""
    P = bip340.lift_x(x)
    if P is None:
        raise MuSigError("x coordinate not on curve")
    return _point(*P)


def cpoint(b: bytes) -> PointJacobi:
    if len(b) != 33 or b[0] not in (2, 3):
        raise MuSigError("invalid compressed point")
    P = lift_x(int_from_bytes(b[1:33]))
    if b[0] == 3:
        P = point_neg(P)
    return P


def cpoint_ext(b: bytes):
    if b == bytes(33):
        return INFINITY
    return cpoint(b)


def individual_pubkey(seckey: bytes) -> bytes:
    d = int_from_bytes(seckey)
    if not 0 < d < n:
        raise MuSigError("secret key out of range")
    return cbytes(G * d)


# =============================================================================
# KEY AGGREGATION
# =============================================================================

class KeyAggContext:
    """Aggregate key Q of an ordered list of compressed public keys."""

    def __init__(self, pubkeys: Sequence[bytes]):
        if not pubkeys:
            raise MuSigError("no public keys to aggregate")
        self.pubkeys = [bytes(pk) for pk in pubkeys]
        self._list_hash = tagged_hash("KeyAgg list", b"".join(self.pubkeys))
        self._second = self._second_key()
        Q = None
        for pk in self.pubkeys:
            P = cpoint(pk)
            Q = point_add(Q, point_mul(P, self.coefficient(pk)))
        if is_infinite(Q):
            raise MuSigError("aggregate key is the point at infinity")
        self.Q = Q

    def _second_key(self) -> bytes:
        for pk in self.pubkeys[1:]:
            if pk != self.pubkeys[0]:
                return pk
        return bytes(33)

    def coefficient(self, pk: bytes) -> int:
        if pk == self._second:
            return 1
        return int_from_bytes(tagged_hash("KeyAgg coefficient", self._list_hash + pk)) % n

    @property
    def xonly(self) -> bytes:
        return xbytes(self.Q)

    def g(self) -> int:
        """Negation factor applied when Q has odd y."""
        return 1 if has_even_y(self.Q) else n - 1


def key_agg(pubkeys: Sequence[bytes]) -> KeyAggContext:
    return KeyAggContext(pubkeys)


# =============================================================================
# NONCES
# =============================================================================

def _nonce_hash(rand: bytes, pk: bytes, aggpk: bytes, i: int,
                msg_prefixed: bytes, extra_in: bytes) -> int:
    buf = b""
    buf += rand
    buf += len(pk).to_bytes(1, "big") + pk
    buf += len(aggpk).to_bytes(1, "big") + aggpk
    buf += msg_prefixed
    buf += len(extra_in).to_bytes(4, "big") + extra_in
    buf += i.to_bytes(1, "big")
    return int_from_bytes(tagged_hash("MuSig/nonce", buf))


def nonce_gen(seckey: Optional[bytes], pubkey: bytes, aggpk: bytes = b"",
              msg: Optional[bytes] = None, extra_in: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Generate a fresh nonce pair.

    Args:
        seckey: signer secret key (mixed into the randomness when given)
        pubkey: signer compressed public key
        aggpk: x-only aggregate key
        msg: message to be signed, when already known

    Returns:
        (secnonce, pubnonce): 97-byte secret nonce, 66-byte public nonce
    """
    rand_ = secrets.token_bytes(32)
    if seckey is not None:
        mask = tagged_hash("MuSig/aux", rand_)
        rand = bytes(a ^ b for a, b in zip(seckey, mask))
    else:
        rand = rand_
    if msg is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(msg).to_bytes(8, "big") + msg
    k1 = _nonce_hash(rand, pubkey, aggpk, 0, msg_prefixed, extra_in) % n
    k2 = _nonce_hash(rand, pubkey, aggpk, 1, msg_prefixed, extra_in) % n
    if k1 == 0 or k2 == 0:
        raise MuSigError("nonce generation produced zero")
    R1 = G * k1
    R2 = G * k2
    pubnonce = cbytes(R1) + cbytes(R2)
    secnonce = bytes_from_int(k1) + bytes_from_int(k2) + pubkey
    return secnonce, pubnonce


def validate_pubnonce(pubnonce: bytes):
    """Raise MuSigError unless pubnonce is two valid compressed points."""
    if len(pubnonce) != 66:
        raise MuSigError("public nonce must be 66 bytes")
    cpoint(pubnonce[0:33])
    cpoint(pubnonce[33:66])


def nonce_agg(pubnonces: Sequence[bytes]) -> bytes:
    """Aggregate public nonces (in committee order) into a 66-byte aggnonce."""
    aggnonce = b""
    for j in (1, 2):
        R_j = None
        for i, pubnonce in enumerate(pubnonces):
            try:
                R_ij = cpoint(pubnonce[(j - 1) * 33:j * 33])
            except MuSigError:
                raise MuSigError(f"invalid public nonce from signer {i}")
            R_j = point_add(R_j, R_ij)
        aggnonce += cbytes_ext(R_j)
    return aggnonce


# =============================================================================
# SIGNING SESSION
# =============================================================================

class SessionContext:
    """Everything a signer needs for one message: aggregate nonce, keys, msg."""

    def __init__(self, aggnonce: bytes, pubkeys: Sequence[bytes], msg: bytes,
                 keyagg: Optional[KeyAggContext] = None):
        self.aggnonce = aggnonce
        self.pubkeys = [bytes(pk) for pk in pubkeys]
        self.msg = msg
        self.keyagg = keyagg or key_agg(self.pubkeys)
        Q = self.keyagg.Q
        self.b = int_from_bytes(
            tagged_hash("MuSig/noncecoef", aggnonce + xbytes(Q) + msg)) % n
        R1 = cpoint_ext(aggnonce[0:33])
        R2 = cpoint_ext(aggnonce[33:66])
        R_ = point_add(R1, point_mul(R2, self.b))
        self.R = G if is_infinite(R_) else R_
        self.e = int_from_bytes(
            tagged_hash("BIP0340/challenge", xbytes(self.R) + xbytes(Q) + msg)) % n


def partial_sign(secnonce: bytes, seckey: bytes, session: SessionContext) -> bytes:
    """
    Produce a 32-byte partial signature. The caller must discard secnonce
    afterwards; signing twice with one secnonce leaks the secret key.
    """
    if len(secnonce) != 97:
        raise MuSigError("secret nonce must be 97 bytes")
    k1_ = int_from_bytes(secnonce[0:32])
    k2_ = int_from_bytes(secnonce[32:64])
    if not 0 < k1_ < n or not 0 < k2_ < n:
        raise MuSigError("secret nonce out of range")
    k1 = k1_ if has_even_y(session.R) else n - k1_
    k2 = k2_ if has_even_y(session.R) else n - k2_
    d_ = int_from_bytes(seckey)
    if not 0 < d_ < n:
        raise MuSigError("secret key out of range")
    pk = cbytes(G * d_)
    if pk != secnonce[64:97]:
        raise MuSigError("secret nonce was generated for a different key")
    if pk not in session.pubkeys:
        raise MuSigError("signer is not part of the session")
    a = session.keyagg.coefficient(pk)
    d = session.keyagg.g() * d_ % n
    s = (k1 + session.b * k2 + session.e * a * d) % n
    return bytes_from_int(s)


def partial_sig_verify(psig: bytes, pubnonce: bytes, pubkey: bytes,
                       session: SessionContext) -> bool:
    """Check one signer's partial signature against its public nonce."""
    if len(psig) != 32:
        return False
    s = int_from_bytes(psig)
    if s >= n:
        return False
    try:
        R_s1 = cpoint(pubnonce[0:33])
        R_s2 = cpoint(pubnonce[33:66])
        P = cpoint(pubkey)
    except MuSigError:
        return False
    Re_s_ = point_add(R_s1, point_mul(R_s2, session.b))
    Re_s = Re_s_ if has_even_y(session.R) else point_neg(Re_s_)
    a = session.keyagg.coefficient(pubkey)
    g = session.keyagg.g()
    lhs = point_mul(G, s)
    rhs = point_add(Re_s, point_mul(P, session.e * a * g % n))
    return cbytes_ext(lhs) == cbytes_ext(rhs)


def partial_sig_agg(psigs: Sequence[bytes], session: SessionContext) -> bytes:
    """Combine partial signatures into a 64-byte BIP-340 signature."""
    s = 0
    for i, psig in enumerate(psigs):
        s_i = int_from_bytes(psig)
        if s_i >= n:
            raise MuSigError(f"partial signature {i} out of range")
        s = (s + s_i) % n
    return xbytes(session.R) + bytes_from_int(s)


# =============================================================================
# BIP-340 VERIFICATION
# =============================================================================

def schnorr_verify(msg: bytes, pubkey: bytes, sig: bytes) -> bool:
    """Verify a BIP-340 signature against a 32-byte x-only public key."""
    if len(msg) != 32 or len(pubkey) != 32 or len(sig) != 64:
        return False
    return bip340.schnorr_verify(msg, pubkey, sig)


def sign_all(seckeys: List[bytes], msg: bytes) -> bytes:
    """Run both rounds locally for a full set of keys (tests and tooling)."""
    pubkeys = [individual_pubkey(sk) for sk in seckeys]
    keyagg = key_agg(pubkeys)
    nonces = [nonce_gen(sk, pk, keyagg.xonly, msg) for sk, pk in zip(seckeys, pubkeys)]
    session = SessionContext(nonce_agg([pub for _, pub in nonces]), pubkeys, msg, keyagg)
    psigs = [partial_sign(sec, sk, session) for (sec, _), sk in zip(nonces, seckeys)]
    return partial_sig_agg(psigs, session)
