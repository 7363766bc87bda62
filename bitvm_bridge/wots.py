"""
BitVM Bridge SDK - Winternitz Commitments

Hash-chain one-time signatures over 32-byte messages, checkable in tapscript
(the assert and disprove leaves verify them on-chain).

A message is split into 64 base-16 digits (most significant first) followed
by 3 checksum digits. Every digit d has its own 20-byte secret s and public
key H^15(s); its signature is H^d(s), with H = hash160. Verification hashes
the signature 15 - d more times and compares against the public key. The
checksum (sum of 15 - d over the message digits) stops anyone from raising a
digit without lowering another.

Witness layout (bottom to top): sig_66 d_66 ... sig_0 d_0, so the first
message digit is on top of the stack when the verifying script starts.
"""

import hashlib
import hmac
from typing import List

from bitcoinutils.ripemd160 import ripemd160


MAX_DIGIT = 15
MESSAGE_DIGITS = 64
CHECKSUM_DIGITS = 3
TOTAL_DIGITS = MESSAGE_DIGITS + CHECKSUM_DIGITS
MAX_CHECKSUM = MAX_DIGIT * MESSAGE_DIGITS
SECRET_SIZE = 20


def hash160(data: bytes) -> bytes:
    return ripemd160(hashlib.sha256(data).digest())


def _chain(value: bytes, steps: int) -> bytes:
    for _ in range(steps):
        value = hash160(value)
    return value


# =============================================================================
# DIGITS
# =============================================================================

def message_digits(message: str) -> List[int]:
    """Base-16 digits of a 32-byte hex message, most significant first."""
    data = bytes.fromhex(message)
    if len(data) != 32:
        raise ValueError("message must be 32 bytes")
    return [int(c, 16) for c in data.hex()]


def checksum(digits: List[int]) -> int:
    return sum(MAX_DIGIT - d for d in digits)


def checksum_digits(value: int) -> List[int]:
    return [(value >> 8) & 0xF, (value >> 4) & 0xF, value & 0xF]


def all_digits(message: str) -> List[int]:
    digits = message_digits(message)
    return digits + checksum_digits(checksum(digits))


# =============================================================================
# KEYS AND SIGNATURES
# =============================================================================

def derive_secrets(seed: bytes, label: str) -> List[bytes]:
    """One secret per digit, derived from a seed and a per-message label."""
    return [hmac.new(seed, f"{label}/{i}".encode(), hashlib.sha256).digest()[:SECRET_SIZE]
            for i in range(TOTAL_DIGITS)]


def public_key(secrets: List[bytes]) -> List[str]:
    return [_chain(s, MAX_DIGIT).hex() for s in secrets]


def sign(secrets: List[bytes], message: str) -> List[str]:
    return [_chain(s, d).hex() for s, d in zip(secrets, all_digits(message))]


def verify(pubkey: List[str], message: str, signature: List[str]) -> bool:
    if len(pubkey) != TOTAL_DIGITS or len(signature) != TOTAL_DIGITS:
        return False
    try:
        digits = all_digits(message)
        items = [bytes.fromhex(s) for s in signature]
    except ValueError:
        return False
    return all(_chain(item, MAX_DIGIT - d).hex() == pk.lower()
               for item, d, pk in zip(items, digits, pubkey))


def check_public_key(pubkey) -> bool:
    if not isinstance(pubkey, list) or len(pubkey) != TOTAL_DIGITS:
        return False
    for pk in pubkey:
        try:
            if len(bytes.fromhex(pk)) != SECRET_SIZE:
                return False
        except (TypeError, ValueError):
            return False
    return True


# =============================================================================
# WITNESS AND SCRIPT
# =============================================================================

def digit_item(digit: int) -> str:
    """Minimal script number encoding of a digit (zero is the empty item)."""
    return f"{digit:02x}" if digit else ""


def witness_items(message: str, signature: List[str]) -> List[str]:
    """Witness items for one signed message, bottom of the stack first."""
    items = []
    for digit, sig in reversed(list(zip(all_digits(message), signature))):
        items += [sig, digit_item(digit)]
    return items


def _check_digit(pubkey: str, keep: bool) -> list:
    # stack: <sig> <digit> <acc>  ->  <acc + digit>
    ops = ["OP_SWAP"]
    if keep:
        ops += ["OP_DUP", "OP_TOALTSTACK"]
    ops += ["OP_DUP", 0, MAX_DIGIT + 1, "OP_WITHIN", "OP_VERIFY",
            "OP_TUCK", "OP_ADD", "OP_ROT", "OP_ROT",
            MAX_DIGIT, "OP_SWAP", "OP_SUB"]
    # stack: <acc> <sig> <15 - digit>, hash while the counter is non-zero
    ops += ["OP_DUP", "OP_0NOTEQUAL", "OP_IF",
            "OP_SWAP", "OP_HASH160", "OP_SWAP", "OP_1SUB",
            "OP_ENDIF"] * MAX_DIGIT
    ops += ["OP_DROP", pubkey, "OP_EQUALVERIFY"]
    return ops


def verify_script(pubkey: List[str], keep: bool = False) -> list:
    """
    Script tokens consuming one signed message from the stack.

    With keep=True every message digit is also copied to the alt stack
    (first digit at the bottom) for a later script section to inspect.
    """
    ops = ["OP_0"]
    for pk in pubkey[:MESSAGE_DIGITS]:
        ops += _check_digit(pk, keep)
    # expected checksum goes to the alt stack until the checksum digits are read
    ops += [MAX_CHECKSUM, "OP_SWAP", "OP_SUB", "OP_TOALTSTACK", "OP_0"]
    for pk in pubkey[MESSAGE_DIGITS:]:
        ops += ["OP_DUP", "OP_ADD"] * 4
        ops += _check_digit(pk, keep=False)
    ops += ["OP_FROMALTSTACK", "OP_EQUALVERIFY"]
    return ops
