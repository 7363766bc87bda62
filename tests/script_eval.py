"""Small tapscript evaluator for the opcodes the bridge leaves use."""

import hashlib
import re

from bitvm_bridge.wots import hash160


class ScriptFailure(Exception):
    pass


_SMALL_INT = re.compile(r"^OP_(\d+)$")


def decode_num(item: bytes) -> int:
    if not item:
        return 0
    if len(item) > 4:
        raise ScriptFailure("script number overflow")
    value = int.from_bytes(item, "little")
    if item[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(item) - 1))))
    return value


def encode_num(value: int) -> bytes:
    if value == 0:
        return b""
    negative = value < 0
    value = abs(value)
    out = bytearray()
    while value:
        out.append(value & 0xFF)
        value >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0)
    elif negative:
        out[-1] |= 0x80
    return bytes(out)


def cast_to_bool(item: bytes) -> bool:
    for i, b in enumerate(item):
        if b:
            return not (i == len(item) - 1 and b == 0x80)
    return False


def _pop(stack: list) -> bytes:
    if not stack:
        raise ScriptFailure("stack underflow")
    return stack.pop()


def _pop_num(stack: list) -> int:
    return decode_num(_pop(stack))


def _need(stack: list, n: int):
    if len(stack) < n:
        raise ScriptFailure("stack underflow")


def _step(token, stack: list, alt: list, checksig, sequence: int):
    if isinstance(token, int):
        stack.append(encode_num(token))
        return
    small = _SMALL_INT.match(token)
    if small:
        stack.append(encode_num(int(small.group(1))))
        return
    if not token.startswith("OP_"):
        stack.append(bytes.fromhex(token))
        return

    if token == "OP_DUP":
        _need(stack, 1)
        stack.append(stack[-1])
    elif token == "OP_DROP":
        _pop(stack)
    elif token == "OP_SWAP":
        _need(stack, 2)
        stack[-1], stack[-2] = stack[-2], stack[-1]
    elif token == "OP_ROT":
        _need(stack, 3)
        stack.append(stack.pop(-3))
    elif token == "OP_TUCK":
        _need(stack, 2)
        stack.insert(-2, stack[-1])
    elif token == "OP_ROLL":
        n = _pop_num(stack)
        _need(stack, n + 1)
        stack.append(stack.pop(-1 - n))
    elif token == "OP_TOALTSTACK":
        alt.append(_pop(stack))
    elif token == "OP_FROMALTSTACK":
        if not alt:
            raise ScriptFailure("alt stack underflow")
        stack.append(alt.pop())
    elif token == "OP_ADD":
        b, a = _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(a + b))
    elif token == "OP_SUB":
        b, a = _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(a - b))
    elif token == "OP_1SUB":
        stack.append(encode_num(_pop_num(stack) - 1))
    elif token == "OP_0NOTEQUAL":
        stack.append(encode_num(int(_pop_num(stack) != 0)))
    elif token == "OP_NUMNOTEQUAL":
        b, a = _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(int(a != b)))
    elif token == "OP_GREATERTHANOREQUAL":
        b, a = _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(int(a >= b)))
    elif token == "OP_BOOLOR":
        b, a = _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(int(a != 0 or b != 0)))
    elif token == "OP_WITHIN":
        high, low, x = _pop_num(stack), _pop_num(stack), _pop_num(stack)
        stack.append(encode_num(int(low <= x < high)))
    elif token == "OP_VERIFY":
        if not cast_to_bool(_pop(stack)):
            raise ScriptFailure("OP_VERIFY failed")
    elif token in ("OP_EQUAL", "OP_EQUALVERIFY"):
        b, a = _pop(stack), _pop(stack)
        if token == "OP_EQUAL":
            stack.append(encode_num(int(a == b)))
        elif a != b:
            raise ScriptFailure("OP_EQUALVERIFY failed")
    elif token == "OP_HASH160":
        stack.append(hash160(_pop(stack)))
    elif token == "OP_SHA256":
        stack.append(hashlib.sha256(_pop(stack)).digest())
    elif token == "OP_CHECKSIG":
        pubkey, sig = _pop(stack), _pop(stack)
        if not sig:
            stack.append(b"")
        elif checksig(sig, pubkey):
            stack.append(encode_num(1))
        else:
            raise ScriptFailure("invalid signature")
    elif token == "OP_CHECKSEQUENCEVERIFY":
        _need(stack, 1)
        if decode_num(stack[-1]) > sequence:
            raise ScriptFailure("relative timelock not satisfied")
    else:
        raise ScriptFailure(f"unsupported opcode {token}")


def run_script(tokens: list, witness: list, checksig, sequence: int = 0):
    """
    Execute tapscript tokens (bitcoinutils Script.script) over witness items
    (hex, bottom of the stack first).

    Raises:
        ScriptFailure: the spend is invalid
    """
    stack = [bytes.fromhex(item) for item in witness]
    alt = []
    branches = []
    for token in tokens:
        executing = all(branches)
        if token in ("OP_IF", "OP_NOTIF"):
            value = False
            if executing:
                top = _pop(stack)
                if top not in (b"", b"\x01"):
                    raise ScriptFailure("OP_IF argument must be empty or 0x01")
                value = (top == b"\x01") == (token == "OP_IF")
            branches.append(value)
        elif token == "OP_ELSE":
            if not branches:
                raise ScriptFailure("OP_ELSE without OP_IF")
            branches[-1] = not branches[-1]
        elif token == "OP_ENDIF":
            if not branches:
                raise ScriptFailure("OP_ENDIF without OP_IF")
            branches.pop()
        elif executing:
            _step(token, stack, alt, checksig, sequence)
    if branches:
        raise ScriptFailure("unbalanced conditional")
    if len(stack) != 1 or not cast_to_bool(stack[0]):
        raise ScriptFailure("script must leave exactly one true item")
