"""Winternitz commitments."""

import pytest

from bitvm_bridge import wots


SEED = b"\x07" * 32


@pytest.fixture(scope="module")
def secrets():
    return wots.derive_secrets(SEED, "test/commit_1")


@pytest.fixture(scope="module")
def pubkey(secrets):
    return wots.public_key(secrets)


class TestDigits:

    def test_message_digits(self):
        digits = wots.message_digits("0f" + "00" * 30 + "a1")
        assert len(digits) == wots.MESSAGE_DIGITS
        assert digits[:2] == [0, 15]
        assert digits[-2:] == [10, 1]

    def test_checksum(self):
        assert wots.checksum([15] * 64) == 0
        assert wots.checksum([0] * 64) == wots.MAX_CHECKSUM == 960
        assert wots.checksum_digits(960) == [3, 12, 0]
        assert wots.all_digits("00" * 32)[-3:] == [3, 12, 0]
        assert wots.all_digits("ff" * 32)[-3:] == [0, 0, 0]

    @pytest.mark.parametrize("message", ["11" * 31, "11" * 33, "zz" * 32])
    def test_bad_message(self, message):
        with pytest.raises(ValueError):
            wots.message_digits(message)


class TestSignatures:

    def test_sign_and_verify(self, secrets, pubkey):
        message = "11" * 16 + "22" * 16
        signature = wots.sign(secrets, message)
        assert len(signature) == wots.TOTAL_DIGITS
        assert wots.verify(pubkey, message, signature)
        assert not wots.verify(pubkey, "11" * 32, signature)

    def test_keys_differ_per_label(self, pubkey):
        other = wots.public_key(wots.derive_secrets(SEED, "test/commit_2"))
        assert wots.check_public_key(other)
        assert not set(other) & set(pubkey)

    def test_forward_hash_breaks_checksum(self, secrets, pubkey):
        message = "11" * 32
        signature = wots.sign(secrets, message)
        # Raising the first digit is possible for the digit itself, not the checksum
        signature[0] = wots.hash160(bytes.fromhex(signature[0])).hex()
        assert not wots.verify(pubkey, "21" + "11" * 31, signature)

    def test_malformed_signature(self, secrets, pubkey):
        signature = wots.sign(secrets, "11" * 32)
        assert not wots.verify(pubkey, "11" * 32, signature[:-1])
        assert not wots.verify(pubkey, "11" * 32, ["zz"] + signature[1:])

    @pytest.mark.parametrize("key", [None, [], ["00" * 20] * 66, ["00" * 21] * 67, ["zz" * 20] * 67])
    def test_check_public_key(self, key):
        assert not wots.check_public_key(key)


class TestWitness:

    def test_items_bottom_first(self, secrets):
        message = "10" + "ff" * 31
        signature = wots.sign(secrets, message)
        items = wots.witness_items(message, signature)
        assert len(items) == 2 * wots.TOTAL_DIGITS
        # first message digit (1) on top, its signature right below
        assert items[-2:] == [signature[0], "01"]
        # second digit is zero, encoded as the empty item
        assert items[-4:-2] == [signature[1], ""]
        assert items[:2] == [signature[-1], wots.digit_item(wots.all_digits(message)[-1])]

    def test_digit_item(self):
        assert wots.digit_item(0) == ""
        assert wots.digit_item(9) == "09"
        assert wots.digit_item(15) == "0f"

    def test_keep_copies_message_digits(self, pubkey):
        plain = wots.verify_script(pubkey)
        kept = wots.verify_script(pubkey, keep=True)
        assert kept.count("OP_TOALTSTACK") == plain.count("OP_TOALTSTACK") + wots.MESSAGE_DIGITS
        assert all(pk in plain for pk in pubkey)
