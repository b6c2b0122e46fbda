"""
Unit tests for encryption and signing
"""
import base64

import pytest

from lumen_pg.core.crypto import Crypto, KEY_LENGTH, NONCE_LENGTH, TAG_LENGTH, decode_key, generate_key
from lumen_pg.core.exceptions import CryptoError


class TestCrypto:

    @pytest.mark.parametrize("plaintext", [b"", b"secret", bytes(range(256)) * 4])
    def test_decrypt_inverts_encrypt(self, crypto, plaintext):
        assert crypto.decrypt(crypto.encrypt(plaintext)) == plaintext

    def test_ciphertext_embeds_nonce_and_tag(self, crypto):
        ciphertext = crypto.encrypt(b"abc")
        assert len(ciphertext) == NONCE_LENGTH + 3 + TAG_LENGTH

    def test_same_plaintext_encrypts_differently(self, crypto):
        assert crypto.encrypt(b"abc") != crypto.encrypt(b"abc")

    def test_tampered_ciphertext_raises(self, crypto):
        ciphertext = bytearray(crypto.encrypt(b"password"))
        ciphertext[-1] ^= 0x01
        with pytest.raises(CryptoError):
            crypto.decrypt(bytes(ciphertext))

    def test_short_ciphertext_raises(self, crypto):
        with pytest.raises(CryptoError):
            crypto.decrypt(b"short")

    def test_other_key_cannot_decrypt(self, crypto):
        other = Crypto(b"x" * KEY_LENGTH)
        with pytest.raises(CryptoError):
            other.decrypt(crypto.encrypt(b"password"))

    def test_value_helpers(self, crypto):
        token = crypto.encrypt_value("pässword")
        assert "pässword" not in token
        assert crypto.decrypt_value(token) == "pässword"

    def test_decrypt_value_rejects_garbage(self, crypto):
        with pytest.raises(CryptoError):
            crypto.decrypt_value("not base64 at all!!")

    def test_sign_and_verify(self, crypto):
        tag = crypto.sign(b"payload")
        assert crypto.verify(b"payload", tag)
        assert not crypto.verify(b"payload2", tag)
        assert not crypto.verify(b"payload", b"\x00" * len(tag))

    def test_random_token_is_hex(self):
        token = Crypto.random_token(32)
        assert len(token) == 64
        int(token, 16)
        assert Crypto.random_token() != Crypto.random_token()

    def test_rejects_wrong_key_length(self):
        with pytest.raises(ValueError):
            Crypto(b"short")

    def test_ephemeral_key_when_none_configured(self):
        crypto = Crypto.from_encoded_key("")
        assert crypto.decrypt(crypto.encrypt(b"x")) == b"x"


class TestKeys:

    def test_generated_key_decodes_to_32_bytes(self):
        assert len(decode_key(generate_key())) == KEY_LENGTH

    def test_decode_key_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            decode_key(base64.urlsafe_b64encode(b"x" * 16).decode())

    def test_from_encoded_key_round_trips(self):
        encoded = generate_key()
        first = Crypto.from_encoded_key(encoded)
        second = Crypto.from_encoded_key(encoded)
        assert second.decrypt(first.encrypt(b"shared")) == b"shared"
