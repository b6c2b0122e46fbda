"""
Encryption utilities for secrets held in session state
"""
from typing import Optional, Union
import base64
import binascii
import secrets

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
import structlog

from lumen_pg.core.exceptions import CryptoError

logger = structlog.get_logger()

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def generate_key() -> str:
    """Generate a new url-safe base64 encoded 32-byte key."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode()


def decode_key(encoded: str) -> bytes:
    """Decode a url-safe base64 key and check its length."""
    try:
        key = base64.urlsafe_b64decode(encoded.encode())
    except (binascii.Error, ValueError) as e:
        raise ValueError("encryption key is not valid url-safe base64") from e
    if len(key) != KEY_LENGTH:
        raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


class Crypto:
    """
    AES-256-GCM encryption plus HMAC-SHA256 signing under one process-wide key.

    Ciphertext layout is ``nonce (12 bytes) || ciphertext || tag (16 bytes)``.
    The signing key is derived from the encryption key with HKDF so the two
    primitives never share key material directly.
    """

    def __init__(self, key: Optional[bytes] = None):
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
            logger.warning(
                "ephemeral_encryption_key",
                detail="no encryption key configured; sessions will not survive a restart",
            )
        if len(key) != KEY_LENGTH:
            raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")

        self._aead = AESGCM(key)
        self._signing_key = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=None,
            info=b"lumen-pg signing key",
        ).derive(key)

    @classmethod
    def from_encoded_key(cls, encoded: str) -> "Crypto":
        if not encoded:
            return cls()
        return cls(decode_key(encoded))

    def encrypt(self, plaintext: Union[bytes, str]) -> bytes:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        nonce = secrets.token_bytes(NONCE_LENGTH)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < NONCE_LENGTH + TAG_LENGTH:
            raise CryptoError("ciphertext is too short")
        nonce, body = ciphertext[:NONCE_LENGTH], ciphertext[NONCE_LENGTH:]
        try:
            return self._aead.decrypt(nonce, body, None)
        except InvalidTag as e:
            logger.warning("crypto_tamper_detected", detail="authentication tag mismatch")
            raise CryptoError(cause=e)

    def encrypt_value(self, value: str) -> str:
        """Encrypt a string value into url-safe base64 text."""
        return base64.urlsafe_b64encode(self.encrypt(value)).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """Decrypt text produced by ``encrypt_value``."""
        try:
            raw = base64.urlsafe_b64decode(encrypted_value.encode())
        except (binascii.Error, ValueError) as e:
            raise CryptoError("ciphertext is not valid base64", cause=e)
        try:
            return self.decrypt(raw).decode()
        except UnicodeDecodeError as e:
            raise CryptoError("decrypted value is not valid text", cause=e)

    def sign(self, data: bytes) -> bytes:
        h = hmac.HMAC(self._signing_key, hashes.SHA256())
        h.update(data)
        return h.finalize()

    def verify(self, data: bytes, tag: bytes) -> bool:
        h = hmac.HMAC(self._signing_key, hashes.SHA256())
        h.update(data)
        try:
            h.verify(tag)
            return True
        except InvalidSignature:
            return False

    @staticmethod
    def random_token(n: int = 32) -> str:
        """Return ``n`` random bytes as a hex string."""
        return secrets.token_hex(n)
