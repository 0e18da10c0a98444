"""Symmetric encryption for the stored service-account secret.

Secrets are encrypted with AES-256-CBC, PKCS7 padding and a fixed all-zero IV,
then base64 encoded. The zero IV is kept so secrets written by existing
deployments keep decrypting; identical plaintexts therefore produce identical
ciphertexts. Re-encrypting stored secrets is required before this can change.
"""
from __future__ import annotations

import base64
import binascii
import logging

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import DEFAULT_ENCRYPTION_KEY


logger = logging.getLogger(__name__)

KEY_SIZE = 32
BLOCK_SIZE_BITS = 128
ZERO_IV = bytes(16)


def derive_key(key_string: str) -> bytes:
    """Pad with spaces or truncate the configured key to exactly 32 bytes."""

    raw = (key_string or "").encode("utf-8")
    return raw.ljust(KEY_SIZE, b" ")[:KEY_SIZE]


class SymmetricCipher:
    """Encrypts and decrypts short strings with a static key."""

    def __init__(self, key: str = DEFAULT_ENCRYPTION_KEY) -> None:
        self._key = derive_key(key)

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(ZERO_IV))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""

        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher().encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(encrypted).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext, or ``""`` when the input cannot be decrypted."""

        if not ciphertext:
            return ""

        try:
            encrypted = base64.b64decode(ciphertext, validate=True)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(encrypted) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("Unable to decrypt stored secret: %s", type(exc).__name__)
            return ""


__all__ = ["SymmetricCipher", "derive_key"]
