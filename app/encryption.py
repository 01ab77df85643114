"""Encryption for values kept in secure storage."""

import os
import secrets
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class DecryptionError(ValueError):
    """Raised when stored ciphertext cannot be authenticated or decoded."""


class EncryptionManager:
    """AES-256-GCM sealing of secure-storage values.

    Ciphertext layout is ``nonce (12 bytes) || ciphertext+tag``. The storage key
    is bound as associated data so a value copied to another key fails to
    decrypt.
    """

    def __init__(self, key: bytes):
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def encrypt(self, plaintext: Union[str, bytes], associated_data: bytes | None = None) -> bytes:
        """Encrypt ``plaintext`` and return nonce + ciphertext."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, associated_data)

    def decrypt_bytes(self, encrypted_data: bytes, associated_data: bytes | None = None) -> bytes:
        """Decrypt data produced by :meth:`encrypt`."""
        if len(encrypted_data) < NONCE_SIZE:
            raise DecryptionError("Invalid encrypted data: too short")

        nonce = encrypted_data[:NONCE_SIZE]
        try:
            return self._aesgcm.decrypt(nonce, encrypted_data[NONCE_SIZE:], associated_data)
        except InvalidTag as e:
            raise DecryptionError("Encrypted data failed authentication") from e

    def decrypt(self, encrypted_data: bytes, associated_data: bytes | None = None) -> str:
        """Decrypt to a UTF-8 string."""
        return self.decrypt_bytes(encrypted_data, associated_data).decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)
