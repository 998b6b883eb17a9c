"""
Symmetric encryption for checkpoint state at rest.

AES-256-GCM with a fresh 12-byte nonce per write. The stored form is
base64(nonce || ciphertext || tag). The run id is bound as associated data,
so a ciphertext copied onto another run's row fails to decrypt.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_BYTES = 12
_KEY_BYTES = 32


class DecryptionError(Exception):
    pass


class StateCipher:
    def __init__(self, key: bytes):
        if len(key) != _KEY_BYTES:
            raise ValueError(f"Encryption key must be {_KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded: str) -> "StateCipher":
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Encryption key is not valid base64") from exc
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str, associated_data: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), associated_data.encode("utf-8"))
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, associated_data: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(raw) <= _NONCE_BYTES:
            raise DecryptionError("ciphertext too short")
        nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, associated_data.encode("utf-8"))
        except InvalidTag as exc:
            raise DecryptionError("authentication failed") from exc
        return plaintext.decode("utf-8")
