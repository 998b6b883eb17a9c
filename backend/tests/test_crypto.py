import base64

import pytest

from chat_orchestrator.core.crypto import DecryptionError, StateCipher


@pytest.fixture
def cipher():
    return StateCipher.from_base64(StateCipher.generate_key())


def test_encrypt_decrypt(cipher):
    token = cipher.encrypt('{"hello": "world"}', associated_data="run-1")

    assert cipher.decrypt(token, associated_data="run-1") == '{"hello": "world"}'


def test_nonce_is_fresh_per_encryption(cipher):
    assert cipher.encrypt("same", "run-1") != cipher.encrypt("same", "run-1")


def test_associated_data_must_match(cipher):
    token = cipher.encrypt("payload", "run-1")

    with pytest.raises(DecryptionError):
        cipher.decrypt(token, "run-2")


def test_tampered_ciphertext_is_rejected(cipher):
    raw = bytearray(base64.b64decode(cipher.encrypt("payload", "run-1")))
    raw[-1] ^= 0x01

    with pytest.raises(DecryptionError):
        cipher.decrypt(base64.b64encode(bytes(raw)).decode(), "run-1")


@pytest.mark.parametrize("token", ["not base64 at all", base64.b64encode(b"short").decode()])
def test_malformed_tokens_are_rejected(cipher, token):
    with pytest.raises(DecryptionError):
        cipher.decrypt(token, "run-1")


def test_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        StateCipher(b"too short")
    with pytest.raises(ValueError):
        StateCipher.from_base64("%%%")
