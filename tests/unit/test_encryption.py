"""
Unit tests for voucher_service/services/encryption.py
"""

import json

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from voucher_service.errors import SigningSecretMissing
from voucher_service.services.encryption import SecretCipher, build_cipher

TENANT_A = "a0000000-0000-0000-0000-000000000001"
TENANT_B = "b0000000-0000-0000-0000-000000000002"


@pytest.fixture
def cipher():
    return SecretCipher(AESGCM.generate_key(bit_length=256), "v1")


def test_round_trip(cipher):
    blob = cipher.encrypt("top-secret", TENANT_A)
    assert cipher.decrypt(blob, TENANT_A) == "top-secret"


def test_blob_never_contains_plaintext(cipher):
    blob = cipher.encrypt("top-secret", TENANT_A)
    assert "top-secret" not in blob
    assert set(json.loads(blob)) == {"ver", "nonce", "ct"}


def test_nonce_differs_per_encryption(cipher):
    assert cipher.encrypt("x", TENANT_A) != cipher.encrypt("x", TENANT_A)


def test_blob_is_bound_to_tenant(cipher):
    blob = cipher.encrypt("top-secret", TENANT_A)
    with pytest.raises(SigningSecretMissing):
        cipher.decrypt(blob, TENANT_B)


def test_wrong_key_fails(cipher):
    other = SecretCipher(AESGCM.generate_key(bit_length=256), "v1")
    with pytest.raises(SigningSecretMissing):
        other.decrypt(cipher.encrypt("top-secret", TENANT_A), TENANT_A)


@pytest.mark.parametrize("blob", ["", "not json", "{}", '{"ver": "v1", "nonce": "!!", "ct": "??"}'])
def test_garbage_blob_fails_cleanly(cipher, blob):
    with pytest.raises(SigningSecretMissing):
        cipher.decrypt(blob, TENANT_A)


def test_rejects_bad_key_length():
    with pytest.raises(ValueError):
        SecretCipher(b"short", "v1")


def test_build_cipher_uses_configured_key():
    a = build_cipher()
    b = build_cipher()
    assert b.decrypt(a.encrypt("shared", TENANT_A), TENANT_A) == "shared"
