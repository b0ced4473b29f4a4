"""Unit tests for auth/encryption.py -- EncryptionManager.

Covers:
- decrypt(encrypt(x)) == x for JSON-serializable values
- fresh salt and IV per call (same input, different ciphertext)
- key_id is a stable 16-hex fingerprint of the master key
- different master key -> KeyMismatchError, never plaintext
- tampered ciphertext / tag / salt -> DecryptionError
- missing master key is a construction error
"""

from dataclasses import replace

import pytest

from auth.encryption import EncryptionManager, fingerprint
from core.errors import DecryptionError, KeyMismatchError

KEY_A = "a" * 32 + "-primary-master-key"
KEY_B = "b" * 32 + "-rotated-master-key"


@pytest.fixture(scope="module")
def manager() -> EncryptionManager:
    return EncryptionManager(KEY_A, iterations=1_000)


@pytest.mark.parametrize(
    "value",
    [
        {"key": "pnit_abc", "created_by": 7},
        ["a", 1, None, True],
        "plain string",
        {"nested": {"unicode": "clé ✓"}},
    ],
)
def test_round_trip(manager, value):
    assert manager.decrypt(manager.encrypt(value)) == value


def test_each_encryption_uses_fresh_salt_and_iv(manager):
    first = manager.encrypt({"key": "same"})
    second = manager.encrypt({"key": "same"})
    assert first.salt != second.salt
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_payload_shapes(manager):
    payload = manager.encrypt({"key": "value"})
    assert len(payload.salt) == 16
    assert len(payload.iv) == 12
    assert len(payload.auth_tag) == 16
    assert payload.key_id == manager.key_id


def test_key_id_is_stable_fingerprint():
    assert EncryptionManager(KEY_A, iterations=1_000).key_id == fingerprint(KEY_A)
    assert len(fingerprint(KEY_A)) == 16
    assert fingerprint(KEY_A) != fingerprint(KEY_B)


def test_different_master_key_raises_key_mismatch(manager):
    payload = manager.encrypt({"key": "value"})
    other = EncryptionManager(KEY_B, iterations=1_000)
    with pytest.raises(KeyMismatchError) as exc_info:
        other.decrypt(payload)
    assert exc_info.value.actual == manager.key_id
    assert exc_info.value.expected == other.key_id


def test_tampered_ciphertext_fails_authentication(manager):
    payload = manager.encrypt({"key": "value"})
    flipped = bytes([payload.ciphertext[0] ^ 0x01]) + payload.ciphertext[1:]
    with pytest.raises(DecryptionError):
        manager.decrypt(replace(payload, ciphertext=flipped))


def test_tampered_tag_fails_authentication(manager):
    payload = manager.encrypt({"key": "value"})
    with pytest.raises(DecryptionError):
        manager.decrypt(replace(payload, auth_tag=b"\x00" * 16))


def test_swapped_salt_fails_authentication(manager):
    payload = manager.encrypt({"key": "value"})
    with pytest.raises(DecryptionError):
        manager.decrypt(replace(payload, salt=b"\x00" * 16))


def test_empty_master_key_rejected():
    with pytest.raises(ValueError):
        EncryptionManager("")


def test_repr_does_not_expose_key(manager):
    assert KEY_A not in repr(manager)
