"""
auth/encryption.py -- EncryptionManager: AES-256-GCM encryption of secrets at rest.

Per call:
  1. A random 16-byte salt is generated.
  2. A 256-bit key is derived from the master key and salt with
     PBKDF2-HMAC-SHA256 (kdf_iterations, default 100000).
  3. The JSON-serialized data is sealed with AES-256-GCM under a random
     96-bit IV, with the salt as associated data. The 128-bit tag is split
     off the ciphertext and stored in its own column.

key_id is the first 16 hex characters of SHA-256(master key). It identifies
which master key wrote a record without revealing the key; decrypt() compares
it first and raises KeyMismatchError instead of attempting a decryption that
could only fail.

Deriving a fresh key per call is deliberate: a leaked derived key exposes one
record, not the store. It also makes every encrypt/decrypt pay the full KDF
cost. The iteration count is configurable so deployments can weigh this.

The master key is injected. There is no fallback: an empty key is a
configuration error (ValueError) at construction.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Any, Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import DecryptionError, KeyMismatchError

AES_KEY_SIZE: Final[int] = 32
IV_SIZE: Final[int] = 12
SALT_SIZE: Final[int] = 16
TAG_SIZE: Final[int] = 16
KEY_ID_LENGTH: Final[int] = 16


@dataclass(frozen=True)
class EncryptedPayload:
    """Everything needed to decrypt one record, minus the master key."""

    ciphertext: bytes
    salt: bytes
    iv: bytes
    auth_tag: bytes
    key_id: str

    def __repr__(self) -> str:
        return f"EncryptedPayload(ciphertext_len={len(self.ciphertext)}, key_id={self.key_id!r})"


def fingerprint(master_key: str) -> str:
    """Return the non-reversible identifier of a master key."""
    return hashlib.sha256(master_key.encode("utf-8")).hexdigest()[:KEY_ID_LENGTH]


class EncryptionManager:
    """Authenticated symmetric encryption under one injected master key.

    Usage:
        manager = EncryptionManager(settings.master_key)
        payload = manager.encrypt({"key": raw_key})
        data = manager.decrypt(payload)
    """

    def __init__(self, master_key: str, iterations: int = 100_000) -> None:
        if not master_key:
            raise ValueError("EncryptionManager requires a master key.")
        self._master_key = master_key.encode("utf-8")
        self.iterations = iterations
        self.key_id = fingerprint(master_key)

    def __repr__(self) -> str:
        return f"EncryptionManager(key_id={self.key_id!r}, iterations={self.iterations})"

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=AES_KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, data: Any) -> EncryptedPayload:
        """Encrypt any JSON-serializable value.

        Raises TypeError if data cannot be serialized.
        """
        plaintext = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        salt = secrets.token_bytes(SALT_SIZE)
        iv = secrets.token_bytes(IV_SIZE)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plaintext, salt)
        return EncryptedPayload(
            ciphertext=sealed[:-TAG_SIZE],
            salt=salt,
            iv=iv,
            auth_tag=sealed[-TAG_SIZE:],
            key_id=self.key_id,
        )

    def decrypt(self, payload: EncryptedPayload) -> Any:
        """Decrypt and deserialize a payload written by encrypt().

        Raises:
            KeyMismatchError: payload was written under a different master key.
            DecryptionError:  tag did not verify (tampered record, wrong key
                              material, or malformed IV/tag).
        """
        if not hmac.compare_digest(payload.key_id, self.key_id):
            raise KeyMismatchError(expected=self.key_id, actual=payload.key_id)
        if len(payload.iv) != IV_SIZE or len(payload.auth_tag) != TAG_SIZE:
            raise DecryptionError()
        try:
            plaintext = AESGCM(self._derive_key(payload.salt)).decrypt(
                payload.iv, payload.ciphertext + payload.auth_tag, payload.salt
            )
        except InvalidTag as exc:
            raise DecryptionError() from exc
        return json.loads(plaintext.decode("utf-8"))
