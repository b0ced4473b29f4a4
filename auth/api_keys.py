"""
auth/api_keys.py -- SecretStore: issuance, storage and revocation of API keys.

Key format: "pnit_" + 64 hex characters (256 bits from secrets.token_hex(32)).

Storage: the full key is never stored in plaintext. The record holds
  - the EncryptionManager payload of {key, created_at, created_by}
  - a display preview: the first 8 characters followed by "..."
The raw key is returned to the caller exactly once, from issue().

Revocation is a soft delete: is_active=0 and revoked_at are set, the
ciphertext stays for forensic history.

authenticate() narrows candidates by preview and decrypts each one, comparing
the stored key in constant time. A candidate written under a previous master
key cannot be decrypted; it is logged and skipped, never silently treated as
a match.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from auth.audit import AuditEventType, SecurityAuditLog
from auth.encryption import EncryptedPayload, EncryptionManager
from auth.models import ClientInfo, EncryptedSecret
from auth.store import SecurityStore
from core.clock import Clock, utcnow
from core.errors import DecryptionError, KeyMismatchError, NotFoundError, ValidationError

logger = logging.getLogger("pnit.auth")

KEY_PREFIX = "pnit_"
PREVIEW_LENGTH = 8
VALID_SCOPES = frozenset({"read", "write", "delete", "admin"})
MAX_NAME_LENGTH = 100


def generate_api_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(32)}"


def key_preview(raw_key: str) -> str:
    return raw_key[:PREVIEW_LENGTH] + "..."


@dataclass(frozen=True)
class IssuedSecret:
    """Result of issue(). `secret` is the only copy of the raw key the caller will ever see."""

    id: int
    name: str
    preview: str
    scopes: list[str]
    created_at: datetime
    secret: str

    def __repr__(self) -> str:
        return f"IssuedSecret(id={self.id}, name={self.name!r}, preview={self.preview!r})"


class SecretStore:
    def __init__(
        self,
        store: SecurityStore,
        encryption: EncryptionManager,
        audit: SecurityAuditLog,
        max_active_per_user: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._encryption = encryption
        self._audit = audit
        self.max_active_per_user = max_active_per_user
        self._clock = clock

    @property
    def key_id(self) -> str:
        """Fingerprint of the master key new secrets are written under."""
        return self._encryption.key_id

    def issue(
        self,
        user_id: int,
        name: str,
        scopes: list[str] | None = None,
        client: ClientInfo | None = None,
    ) -> IssuedSecret:
        """Generate, encrypt and persist a new API key.

        Raises ValidationError for a bad name or scope, or when the user already
        holds max_active_per_user active keys.
        """
        client = client or ClientInfo()
        clean_name = (name or "").strip()
        if not clean_name or len(clean_name) > MAX_NAME_LENGTH:
            raise ValidationError(f"API key name must be 1-{MAX_NAME_LENGTH} characters.")
        chosen = sorted(set(scopes or ["read"]))
        invalid = [s for s in chosen if s not in VALID_SCOPES]
        if invalid:
            raise ValidationError(f"Invalid scopes: {', '.join(invalid)}")
        if self._store.count_active_secrets(user_id) >= self.max_active_per_user:
            raise ValidationError(
                f"Maximum of {self.max_active_per_user} active API keys reached.", code="api_key_limit"
            )

        now = self._clock()
        raw_key = generate_api_key()
        payload = self._encryption.encrypt({"key": raw_key, "created_at": now.isoformat(), "created_by": user_id})
        secret = EncryptedSecret(
            user_id=user_id,
            name=clean_name,
            ciphertext=payload.ciphertext,
            salt=payload.salt,
            iv=payload.iv,
            auth_tag=payload.auth_tag,
            key_fingerprint=payload.key_id,
            preview=key_preview(raw_key),
            scopes=chosen,
        )
        secret_id = self._store.create_secret(secret, now)
        self._audit.record(
            user_id,
            AuditEventType.API_KEY_CREATED,
            client.ip_address,
            client.user_agent,
            True,
            {"key_id": secret_id, "name": clean_name, "scopes": chosen},
        )
        return IssuedSecret(
            id=secret_id,
            name=clean_name,
            preview=secret.preview,
            scopes=chosen,
            created_at=now,
            secret=raw_key,
        )

    def list_secrets(self, user_id: int, include_revoked: bool = False) -> list[EncryptedSecret]:
        return self._store.list_secrets(user_id, include_revoked=include_revoked)

    def revoke(self, user_id: int, secret_id: int, client: ClientInfo | None = None) -> None:
        """Soft-delete one of the caller's own keys.

        Raises NotFoundError if the key does not exist, belongs to someone
        else, or is already revoked. The three cases are indistinguishable to
        the caller.
        """
        client = client or ClientInfo()
        if not self._store.revoke_secret(secret_id, user_id, self._clock()):
            self._audit.record(
                user_id,
                AuditEventType.API_KEY_REVOKE_NOT_FOUND,
                client.ip_address,
                client.user_agent,
                False,
                {"key_id": secret_id},
            )
            raise NotFoundError("API key not found.")
        self._audit.record(
            user_id,
            AuditEventType.API_KEY_REVOKED,
            client.ip_address,
            client.user_agent,
            True,
            {"key_id": secret_id},
        )

    def reveal(self, secret: EncryptedSecret) -> dict:
        """Decrypt a stored record. Raises KeyMismatchError or DecryptionError."""
        return self._encryption.decrypt(
            EncryptedPayload(
                ciphertext=secret.ciphertext,
                salt=secret.salt,
                iv=secret.iv,
                auth_tag=secret.auth_tag,
                key_id=secret.key_fingerprint,
            )
        )

    def authenticate(self, raw_key: str) -> EncryptedSecret | None:
        """Return the active record matching raw_key, or None."""
        if not raw_key or not raw_key.startswith(KEY_PREFIX):
            return None
        for candidate in self._store.find_active_secrets_by_preview(key_preview(raw_key)):
            try:
                stored = self.reveal(candidate)
            except KeyMismatchError:
                logger.warning("API key %s was encrypted under a rotated master key; skipping", candidate.id)
                continue
            except DecryptionError:
                logger.error("API key %s failed authentication tag check; record may be tampered", candidate.id)
                continue
            if hmac.compare_digest(str(stored.get("key", "")), raw_key):
                self._store.touch_secret(candidate.id, self._clock())
                return candidate
        return None
