"""
auth/passwords.py -- PasswordHasher: adaptive one-way credential hashing.

bcrypt is used directly (no passlib wrapper). bcrypt 4.x raises on inputs
longer than 72 bytes instead of silently truncating, so the hasher checks the
length itself: hash() refuses long inputs, verify() treats them as a mismatch.
The registration policy in auth/validation.py rejects such passwords before
they ever reach hash().

verify() never raises on a wrong password. It raises InternalError only for a
malformed stored digest, which means the credential record is corrupt.
"""

from __future__ import annotations

import logging

import bcrypt

from core.errors import InternalError

logger = logging.getLogger("pnit.auth")

BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """bcrypt hash/verify with a fixed cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization digest, computed once per hasher at this cost
        # factor so dummy_verify() costs the same as a real verify().
        self._dummy_hash = self.hash("pnit_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of plaintext at the configured cost."""
        raw = plaintext.encode("utf-8")
        if len(raw) > BCRYPT_MAX_BYTES:
            raise ValueError(f"Password exceeds {BCRYPT_MAX_BYTES} bytes.")
        return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True if plaintext matches digest.

        Raises InternalError if digest is not a valid bcrypt hash.
        """
        raw = plaintext.encode("utf-8")
        too_long = len(raw) > BCRYPT_MAX_BYTES
        try:
            # Run the full-cost comparison even for over-long input so response
            # time does not reveal the rejection.
            matched = bcrypt.checkpw(raw[:BCRYPT_MAX_BYTES], digest.encode("utf-8"))
        except ValueError as exc:
            logger.error("Malformed password digest encountered during verification")
            raise InternalError() from exc
        return matched and not too_long

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verify() worth of work against a throwaway digest.

        Called when the account does not exist so an unknown email and a wrong
        password take the same time to reject.
        """
        self.verify(plaintext, self._dummy_hash)
