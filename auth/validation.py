"""
auth/validation.py -- Input policy for credentials and profile fields.

Each function returns the normalized value or raises ValidationError with a
message that is safe to show the user verbatim.
"""

from __future__ import annotations

import re

from auth.passwords import BCRYPT_MAX_BYTES
from core.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# 8+ characters from letters, digits and @$!%*?&, with at least one of each class.
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")

MAX_EMAIL_LENGTH = 255
MAX_NAME_LENGTH = 100

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters with uppercase, lowercase, number, "
    "and special character (@$!%*?&)."
)


def sanitize(value: str | None) -> str:
    """Trim whitespace and strip angle brackets."""
    if value is None:
        return ""
    return value.strip().replace("<", "").replace(">", "")


def normalize_email(email: str | None) -> str:
    """Return the canonical (sanitized, lowercase) form of an email address."""
    cleaned = sanitize(email).lower()
    if not cleaned:
        raise ValidationError("Email is required.")
    if len(cleaned) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(cleaned):
        raise ValidationError("Invalid email format.")
    return cleaned


def validate_password(password: str | None) -> str:
    if not password:
        raise ValidationError("Password is required.")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes.")
    if not _PASSWORD_RE.match(password):
        raise ValidationError(PASSWORD_POLICY_MESSAGE)
    return password


def validate_name(name: str | None) -> str:
    cleaned = sanitize(name)
    if not cleaned:
        raise ValidationError("Name is required.")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters.")
    return cleaned
