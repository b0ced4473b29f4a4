"""
API request and response models for the PNIT security REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound sizes; content policy (email format, password
strength) lives in auth/validation.py so every caller gets the same rules and
the same client-safe messages.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.api_keys import IssuedSecret
from auth.models import AuditEvent, EncryptedSecret, Session
from auth.service import UserProfile
from auth.sessions import SessionTokens

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScopeEnum(str, Enum):
    read = "read"
    write = "write"
    delete = "delete"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    name: str = Field(max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(max_length=255)


class PasswordResetRequest(BaseModel):
    email: str = Field(max_length=255)


class PasswordResetComplete(BaseModel):
    token: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


class AccountDeleteRequest(BaseModel):
    confirmation: str = Field(max_length=100)


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: list[ScopeEnum] = Field(default_factory=lambda: [ScopeEnum.read], max_length=4)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    audit_dropped counts audit events lost to write failures since start.
    """

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
    audit_dropped: int = 0


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            name=profile.name,
            created_at=profile.created_at,
            last_login=profile.last_login,
        )


class SessionResponse(BaseModel):
    """Token pair issued by register, login and refresh. Shown once."""

    model_config = ConfigDict(frozen=True)

    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_tokens(cls, tokens: SessionTokens) -> "SessionResponse":
        return cls(
            token=tokens.session_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    """Response for register and login."""

    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse
    session: SessionResponse


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Session refreshed successfully."
    session: SessionResponse


class ActiveSessionRow(BaseModel):
    """One row of GET /api/v1/auth/sessions. Never includes token material."""

    model_config = ConfigDict(frozen=True)

    id: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "ActiveSessionRow":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            created_at=session.created_at,
            last_used=session.last_used,
            expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
        )


class AuditEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event_type: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, audit_event: AuditEvent) -> "AuditEventRow":
        return cls(
            id=audit_event.id,
            event_type=audit_event.event_type,
            success=audit_event.success,
            ip_address=audit_event.ip_address,
            user_agent=audit_event.user_agent,
            details=audit_event.details,
            created_at=audit_event.created_at,
        )


class ApiKeyResponse(BaseModel):
    """API key metadata. The key itself is never returned after creation."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    preview: str
    scopes: list[str]
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_secret(cls, secret: EncryptedSecret) -> "ApiKeyResponse":
        return cls(
            id=secret.id,
            name=secret.name,
            preview=secret.preview,
            scopes=list(secret.scopes),
            is_active=secret.is_active,
            created_at=secret.created_at,
            last_used=secret.last_used,
            revoked_at=secret.revoked_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Response for POST /api/v1/api-keys. `key` is shown exactly once."""

    key: str

    @classmethod
    def from_issued(cls, issued: IssuedSecret) -> "ApiKeyCreatedResponse":
        return cls(
            id=issued.id,
            name=issued.name,
            preview=issued.preview,
            scopes=issued.scopes,
            created_at=issued.created_at,
            key=issued.secret,
        )
