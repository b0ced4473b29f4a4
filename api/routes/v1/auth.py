"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes:
  POST   /api/v1/auth/register         -- create account, returns session
  POST   /api/v1/auth/login            -- password login, returns session
  POST   /api/v1/auth/refresh          -- rotate session with a refresh token
  POST   /api/v1/auth/logout           -- revoke the presented session
  POST   /api/v1/auth/logout-all       -- revoke every session of the caller
  POST   /api/v1/auth/forgot-password  -- issue a reset token (no enumeration)
  POST   /api/v1/auth/reset-password   -- complete a reset with the token
  POST   /api/v1/auth/change-password  -- change password (requires session)
  DELETE /api/v1/auth/account          -- delete own account (requires session)
  GET    /api/v1/auth/me               -- current user (session or API key)
  GET    /api/v1/auth/sessions         -- caller's active sessions
  GET    /api/v1/auth/security-events  -- caller's recent audit events

Every handler delegates to AuthService and unwraps its Result: Failure errors
are raised as SecurityError and rendered by the handler in api/main.py, which
maps the error's status to the HTTP code (400/401/409/423/429/500).

Credential-bearing responses carry Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AccountDeleteRequest,
    ActiveSessionRow,
    AuditEventRow,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetComplete,
    PasswordResetRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import Principal, get_bearer_token, get_client_info, get_current_principal, require_session
from auth.service import AuthService
from core.errors import NotFoundError
from core.results import Failure, Result

# Auth policy:
# - register, login, refresh, forgot-password, reset-password: public
# - logout, logout-all, change-password, account: Bearer token passed to the
#   service, which validates it
# - me: session or API key (get_current_principal)
# - sessions, security-events: session only (require_session)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _unwrap(result: Result):
    if isinstance(result, Failure):
        raise result.error
    return result.value


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    auth = _unwrap(_service(request).register(body.email, body.password, body.name, get_client_info(request)))
    _no_store(response)
    return AuthResponse(
        message="User registered successfully.",
        user=UserResponse.from_profile(auth.user),
        session=SessionResponse.from_tokens(auth.tokens),
    )


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Wrong password and unknown email return the same 401 body.
    """
    auth = _unwrap(_service(request).login(body.email, body.password, get_client_info(request)))
    _no_store(response)
    return AuthResponse(
        message="Login successful.",
        user=UserResponse.from_profile(auth.user),
        session=SessionResponse.from_tokens(auth.tokens),
    )


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> RefreshResponse:
    tokens = _unwrap(_service(request).refresh(body.refresh_token, get_client_info(request)))
    _no_store(response)
    return RefreshResponse(session=SessionResponse.from_tokens(tokens))


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: PasswordResetRequest) -> MessageResponse:
    message = _unwrap(_service(request).request_password_reset(body.email, get_client_info(request)))
    return MessageResponse(message=message)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetComplete) -> MessageResponse:
    _unwrap(_service(request).complete_password_reset(body.token, body.new_password, get_client_info(request)))
    return MessageResponse(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# Session-token endpoints (token validated by the service)
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> MessageResponse:
    _unwrap(_service(request).logout(get_bearer_token(request) or "", get_client_info(request)))
    return MessageResponse(message="Logged out successfully.")


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request) -> MessageResponse:
    count = _unwrap(_service(request).logout_all(get_bearer_token(request) or "", get_client_info(request)))
    return MessageResponse(message=f"Logged out from {count} session(s).")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(request: Request, body: PasswordChangeRequest) -> MessageResponse:
    """Change the caller's password. All sessions, including this one, are revoked."""
    _unwrap(
        _service(request).change_password(
            get_bearer_token(request) or "",
            body.current_password,
            body.new_password,
            get_client_info(request),
        )
    )
    return MessageResponse(message="Password changed successfully. Please log in again.")


@router.delete("/auth/account", response_model=MessageResponse)
def delete_account(request: Request, body: AccountDeleteRequest) -> MessageResponse:
    _unwrap(
        _service(request).delete_account(get_bearer_token(request) or "", body.confirmation, get_client_info(request))
    )
    return MessageResponse(message="Account deleted.")


# ---------------------------------------------------------------------------
# Authenticated read endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> UserResponse:
    profile = _service(request).profile(principal.user_id)
    if profile is None:
        raise NotFoundError("User not found.")
    return UserResponse.from_profile(profile)


@router.get("/auth/sessions", response_model=list[ActiveSessionRow])
def list_sessions(request: Request, principal: Principal = Depends(require_session)) -> list[ActiveSessionRow]:
    return [ActiveSessionRow.from_session(s) for s in _service(request).active_sessions(principal.user_id)]


@router.get("/auth/security-events", response_model=list[AuditEventRow])
def security_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_session),
) -> list[AuditEventRow]:
    return [AuditEventRow.from_event(e) for e in _service(request).recent_events(principal.user_id, limit=limit)]
