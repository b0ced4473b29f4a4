"""
auth/dependencies.py -- FastAPI Depends() helpers for request authentication.

Two auth methods are checked in priority order:
  1. Authorization: Bearer <session token> -- issued by login/register/refresh.
  2. X-API-Key header -- long-lived keys issued by SecretStore, for scripts.

Both converge on a Principal. Every X-API-Key attempt passes the "api_auth"
rate limit per client address before any key is decrypted; an authenticated
key then passes the "api" limit, keyed per key.

The client address is the socket peer. X-Forwarded-For and X-Real-IP are
only believed when the peer is listed in Settings.trusted_proxies.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_session() additionally rejects API-key principals: managing keys and
credentials requires an interactive session.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because it is part of the FastAPI dependency
injection system. It does not import from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.audit import AuditEventType
from auth.models import ClientInfo
from core.errors import RateLimitedError

_DEFAULT_IP = "127.0.0.1"
_DEFAULT_USER_AGENT = "Unknown"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request."""

    user_id: int
    method: str  # "session" or "api_key"
    session_token: str | None = None
    api_key_id: int | None = None
    scopes: tuple[str, ...] = ()


def _trusted_proxies(request: Request) -> frozenset[str]:
    settings = getattr(request.app.state, "settings", None)
    return frozenset(settings.trusted_proxies) if settings is not None else frozenset()


def get_client_info(request: Request) -> ClientInfo:
    """Extract origin address and user agent for sessions and audit events.

    The address is the socket peer. Forwarding headers are only read when
    that peer is a configured trusted proxy; then the rightmost
    X-Forwarded-For hop that is not itself a trusted proxy wins (hops to its
    left are client-supplied), falling back to X-Real-IP.
    """
    peer = request.client.host if request.client is not None else ""
    ip = peer
    trusted = _trusted_proxies(request)
    if peer and peer in trusted:
        hops = [h.strip() for h in request.headers.get("X-Forwarded-For", "").split(",") if h.strip()]
        untrusted = [h for h in hops if h not in trusted]
        if untrusted:
            ip = untrusted[-1]
        elif hops:
            ip = hops[0]
        else:
            ip = request.headers.get("X-Real-IP", "").strip() or peer
    return ClientInfo(
        ip_address=ip or _DEFAULT_IP,
        user_agent=request.headers.get("User-Agent") or _DEFAULT_USER_AGENT,
    )


def get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _enforce_rate_limit(request: Request, identifier: str, endpoint: str) -> None:
    """Charge one request against `endpoint` for `identifier`; raise RateLimitedError when over."""
    service = request.app.state.auth_service
    decision = service.limiter.check(identifier, endpoint)
    if not decision.allowed:
        client = get_client_info(request)
        service.audit.record(
            None,
            AuditEventType.RATE_LIMIT_EXCEEDED,
            client.ip_address,
            client.user_agent,
            False,
            {"endpoint": endpoint},
        )
        raise RateLimitedError(decision.retry_after)


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate via Bearer session token, then X-API-Key.

    Returns None on any failure. Never raises for bad credentials. Every
    X-API-Key attempt is first charged to the "api_auth" rule per client
    address, so guesses are throttled before any key is decrypted; an
    authenticated key is then charged to the "api" rule per key. Either
    limit raises RateLimitedError when exceeded.
    """
    service = request.app.state.auth_service

    token = get_bearer_token(request)
    if token:
        context = service.sessions.validate(token)
        if context is not None:
            return Principal(user_id=context.user_id, method="session", session_token=token)

    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        _enforce_rate_limit(request, get_client_info(request).ip_address, "api_auth")
        secret = service.secrets.authenticate(raw_key)
        if secret is not None:
            _enforce_rate_limit(request, f"api_key:{secret.id}", "api")
            return Principal(
                user_id=secret.user_id,
                method="api_key",
                api_key_id=secret.id,
                scopes=tuple(secret.scopes),
            )

    return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_session(request: Request) -> Principal:
    """Require a Bearer session. Raises 401 if unauthenticated, 403 for API-key callers."""
    principal = get_current_principal(request)
    if principal.method != "session":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "This action requires an interactive session."},
        )
    return principal
