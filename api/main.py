"""
api/main.py -- FastAPI application entry point for the PNIT security API.

Exposes the identity and session security engine over HTTP: registration,
login, session refresh/revocation, password reset and change, account
deletion, and API key management.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
Rate limiting is not a middleware: AuthService applies it per endpoint
(login/register/password_reset) and auth.dependencies per client address
("api_auth") and per API key ("api").

Lifespan opens the SecurityStore and wires every component with
build_auth_service(); shutdown disposes the engine.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from auth.service import PasswordResetNotifier, build_auth_service, log_reset_notifier
from auth.store import SecurityStore
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.errors import RateLimitedError, SecurityError, Status

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pnit.api")


def create_app(
    settings: Settings | None = None,
    clock: Clock = utcnow,
    notifier: PasswordResetNotifier = log_reset_notifier,
) -> FastAPI:
    """Build the FastAPI application.

    settings, clock and notifier are injectable so tests can run the full
    HTTP stack against an isolated database and a controllable clock.
    """
    settings = settings or get_settings()

    # -----------------------------------------------------------------------
    # Lifespan -- startup / shutdown
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("PNIT security API starting up")
        app.state.store = SecurityStore(settings.database_url)
        app.state.auth_service = build_auth_service(settings, app.state.store, clock=clock, notifier=notifier)
        logger.info(
            "Security engine initialized (key_id=%s, lockout=%d/%ds)",
            app.state.auth_service.secrets.key_id,
            settings.lockout_threshold,
            settings.lockout_duration_seconds,
        )

        yield

        app.state.store.close()
        logger.info("PNIT security API shutdown complete")

    app = FastAPI(
        title="PNIT Security API",
        description="Identity, session, and API key management.",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    # -----------------------------------------------------------------------
    # Middleware stack
    # -----------------------------------------------------------------------

    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
        max_age=3600,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    # -----------------------------------------------------------------------
    # Router registration
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])

    # -----------------------------------------------------------------------
    # Exception handlers
    #
    # All handlers return the same ErrorResponse envelope so API clients can
    # parse errors uniformly without inspecting status codes to choose a schema.
    # -----------------------------------------------------------------------

    @app.exception_handler(SecurityError)
    async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
        """Render a typed engine error with its mapped HTTP status.

        InternalError and its relatives carry only a generic message; the
        underlying cause was logged where it was caught.
        """
        if exc.status is Status.internal_error:
            logger.error("Internal error (%s) on %s %s", exc.code, request.method, request.url.path)
        detail = exc.detail() or None
        response = JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
        )
        if isinstance(exc, RateLimitedError):
            response.headers["Retry-After"] = str(exc.retry_after)
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return 422 with structured error when request body or query params fail validation."""
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="validation_error",
                    message="Request validation failed.",
                    detail=str(exc.errors()),
                )
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Return a structured error for all FastAPI/Starlette HTTP exceptions.

        When detail is already a structured dict, use it directly as the error
        field rather than stringifying it.
        """
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
            ).model_dump(),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all handler for unexpected server errors.

        The raw exception goes to the log only, never to the response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
            ).model_dump(),
        )

    # -----------------------------------------------------------------------
    # Health endpoint
    #
    # Not rate limited: load balancers and monitors must not be throttled.
    # -----------------------------------------------------------------------

    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return liveness, database reachability and the dropped-audit counter."""
        database_ok = request.app.state.store.ping()
        return HealthResponse(
            status="ok" if database_ok else "degraded",
            version=API_VERSION,
            database="ok" if database_ok else "unavailable",
            audit_dropped=request.app.state.auth_service.audit.dropped_events,
        )

    return app
