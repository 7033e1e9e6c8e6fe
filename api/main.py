"""
api/main.py -- FastAPI application entry point for the authentication service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the frontend origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every component exactly once from the resolved Settings and
hands them to each other explicitly:

  DirectoryClient(settings.directory_config())
  IdentityStore(database_url) -> Reconciler(store)
  AuditLog(database_url)
  Authenticator(directory, store, reconciler, audit, AuthPolicy(...))
  SessionIssuer(secret_key, session_ttl_seconds, cookie policy)

Nothing inside auth/ reads configuration on its own, so tests swap any of
these by replacing the lifespan.
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
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from audit.store import AuditLog
from auth.authenticator import Authenticator, AuthPolicy
from auth.directory import DirectoryClient
from auth.errors import AuthError
from auth.models import LoginMethod
from auth.reconcile import Reconciler
from auth.store import IdentityStore
from auth.tokens import SessionIssuer
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("recruitauth.api")

_settings = get_settings()


def build_policy(settings: Settings) -> AuthPolicy:
    return AuthPolicy(
        allowed_email_domain=settings.allowed_email_domain,
        admin_group=settings.ldap_admin_group,
        fallback_to_local=settings.auth_fallback_to_local,
        password_authority=LoginMethod.LOCAL if settings.password_authority == "local" else LoginMethod.DIRECTORY,
        registration_enabled=settings.registration_enabled,
        min_password_length=settings.min_password_length,
    )


def build_session_issuer(settings: Settings) -> SessionIssuer:
    return SessionIssuer(
        settings.secret_key,
        settings.session_ttl_seconds,
        cookie_name=settings.session_cookie_name,
        secure_cookies=settings.secure_cookies,
        same_site=settings.session_same_site,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Construct the auth components on startup and release them on shutdown."""
    settings = get_settings()
    logger.info("Auth service starting up")

    directory = DirectoryClient(settings.directory_config())
    if directory.configured:
        logger.info("Directory configured at %s (base %s)", settings.ldap_url, settings.ldap_base_dn)
    else:
        logger.warning("Directory service credentials not set -- only local login will work")

    app.state.identity_store = IdentityStore(settings.database_url)
    app.state.audit = AuditLog(settings.database_url)
    app.state.authenticator = Authenticator(
        directory,
        app.state.identity_store,
        Reconciler(app.state.identity_store),
        app.state.audit,
        build_policy(settings),
    )
    app.state.session_issuer = build_session_issuer(settings)
    logger.info("Auth initialized (%d accounts)", app.state.identity_store.count())

    yield

    app.state.identity_store.close()
    app.state.audit.close()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Recruiting Auth API",
    description="Directory and local authentication with stateless session cookies.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy to HTTP.

    The message is the class's client-safe text. InvalidCredentials carries
    the same text for every cause; nothing from the underlying failure leaks.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    response = _error(exc.status_code, exc.code, exc.message)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed fields are a 400, like every other input error."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
    return _error(400, "validation_error", "Request validation failed.", ", ".join(f for f in fields if f) or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the server log only. The client receives a generic
    message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
