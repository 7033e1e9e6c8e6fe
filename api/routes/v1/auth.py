"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  GET  /api/v1/auth/ldap-status          -- directory reachability for the login page
  POST /api/v1/auth/login                -- directory or local login; sets session cookie
  POST /api/v1/auth/logout               -- clears cookie; always 200
  POST /api/v1/auth/register             -- local account creation; sets session cookie
  POST /api/v1/auth/set-local-password   -- enable local login after verifying the current password
  GET  /api/v1/auth/me                   -- current session user (requires auth)

Security:
  [H2] login, register and set-local-password are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that sets or clears the cookie.
  The session token is delivered only as an httpOnly cookie, never in the body.
  AuthError subclasses raised by the authenticator propagate to the handler in
  api/main.py, which maps them to status codes and the error envelope.

Handlers that reach the directory are plain def: FastAPI runs them in its
thread pool, so blocking LDAP I/O never stalls the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LdapStatusResponse,
    LoginRequest,
    RegisterRequest,
    SetLocalPasswordRequest,
    SuccessResponse,
    UserPayload,
    UserResponse,
)
from auth.authenticator import Authenticator
from auth.dependencies import get_current_session, try_get_current_session
from auth.models import Identity, Session
from auth.tokens import SessionIssuer
from core.config import get_settings

# Auth policy:
# - GET  /auth/ldap-status:        public -- the login page shows which method will work
# - POST /auth/login:              public
# - POST /auth/logout:             public -- clearing a cookie needs no prior auth
# - POST /auth/register:           public, disabled by REGISTRATION_ENABLED=false
# - POST /auth/set-local-password: public, the current password is the credential
# - GET  /auth/me:                 requires a valid session
router = APIRouter()


def _rate_limit() -> str:
    return get_settings().login_rate_limit


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _session_response(request: Request, identity: Identity, status_code: int = 200) -> JSONResponse:
    issuer: SessionIssuer = request.app.state.session_issuer
    resp = JSONResponse(
        status_code=status_code,
        content=UserResponse(user=UserPayload.from_identity(identity)).model_dump(by_alias=True),
    )
    issuer.set_cookie(resp, issuer.issue(identity))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/ldap-status", response_model=LdapStatusResponse)
def ldap_status(request: Request) -> JSONResponse:
    """Report whether the directory answers a service bind. Always 200."""
    authenticator: Authenticator = request.app.state.authenticator
    return JSONResponse(
        content=LdapStatusResponse(ldap_available=authenticator.directory_available()).model_dump(by_alias=True)
    )


@router.post("/auth/login", response_model=UserResponse)
@limiter.limit(_rate_limit)  # [H2] below @router so the router registers the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate via the preferred method and set the session cookie.

    Wrong password and unknown directory user return the same
    invalid_credentials error, so the endpoint cannot be used to enumerate
    accounts.
    """
    authenticator: Authenticator = request.app.state.authenticator
    identity = authenticator.authenticate(
        body.email,
        body.password,
        body.preferred_method.to_login_method(),
        _client_ip(request),
    )
    return _session_response(request, identity)


@router.post("/auth/logout", response_model=SuccessResponse)
def logout(request: Request) -> JSONResponse:
    """Clear the session cookie. Idempotent; succeeds with a missing or garbled cookie.

    Tokens are stateless: this only removes the browser's copy. A copied token
    stays valid until it expires.
    """
    session = try_get_current_session(request)
    if session is not None:
        request.app.state.audit.record(
            "LOGOUT", "account", session.subject_id, session.subject_id, {"ip": _client_ip(request)}
        )
    resp = JSONResponse(content=SuccessResponse().model_dump())
    request.app.state.session_issuer.clear_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(_rate_limit)  # [H2]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account (role standard) and sign it in."""
    authenticator: Authenticator = request.app.state.authenticator
    identity = authenticator.register(body.email, body.password, _client_ip(request))
    return _session_response(request, identity, status_code=201)


@router.post("/auth/set-local-password", response_model=SuccessResponse)
@limiter.limit(_rate_limit)  # [H2]
def set_local_password(request: Request, body: SetLocalPasswordRequest) -> JSONResponse:
    """Verify the current password on the authoritative path, then store a local one.

    Lets directory users keep signing in while the directory is unreachable
    (e.g. off the company network).
    """
    authenticator: Authenticator = request.app.state.authenticator
    authenticator.set_local_password(body.email, body.password, body.new_password, _client_ip(request))
    resp = JSONResponse(content=SuccessResponse().model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(session: Session = Depends(get_current_session)) -> UserResponse:
    """Return the user carried by the current session token."""
    return UserResponse(user=UserPayload.from_session(session))
