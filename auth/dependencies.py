"""
auth/dependencies.py -- FastAPI Depends() helpers for session checks.

Two token sources are checked in priority order:
  1. Session cookie -- set by POST /login and POST /register.
  2. Authorization: Bearer <token> header -- for non-browser clients that
     copied the cookie value.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises 401 (SessionInvalid/SessionExpired).
require_admin() wraps get_current_session() and raises HTTP 403 unless the
role is exactly administrator.

The session is taken at face value: it is stateless, so a role change lands
on the next login, when a new token is issued.

Layer rule: may import from fastapi (Request/HTTPException) because this module
is part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import SessionInvalid
from auth.models import Role, Session
from auth.tokens import SessionIssuer


def _token_from_request(request: Request, issuer: SessionIssuer) -> str | None:
    token: str | None = request.cookies.get(issuer.cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_session(request: Request) -> Session | None:
    """Return the verified Session, or None. Never raises."""
    issuer: SessionIssuer = request.app.state.session_issuer
    return issuer.peek(_token_from_request(request, issuer))


def get_current_session(request: Request) -> Session:
    """Require a valid session. Expired and invalid tokens both become 401.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: Session = Depends(get_current_session)): ...
    """
    issuer: SessionIssuer = request.app.state.session_issuer
    token = _token_from_request(request, issuer)
    if token is None:
        raise SessionInvalid()
    return issuer.verify(token)


def require_admin(request: Request) -> Session:
    """Require role == administrator. 401 if unauthenticated, 403 otherwise."""
    session = get_current_session(request)
    if session.role != Role.administrator:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Administrator access required."},
        )
    return session
