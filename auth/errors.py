"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every error that can reach a client derives from AuthError and carries its
own machine-readable code, a client-safe message and the HTTP status the API
layer maps it to. api/main.py owns the single exception handler that turns
these into the JSON error envelope, so route handlers just let them raise.

DirectoryNotFound and IdentityConflict are internal signals. The
authenticator and reconciler translate them before anything reaches HTTP.

Layer rule: no imports from api/, audit/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for client-facing authentication failures."""

    code = "auth_error"
    status_code = 400
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class DomainNotAllowed(AuthError):
    code = "domain_not_allowed"
    status_code = 400
    message = "Only addresses of the permitted email domain may sign in."


class InvalidRequest(AuthError):
    code = "validation_error"
    status_code = 400
    message = "Request validation failed."


class InvalidCredentials(AuthError):
    # Identical for "no such user" and "wrong password" [enumeration guard].
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class LocalLoginUnavailable(AuthError):
    code = "local_login_unavailable"
    status_code = 401
    message = "No local password is set for this account. Sign in via the directory or set a local password first."


class RegistrationDisabled(AuthError):
    code = "registration_disabled"
    status_code = 403
    message = "Local registration is disabled."


class AccountConflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "An account with this email already exists."


class ReconciliationFailed(AuthError):
    code = "reconciliation_failed"
    status_code = 500
    message = "The account could not be synchronized."


class DirectoryUnavailable(AuthError):
    code = "directory_unavailable"
    status_code = 503
    message = "The directory service is unavailable. Retry later or use the local login."


class SessionInvalid(AuthError):
    code = "session_invalid"
    status_code = 401
    message = "Authentication required."


class SessionExpired(SessionInvalid):
    code = "session_expired"
    message = "Session expired."


# ---------------------------------------------------------------------------
# Internal signals
# ---------------------------------------------------------------------------


class DirectoryNotFound(Exception):
    """No directory entry matched the lookup."""


class IdentityConflict(Exception):
    """A unique constraint (email or directory_id) rejected a write."""
