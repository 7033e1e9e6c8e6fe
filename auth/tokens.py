"""
auth/tokens.py -- Session tokens, password hashing and the session cookie.

Security design decisions:
  Sessions: python-jose with HS256. The token is the whole session -- nothing
       is stored server-side -- so validity is signature + expiry only.
       Signing and verification both happen on this server, so a symmetric
       key is sufficient. One TTL applies to every login path.

  Expiry: checked against the issuer's own clock rather than inside
       jwt.decode(), so "valid until exactly exp, invalid one second later"
       holds and tests can drive time without sleeping. Signature failure and
       expiry raise different exceptions (SessionInvalid / SessionExpired);
       the API maps both to 401.

  Transport: the token travels only in an httpOnly cookie. It is never put in
       a JSON body, where page scripts could read it.

  Passwords: bcrypt directly (no passlib wrapper). bcrypt.checkpw compares in
       constant time. DUMMY_HASH lets callers burn the same bcrypt work when
       no real hash exists, so response time does not reveal whether a local
       password is set [C1].

Layer rule: no imports from api/, audit/ or core/. The secret and TTL are
passed in by the application lifespan.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import bcrypt
from jose import JWTError, jwt

from auth.errors import SessionExpired, SessionInvalid
from auth.models import Identity, Role, Session

logger = logging.getLogger("recruitauth.tokens")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes. The API layer caps passwords at 255
    characters, which keeps the input bounded.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("recruitauth_timing_dummy")


# ---------------------------------------------------------------------------
# Session issuer
# ---------------------------------------------------------------------------


class SessionIssuer:
    """Issues and verifies signed session tokens and owns the cookie policy.

    Usage:
        issuer = SessionIssuer(settings.secret_key, ttl_seconds=3600)
        token = issuer.issue(identity)
        session = issuer.verify(token)      # raises SessionInvalid / SessionExpired
        issuer.set_cookie(response, token)
    """

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int,
        *,
        cookie_name: str = "access_token",
        secure_cookies: bool = False,
        same_site: str = "lax",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self.cookie_name = cookie_name
        self.secure_cookies = secure_cookies
        self.same_site = same_site
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> str:
        """Encode a signed token for identity. expires_at = issued_at + TTL."""
        if identity.id is None:
            raise ValueError("Cannot issue a session for an unsaved identity")
        issued_at = self._now()
        payload = {
            "sub": str(identity.id),
            "email": identity.email,
            "name": identity.display_name,
            "role": Role(identity.role).value,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Session:
        """Check the signature, then the expiry. Returns the decoded Session."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise SessionInvalid() from exc
        try:
            session = Session(
                subject_id=int(payload["sub"]),
                email=str(payload["email"]),
                display_name=str(payload["name"]),
                role=Role(payload["role"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionInvalid() from exc
        if self._now() > session.expires_at:
            raise SessionExpired()
        return session

    def peek(self, token: str | None) -> Session | None:
        """Soft variant of verify(): None for a missing, invalid or expired token."""
        if not token:
            return None
        try:
            return self.verify(token)
        except SessionInvalid:
            return None

    # ------------------------------------------------------------------
    # Cookie
    # ------------------------------------------------------------------

    def set_cookie(self, response, token: str) -> None:
        """Write the session token as an httpOnly cookie on the response.

        httponly=True: JS cannot read the cookie (XSS mitigation).
        samesite: "lax" by default, "strict" when configured.
        secure: only sent over HTTPS when SECURE_COOKIES=true (production).
        max_age: matches the token TTL so both expire together.
        """
        response.set_cookie(
            self.cookie_name,
            value=token,
            max_age=self.ttl_seconds,
            path="/",
            httponly=True,
            secure=self.secure_cookies,
            samesite=self.same_site,
        )

    def clear_cookie(self, response) -> None:
        response.delete_cookie(
            self.cookie_name,
            path="/",
            httponly=True,
            secure=self.secure_cookies,
            samesite=self.same_site,
        )
