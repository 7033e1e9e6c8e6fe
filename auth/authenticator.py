"""
auth/authenticator.py -- Login decision logic for the directory and local paths.

One login attempt runs Start -> {directory | local} -> {success | failure}.
The starting path is the caller's preferred method.

  Domain pre-filter: emails outside the allowed domain are rejected before
      any directory or store call. This is a cheap filter, not a security
      boundary.

  Directory path: uid lookup by email -> user bind -> profile fetch ->
      admin-group check -> reconcile. "No such directory user" and "wrong
      password" both end in InvalidCredentials with the same message, so the
      response cannot be used to enumerate directory accounts.

  Local path: the identity must exist and carry a local hash, otherwise
      LocalLoginUnavailable. A wrong password is InvalidCredentials.

  Fallback: only DirectoryUnavailable (transport failure, unconfigured
      directory) may trigger one local attempt, and only when the policy
      enables it. Bad credentials are never retried on the other path; that
      would hide brute-force attempts behind a second, quieter attempt.

Every terminal outcome -- success, refusal, or unexpected crash -- produces
exactly one audit entry with the email, the method, the outcome and the
caller IP. The audit sink cannot change the outcome: its failures are logged
and dropped.

register() and set_local_password() live here too because they apply the
same domain and password policy and the same audit contract.

Layer rule: no imports from api/, audit/ or core/. The audit sink is anything
with a record(action, entity_type, entity_id, actor_id, details) method.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from auth.directory import DirectoryClient
from auth.errors import (
    AccountConflict,
    AuthError,
    DirectoryNotFound,
    DirectoryUnavailable,
    DomainNotAllowed,
    IdentityConflict,
    InvalidCredentials,
    InvalidRequest,
    LocalLoginUnavailable,
    RegistrationDisabled,
)
from auth.models import Identity, LoginMethod, Role
from auth.reconcile import Reconciler
from auth.store import IdentityStore, normalize_email
from auth.tokens import hash_password

logger = logging.getLogger("recruitauth.auth")


class AuditSink(Protocol):
    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: int | None,
        actor_id: int | None,
        details: dict[str, Any] | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class AuthPolicy:
    """Login policy knobs. Built from Settings in the application lifespan."""

    allowed_email_domain: str = "sunrise.net"
    admin_group: str = "admins"
    fallback_to_local: bool = True
    password_authority: LoginMethod = LoginMethod.DIRECTORY
    registration_enabled: bool = True
    min_password_length: int = 8


def names_from_email(email: str) -> tuple[str, str]:
    """Default first/last name from the local part: anna.muster@... -> ("Anna", "Muster").

    A convenience fill for local registrations only; the first directory
    login overwrites both fields.
    """
    local_part = email.split("@", 1)[0]
    parts = [p for p in local_part.split(".") if p]
    first = parts[0][:1].upper() + parts[0][1:] if parts else "User"
    last = parts[1][:1].upper() + parts[1][1:] if len(parts) > 1 else ""
    return first, last


class Authenticator:
    """Orchestrates login, registration and local-password changes.

    Usage:
        authenticator = Authenticator(directory, store, Reconciler(store), audit, AuthPolicy())
        identity = authenticator.authenticate("anna.muster@sunrise.net", "pw", LoginMethod.DIRECTORY, "10.0.0.5")
    """

    def __init__(
        self,
        directory: DirectoryClient,
        store: IdentityStore,
        reconciler: Reconciler,
        audit: AuditSink,
        policy: AuthPolicy,
    ) -> None:
        self.directory = directory
        self.store = store
        self.reconciler = reconciler
        self.audit = audit
        self.policy = policy

    # ------------------------------------------------------------------
    # Policy checks
    # ------------------------------------------------------------------

    def _check_domain(self, email: str) -> None:
        local_part, at, domain = email.partition("@")
        if not local_part or not at or not domain or "@" in domain:
            raise InvalidRequest("A valid email address is required.")
        allowed = self.policy.allowed_email_domain.lstrip("@").lower()
        if allowed and domain != allowed:
            raise DomainNotAllowed(f"Only @{allowed} email addresses are allowed.")

    def _check_new_password(self, password: str) -> None:
        minimum = self.policy.min_password_length
        if not password or len(password) < minimum:
            raise InvalidRequest(f"Password must be at least {minimum} characters long.")

    def _audit(
        self,
        action: str,
        entity_id: int | None,
        details: dict[str, Any],
    ) -> None:
        try:
            self.audit.record(action, "account", entity_id, entity_id, details)
        except Exception:
            logger.exception("Audit sink raised for %s", action)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def directory_available(self) -> bool:
        return self.directory.is_service_reachable()

    def authenticate(
        self,
        email: str,
        secret: str,
        method: LoginMethod | str = LoginMethod.DIRECTORY,
        client_ip: str | None = None,
    ) -> Identity:
        """Run one login attempt. Returns the canonical Identity or raises an AuthError."""
        email = normalize_email(email)
        method = LoginMethod(method)
        details: dict[str, Any] = {"email": email, "method": method.value, "ip": client_ip}
        try:
            self._check_domain(email)
            identity = self._attempt(email, secret, method, details)
        except AuthError as exc:
            logger.info("Login failed for %s via %s: %s", email, details["method"], exc.code)
            self._audit("LOGIN_FAILED", None, {**details, "outcome": exc.code})
            raise
        except Exception:
            logger.exception("Unexpected error during login for %s", email)
            self._audit("LOGIN_FAILED", None, {**details, "outcome": "unexpected"})
            raise
        logger.info("Login succeeded for %s via %s", email, details["method"])
        self._audit("LOGIN", identity.id, {**details, "outcome": "success"})
        return identity

    def _attempt(self, email: str, secret: str, method: LoginMethod, details: dict[str, Any]) -> Identity:
        if method is LoginMethod.LOCAL:
            return self._local_login(email, secret)
        try:
            return self._directory_login(email, secret)
        except DirectoryUnavailable as unavailable:
            if not self.policy.fallback_to_local:
                raise
            logger.warning("Directory unavailable for %s; falling back to local login", email)
            details["fallback_from"] = LoginMethod.DIRECTORY.value
            details["method"] = LoginMethod.LOCAL.value
            try:
                return self._local_login(email, secret)
            except LocalLoginUnavailable:
                # Nothing to fall back to; the directory outage is the real answer.
                raise unavailable from None

    def _directory_login(self, email: str, secret: str) -> Identity:
        try:
            uid = self.directory.find_identifier_by_email(email)
        except DirectoryNotFound:
            raise InvalidCredentials() from None
        if not self.directory.verify_credential(uid, secret):
            raise InvalidCredentials()
        try:
            profile = self.directory.fetch_profile(uid)
        except DirectoryNotFound:
            # Entry vanished between bind and fetch.
            raise InvalidCredentials() from None
        is_admin = self.directory.is_group_member(uid, self.policy.admin_group)
        if not profile.email:
            profile = replace(profile, email=email)
        return self.reconciler.reconcile(profile, is_admin)

    def _local_login(self, email: str, secret: str) -> Identity:
        identity = self.store.get_by_email(email)
        if identity is None or not identity.local_credential_hash:
            raise LocalLoginUnavailable()
        if not self.store.verify_local_credential(identity.id, secret):
            raise InvalidCredentials()
        return identity

    # ------------------------------------------------------------------
    # Local account operations
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, client_ip: str | None = None) -> Identity:
        """Create a local-path identity with role standard."""
        email = normalize_email(email)
        details: dict[str, Any] = {"email": email, "ip": client_ip}
        try:
            if not self.policy.registration_enabled:
                raise RegistrationDisabled()
            self._check_domain(email)
            self._check_new_password(password)
            first_name, last_name = names_from_email(email)
            try:
                identity = self.store.create(
                    Identity(
                        email=email,
                        role=Role.standard,
                        first_name=first_name,
                        last_name=last_name,
                        local_credential_hash=hash_password(password),
                    )
                )
            except IdentityConflict:
                raise AccountConflict() from None
        except AuthError as exc:
            self._audit("REGISTER_FAILED", None, {**details, "outcome": exc.code})
            raise
        logger.info("Registered local identity %s for %s", identity.id, email)
        self._audit("REGISTER", identity.id, {**details, "role": Role(identity.role).value})
        return identity

    def set_local_password(
        self,
        email: str,
        current_password: str,
        new_password: str,
        client_ip: str | None = None,
    ) -> Identity:
        """Verify current_password on the authoritative path, then store a new local hash."""
        email = normalize_email(email)
        authority = self.policy.password_authority
        details: dict[str, Any] = {"email": email, "method": authority.value, "ip": client_ip}
        try:
            self._check_domain(email)
            self._check_new_password(new_password)
            identity = self._verify_current_password(email, current_password, authority)
            self.store.set_local_credential(identity.id, hash_password(new_password))
        except AuthError as exc:
            self._audit("SET_LOCAL_PASSWORD_FAILED", None, {**details, "outcome": exc.code})
            raise
        logger.info("Local password set for identity %s", identity.id)
        self._audit("SET_LOCAL_PASSWORD", identity.id, details)
        return identity

    def _verify_current_password(self, email: str, secret: str, authority: LoginMethod) -> Identity:
        if authority is LoginMethod.LOCAL:
            return self._local_login(email, secret)
        try:
            uid = self.directory.find_identifier_by_email(email)
        except DirectoryNotFound:
            raise InvalidCredentials() from None
        if not self.directory.verify_credential(uid, secret):
            raise InvalidCredentials()
        # Same sync as a directory login: creates the row on first contact and
        # refreshes names and role before the password is attached.
        try:
            profile = self.directory.fetch_profile(uid)
        except DirectoryNotFound:
            raise InvalidCredentials() from None
        is_admin = self.directory.is_group_member(uid, self.policy.admin_group)
        return self.reconciler.reconcile(replace(profile, email=email), is_admin)
