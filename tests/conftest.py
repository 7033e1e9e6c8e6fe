"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - FakeDirectory: in-process stand-in for DirectoryClient (no LDAP server)
  - memory_db_url(): unique named shared-memory SQLite URI per test
  - store / audit / directory / authenticator: unit-level fixtures
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - client: TestClient over the real app with the patched lifespan
  - admin_headers / user_headers: Authorization headers for pre-seeded identities

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process. Each test
gets its own name, so no state leaks between tests.

The DEBUG env var must be set before any app import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.

TrustedHostMiddleware does not list "testserver", so the client uses
base_url="http://localhost".
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.store import AuditLog
from auth.authenticator import Authenticator, AuthPolicy
from auth.directory import group_matches
from auth.errors import DirectoryNotFound, DirectoryUnavailable
from auth.models import DirectoryProfile, Identity, Role
from auth.reconcile import Reconciler
from auth.store import IdentityStore
from auth.tokens import SessionIssuer, hash_password

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"
ADMIN_GROUP_DN = "cn=admins,cn=groups,cn=accounts,dc=lab,dc=local"
STAFF_GROUP_DN = "cn=staff,cn=groups,cn=accounts,dc=lab,dc=local"


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every TestClient request comes from the same IP; start each test with fresh counters."""
    limiter.reset()


# ---------------------------------------------------------------------------
# Fake directory
# ---------------------------------------------------------------------------


@dataclass
class DirectoryUser:
    uid: str
    email: str
    password: str
    given_name: str | None = None
    surname: str | None = None
    groups: list[str] = field(default_factory=list)


class FakeDirectory:
    """Duck-typed DirectoryClient backed by a dict.

    Set available=False to simulate a network outage: every operation then
    raises DirectoryUnavailable and the probe reports False.
    """

    def __init__(self) -> None:
        self.users: dict[str, DirectoryUser] = {}
        self.available = True
        self.configured = True
        self.binds: list[str] = []

    def add_user(self, uid: str, email: str, password: str, **kwargs) -> DirectoryUser:
        user = DirectoryUser(uid=uid, email=email, password=password, **kwargs)
        self.users[uid] = user
        return user

    def _check(self) -> None:
        if not (self.configured and self.available):
            raise DirectoryUnavailable()

    def find_identifier_by_email(self, email: str) -> str:
        self._check()
        for user in self.users.values():
            if user.email.lower() == email.lower():
                return user.uid
        raise DirectoryNotFound(email)

    def verify_credential(self, identifier: str, secret: str) -> bool:
        self._check()
        self.binds.append(identifier)
        user = self.users.get(identifier)
        return bool(secret) and user is not None and user.password == secret

    def fetch_profile(self, identifier: str) -> DirectoryProfile:
        self._check()
        user = self.users.get(identifier)
        if user is None:
            raise DirectoryNotFound(identifier)
        return DirectoryProfile(
            directory_id=user.uid,
            email=user.email.lower(),
            given_name=user.given_name,
            surname=user.surname,
            groups=frozenset(user.groups),
        )

    def is_group_member(self, identifier: str, group_name: str) -> bool:
        self._check()
        user = self.users.get(identifier)
        if user is None:
            return False
        return any(group_matches(dn, group_name) for dn in user.groups)

    def is_service_reachable(self) -> bool:
        return self.configured and self.available


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "test") -> str:
    """Return a unique named shared-memory SQLite URI."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def db_url() -> str:
    return memory_db_url("auth")


@pytest.fixture
def store(db_url: str) -> Generator[IdentityStore, None, None]:
    identity_store = IdentityStore(db_url)
    yield identity_store
    identity_store.close()


@pytest.fixture
def audit(db_url: str) -> Generator[AuditLog, None, None]:
    audit_log = AuditLog(db_url)
    yield audit_log
    audit_log.close()


@pytest.fixture
def directory() -> FakeDirectory:
    fake = FakeDirectory()
    fake.add_user(
        "amuster",
        "anna.muster@sunrise.net",
        "directory-pass",
        given_name="Anna",
        surname="Muster",
        groups=[STAFF_GROUP_DN],
    )
    fake.add_user(
        "bboss",
        "bernd.boss@sunrise.net",
        "boss-pass-123",
        given_name="Bernd",
        surname="Boss",
        groups=[STAFF_GROUP_DN, ADMIN_GROUP_DN],
    )
    return fake


@pytest.fixture
def authenticator(directory: FakeDirectory, store: IdentityStore, audit: AuditLog) -> Authenticator:
    return Authenticator(directory, store, Reconciler(store), audit, AuthPolicy())


@pytest.fixture
def issuer() -> SessionIssuer:
    return SessionIssuer(TEST_SECRET, 3600)


def seed_local_identity(
    store: IdentityStore,
    email: str,
    password: str | None = "local-pass-123",
    role: Role = Role.standard,
) -> Identity:
    """Create a local identity directly in the store (bypasses the authenticator)."""
    return store.create(
        Identity(
            email=email,
            role=role,
            first_name="Test",
            last_name="User",
            local_credential_hash=hash_password(password) if password else None,
        )
    )


@pytest.fixture
def seed(store: IdentityStore):
    """Return a callable that seeds a local identity into this test's store."""

    def _seed(email: str, password: str | None = "local-pass-123", role: Role = Role.standard) -> Identity:
        return seed_local_identity(store, email, password, role)

    return _seed


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def _patch_lifespan(
    authenticator: Authenticator,
    store: IdentityStore,
    audit: AuditLog,
    issuer: SessionIssuer,
):
    """Return an async context manager that replaces the real lifespan.

    Wires the test components into app.state so TestClient routes see the
    fake directory and isolated in-memory DBs rather than real services.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identity_store = store
        app.state.audit = audit
        app.state.authenticator = authenticator
        app.state.session_issuer = issuer
        yield

    return test_lifespan


@pytest.fixture
def client(
    authenticator: Authenticator,
    store: IdentityStore,
    audit: AuditLog,
    issuer: SessionIssuer,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app with real route handlers and fake infrastructure."""
    app.router.lifespan_context = _patch_lifespan(authenticator, store, audit, issuer)
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(store: IdentityStore, issuer: SessionIssuer) -> dict[str, str]:
    admin = seed_local_identity(store, "root.admin@sunrise.net", role=Role.administrator)
    return {"Authorization": f"Bearer {issuer.issue(admin)}"}


@pytest.fixture
def user_headers(store: IdentityStore, issuer: SessionIssuer) -> dict[str, str]:
    user = seed_local_identity(store, "plain.user@sunrise.net")
    return {"Authorization": f"Bearer {issuer.issue(user)}"}
