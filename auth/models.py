"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the
reconciler and routes do the work; these only own domain shape.

Layer rule: no imports from api/, audit/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Authorization role. Written only by directory reconciliation or an
    administrative action, never taken from a request body."""

    standard = "standard"
    administrator = "administrator"


class LoginMethod(str, Enum):
    """Credential path for one login attempt."""

    DIRECTORY = "directory"
    LOCAL = "local"


@dataclass
class Identity:
    """One row of the local account table.

    email is the natural key and is always stored lowercased.

    directory_id is None until the first successful directory login links the
    row to its directory entry. local_credential_hash is None unless the user
    registered locally or called set-local-password; without it the local
    login path is closed for this identity.
    """

    email: str
    role: Role = Role.standard
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    directory_id: str | None = None
    local_credential_hash: str | None = None  # bcrypt
    last_directory_sync_at: str | None = None  # ISO 8601 UTC
    created_at: str | None = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def is_admin(self) -> bool:
        return self.role == Role.administrator


@dataclass(frozen=True)
class DirectoryProfile:
    """Directory entry as read with the service credential.

    Transient: handed to the reconciler once and then discarded. groups holds
    the raw memberOf DNs.
    """

    directory_id: str
    email: str
    given_name: str | None = None
    surname: str | None = None
    groups: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Session:
    """Decoded contents of a verified session token. Never stored server-side."""

    subject_id: int
    email: str
    display_name: str
    role: Role
    issued_at: int  # epoch seconds
    expires_at: int  # epoch seconds

    @property
    def is_admin(self) -> bool:
        return self.role == Role.administrator
