"""
auth/store.py -- SQLAlchemy Core persistence layer for local identities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity is the mapper. Route, reconciler and authenticator code never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are stored lowercased and every lookup lowercases its argument, so
  the UNIQUE(email) constraint is effectively case-insensitive.

  Unique violations on create surface as IdentityConflict, not as a generic
  failure. The reconciler relies on that to resolve two concurrent first
  logins for the same user: the loser re-fetches and updates.

Connections:
  Each method opens one short-lived connection and commits before returning.
  No transaction is ever held while the caller talks to the directory.

Schema migration notes:
  local_credential_hash / last_directory_sync_at columns are added via
  ALTER TABLE ADD COLUMN on startup when an older accounts table lacks them.

Layer rule: no imports from api/, audit/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import IdentityConflict
from auth.models import Identity, Role
from auth.tokens import DUMMY_HASH, verify_password

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'recruitauth_accounts.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    # sqlite_autoincrement: ids of deleted rows are never handed out again.
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lowercased
    Column("directory_id", String(255), unique=True),  # NULL until first directory login
    Column("local_credential_hash", Text),  # NULL = local login disabled
    Column("role", String(30), nullable=False, server_default=Role.standard.value),
    Column("first_name", String(255), nullable=False, server_default=""),
    Column("last_name", String(255), nullable=False, server_default=""),
    Column("last_directory_sync_at", String(32)),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_MIGRATED_COLUMNS = {
    "local_credential_hash": "TEXT",
    "last_directory_sync_at": "TEXT",
}


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a login write."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity rows.

    Usage:
        store = IdentityStore("sqlite:///accounts.db")
        identity = store.create(Identity(email="anna.muster@sunrise.net"))
        store.set_local_credential(identity.id, hash_password("secret123"))
        store.verify_local_credential(identity.id, "secret123")   # True
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_columns()

    def _ensure_columns(self) -> None:
        """Add columns introduced after the accounts table was first deployed.

        SQLite has no ADD COLUMN IF NOT EXISTS, so PRAGMA table_info is
        checked first.
        """
        if self.engine.dialect.name != "sqlite":
            return
        with self.engine.connect() as conn:
            rows = conn.execute(text("PRAGMA table_info(accounts)")).fetchall()
            existing_cols = {row[1] for row in rows}
            for name, ddl_type in _MIGRATED_COLUMNS.items():
                if name not in existing_cols:
                    conn.execute(text(f"ALTER TABLE accounts ADD COLUMN {name} {ddl_type}"))  # noqa: S608
            conn.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM accounts")).scalar()
        return result or 0

    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Identity | None:
        """Look up by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_email_or_directory_id(self, email: str, directory_id: str | None) -> Identity | None:
        """Return the row matching email OR directory_id.

        Either match counts: a user whose uid changed keeps their row via the
        email, and one whose email changed keeps it via the uid. When two
        different rows match, the email match wins and update_profile_fields
        moves the uid onto it.
        """
        email = normalize_email(email)
        condition = _accounts.c.email == email
        if directory_id:
            condition = or_(condition, _accounts.c.directory_id == directory_id)
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().where(condition)).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.email == email:
                return _row_to_identity(row)
        return _row_to_identity(rows[0])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with its assigned id.

        Raises IdentityConflict if the email or directory_id already exists.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        email=normalize_email(identity.email),
                        directory_id=identity.directory_id,
                        local_credential_hash=identity.local_credential_hash,
                        role=Role(identity.role).value,
                        first_name=identity.first_name or "",
                        last_name=identity.last_name or "",
                        last_directory_sync_at=identity.last_directory_sync_at,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
                new_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise IdentityConflict(identity.email) from exc
        created = self.get_by_id(new_id)
        if created is None:
            raise LookupError(f"Identity {new_id} not found after insert")
        return created

    def update_profile_fields(
        self,
        identity_id: int,
        *,
        first_name: str,
        last_name: str,
        role: Role,
        last_directory_sync_at: str,
        directory_id: str | None = None,
    ) -> Identity:
        """Overwrite the directory-sourced fields. local_credential_hash is never touched.

        When directory_id is still linked to a different row (the user's
        directory email changed onto an address that already has a row), that
        stale link is cleared in the same transaction. The email is the
        natural key, so the row matching it keeps the uid.

        Raises LookupError if the row no longer exists and IdentityConflict if
        a concurrent write re-links directory_id before the commit.
        """
        values = {
            "first_name": first_name,
            "last_name": last_name,
            "role": Role(role).value,
            "last_directory_sync_at": last_directory_sync_at,
        }
        if directory_id is not None:
            values["directory_id"] = directory_id
        try:
            with self.engine.connect() as conn:
                if directory_id is not None:
                    conn.execute(
                        _accounts.update()
                        .where(_accounts.c.directory_id == directory_id, _accounts.c.id != identity_id)
                        .values(directory_id=None)
                    )
                result = conn.execute(_accounts.update().where(_accounts.c.id == identity_id).values(**values))
                if result.rowcount == 0:
                    conn.rollback()
                else:
                    conn.commit()
        except IntegrityError as exc:
            raise IdentityConflict(directory_id or str(identity_id)) from exc
        if result.rowcount == 0:
            raise LookupError(f"Identity {identity_id} not found")
        updated = self.get_by_id(identity_id)
        if updated is None:
            raise LookupError(f"Identity {identity_id} not found")
        return updated

    def set_local_credential(self, identity_id: int, credential_hash: str) -> None:
        """Store (or replace) the bcrypt hash that enables local-path login."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == identity_id).values(local_credential_hash=credential_hash)
            )
            conn.commit()
        if result.rowcount == 0:
            raise LookupError(f"Identity {identity_id} not found")

    def set_role(self, identity_id: int, role: Role) -> bool:
        """Administrative role change. Returns False if identity_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == identity_id).values(role=Role(role).value)
            )
            conn.commit()
        return result.rowcount > 0

    def verify_local_credential(self, identity_id: int, secret: str) -> bool:
        """Check secret against the stored hash in constant time.

        Returns False (never raises) when the row or its hash is absent. bcrypt
        still runs against DUMMY_HASH in that case so timing does not reveal
        whether a local password exists [C1].
        """
        with self.engine.connect() as conn:
            stored = conn.execute(
                select(_accounts.c.local_credential_hash).where(_accounts.c.id == identity_id)
            ).scalar()
        if not stored:
            verify_password(secret, DUMMY_HASH)
            return False
        return verify_password(secret, stored)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        directory_id=row.directory_id,
        local_credential_hash=row.local_credential_hash,
        role=Role(row.role),
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        last_directory_sync_at=row.last_directory_sync_at,
        created_at=row.created_at,
    )
