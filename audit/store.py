"""
audit/store.py -- Append-only audit log (SQLAlchemy Core).

record() is fire-and-forget: a failing insert is logged with a traceback and
swallowed. An audit outage must never turn a successful login into an error,
nor change which error a failed login reports.

list_entries()/count_entries() back the admin-only GET /api/v1/audit-log
route. Filters are bound parameters built from a fixed set of columns.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, create_engine, event, func, select
from sqlalchemy.engine import Engine

logger = logging.getLogger("recruitauth.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'recruitauth_audit.db'}"

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(50), nullable=False, index=True),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", Integer),
    Column("actor_id", Integer, index=True),
    Column("details", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
)


@dataclass
class AuditEntry:
    """One immutable audit record."""

    action: str
    entity_type: str
    entity_id: int | None = None
    actor_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class AuditLog:
    """Audit log sink and reader.

    Usage:
        audit = AuditLog()
        audit.record("LOGIN", "account", 7, 7, {"email": "a@sunrise.net", "ip": "10.0.0.5"})
        entries = audit.list_entries(action="LOGIN_FAILED", limit=20)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: int | None,
        actor_id: int | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one entry. Never raises."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_log.insert().values(
                        action=action,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        actor_id=actor_id,
                        details=json.dumps(details, default=str) if details else None,
                        created_at=datetime.now(timezone.utc).isoformat(),
                    )
                )
                conn.commit()
        except Exception:
            logger.exception("Audit write failed for action %s on %s %s", action, entity_type, entity_id)

    def _conditions(
        self,
        action: str | None,
        entity_type: str | None,
        actor_id: int | None,
        start: datetime | None,
        end: datetime | None,
    ):
        conditions = []
        if action:
            conditions.append(_audit_log.c.action == action)
        if entity_type:
            conditions.append(_audit_log.c.entity_type == entity_type)
        if actor_id is not None:
            conditions.append(_audit_log.c.actor_id == actor_id)
        # created_at is UTC ISO-8601 text, so string comparison orders by time.
        if start is not None:
            conditions.append(_audit_log.c.created_at >= _as_utc_iso(start))
        if end is not None:
            conditions.append(_audit_log.c.created_at <= _as_utc_iso(end))
        return and_(*conditions) if conditions else None

    def list_entries(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        actor_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """Return matching entries, newest first.

        start and end bound created_at inclusively. Naive datetimes are taken
        as UTC.
        """
        stmt = select(_audit_log)
        where = self._conditions(action, entity_type, actor_id, start, end)
        if where is not None:
            stmt = stmt.where(where)
        stmt = stmt.order_by(_audit_log.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_entries(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        actor_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(_audit_log)
        where = self._conditions(action, entity_type, actor_id, start, end)
        if where is not None:
            stmt = stmt.where(where)
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


def _as_utc_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        actor_id=row.actor_id,
        details=json.loads(row.details) if row.details else {},
        created_at=row.created_at,
    )
