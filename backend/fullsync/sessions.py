"""
Sync session records and their state machine.

Lifecycle:
    PREPARING -> TRANSFERRING -> RESTORING -> COMPLETED
    FAILED is reachable from every non-terminal state.

    `transition()` is the only way the orchestrator changes a session. It
    refuses backward moves and moves out of COMPLETED/FAILED, stamps
    `completed_at` on terminal states and persists through the store.

Stores:
    - `InMemorySyncSessionStore` for development and tests.
    - `DBSyncSessionStore` persists to `public.full_sync_sessions` via psycopg3.
    Sessions are never deleted here; retention is handled elsewhere.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
import logging
import re
from threading import Lock
from typing import Any, Dict, Optional, Protocol
import uuid

from backend.fullsync.config import SyncConfig
from backend.fullsync.errors import InvalidTransitionError, SessionNotFoundError

try:
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

LOG = logging.getLogger("peersync.fullsync.sessions")


class SyncDirection(str, Enum):
    PUSH = "PUSH"
    PULL = "PULL"


class SyncStatus(str, Enum):
    PREPARING = "PREPARING"
    TRANSFERRING = "TRANSFERRING"
    RESTORING = "RESTORING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


_ORDER = {
    SyncStatus.PREPARING: 0,
    SyncStatus.TRANSFERRING: 1,
    SyncStatus.RESTORING: 2,
    SyncStatus.COMPLETED: 3,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class SyncSession:
    session_id: str
    direction: SyncDirection
    status: SyncStatus = SyncStatus.PREPARING
    phase: Optional[str] = None
    current_step: Optional[str] = None
    progress: int = 0
    total_records: int = 0
    transferred_records: int = 0
    transferred_bytes: int = 0
    transfer_speed: Optional[float] = None
    error_message: Optional[str] = None
    source_node_id: Optional[str] = None
    peer_url: Optional[str] = None
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """camelCase view used by the HTTP API."""
        return {
            "sessionId": self.session_id,
            "direction": self.direction.value,
            "status": self.status.value,
            "phase": self.phase,
            "currentStep": self.current_step,
            "progress": self.progress,
            "totalRecords": self.total_records,
            "transferredRecords": self.transferred_records,
            "transferredBytes": self.transferred_bytes,
            "transferSpeed": self.transfer_speed,
            "errorMessage": self.error_message,
            "sourceNodeId": self.source_node_id,
            "peerUrl": self.peer_url,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


_MUTABLE_FIELDS = {
    "phase",
    "current_step",
    "progress",
    "total_records",
    "transferred_records",
    "transferred_bytes",
    "transfer_speed",
    "error_message",
}


class SyncSessionStore(Protocol):
    def create(self, session: SyncSession) -> SyncSession: ...

    def get(self, session_id: str) -> Optional[SyncSession]: ...

    def save(self, session: SyncSession) -> None: ...


def advance(session: SyncSession, status: Optional[SyncStatus] = None, **fields: Any) -> SyncSession:
    """Return a copy of `session` moved to `status` with `fields` applied.

    Raises InvalidTransitionError on backward moves, on any change to a
    terminal session, and on unknown fields. Progress never decreases.
    """
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise InvalidTransitionError(f"Unknown session fields: {', '.join(sorted(unknown))}")
    if session.status.terminal:
        raise InvalidTransitionError(f"Session {session.session_id} is already {session.status.value}")
    target = status or session.status
    if target != SyncStatus.FAILED and _ORDER[target] < _ORDER[session.status]:
        raise InvalidTransitionError(
            f"Session {session.session_id} cannot move from {session.status.value} to {target.value}"
        )
    progress = fields.get("progress")
    if progress is not None:
        fields["progress"] = max(session.progress, min(100, int(progress)))
    updated = replace(session, status=target, **fields)
    if target.terminal:
        updated.completed_at = _now()
    return updated


def transition(
    store: SyncSessionStore,
    session: SyncSession,
    status: Optional[SyncStatus] = None,
    **fields: Any,
) -> SyncSession:
    """Apply `advance()` and persist the result."""
    updated = advance(session, status, **fields)
    store.save(updated)
    LOG.info(
        "session %s %s phase=%s progress=%d%s",
        updated.session_id,
        updated.status.value,
        updated.phase,
        updated.progress,
        f" error={updated.error_message}" if updated.error_message else "",
    )
    return updated


# ------------------------------ Stores --------------------------------------


class InMemorySyncSessionStore:
    def __init__(self) -> None:
        self._data: Dict[str, SyncSession] = {}
        self._lock = Lock()

    def create(self, session: SyncSession) -> SyncSession:
        with self._lock:
            self._data[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[SyncSession]:
        with self._lock:
            return self._data.get(session_id)

    def save(self, session: SyncSession) -> None:
        with self._lock:
            if session.session_id not in self._data:
                raise SessionNotFoundError(f"Unknown session {session.session_id}")
            self._data[session.session_id] = session


DDL = """
create table if not exists {table} (
    session_id          text primary key,
    direction           text not null check (direction in ('PUSH', 'PULL')),
    status              text not null,
    phase               text,
    current_step        text,
    progress            integer not null default 0,
    total_records       bigint not null default 0,
    transferred_records bigint not null default 0,
    transferred_bytes   bigint not null default 0,
    transfer_speed      double precision,
    error_message       text,
    source_node_id      text,
    peer_url            text,
    started_at          timestamptz not null default now(),
    completed_at        timestamptz
)
"""

_COLUMNS = (
    "session_id",
    "direction",
    "status",
    "phase",
    "current_step",
    "progress",
    "total_records",
    "transferred_records",
    "transferred_bytes",
    "transfer_speed",
    "error_message",
    "source_node_id",
    "peer_url",
    "started_at",
    "completed_at",
)


def _row_values(session: SyncSession) -> tuple:
    return (
        session.session_id,
        session.direction.value,
        session.status.value,
        session.phase,
        session.current_step,
        session.progress,
        session.total_records,
        session.transferred_records,
        session.transferred_bytes,
        session.transfer_speed,
        session.error_message,
        session.source_node_id,
        session.peer_url,
        session.started_at,
        session.completed_at,
    )


def _from_row(row: Dict[str, Any]) -> SyncSession:
    return SyncSession(
        session_id=row["session_id"],
        direction=SyncDirection(row["direction"]),
        status=SyncStatus(row["status"]),
        phase=row.get("phase"),
        current_step=row.get("current_step"),
        progress=int(row.get("progress") or 0),
        total_records=int(row.get("total_records") or 0),
        transferred_records=int(row.get("transferred_records") or 0),
        transferred_bytes=int(row.get("transferred_bytes") or 0),
        transfer_speed=row.get("transfer_speed"),
        error_message=row.get("error_message"),
        source_node_id=row.get("source_node_id"),
        peer_url=row.get("peer_url"),
        started_at=row["started_at"],
        completed_at=row.get("completed_at"),
    )


class DBSyncSessionStore:
    """Postgres-backed session store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string with DML rights on the sessions table.
    table:
        Table name, optionally schema-qualified. Defaults to `public.full_sync_sessions`.
    """

    def __init__(self, dsn: str, table: str = "public.full_sync_sessions") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBSyncSessionStore")
        if not dsn:
            raise RuntimeError("No database DSN provided for DBSyncSessionStore")
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$", table or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self._table = table

    def _ident(self):
        from psycopg import sql as _sql

        if "." in self._table:
            schema, name = self._table.split(".", 1)
            return _sql.Identifier(schema, name)
        return _sql.Identifier(self._table)

    def ensure_schema(self) -> None:
        from psycopg import sql as _sql

        with psycopg.connect(self._dsn, autocommit=True) as conn:
            conn.execute(_sql.SQL(DDL).format(table=self._ident()))

    def create(self, session: SyncSession) -> SyncSession:
        from psycopg import sql as _sql

        stmt = _sql.SQL("insert into {} ({}) values ({})").format(
            self._ident(),
            _sql.SQL(", ").join(_sql.Identifier(c) for c in _COLUMNS),
            _sql.SQL(", ").join(_sql.Placeholder() for _ in _COLUMNS),
        )
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            conn.execute(stmt, _row_values(session))
        return session

    def get(self, session_id: str) -> Optional[SyncSession]:
        from psycopg import sql as _sql

        stmt = _sql.SQL("select {} from {} where session_id = %s").format(
            _sql.SQL(", ").join(_sql.Identifier(c) for c in _COLUMNS),
            self._ident(),
        )
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
            with conn.cursor() as cur:
                cur.execute(stmt, (session_id,))
                row = cur.fetchone()
        return _from_row(row) if row else None

    def save(self, session: SyncSession) -> None:
        from psycopg import sql as _sql

        assignments = _sql.SQL(", ").join(
            _sql.SQL("{} = %s").format(_sql.Identifier(c)) for c in _COLUMNS[1:]
        )
        stmt = _sql.SQL("update {} set {} where session_id = %s").format(self._ident(), assignments)
        values = _row_values(session)
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(stmt, (*values[1:], values[0]))
                if cur.rowcount == 0:
                    raise SessionNotFoundError(f"Unknown session {session.session_id}")


def build_session_store(config: SyncConfig) -> SyncSessionStore:
    """Store selected by SYNC_SESSIONS_BACKEND ("db" creates the table if missing)."""
    if config.sessions_backend == "db":
        store = DBSyncSessionStore(config.database().conninfo())
        store.ensure_schema()
        return store
    return InMemorySyncSessionStore()


__all__ = [
    "DBSyncSessionStore",
    "InMemorySyncSessionStore",
    "SyncDirection",
    "SyncSession",
    "SyncSessionStore",
    "SyncStatus",
    "advance",
    "build_session_store",
    "new_session_id",
    "transition",
]
