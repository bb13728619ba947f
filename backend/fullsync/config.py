"""
Configuration for the full-sync engine.

Intent:
    Read every environment variable the engine needs in one place and hand the
    result to collaborators explicitly. Callers build a fresh `SyncConfig` per
    operation via `load_sync_config()`, so changes to the environment apply to
    the next session without a restart.

Env:
    DATABASE_URL               – Postgres URI (postgresql://, postgres://, jdbc: prefix accepted).
    SYNC_REGISTRATION_KEY      – shared secret between nodes.
    SYNC_NODE_ID               – identity sent in X-Node-ID (default: host name).
    SYNC_BACKUP_DIR            – snapshot directory (default: ./backups).
    SYNC_PEER_TIMEOUT_SECONDS  – HTTP timeout for peer calls (default: 300).
    SYNC_PG_TIMEOUT_SECONDS    – timeout for pg_dump/psql (default: 600).
    SYNC_CONSTRAINT_SOURCE     – "database" (catalog introspection) or "schema".
    SYNC_SCHEMA_PATH           – schema file for the "schema" source.
    SYNC_TRANSFER_MODE         – "stream" (chunked bytes) or "json" (base64 bodies).
    SYNC_SESSIONS_BACKEND      – "memory" or "db".
"""
from __future__ import annotations

from dataclasses import dataclass, field
import os
import socket
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from backend.fullsync.errors import ConfigurationError

CONSTRAINT_SOURCES = ("database", "schema")
TRANSFER_MODES = ("stream", "json")
SESSION_BACKENDS = ("memory", "db")


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters parsed from a single connection string."""

    host: str
    port: int
    user: str
    password: Optional[str]
    dbname: str
    query: str = ""

    def conninfo(self) -> str:
        """Return a URI including the password, for in-process drivers only."""
        netloc = self.host
        if self.user:
            auth = quote(self.user, safe="")
            if self.password is not None:
                auth = f"{auth}:{quote(self.password, safe='')}"
            netloc = f"{auth}@{self.host}"
        return urlunsplit(("postgresql", f"{netloc}:{self.port}", f"/{self.dbname}", self.query, ""))

    def redacted(self) -> str:
        """Return the URI without password for logs."""
        netloc = f"{self.host}:{self.port}"
        if self.user:
            netloc = f"{self.user}@{netloc}"
        return urlunsplit(("postgresql", netloc, f"/{self.dbname}", "", ""))

    def cli_args(self) -> list[str]:
        return ["-h", self.host, "-p", str(self.port), "-U", self.user, "-d", self.dbname]

    def cli_env(self) -> Dict[str, str]:
        """Environment overlay for pg_dump/psql; keeps the password out of argv."""
        return {"PGPASSWORD": self.password} if self.password else {}


def parse_database_url(uri: str) -> DatabaseTarget:
    """Split a Postgres URI into host/port/user/password/database.

    Raises ConfigurationError when the URI is empty, not a Postgres URI, or
    has no database name.
    """
    raw = (uri or "").strip()
    if not raw:
        raise ConfigurationError("DATABASE_URL not configured")
    if raw.startswith("jdbc:"):
        raw = raw.removeprefix("jdbc:")
    parts = urlsplit(raw)
    if parts.scheme not in ("postgresql", "postgres"):
        raise ConfigurationError(f"DATABASE_URL must be a postgresql:// URI (got scheme {parts.scheme!r})")
    dbname = parts.path.lstrip("/")
    if not dbname:
        raise ConfigurationError("DATABASE_URL must include a database name")
    try:
        port = parts.port or 5432
    except ValueError as exc:
        raise ConfigurationError(f"DATABASE_URL has an invalid port: {exc}") from exc
    return DatabaseTarget(
        host=parts.hostname or "localhost",
        port=port,
        user=unquote(parts.username or ""),
        password=unquote(parts.password) if parts.password is not None else None,
        dbname=unquote(dbname),
        query=parts.query,
    )


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got: {value}")
    return value


def _choice_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {', '.join(choices)}, got: {value!r}")
    return value


@dataclass(frozen=True)
class SyncConfig:
    database_url: Optional[str]
    registration_key: Optional[str]
    node_id: str
    backup_dir: Path
    peer_timeout_seconds: int = 300
    pg_timeout_seconds: int = 600
    constraint_source: str = "database"
    schema_path: Path = field(default_factory=lambda: Path("prisma") / "schema.prisma")
    transfer_mode: str = "stream"
    sessions_backend: str = "memory"

    def database(self) -> DatabaseTarget:
        """Parsed connection target; raises ConfigurationError when unset."""
        return parse_database_url(self.database_url or "")

    def require_registration_key(self) -> str:
        if not self.registration_key:
            raise ConfigurationError("SYNC_REGISTRATION_KEY not configured")
        return self.registration_key


def load_sync_config() -> SyncConfig:
    """Build a `SyncConfig` from the current environment.

    Missing DATABASE_URL / SYNC_REGISTRATION_KEY are tolerated here and only
    raise when an operation actually needs them.
    """
    return SyncConfig(
        database_url=(os.getenv("DATABASE_URL") or "").strip() or None,
        registration_key=(os.getenv("SYNC_REGISTRATION_KEY") or "").strip() or None,
        node_id=(os.getenv("SYNC_NODE_ID") or "").strip() or socket.gethostname(),
        backup_dir=Path((os.getenv("SYNC_BACKUP_DIR") or "").strip() or "backups"),
        peer_timeout_seconds=_int_env("SYNC_PEER_TIMEOUT_SECONDS", 300),
        pg_timeout_seconds=_int_env("SYNC_PG_TIMEOUT_SECONDS", 600),
        constraint_source=_choice_env("SYNC_CONSTRAINT_SOURCE", "database", CONSTRAINT_SOURCES),
        schema_path=Path((os.getenv("SYNC_SCHEMA_PATH") or "").strip() or str(Path("prisma") / "schema.prisma")),
        transfer_mode=_choice_env("SYNC_TRANSFER_MODE", "stream", TRANSFER_MODES),
        sessions_backend=_choice_env("SYNC_SESSIONS_BACKEND", "memory", SESSION_BACKENDS),
    )


__all__ = [
    "DatabaseTarget",
    "SyncConfig",
    "load_sync_config",
    "parse_database_url",
]
