"""
Snapshot producer and restorer behind one interface.

Intent:
    The orchestrator and the peer service only know `SnapshotTool.export(dest)`
    and `SnapshotTool.restore(src)`. Two variants exist:

    - `PostgresCliTool`: native `pg_dump` (data-only, column inserts, no owner
      or privilege statements) and `psql` (continues past statement errors).
    - `StatementExecutorTool`: runs a script statement by statement over a live
      connection. Used when `psql` is not installed. It never aborts on the first
      error; INSERTs that fail on a uniqueness violation are converted to an
      upsert and retried once.

    `select_restore_tool()` probes for `psql` at call time.

Secrets:
    The database password reaches child processes via PGPASSWORD only, never
    via argv or logs.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from backend.fullsync.config import SyncConfig
from backend.fullsync.constraints import ConstraintCatalog, load_constraint_catalog
from backend.fullsync.errors import ExternalToolError
from backend.fullsync.upsert import rewrite_statement, split_statements

LOG = logging.getLogger("peersync.fullsync.tools")

UNIQUE_VIOLATION_SQLSTATE = "23505"


@dataclass
class ToolResult:
    """Outcome of an export/restore run."""

    tool: str
    returncode: int = 0
    stderr: str = ""
    duration_seconds: float = 0.0
    statements_ok: int = 0
    statements_failed: int = 0
    retried_as_upsert: int = 0


class SnapshotTool(Protocol):
    """Produce a data-only dump and restore an (upsert) script."""

    def export(self, dest: Path) -> ToolResult: ...

    def restore(self, src: Path) -> ToolResult: ...


# ------------------------------ Availability --------------------------------


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def install_hint(tool: str = "pg_dump") -> str:
    """Platform-specific hint for installing the PostgreSQL client tools."""
    if sys.platform.startswith("linux"):
        return f"{tool} not found in PATH; install the PostgreSQL client (e.g. `apt-get install postgresql-client`)"
    if sys.platform == "darwin":
        return f"{tool} not found in PATH; install libpq (`brew install libpq && brew link --force libpq`)"
    if sys.platform.startswith("win"):
        return f"{tool} not found in PATH; install PostgreSQL and add its bin directory to PATH"
    return f"{tool} not found in PATH; install the PostgreSQL client tools"


# ------------------------------ Native tools --------------------------------


class PostgresCliTool:
    """pg_dump / psql child processes against the configured database."""

    def __init__(self, config: SyncConfig) -> None:
        self._config = config

    def _run(self, tool: str, args: list[str]) -> ToolResult:
        if not tool_available(tool):
            hint = install_hint(tool)
            LOG.error("%s is not available on this server: %s", tool, hint)
            raise ExternalToolError(f"{tool} not available: {hint}", tool=tool)
        target = self._config.database()
        env = os.environ.copy()
        env.update(target.cli_env())
        cmd = [tool, *target.cli_args(), *args]
        LOG.info("running %s against %s", tool, target.redacted())
        start = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=env,
                timeout=self._config.pg_timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"Failed to run {tool}: {exc}. Is PostgreSQL installed?", tool=tool) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{tool} timeout after {self._config.pg_timeout_seconds}s",
                tool=tool,
                stderr=(exc.stderr or "") if isinstance(exc.stderr, str) else "",
            ) from exc
        stderr = (proc.stderr or "").strip()
        result = ToolResult(
            tool=tool,
            returncode=proc.returncode,
            stderr=stderr,
            duration_seconds=time.monotonic() - start,
        )
        if proc.returncode != 0:
            raise ExternalToolError(
                f"{tool} failed with code {proc.returncode}: {stderr}",
                tool=tool,
                returncode=proc.returncode,
                stderr=stderr,
            )
        return result

    def export(self, dest: Path) -> ToolResult:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        return self._run(
            "pg_dump",
            [
                "-f",
                str(dest),
                "--data-only",
                "--column-inserts",
                "--no-owner",
                "--no-privileges",
            ],
        )

    def restore(self, src: Path) -> ToolResult:
        # ON_ERROR_STOP=0: irregular statements may fail without aborting the script.
        result = self._run("psql", ["-X", "-q", "-v", "ON_ERROR_STOP=0", "-f", str(src)])
        errors = sum(1 for line in result.stderr.splitlines() if "ERROR:" in line)
        result.statements_failed = errors
        if errors:
            LOG.warning("psql restore of %s finished with %d statement errors", Path(src).name, errors)
        return result


# ------------------------------ In-process fallback -------------------------


def is_unique_violation(exc: BaseException) -> bool:
    """True for duplicate-key failures (psycopg SQLSTATE 23505 or driver message)."""
    if getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(exc)
    return "duplicate key" in message or "UNIQUE constraint failed" in message


class StatementExecutorTool:
    """Execute a script one statement at a time over a live connection.

    Parameters:
        connect: Zero-arg factory returning an autocommit connection with an
            `execute(sql)` method and context-manager support.
        catalog_loader: Returns the constraint catalog; called at most once per
            restore, on the first uniqueness violation.
    """

    def __init__(self, connect: Callable[[], object], catalog_loader: Callable[[], ConstraintCatalog]) -> None:
        self._connect = connect
        self._catalog_loader = catalog_loader

    @classmethod
    def from_config(cls, config: SyncConfig) -> "StatementExecutorTool":
        import psycopg

        target = config.database()

        def connect():
            return psycopg.connect(target.conninfo(), autocommit=True)

        return cls(connect, lambda: load_constraint_catalog(config, connect=connect))

    def export(self, dest: Path) -> ToolResult:
        hint = install_hint("pg_dump")
        raise ExternalToolError(f"pg_dump not available: {hint}", tool="pg_dump")

    def restore(self, src: Path) -> ToolResult:
        statements = split_statements(Path(src).read_text(encoding="utf-8"))
        total = len(statements)
        LOG.info("restoring %s statement by statement (%d statements)", Path(src).name, total)
        result = ToolResult(tool="statement-executor")
        catalog: Optional[ConstraintCatalog] = None
        start = time.monotonic()

        with self._connect() as conn:  # type: ignore[attr-defined]
            for index, statement in enumerate(statements, start=1):
                try:
                    conn.execute(statement)  # type: ignore[attr-defined]
                    result.statements_ok += 1
                    continue
                except Exception as exc:  # noqa: BLE001 - counted, batch continues
                    first_error = exc
                LOG.warning("statement %d/%d failed: %s", index, total, first_error)
                LOG.warning("failed statement: %s", statement[:200])

                if statement.upper().startswith("INSERT INTO") and is_unique_violation(first_error):
                    if catalog is None:
                        catalog = self._catalog_loader()
                    upsert = rewrite_statement(statement, catalog)
                    try:
                        conn.execute(upsert.rstrip(";"))  # type: ignore[attr-defined]
                    except Exception as retry_exc:  # noqa: BLE001
                        LOG.error("upsert retry of statement %d also failed: %s", index, retry_exc)
                    else:
                        result.statements_ok += 1
                        result.retried_as_upsert += 1
                        continue
                result.statements_failed += 1

        result.duration_seconds = time.monotonic() - start
        LOG.info(
            "statement restore completed: %d succeeded, %d failed, %d retried as upsert",
            result.statements_ok,
            result.statements_failed,
            result.retried_as_upsert,
        )
        return result


def select_restore_tool(config: SyncConfig) -> SnapshotTool:
    """Native psql when installed, otherwise the in-process executor."""
    if tool_available("psql"):
        return PostgresCliTool(config)
    LOG.warning("psql not available, falling back to statement-by-statement restore")
    return StatementExecutorTool.from_config(config)


__all__ = [
    "PostgresCliTool",
    "SnapshotTool",
    "StatementExecutorTool",
    "ToolResult",
    "install_hint",
    "is_unique_violation",
    "select_restore_tool",
    "tool_available",
]
