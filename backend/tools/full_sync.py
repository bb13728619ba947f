"""Run full-database syncs and their building blocks from the command line.

Usage:
    python -m backend.tools.full_sync push --peer https://node-b.example
    python -m backend.tools.full_sync pull --peer https://node-b.example --session-id nightly-42
    python -m backend.tools.full_sync status nightly-42
    python -m backend.tools.full_sync rewrite backups/full-sync-nightly-42.sql
    python -m backend.tools.full_sync restore backups/full-sync-nightly-42.sql --rewrite

Configuration comes from the environment (DATABASE_URL, SYNC_REGISTRATION_KEY,
SYNC_NODE_ID, SYNC_BACKUP_DIR, ...). `status` only sees sessions of other
processes with SYNC_SESSIONS_BACKEND=db.

Exit codes: 0 on success, 1 on any failure (a FAILED session included).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from backend.fullsync.config import SyncConfig, load_sync_config
from backend.fullsync.constraints import load_constraint_catalog
from backend.fullsync.errors import SyncError
from backend.fullsync.orchestrator import FullSyncOrchestrator
from backend.fullsync.sessions import SyncSession, build_session_store
from backend.fullsync.tools import select_restore_tool
from backend.fullsync.upsert import rewrite_as_upsert


def _load_config() -> SyncConfig:
    try:
        return load_sync_config()
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_session(session: SyncSession) -> None:
    click.echo(json.dumps(session.to_dict(), indent=2))


def _run(direction: str, peer: str, session_id: str | None) -> None:
    config = _load_config()
    try:
        orchestrator = FullSyncOrchestrator(config, build_session_store(config))
        session = orchestrator.start_session(direction, peer, session_id)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        session = orchestrator.run(session)
    except Exception as exc:
        failed = orchestrator.store.get(session.session_id)
        if failed is not None:
            _echo_session(failed)
        raise click.ClickException(f"{direction} failed: {exc}") from exc
    _echo_session(session)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """peersync full-database sync."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--peer", required=True, help="Base URL of the remote node.")
@click.option("--session-id", default=None, help="Session id (generated when omitted).")
def push(peer: str, session_id: str | None) -> None:
    """Send this node's database to PEER."""
    _run("PUSH", peer, session_id)


@cli.command()
@click.option("--peer", required=True, help="Base URL of the remote node.")
@click.option("--session-id", default=None, help="Session id (generated when omitted).")
def pull(peer: str, session_id: str | None) -> None:
    """Replace this node's data with PEER's database (as upserts)."""
    _run("PULL", peer, session_id)


@cli.command()
@click.argument("session_id")
def status(session_id: str) -> None:
    """Show a persisted session."""
    config = _load_config()
    try:
        session = build_session_store(config).get(session_id)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    if session is None:
        raise click.ClickException(f"Unknown session {session_id}")
    _echo_session(session)


@cli.command()
@click.argument("dump", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def rewrite(dump: Path) -> None:
    """Rewrite DUMP into an idempotent upsert script and print its path."""
    config = _load_config()
    try:
        target = rewrite_as_upsert(dump, load_constraint_catalog(config))
    except (SyncError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(str(target))


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--rewrite", "do_rewrite", is_flag=True, help="Rewrite to upserts before restoring.")
def restore(script: Path, do_rewrite: bool) -> None:
    """Restore SCRIPT into the configured database."""
    config = _load_config()
    try:
        if do_rewrite:
            script = rewrite_as_upsert(script, load_constraint_catalog(config))
        result = select_restore_tool(config).restore(script)
    except (SyncError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    message = f"restored {script.name} via {result.tool} ({result.statements_failed} statement errors"
    if result.retried_as_upsert:
        message += f", {result.retried_as_upsert} retried as upsert"
    click.echo(message + ")")


if __name__ == "__main__":
    cli()
