"""
Full-sync orchestrator: drives one PUSH or PULL session end to end.

PUSH (local -> peer):
    PREPARING/backup 0      export local snapshot
    TRANSFERRING/transfer 25 upload it, measure speed
    RESTORING/restore 75    ask the peer to restore it
    COMPLETED 100           record bytes, delete local snapshot

PULL (peer -> local):
    PREPARING/backup 0      ask the peer to export a snapshot
    TRANSFERRING/transfer 25 download it into the local snapshot path
    RESTORING/restore 75    upsert rewrite + local restore
    COMPLETED 100           record bytes, delete local snapshot

Any exception moves the session to FAILED with the error message, removes
the session's local files (best-effort) and is re-raised to the caller. A
PULL that fails before its download completes also asks the peer to release
the prepared snapshot (best-effort).
`totalRecords`/`transferredRecords` carry byte counts for whole-database
transfers.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from backend.fullsync.config import SyncConfig
from backend.fullsync.constraints import ConstraintCatalog, load_constraint_catalog
from backend.fullsync.errors import InvalidRequestError, TransportError
from backend.fullsync.peer_client import PeerClient
from backend.fullsync.sessions import (
    SyncDirection,
    SyncSession,
    SyncSessionStore,
    SyncStatus,
    new_session_id,
    transition,
)
from backend.fullsync.snapshots import SnapshotStore, file_digest, validate_session_id
from backend.fullsync.tools import PostgresCliTool, SnapshotTool, select_restore_tool
from backend.fullsync.upsert import rewrite_as_upsert

LOG = logging.getLogger("peersync.fullsync.orchestrator")

STEP_COMPLETE = "Full sync complete"


def _speed(size: int, elapsed: float) -> Optional[float]:
    return round(size / elapsed, 2) if elapsed > 0 else None


class FullSyncOrchestrator:
    def __init__(
        self,
        config: SyncConfig,
        store: SyncSessionStore,
        *,
        snapshots: Optional[SnapshotStore] = None,
        export_tool: Optional[Callable[[], SnapshotTool]] = None,
        restore_tool: Optional[Callable[[], SnapshotTool]] = None,
        catalog_loader: Optional[Callable[[], ConstraintCatalog]] = None,
        client_factory: Optional[Callable[[str], PeerClient]] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.snapshots = snapshots or SnapshotStore(config.backup_dir)
        self._export_tool = export_tool or (lambda: PostgresCliTool(config))
        self._restore_tool = restore_tool or (lambda: select_restore_tool(config))
        self._catalog_loader = catalog_loader or (lambda: load_constraint_catalog(config))
        self._client_factory = client_factory or (lambda url: PeerClient(url, config))

    def start_session(
        self,
        direction: SyncDirection | str,
        peer_url: str,
        session_id: Optional[str] = None,
    ) -> SyncSession:
        """Create and persist a PREPARING session; `run()` executes it."""
        try:
            direction = SyncDirection(str(getattr(direction, "value", direction)).upper())
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid direction: {direction!r}") from exc
        if not peer_url or not str(peer_url).strip():
            raise InvalidRequestError("Missing peerUrl")
        sid = validate_session_id(session_id) if session_id else new_session_id()
        if self.store.get(sid) is not None:
            raise InvalidRequestError(f"Session {sid} already exists")
        session = SyncSession(
            session_id=sid,
            direction=direction,
            source_node_id=self.config.node_id,
            peer_url=str(peer_url).strip(),
        )
        self.store.create(session)
        LOG.info("session %s created: %s with %s", sid, direction.value, session.peer_url)
        return session

    def run(self, session: SyncSession) -> SyncSession:
        try:
            with self._client_factory(session.peer_url or "") as client:
                if session.direction == SyncDirection.PUSH:
                    return self._push(session, client)
                return self._pull(session, client)
        except Exception as exc:
            self._fail(session.session_id, exc)
            raise

    def push(self, peer_url: str, session_id: Optional[str] = None) -> SyncSession:
        return self.run(self.start_session(SyncDirection.PUSH, peer_url, session_id))

    def pull(self, peer_url: str, session_id: Optional[str] = None) -> SyncSession:
        return self.run(self.start_session(SyncDirection.PULL, peer_url, session_id))

    # ------------------------------ phases ----------------------------------

    def _push(self, session: SyncSession, client: PeerClient) -> SyncSession:
        sid = session.session_id
        session = transition(
            self.store, session, SyncStatus.PREPARING,
            phase="backup", current_step="Creating database backup...", progress=0,
        )
        self.snapshots.ensure_dir()
        snapshot = self.snapshots.snapshot_path(sid)
        self._export_tool().export(snapshot)
        size, _ = file_digest(snapshot)

        session = transition(
            self.store, session, SyncStatus.TRANSFERRING,
            phase="transfer", current_step="Transferring backup to remote...", progress=25,
            total_records=size,
        )
        started = time.monotonic()
        client.send_backup(sid, snapshot)
        speed = _speed(size, time.monotonic() - started)

        session = transition(
            self.store, session, SyncStatus.RESTORING,
            phase="restore", current_step="Restoring on remote server...", progress=75,
            transferred_records=size, transfer_speed=speed,
        )
        client.trigger_restore(sid, snapshot.name)
        return self._complete(session, size)

    def _pull(self, session: SyncSession, client: PeerClient) -> SyncSession:
        sid = session.session_id
        session = transition(
            self.store, session, SyncStatus.PREPARING,
            phase="backup", current_step="Requesting backup from remote...", progress=0,
        )
        info = client.request_backup(sid)
        announced = info.get("size")

        try:
            session = transition(
                self.store, session, SyncStatus.TRANSFERRING,
                phase="transfer", current_step="Receiving backup from remote...", progress=25,
                total_records=int(announced or 0),
            )
            self.snapshots.ensure_dir()
            snapshot = self.snapshots.snapshot_path(sid)
            started = time.monotonic()
            size, _ = client.download_backup(sid, snapshot)
            speed = _speed(size, time.monotonic() - started)
            if announced is not None and int(announced) != size:
                raise TransportError(
                    f"Download from remote failed: size mismatch (announced {announced}, received {size})"
                )
        except Exception:
            self._release_remote(client, session)
            raise

        session = transition(
            self.store, session, SyncStatus.RESTORING,
            phase="restore", current_step="Restoring database locally...", progress=75,
            transferred_records=size, transfer_speed=speed,
        )
        upsert = rewrite_as_upsert(snapshot, self._catalog_loader())
        self._restore_tool().restore(upsert)
        return self._complete(session, size)

    def _complete(self, session: SyncSession, size: int) -> SyncSession:
        session = transition(
            self.store, session, SyncStatus.COMPLETED,
            current_step=STEP_COMPLETE, progress=100, transferred_bytes=size,
        )
        self.snapshots.discard(session.session_id)
        return session

    def _release_remote(self, client: PeerClient, session: SyncSession) -> None:
        """Best-effort: the peer keeps a prepared snapshot until it is downloaded or released."""
        try:
            client.release_backup(session.session_id)
        except TransportError as exc:
            LOG.warning("could not release snapshot of session %s on %s: %s", session.session_id, session.peer_url, exc)

    def _fail(self, session_id: str, exc: BaseException) -> None:
        self.snapshots.discard(session_id)
        current = self.store.get(session_id)
        if current is None or current.status.terminal:
            return
        try:
            transition(self.store, current, SyncStatus.FAILED, error_message=str(exc) or exc.__class__.__name__)
        except Exception:
            LOG.exception("could not mark session %s as FAILED", session_id)


__all__ = ["FullSyncOrchestrator", "STEP_COMPLETE"]
