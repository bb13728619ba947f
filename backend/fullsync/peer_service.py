"""
Receiving side of the peer protocol (framework-agnostic).

Intent:
    The HTTP routes stay thin: they authenticate, parse, and delegate here.
    This module owns the snapshot files a peer sends or requests.

Behavior:
    - accept_json / begin_upload: store a received snapshot under
      `SYNC_BACKUP_DIR`. Streamed uploads land in a `.part` file first and are
      renamed once complete, so an interrupted upload is never restored.
    - restore_received: locate -> rewrite to upsert -> restore -> delete both
      files. Files are deleted whatever the outcome.
    - produce_backup: export a snapshot for a pulling peer and prepare its
      upsert rewrite.
    - open_download / release: hand the preferred file to the route; the
      route releases the session's files once the response is sent, or when
      a pulling peer gives up before downloading (`/sync/release-backup`).
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from hashlib import sha256
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from backend.fullsync.config import SyncConfig
from backend.fullsync.constraints import ConstraintCatalog, load_constraint_catalog
from backend.fullsync.errors import InvalidRequestError
from backend.fullsync.snapshots import SnapshotStore, discard_files, file_digest, validate_session_id
from backend.fullsync.tools import PostgresCliTool, SnapshotTool, ToolResult, select_restore_tool
from backend.fullsync.upsert import rewrite_as_upsert

LOG = logging.getLogger("peersync.fullsync.peer_service")


@dataclass(frozen=True)
class StoredSnapshot:
    session_id: str
    path: Path
    size: int
    sha256: str

    @property
    def filename(self) -> str:
        return self.path.name

    def to_dict(self) -> Dict[str, Any]:
        return {"sessionId": self.session_id, "filename": self.filename, "size": self.size, "sha256": self.sha256}


class UploadSink:
    """Incremental writer for a streamed snapshot upload."""

    def __init__(self, session_id: str, target: Path) -> None:
        self.session_id = session_id
        self.target = target
        self._part = target.with_name(target.name + ".part")
        self._fh = self._part.open("wb")
        self._hash = sha256()
        self._size = 0

    def write(self, chunk: bytes) -> None:
        if chunk:
            self._fh.write(chunk)
            self._hash.update(chunk)
            self._size += len(chunk)

    def commit(self) -> StoredSnapshot:
        self._fh.close()
        self._part.replace(self.target)
        LOG.info("received snapshot %s (%d bytes)", self.target.name, self._size)
        return StoredSnapshot(self.session_id, self.target, self._size, self._hash.hexdigest())

    def abort(self) -> None:
        self._fh.close()
        try:
            self._part.unlink(missing_ok=True)
        except OSError as exc:
            LOG.warning("failed to delete partial upload %s: %s", self._part, exc)


class PeerService:
    """Snapshot operations requested by a remote node.

    Parameters:
        config: Local node config.
        export_tool: Factory for the snapshot producer (default: pg_dump).
        restore_tool: Factory for the restorer (default: psql when present).
        catalog_loader: Constraint catalog source for the upsert rewrite.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        snapshots: Optional[SnapshotStore] = None,
        export_tool: Optional[Callable[[], SnapshotTool]] = None,
        restore_tool: Optional[Callable[[], SnapshotTool]] = None,
        catalog_loader: Optional[Callable[[], ConstraintCatalog]] = None,
    ) -> None:
        self.config = config
        self.snapshots = snapshots or SnapshotStore(config.backup_dir)
        self._export_tool = export_tool or (lambda: PostgresCliTool(config))
        self._restore_tool = restore_tool or (lambda: select_restore_tool(config))
        self._catalog_loader = catalog_loader or (lambda: load_constraint_catalog(config))

    def _target(self, session_id: str, filename: Optional[str]) -> Path:
        self.snapshots.ensure_dir()
        if filename:
            return self.snapshots.session_file(session_id, filename)
        return self.snapshots.snapshot_path(session_id)

    def accept_json(self, payload: Mapping[str, Any]) -> StoredSnapshot:
        """Store a `{sessionId, backupContent(base64), filename?}` payload."""
        session_id = validate_session_id(payload.get("sessionId"))
        content = payload.get("backupContent")
        if not isinstance(content, str):
            raise InvalidRequestError("Missing backupContent")
        try:
            data = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidRequestError("Invalid backupContent") from exc
        target = self._target(session_id, payload.get("filename") or None)
        target.write_bytes(data)
        LOG.info("received snapshot %s (%d bytes) from %s", target.name, len(data), payload.get("sourceNodeId") or "?")
        return StoredSnapshot(session_id, target, len(data), sha256(data).hexdigest())

    def begin_upload(self, session_id: Optional[str], filename: Optional[str] = None) -> UploadSink:
        sid = validate_session_id(session_id)
        return UploadSink(sid, self._target(sid, filename or None))

    def restore_received(self, session_id: Optional[str], filename: Optional[str] = None) -> ToolResult:
        sid = validate_session_id(session_id)
        snapshot = self.snapshots.locate(sid, filename or None)
        try:
            upsert = rewrite_as_upsert(snapshot, self._catalog_loader())
            result = self._restore_tool().restore(upsert)
            LOG.info("restored %s for session %s via %s", upsert.name, sid, result.tool)
            return result
        finally:
            discard_files([snapshot])

    def produce_backup(self, session_id: Optional[str]) -> StoredSnapshot:
        """Export a snapshot for a pulling peer; the upsert rewrite is what gets served."""
        sid = validate_session_id(session_id)
        snapshot = self._target(sid, None)
        try:
            self._export_tool().export(snapshot)
            served = rewrite_as_upsert(snapshot, self._catalog_loader())
            size, digest = file_digest(served)
        except Exception:
            discard_files([snapshot])
            raise
        LOG.info("prepared snapshot %s (%d bytes) for session %s", served.name, size, sid)
        return StoredSnapshot(sid, served, size, digest)

    def open_download(self, session_id: Optional[str]) -> StoredSnapshot:
        sid = validate_session_id(session_id)
        path = self.snapshots.locate_for_download(sid)
        size, digest = file_digest(path)
        return StoredSnapshot(sid, path, size, digest)

    def release(self, session_id: Optional[str]) -> str:
        """Delete the session's files after they were served or abandoned."""
        sid = validate_session_id(session_id)
        self.snapshots.discard(sid)
        LOG.debug("released snapshot files for session %s", sid)
        return sid


__all__ = ["PeerService", "StoredSnapshot", "UploadSink"]
