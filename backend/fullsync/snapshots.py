"""
Snapshot files on local disk.

Naming:
    full-sync-<sessionId>.sql      snapshot produced or received for a session
    initial-load-<sessionId>.sql   legacy name (download/restore lookup only)
    backup-<sessionId>.sql         legacy name (download/restore lookup only)
    <snapshot>-upsert.sql          upsert rewrite of a snapshot

A snapshot and its upsert rewrite are owned by one session and are deleted
together when that session ends. Deletion is best-effort.
"""
from __future__ import annotations

from hashlib import sha256
import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from backend.fullsync.errors import InvalidRequestError, SnapshotNotFoundError

LOG = logging.getLogger("peersync.fullsync.snapshots")

SNAPSHOT_PREFIX = "full-sync-"
LEGACY_PREFIXES = ("initial-load-", "backup-")
UPSERT_SUFFIX = "-upsert.sql"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_FILENAME_RE = re.compile(r"^(?:full-sync|initial-load|backup)-[A-Za-z0-9][A-Za-z0-9_.-]{0,127}\.sql$")


def validate_session_id(session_id: object) -> str:
    """Return the session id if it is safe to embed in a filename."""
    if not isinstance(session_id, str) or not session_id:
        raise InvalidRequestError("Missing sessionId")
    if not _SESSION_ID_RE.match(session_id) or ".." in session_id:
        raise InvalidRequestError("Invalid sessionId")
    return session_id


def validate_filename(filename: object) -> str:
    """Accept only bare snapshot filenames; rejects paths and foreign names."""
    if not isinstance(filename, str) or not _FILENAME_RE.match(filename) or ".." in filename:
        raise InvalidRequestError("Invalid filename")
    return filename


def upsert_path_for(snapshot: Path) -> Path:
    """Sibling path of the upsert rewrite (`x.sql` -> `x-upsert.sql`)."""
    snapshot = Path(snapshot)
    if snapshot.name.endswith(UPSERT_SUFFIX):
        return snapshot
    stem = snapshot.name[:-4] if snapshot.name.endswith(".sql") else snapshot.name
    return snapshot.with_name(stem + UPSERT_SUFFIX)


class SnapshotStore:
    """Directory of snapshot files, created on demand."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_dir(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def snapshot_path(self, session_id: str) -> Path:
        return self.root / f"{SNAPSHOT_PREFIX}{validate_session_id(session_id)}.sql"

    def session_file(self, session_id: str, filename: str) -> Path:
        """Path of `filename` when it is one of the names owned by `session_id`."""
        name = validate_filename(filename)
        for path in self.candidates(session_id):
            if path.name == name:
                return path
        raise InvalidRequestError(f"Filename {name} does not belong to session {session_id}")

    def candidates(self, session_id: str) -> List[Path]:
        sid = validate_session_id(session_id)
        return [self.root / f"{prefix}{sid}.sql" for prefix in (SNAPSHOT_PREFIX, *LEGACY_PREFIXES)]

    def locate(self, session_id: str, filename: Optional[str] = None) -> Path:
        """Find the snapshot for a session.

        With `filename`, only that file is considered, and it must be one of
        the session's own names. Without it, the current name and the legacy
        names are tried in order.
        """
        if filename:
            paths = [self.session_file(session_id, filename)]
        else:
            paths = self.candidates(session_id)
        for path in paths:
            if path.is_file():
                return path
        if LOG.isEnabledFor(logging.DEBUG) and self.root.is_dir():
            LOG.debug("snapshot lookup miss session=%s dir=%s contents=%s", session_id, self.root, sorted(p.name for p in self.root.iterdir()))
        raise SnapshotNotFoundError(f"Backup file not found for session {session_id}")

    def locate_for_download(self, session_id: str) -> Path:
        """Prefer the upsert rewrite of a snapshot when one exists."""
        snapshot = self.locate(session_id)
        upsert = upsert_path_for(snapshot)
        return upsert if upsert.is_file() else snapshot

    def discard(self, session_id: str) -> None:
        """Delete every file belonging to a session (all prefixes, with rewrites)."""
        try:
            paths = self.candidates(session_id)
        except InvalidRequestError:
            return
        discard_files(paths)


CHUNK_SIZE = 1024 * 1024


def file_digest(path: Path) -> Tuple[int, str]:
    """Return (size, hex sha256) of a file, read in chunks."""
    h = sha256()
    size = 0
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            size += len(chunk)
            h.update(chunk)
    return size, h.hexdigest()


def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            yield chunk


def discard_files(snapshots: Iterable[Path]) -> None:
    """Best-effort delete of snapshots and their upsert rewrites; failures are logged."""
    for snapshot in snapshots:
        for path in (Path(snapshot), upsert_path_for(Path(snapshot))):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOG.warning("failed to delete snapshot file %s: %s", path, exc)


__all__ = [
    "LEGACY_PREFIXES",
    "SNAPSHOT_PREFIX",
    "SnapshotStore",
    "discard_files",
    "file_digest",
    "iter_file",
    "upsert_path_for",
    "validate_filename",
    "validate_session_id",
]
