"""Snapshot file naming, lookup and cleanup."""
from __future__ import annotations

from hashlib import sha256
from pathlib import Path

import pytest

from backend.fullsync.errors import InvalidRequestError, SnapshotNotFoundError
from backend.fullsync.snapshots import (
    SnapshotStore,
    discard_files,
    file_digest,
    upsert_path_for,
    validate_filename,
    validate_session_id,
)


@pytest.mark.parametrize("value", ["", None, "../etc/passwd", "a/b", "a..b", ".hidden", "x" * 200])
def test_invalid_session_ids_are_rejected(value):
    with pytest.raises(InvalidRequestError):
        validate_session_id(value)


def test_valid_session_ids_pass():
    assert validate_session_id("0f1e2d3c") == "0f1e2d3c"
    assert validate_session_id("nightly-2024.01_02") == "nightly-2024.01_02"


def test_filename_must_be_a_bare_snapshot_name():
    assert validate_filename("initial-load-abc.sql") == "initial-load-abc.sql"
    for bad in ("../full-sync-a.sql", "passwd", "full-sync-a.txt", "dir/full-sync-a.sql"):
        with pytest.raises(InvalidRequestError):
            validate_filename(bad)


def test_upsert_path_for_is_a_sibling():
    assert upsert_path_for(Path("/b/full-sync-a.sql")) == Path("/b/full-sync-a-upsert.sql")
    assert upsert_path_for(Path("/b/full-sync-a-upsert.sql")) == Path("/b/full-sync-a-upsert.sql")


def test_locate_tries_current_then_legacy_prefixes(tmp_path: Path):
    store = SnapshotStore(tmp_path)
    legacy = tmp_path / "initial-load-s1.sql"
    legacy.write_text("x", encoding="utf-8")
    assert store.locate("s1") == legacy

    current = tmp_path / "full-sync-s1.sql"
    current.write_text("y", encoding="utf-8")
    assert store.locate("s1") == current


def test_locate_with_filename_only_considers_that_file(tmp_path: Path):
    store = SnapshotStore(tmp_path)
    (tmp_path / "full-sync-s1.sql").write_text("x", encoding="utf-8")
    with pytest.raises(SnapshotNotFoundError):
        store.locate("s1", "backup-s1.sql")


def test_filename_of_another_session_is_rejected(tmp_path: Path):
    store = SnapshotStore(tmp_path)
    other = tmp_path / "full-sync-s2.sql"
    other.write_text("x", encoding="utf-8")
    assert store.session_file("s1", "initial-load-s1.sql") == tmp_path / "initial-load-s1.sql"
    with pytest.raises(InvalidRequestError):
        store.session_file("s1", "full-sync-s2.sql")
    with pytest.raises(InvalidRequestError):
        store.locate("s1", "full-sync-s2.sql")
    assert other.exists()


def test_locate_missing_raises_not_found(tmp_path: Path):
    with pytest.raises(SnapshotNotFoundError):
        SnapshotStore(tmp_path / "nowhere").locate("s1")


def test_locate_for_download_prefers_upsert_rewrite(tmp_path: Path):
    store = SnapshotStore(tmp_path)
    snapshot = store.snapshot_path("s1")
    snapshot.write_text("raw", encoding="utf-8")
    assert store.locate_for_download("s1") == snapshot
    upsert = upsert_path_for(snapshot)
    upsert.write_text("upsert", encoding="utf-8")
    assert store.locate_for_download("s1") == upsert


def test_discard_removes_all_session_files_and_tolerates_missing(tmp_path: Path):
    store = SnapshotStore(tmp_path)
    files = [
        tmp_path / "full-sync-s1.sql",
        tmp_path / "full-sync-s1-upsert.sql",
        tmp_path / "backup-s1.sql",
    ]
    for f in files:
        f.write_text("x", encoding="utf-8")
    other = tmp_path / "full-sync-s2.sql"
    other.write_text("keep", encoding="utf-8")

    store.discard("s1")
    store.discard("s1")
    store.discard("../bad")

    assert not any(f.exists() for f in files)
    assert other.exists()
    discard_files([tmp_path / "never-existed.sql"])


def test_file_digest_matches_hashlib(tmp_path: Path):
    data = b"INSERT INTO t VALUES (1);\n" * 100_000
    path = tmp_path / "full-sync-big.sql"
    path.write_bytes(data)
    assert file_digest(path) == (len(data), sha256(data).hexdigest())
