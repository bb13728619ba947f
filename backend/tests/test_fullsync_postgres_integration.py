"""
Live Postgres checks: pg_dump/psql round trip, catalog introspection and the
DB-backed session store.

Requires PEERSYNC_TEST_DATABASE_URL (a throwaway database; tables are created
and dropped) plus pg_dump/psql on PATH. Skipped otherwise.
"""
from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

import pytest

from backend.fullsync.constraints import load_constraint_catalog
from backend.fullsync.sessions import DBSyncSessionStore, SyncDirection, SyncSession, SyncStatus, transition
from backend.fullsync.tools import PostgresCliTool, StatementExecutorTool
from backend.fullsync.upsert import rewrite_as_upsert
from conftest import make_config

pytestmark = pytest.mark.integration

DSN = os.getenv("PEERSYNC_TEST_DATABASE_URL", "")


def _require_db():
    if not DSN:
        pytest.skip("PEERSYNC_TEST_DATABASE_URL not set")
    psycopg = pytest.importorskip("psycopg")
    try:
        with psycopg.connect(DSN, connect_timeout=3):
            pass
    except Exception as exc:
        pytest.skip(f"database unreachable: {exc.__class__.__name__}")
    return psycopg


def _require_cmd(cmd: str) -> None:
    if shutil.which(cmd) is None:
        pytest.skip(f"{cmd} not available in PATH")


@pytest.fixture
def pg(tmp_path: Path):
    psycopg = _require_db()
    suffix = uuid.uuid4().hex[:8]
    users, enrollments = f"it_users_{suffix}", f"it_enrollments_{suffix}"
    with psycopg.connect(DSN, autocommit=True) as conn:
        conn.execute(f'create table {users} (id int primary key, email text not null unique, "displayName" text)')
        conn.execute(
            f"create table {enrollments} (id int primary key, user_id int not null, course text not null, "
            f"grade text, unique (user_id, course))"
        )
        conn.execute(f"insert into {users} values (1, 'a@x', 'Ann'), (2, 'b@x', 'O''Brien; Bo')")
        conn.execute(f"insert into {enrollments} values (1, 1, 'math', 'A'), (2, 2, 'art', null)")
    yield psycopg, make_config(tmp_path, database_url=DSN), users, enrollments
    with psycopg.connect(DSN, autocommit=True) as conn:
        conn.execute(f"drop table if exists {users}, {enrollments}")


def _snapshot(psycopg, users, enrollments):
    with psycopg.connect(DSN) as conn:
        return (
            conn.execute(f"select * from {users} order by id").fetchall(),
            conn.execute(f"select * from {enrollments} order by id").fetchall(),
        )


def test_introspection_finds_primary_and_composite_keys(pg):
    _, config, users, enrollments = pg
    catalog = load_constraint_catalog(config)
    assert catalog[users] == [["email"], ["id"]]
    assert ["user_id", "course"] in catalog[enrollments]


def test_dump_rewrite_restore_round_trip_is_idempotent(pg, tmp_path: Path):
    _require_cmd("pg_dump")
    _require_cmd("psql")
    psycopg, config, users, enrollments = pg
    tool = PostgresCliTool(config)
    dump = tmp_path / "full-sync-it.sql"
    tool.export(dump)
    script = rewrite_as_upsert(dump, load_constraint_catalog(config))
    expected = _snapshot(psycopg, users, enrollments)

    with psycopg.connect(DSN, autocommit=True) as conn:
        conn.execute(f"update {users} set \"displayName\" = 'changed' where id = 1")
        conn.execute(f"delete from {enrollments} where id = 2")

    first = tool.restore(script)
    second = tool.restore(script)

    assert first.returncode == 0 and second.returncode == 0
    assert _snapshot(psycopg, users, enrollments) == expected


def test_statement_executor_fallback_against_postgres(pg, tmp_path: Path):
    psycopg, config, users, _ = pg
    script = tmp_path / "full-sync-exec.sql"
    script.write_text(
        f"INSERT INTO public.{users} (id, email, \"displayName\") VALUES (1, 'a@x', 'Ann 2');\n"
        f"INSERT INTO public.{users} (id, email, \"displayName\") VALUES (3, 'c@x', 'Cy');\n",
        encoding="utf-8",
    )
    result = StatementExecutorTool.from_config(config).restore(script)
    assert result.retried_as_upsert == 1
    assert result.statements_failed == 0
    with psycopg.connect(DSN) as conn:
        rows = conn.execute(f'select id, "displayName" from {users} order by id').fetchall()
    assert rows == [(1, "Ann 2"), (2, "O'Brien; Bo"), (3, "Cy")]


def test_db_session_store_round_trip(tmp_path: Path):
    psycopg = _require_db()
    table = f"public.it_sessions_{uuid.uuid4().hex[:8]}"
    store = DBSyncSessionStore(DSN, table=table)
    try:
        store.ensure_schema()
        session = store.create(SyncSession(session_id="it-1", direction=SyncDirection.PULL, peer_url="http://b"))
        session = transition(store, session, SyncStatus.TRANSFERRING, phase="transfer", progress=25)
        session = transition(store, session, SyncStatus.FAILED, error_message="boom")

        loaded = store.get("it-1")
        assert loaded is not None
        assert loaded.status == SyncStatus.FAILED
        assert loaded.phase == "transfer"
        assert loaded.error_message == "boom"
        assert loaded.completed_at is not None
        assert store.get("missing") is None
    finally:
        with psycopg.connect(DSN, autocommit=True) as conn:
            conn.execute(f"drop table if exists {table}")
