"""
SQLite stand-in for a node's database.

`SqliteTool` implements the snapshot tool interface: `export` writes a
pg_dump-shaped data-only script (boilerplate, comments, one INSERT per row),
`restore` replays a script through `StatementExecutorTool`.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from backend.fullsync.tools import StatementExecutorTool, ToolResult

SCHEMA = """
create table users (
    id integer primary key,
    email text not null unique,
    name text
);
create table enrollments (
    id integer primary key,
    user_id integer not null,
    course text not null,
    grade text,
    unique (user_id, course)
);
"""

TABLES = ("users", "enrollments")

CATALOG: Dict[str, List[List[str]]] = {
    "users": [["id"], ["email"]],
    "enrollments": [["id"], ["user_id", "course"]],
}


def create_db(path: Path, users: Iterable[Tuple] = (), enrollments: Iterable[Tuple] = ()) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA)
        conn.executemany("insert into users (id, email, name) values (?, ?, ?)", list(users))
        conn.executemany(
            "insert into enrollments (id, user_id, course, grade) values (?, ?, ?, ?)", list(enrollments)
        )
        conn.commit()
    finally:
        conn.close()
    return path


def rows(path: Path, table: str) -> List[Tuple]:
    conn = sqlite3.connect(path)
    try:
        return list(conn.execute(f"select * from {table} order by id"))
    finally:
        conn.close()


def _literal(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def dump_sql(path: Path) -> str:
    lines = [
        "--",
        "-- PostgreSQL database dump",
        "--",
        "",
        "SET statement_timeout = 0;",
        "SET client_encoding = 'UTF8';",
        "SELECT pg_catalog.set_config('search_path', '', false);",
        "",
    ]
    conn = sqlite3.connect(path)
    try:
        for table in TABLES:
            lines.append(f"--\n-- Data for Name: {table}; Type: TABLE DATA\n--\n")
            cur = conn.execute(f"select * from {table} order by id")
            cols = [d[0] for d in cur.description]
            for row in cur:
                lines.append(
                    f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join(_literal(v) for v in row)});"
                )
            lines.append("")
    finally:
        conn.close()
    lines.append("-- PostgreSQL database dump complete")
    return "\n".join(lines) + "\n"


class SqliteTool:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.exports = 0
        self.restores: List[Path] = []

    def _connect(self):
        return sqlite3.connect(self.db_path, isolation_level=None)

    def export(self, dest: Path) -> ToolResult:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(dump_sql(self.db_path), encoding="utf-8")
        self.exports += 1
        return ToolResult(tool="sqlite-dump")

    def restore(self, src: Path) -> ToolResult:
        self.restores.append(Path(src))
        return StatementExecutorTool(self._connect, lambda: dict(CATALOG)).restore(src)
