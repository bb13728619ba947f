"""
INSERT -> UPSERT rewriting of data-only dumps.

Intent:
    Replaying an INSERT-only dump into a database that already holds rows
    fails on every uniqueness constraint. Rewriting each single-row INSERT into
    `INSERT ... ON CONFLICT (<key>) DO UPDATE SET ...` (or `DO NOTHING` when
    every column belongs to the key) makes a restore idempotent, so a restore
    interrupted halfway can simply be run again.

Behavior:
    - Dump boilerplate is dropped: `--` comments, blank lines, `SET ...`,
      `SELECT pg_catalog.set_config(...)` and psql meta-commands (`\\restrict`).
      `SELECT pg_catalog.setval(...)` is kept so sequences follow the data.
    - Statements are split on `;` outside quoted strings and identifiers.
    - Only `INSERT INTO t (cols) VALUES (...)` with exactly one value tuple is
      rewritten. Multi-row inserts, subqueries, statements that already carry
      ON CONFLICT, and any other statement pass through unchanged.
    - Values are opaque text; quoting is inherited from the dump.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Set

from backend.fullsync.constraints import choose_conflict_columns
from backend.fullsync.snapshots import upsert_path_for

LOG = logging.getLogger("peersync.fullsync.upsert")

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)'
_INSERT_RE = re.compile(
    rf"^INSERT\s+INTO\s+(?P<table>{_IDENT}(?:\s*\.\s*{_IDENT})?)\s*\((?P<cols>[^)]*)\)\s*VALUES\s*(?P<rest>\(.*)$",
    re.IGNORECASE | re.DOTALL,
)
_PLAIN_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_$]*$")
_BOILERPLATE_RE = re.compile(r"^(?:SET\s|SELECT\s+pg_catalog\.set_config\s*\()", re.IGNORECASE)


# ------------------------------ Splitting -----------------------------------


def split_statements(sql_text: str) -> List[str]:
    """Split SQL text into statements without comments or psql meta-commands.

    Semicolons inside '...' strings (including E'...' with backslash escapes)
    and "..." identifiers do not terminate a statement. Returned statements are
    stripped and carry no trailing semicolon; empty fragments are discarded.
    """
    statements: List[str] = []
    buf: List[str] = []
    i = 0
    n = len(sql_text)
    at_line_start = True

    while i < n:
        ch = sql_text[i]

        if at_line_start and ch == "\\" and not "".join(buf).strip():
            # psql meta-command (e.g. \restrict); runs to end of line
            end = sql_text.find("\n", i)
            i = n if end == -1 else end + 1
            continue

        if ch == "-" and sql_text.startswith("--", i):
            end = sql_text.find("\n", i)
            i = n if end == -1 else end
            continue

        if ch == "'":
            backslash_escapes = bool(buf) and buf[-1] in ("E", "e") and (len(buf) < 2 or not (buf[-2].isalnum() or buf[-2] == "_"))
            j = i + 1
            while j < n:
                c = sql_text[j]
                if backslash_escapes and c == "\\":
                    j += 2
                    continue
                if c == "'":
                    if j + 1 < n and sql_text[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            buf.append(sql_text[i : j + 1])
            i = j + 1
            at_line_start = False
            continue

        if ch == '"':
            j = i + 1
            while j < n:
                if sql_text[j] == '"':
                    if j + 1 < n and sql_text[j + 1] == '"':
                        j += 2
                        continue
                    break
                j += 1
            buf.append(sql_text[i : j + 1])
            i = j + 1
            at_line_start = False
            continue

        if ch == ";":
            stmt = "".join(buf).strip()
            if stmt:
                statements.append(stmt)
            buf = []
            i += 1
            at_line_start = False
            continue

        buf.append(ch)
        at_line_start = ch == "\n"
        i += 1

    tail = "".join(buf).strip()
    if tail:
        statements.append(tail)
    return statements


def is_boilerplate(statement: str) -> bool:
    """Session settings emitted by pg_dump that must not be replayed."""
    return bool(_BOILERPLATE_RE.match(statement))


# ------------------------------ Parsing -------------------------------------


def unquote_ident(ident: str) -> str:
    ident = ident.strip()
    if len(ident) >= 2 and ident.startswith('"') and ident.endswith('"'):
        return ident[1:-1].replace('""', '"')
    return ident


def quote_ident(name: str) -> str:
    """Quote an identifier unless it is a plain lower-case name."""
    if _PLAIN_IDENT_RE.match(name):
        return name
    return '"' + name.replace('"', '""') + '"'


def _table_key(table: str) -> str:
    """Bare table name used for catalog lookup (`public."Orders"` -> `Orders`)."""
    parts = re.findall(_IDENT, table)
    return unquote_ident(parts[-1]) if parts else table


def _first_tuple_end(text: str) -> int:
    """Index just past the parenthesised tuple that starts `text`, or -1."""
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "'":
            backslash_escapes = i > 0 and text[i - 1] in ("E", "e") and (i < 2 or not (text[i - 2].isalnum() or text[i - 2] == "_"))
            j = i + 1
            while j < n:
                if backslash_escapes and text[j] == "\\":
                    j += 2
                    continue
                if text[j] == "'":
                    if j + 1 < n and text[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            i = j + 1
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return -1


@dataclass(frozen=True)
class InsertStatement:
    table: str
    table_key: str
    columns_sql: str
    columns: List[str]
    values_sql: str


def parse_single_row_insert(statement: str) -> Optional[InsertStatement]:
    """Parse `INSERT INTO t (cols) VALUES (...)` with exactly one tuple; otherwise None."""
    match = _INSERT_RE.match(statement.strip().rstrip(";").rstrip())
    if not match:
        return None
    rest = match.group("rest")
    end = _first_tuple_end(rest)
    if end == -1 or rest[end:].strip():
        return None
    values_sql = rest[:end]
    inner = values_sql[1:-1].lstrip()
    if re.match(r"(?i)select\b", inner):
        return None
    cols_sql = match.group("cols").strip()
    columns = [unquote_ident(c) for c in cols_sql.split(",") if c.strip()]
    if not columns:
        return None
    table = match.group("table").strip()
    return InsertStatement(
        table=table,
        table_key=_table_key(table),
        columns_sql=cols_sql,
        columns=columns,
        values_sql=values_sql,
    )


# ------------------------------ Rewriting -----------------------------------


def build_upsert(insert: InsertStatement, conflict_columns: Sequence[str]) -> str:
    conflict = set(conflict_columns)
    raw_columns = [c.strip() for c in insert.columns_sql.split(",") if c.strip()]
    updates = [
        f"{raw} = EXCLUDED.{raw}"
        for raw, name in zip(raw_columns, insert.columns)
        if name not in conflict
    ]
    target = ", ".join(quote_ident(c) for c in conflict_columns)
    head = f"INSERT INTO {insert.table} ({insert.columns_sql}) VALUES {insert.values_sql} ON CONFLICT ({target})"
    if updates:
        return f"{head} DO UPDATE SET {', '.join(updates)};"
    return f"{head} DO NOTHING;"


def rewrite_statement(statement: str, catalog: Mapping[str, Sequence[Sequence[str]]]) -> str:
    """Rewrite one statement; non-matching statements come back unchanged (with `;`)."""
    insert = parse_single_row_insert(statement)
    if insert is None:
        return statement.rstrip().rstrip(";") + ";"
    conflict_columns = choose_conflict_columns(insert.table_key, catalog)
    return build_upsert(insert, conflict_columns)


@dataclass
class RewriteResult:
    statements: List[str] = field(default_factory=list)
    rewritten: int = 0
    passed_through: int = 0
    dropped: int = 0
    tables: Set[str] = field(default_factory=set)


def rewrite_sql(sql_text: str, catalog: Mapping[str, Sequence[Sequence[str]]]) -> RewriteResult:
    result = RewriteResult()
    for statement in split_statements(sql_text):
        if is_boilerplate(statement):
            result.dropped += 1
            continue
        insert = parse_single_row_insert(statement)
        if insert is None:
            result.statements.append(statement + ";")
            result.passed_through += 1
            continue
        conflict_columns = choose_conflict_columns(insert.table_key, catalog)
        if insert.table_key not in result.tables:
            LOG.debug("upsert %s on conflict (%s)", insert.table_key, ", ".join(conflict_columns))
        result.tables.add(insert.table_key)
        result.statements.append(build_upsert(insert, conflict_columns))
        result.rewritten += 1
    return result


def rewrite_as_upsert(source: Path, catalog: Mapping[str, Sequence[Sequence[str]]]) -> Path:
    """Rewrite a dump file into its `-upsert.sql` sibling and return that path."""
    source = Path(source)
    target = upsert_path_for(source)
    if target == source:
        return source
    result = rewrite_sql(source.read_text(encoding="utf-8"), catalog)
    target.write_text("\n".join(result.statements) + ("\n" if result.statements else ""), encoding="utf-8")
    LOG.info(
        "upsert rewrite %s: %d rewritten, %d passed through, %d dropped, %d tables, %d catalog keys",
        target.name,
        result.rewritten,
        result.passed_through,
        result.dropped,
        len(result.tables),
        len(catalog),
    )
    return target


__all__ = [
    "InsertStatement",
    "RewriteResult",
    "build_upsert",
    "is_boilerplate",
    "parse_single_row_insert",
    "quote_ident",
    "rewrite_as_upsert",
    "rewrite_sql",
    "rewrite_statement",
    "split_statements",
]
