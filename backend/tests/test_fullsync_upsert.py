"""
INSERT -> UPSERT rewriting of data-only dumps.

Covers statement splitting (quotes, comments, meta-commands), conflict key
selection, pass-through of irregular statements, and that replaying a
rewritten script twice leaves the database unchanged.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

from backend.fullsync.upsert import (
    build_upsert,
    is_boilerplate,
    parse_single_row_insert,
    rewrite_as_upsert,
    rewrite_sql,
    rewrite_statement,
    split_statements,
)
from backend.fullsync.tools import StatementExecutorTool

import sqlite_nodes

CATALOG = {
    "users": [["id"], ["email"]],
    "enrollments": [["id"], ["user_id", "course"]],
    "Orders": [["orderId"], ["userId", "orderId"]],
    "tags": [["name"]],
}


def test_split_ignores_semicolons_inside_strings_and_identifiers():
    sql = (
        "INSERT INTO users (id, name) VALUES (1, 'a;b');\n"
        "INSERT INTO users (id, name) VALUES (2, 'it''s; fine');\n"
        'INSERT INTO "we;ird" (id) VALUES (3);\n'
    )
    statements = split_statements(sql)
    assert statements == [
        "INSERT INTO users (id, name) VALUES (1, 'a;b')",
        "INSERT INTO users (id, name) VALUES (2, 'it''s; fine')",
        'INSERT INTO "we;ird" (id) VALUES (3)',
    ]


def test_split_handles_backslash_escaped_strings():
    sql = "INSERT INTO users (id, name) VALUES (1, E'a\\';b');\nSELECT 1;"
    statements = split_statements(sql)
    assert statements == ["INSERT INTO users (id, name) VALUES (1, E'a\\';b')", "SELECT 1"]


def test_split_drops_comments_and_meta_commands():
    sql = (
        "\\restrict abc123\n"
        "-- comment; with semicolon\n"
        "INSERT INTO users (id) VALUES (1); -- trailing\n"
        "\n"
        "\\unrestrict abc123\n"
    )
    assert split_statements(sql) == ["INSERT INTO users (id) VALUES (1)"]


def test_boilerplate_detection_keeps_setval():
    assert is_boilerplate("SET statement_timeout = 0")
    assert is_boilerplate("SELECT pg_catalog.set_config('search_path', '', false)")
    assert not is_boilerplate("SELECT pg_catalog.setval('public.users_id_seq', 42, true)")
    assert not is_boilerplate("INSERT INTO settings (key) VALUES ('SET x')")


def test_rewrite_prefers_unique_column_over_primary_key_id():
    out = rewrite_statement("INSERT INTO public.users (id, email, name) VALUES (1, 'a@x', 'A')", CATALOG)
    assert out == (
        "INSERT INTO public.users (id, email, name) VALUES (1, 'a@x', 'A') "
        "ON CONFLICT (email) DO UPDATE SET id = EXCLUDED.id, name = EXCLUDED.name;"
    )


def test_rewrite_prefers_composite_constraint():
    out = rewrite_statement(
        "INSERT INTO enrollments (id, user_id, course, grade) VALUES (7, 1, 'math', 'A')", CATALOG
    )
    assert "ON CONFLICT (user_id, course)" in out
    assert "DO UPDATE SET id = EXCLUDED.id, grade = EXCLUDED.grade;" in out


def test_rewrite_quotes_mixed_case_identifiers_and_qualified_tables():
    out = rewrite_statement(
        'INSERT INTO public."Orders" ("orderId", "userId", total) VALUES (\'o1\', \'u1\', 10)', CATALOG
    )
    assert out.startswith('INSERT INTO public."Orders" ("orderId", "userId", total) VALUES (\'o1\', \'u1\', 10)')
    assert 'ON CONFLICT ("userId", "orderId") DO UPDATE SET total = EXCLUDED.total;' in out


def test_rewrite_falls_back_to_id_for_unknown_tables():
    out = rewrite_statement("INSERT INTO audit_log (id, msg) VALUES (1, 'x')", CATALOG)
    assert "ON CONFLICT (id) DO UPDATE SET msg = EXCLUDED.msg;" in out


def test_rewrite_all_key_columns_does_nothing_on_conflict():
    out = rewrite_statement("INSERT INTO tags (name) VALUES ('red')", CATALOG)
    assert out == "INSERT INTO tags (name) VALUES ('red') ON CONFLICT (name) DO NOTHING;"


def test_multi_row_and_subquery_inserts_pass_through():
    multi = "INSERT INTO users (id, email) VALUES (1, 'a'), (2, 'b')"
    sub = "INSERT INTO users (id, email) VALUES ((SELECT 1), 'a') ON CONFLICT DO NOTHING"
    select = "INSERT INTO users (id, email) SELECT id, email FROM staging"
    assert parse_single_row_insert(multi) is None
    assert parse_single_row_insert(sub) is None
    assert parse_single_row_insert(select) is None
    assert rewrite_statement(multi, CATALOG) == multi + ";"


def test_values_with_parentheses_in_strings_are_single_row():
    insert = parse_single_row_insert("INSERT INTO users (id, name) VALUES (1, 'a) (b')")
    assert insert is not None
    assert insert.values_sql == "(1, 'a) (b')"
    assert insert.columns == ["id", "name"]


def test_build_upsert_preserves_raw_column_text():
    insert = parse_single_row_insert('INSERT INTO t ("Id", "Name") VALUES (1, \'x\')')
    assert insert is not None
    assert insert.table_key == "t"
    assert build_upsert(insert, ["Id"]) == (
        'INSERT INTO t ("Id", "Name") VALUES (1, \'x\') ON CONFLICT ("Id") DO UPDATE SET "Name" = EXCLUDED."Name";'
    )


def test_rewrite_sql_counts_and_is_stable_when_applied_twice():
    sql = (
        "SET statement_timeout = 0;\n"
        "SELECT pg_catalog.set_config('search_path', '', false);\n"
        "INSERT INTO users (id, email, name) VALUES (1, 'a@x', 'A');\n"
        "INSERT INTO users (id, email) VALUES (2, 'b'), (3, 'c');\n"
        "SELECT pg_catalog.setval('public.users_id_seq', 3, true);\n"
    )
    first = rewrite_sql(sql, CATALOG)
    assert first.rewritten == 1
    assert first.passed_through == 2
    assert first.dropped == 2
    assert first.tables == {"users"}

    second = rewrite_sql("\n".join(first.statements), CATALOG)
    assert second.statements == first.statements
    assert second.rewritten == 0


def test_rewrite_as_upsert_writes_sibling_file(tmp_path: Path):
    dump = tmp_path / "full-sync-s1.sql"
    dump.write_text("SET x = 1;\nINSERT INTO users (id, email) VALUES (1, 'a');\n", encoding="utf-8")
    target = rewrite_as_upsert(dump, CATALOG)
    assert target == tmp_path / "full-sync-s1-upsert.sql"
    assert target.read_text(encoding="utf-8") == (
        "INSERT INTO users (id, email) VALUES (1, 'a') ON CONFLICT (email) DO UPDATE SET id = EXCLUDED.id;\n"
    )
    assert dump.exists()


def test_replaying_upsert_script_twice_is_idempotent(tmp_path: Path):
    source = sqlite_nodes.create_db(
        tmp_path / "source.db",
        users=[(1, "a@x", "Ann"), (2, "b@x", "Bo's")],
        enrollments=[(1, 1, "math", "A"), (2, 2, "art", None)],
    )
    target = sqlite_nodes.create_db(
        tmp_path / "target.db",
        users=[(1, "a@x", "stale"), (9, "z@x", "Zed")],
        enrollments=[(1, 1, "math", "C")],
    )
    dump = tmp_path / "full-sync-s2.sql"
    dump.write_text(sqlite_nodes.dump_sql(source), encoding="utf-8")
    script = rewrite_as_upsert(dump, CATALOG)

    def connect():
        return sqlite3.connect(target, isolation_level=None)

    tool = StatementExecutorTool(connect, lambda: CATALOG)
    first = tool.restore(script)
    after_first = (sqlite_nodes.rows(target, "users"), sqlite_nodes.rows(target, "enrollments"))
    second = tool.restore(script)
    after_second = (sqlite_nodes.rows(target, "users"), sqlite_nodes.rows(target, "enrollments"))

    assert first.statements_failed == 0
    assert second.statements_failed == 0
    assert after_first == after_second
    assert after_first[0] == [(1, "a@x", "Ann"), (2, "b@x", "Bo's"), (9, "z@x", "Zed")]
    assert after_first[1] == [(1, 1, "math", "A"), (2, 2, "art", None)]
