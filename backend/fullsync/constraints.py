"""
Constraint catalog: which column sets identify a row, per table.

Intent:
    The upsert rewriter needs a conflict key for every table it touches. This
    module builds a `table name -> [column set, ...]` mapping from one of two
    sources:

    - "database": introspect the live catalog (`pg_index`), covering primary
      keys, unique constraints and unique indexes usable by ON CONFLICT.
    - "schema": parse a Prisma-style schema file line by line (`model X {`,
      `@@unique([...])`, `@@id([...])`, `field ... @unique`).

    Both sources return only what they find; the `id` fallback lives in
    `choose_conflict_columns`.

Notes:
    The catalog is rebuilt on every rewrite. An unreadable schema file raises
    (OSError) instead of returning an empty catalog, since an empty catalog
    would silently degrade every table to the `id` key.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from backend.fullsync.config import SyncConfig

LOG = logging.getLogger("peersync.fullsync.constraints")

ConstraintCatalog = Dict[str, List[List[str]]]

DEFAULT_CONFLICT_COLUMNS = ["id"]

_MODEL_RE = re.compile(r"^model\s+(\w+)\s*\{")
_BLOCK_ATTR_RE = re.compile(r"^@@(unique|id)\(\s*(?:fields\s*:\s*)?\[([^\]]+)\]")
_TABLE_MAP_RE = re.compile(r'^@@map\(\s*(?:name\s*:\s*)?"([^"]+)"')
_FIELD_RE = re.compile(r"^(\w+)\s+\S+")
_FIELD_MAP_RE = re.compile(r'@map\(\s*(?:name\s*:\s*)?"([^"]+)"')
_FIELD_UNIQUE_RE = re.compile(r"^(\w+)\s+.*\s@unique\b")


def to_snake_case(name: str) -> str:
    """Transliterate a PascalCase model name to its default snake_case table name."""
    out = []
    for index, char in enumerate(name):
        if index > 0 and "A" <= char <= "Z":
            out.append("_" + char.lower())
        else:
            out.append(char.lower())
    return "".join(out)


def _split_columns(raw: str) -> List[str]:
    cols = []
    for part in raw.split(","):
        col = part.strip()
        # Prisma allows `field(sort: Desc)` / `field(length: 10)` inside @@unique
        col = col.split("(", 1)[0].strip()
        if col:
            cols.append(col)
    return cols


def parse_schema_constraints(schema_text: str) -> ConstraintCatalog:
    """Parse uniqueness constraints from Prisma-style schema text.

    The result is keyed by the declared model name, its snake_case form and,
    when present, its `@@map` table name. Field names are translated through
    field-level `@map("...")` so column sets use storage names.
    """
    by_model: Dict[str, List[List[str]]] = {}
    field_maps: Dict[str, Dict[str, str]] = {}
    table_maps: Dict[str, str] = {}
    current: Optional[str] = None

    for line in schema_text.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("//"):
            continue

        model = _MODEL_RE.match(trimmed)
        if model:
            current = model.group(1)
            by_model.setdefault(current, [])
            field_maps.setdefault(current, {})
            continue
        if current is None:
            continue
        if trimmed == "}":
            current = None
            continue

        block = _BLOCK_ATTR_RE.match(trimmed)
        if block:
            by_model[current].append(_split_columns(block.group(2)))
            continue

        table_map = _TABLE_MAP_RE.match(trimmed)
        if table_map:
            table_maps[current] = table_map.group(1)
            continue

        if trimmed.startswith("@@"):
            continue

        field = _FIELD_RE.match(trimmed)
        if field:
            mapped = _FIELD_MAP_RE.search(trimmed)
            if mapped:
                field_maps[current][field.group(1)] = mapped.group(1)

        unique = _FIELD_UNIQUE_RE.match(trimmed)
        if unique:
            by_model[current].append([unique.group(1)])

    catalog: ConstraintCatalog = {}
    for model_name, column_sets in by_model.items():
        mapping = field_maps.get(model_name, {})
        resolved = [[mapping.get(col, col) for col in cols] for cols in column_sets]
        catalog[model_name] = resolved
        catalog.setdefault(to_snake_case(model_name), resolved)
        if model_name in table_maps:
            catalog[table_maps[model_name]] = resolved
    return catalog


def read_schema_constraints(schema_path: Path) -> ConstraintCatalog:
    """Read and parse a schema file. OSError propagates to abort the rewrite."""
    text = Path(schema_path).read_text(encoding="utf-8")
    catalog = parse_schema_constraints(text)
    LOG.info("constraint catalog from %s: %d table keys", schema_path, len(catalog))
    return catalog


_INTROSPECT_SQL = """
    select t.relname,
           array_agg(a.attname::text order by k.n) as columns
      from pg_index i
      join pg_class t      on t.oid = i.indrelid
      join pg_class ic     on ic.oid = i.indexrelid
      join pg_namespace s  on s.oid = t.relnamespace
     cross join lateral unnest(i.indkey::int2[]) with ordinality as k(attnum, n)
      join pg_attribute a  on a.attrelid = t.oid and a.attnum = k.attnum
     where i.indisunique
       and i.indpred is null
       and i.indexprs is null
       and k.n <= i.indnkeyatts
       and s.nspname = %s
       and t.relkind in ('r', 'p')
     group by t.relname, i.indisprimary, ic.relname
     order by t.relname, i.indisprimary, ic.relname
"""


def introspect_constraints(conn, schema: str = "public") -> ConstraintCatalog:
    """Read primary keys and usable unique indexes from the database catalog.

    Partial and expression indexes are skipped because ON CONFLICT cannot
    infer them from a plain column list. Column order follows the index
    definition; primary keys come last per table, after the unique
    constraints that identify a row by its natural key.
    """
    catalog: ConstraintCatalog = {}
    with conn.cursor() as cur:
        cur.execute(_INTROSPECT_SQL, (schema,))
        for table_name, columns in cur.fetchall():
            catalog.setdefault(str(table_name), []).append([str(c) for c in columns])
    LOG.info("constraint catalog from %s catalog: %d tables", schema, len(catalog))
    return catalog


def load_constraint_catalog(
    config: SyncConfig,
    *,
    connect: Optional[Callable[[], object]] = None,
) -> ConstraintCatalog:
    """Build the catalog from the configured source.

    `connect` overrides the connection factory for the "database" source
    (tests); by default psycopg connects to `config.database()`.
    """
    if config.constraint_source == "schema":
        return read_schema_constraints(config.schema_path)

    if connect is None:
        import psycopg

        target = config.database()

        def connect():  # type: ignore[no-redef]
            return psycopg.connect(target.conninfo())

    with connect() as conn:  # type: ignore[union-attr]
        return introspect_constraints(conn)


def choose_conflict_columns(table: str, catalog: Mapping[str, Sequence[Sequence[str]]]) -> List[str]:
    """Pick the conflict key: first composite constraint, else first single-column one, else `id`.

    A single-column `id` key is only used when no other single-column
    constraint exists, whatever position the catalog lists it in.
    """
    constraints = [list(cols) for cols in (catalog.get(table) or []) if cols]
    for cols in constraints:
        if len(cols) > 1:
            return cols
    for cols in constraints:
        if cols != DEFAULT_CONFLICT_COLUMNS:
            return cols
    return list(DEFAULT_CONFLICT_COLUMNS)


__all__ = [
    "ConstraintCatalog",
    "DEFAULT_CONFLICT_COLUMNS",
    "choose_conflict_columns",
    "introspect_constraints",
    "load_constraint_catalog",
    "parse_schema_constraints",
    "read_schema_constraints",
    "to_snake_case",
]
