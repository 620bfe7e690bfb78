"""
Render the OMOP CDM DDL template for a target namespace and apply it.

The DDL ships as a template in which every table is qualified with a literal
placeholder (``@cdmDatabaseSchema``). Rendering is a pure text substitution so
it can be checked without a database.
"""
from __future__ import annotations

import argparse
import re
from pathlib import Path
from typing import List, Optional

from cdm_config import LogFunc, OK, WARN, PreconditionError, console_log

DEFAULT_PLACEHOLDER = "@cdmDatabaseSchema"

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_FOREIGN_KEY_CLAUSE = re.compile(
    r"\s*,\s*foreign\s+key\s*\([^)]*\)\s*references\s+[^\s(]+\s*\([^)]*\)",
    re.IGNORECASE,
)


def render_schema_template(template: str, namespace: str, placeholder: str = DEFAULT_PLACEHOLDER) -> str:
    if not namespace:
        raise ValueError("Target namespace must not be empty")
    return template.replace(placeholder, namespace)


def strip_foreign_keys(ddl: str) -> str:
    """Drop inline ``foreign key(...) references t(c)`` table constraints."""
    return _FOREIGN_KEY_CLAUSE.sub("", ddl)


def split_queries(raw_sql: str) -> List[str]:
    raw_sql = _BLOCK_COMMENT.sub("", raw_sql)
    queries = []
    current = []
    depth = 0
    for line in raw_sql.splitlines():
        stripped = line.strip()
        if stripped.startswith("--"):
            continue
        current.append(line)
        depth += line.count("(") - line.count(")")
        if ";" in line and depth <= 0:
            statement = "\n".join(current)
            before, _sep, _after = statement.partition(";")
            if before.strip():
                queries.append(before)
            current = []
    if current:
        queries.append("\n".join(current))
    return [q for q in queries if q.strip()]


def read_schema_template(schema_file: Path) -> str:
    if not schema_file.exists():
        raise PreconditionError(f"Schema file '{schema_file}' not found.")
    return schema_file.read_text(encoding="utf-8")


def apply_schema(
    engine,
    schema_file: Path,
    namespace: str,
    *,
    placeholder: str = DEFAULT_PLACEHOLDER,
    log: Optional[LogFunc] = None,
) -> int:
    """Create the CDM tables in ``namespace``; returns the number of statements run."""
    emit = log or console_log
    rendered = render_schema_template(read_schema_template(schema_file), engine.qualified(namespace), placeholder)
    if not engine.supports_integrity_toggle:
        emit(
            f"{WARN} {engine.name} cannot suspend foreign-key enforcement per session; "
            "applying schema without foreign key constraints."
        )
        rendered = strip_foreign_keys(rendered)

    emit(f"Applying OMOP CDM schema from {schema_file} to namespace {namespace}...")
    statements = split_queries(rendered)
    for statement in statements:
        engine.execute(statement)
    emit(f"{OK} Schema applied successfully ({len(statements)} statements).")
    return len(statements)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render the OMOP CDM DDL template for a namespace")
    parser.add_argument("--schema-file", required=True, type=Path, help="DDL template to render")
    parser.add_argument("--namespace", required=True, help="Target namespace (schema) name")
    parser.add_argument("--placeholder", default=DEFAULT_PLACEHOLDER, help="Placeholder token in the template")
    parser.add_argument(
        "--no-foreign-keys",
        action="store_true",
        help="Strip inline foreign key constraints from the rendered DDL",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        rendered = render_schema_template(read_schema_template(args.schema_file), args.namespace, args.placeholder)
    except PreconditionError as exc:
        console_log(f"ERROR: {exc}")
        return 1
    if args.no_foreign_keys:
        rendered = strip_foreign_keys(rendered)
    print(rendered)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
