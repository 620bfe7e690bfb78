"""
Database engines the CDM loader can target.

Both engines expose the same small surface: create a namespace, run DDL,
bulk-copy a delimited file into a table, toggle referential-integrity
enforcement for the session and answer catalog queries. PostgreSQL is the
production target; DuckDB is an embedded target for local runs and CI.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import duckdb
import psycopg2

from cdm_config import LogFunc, console_log, sql_quote_identifier, sql_quote_string, truthy
from clean_run import archive_existing
import postgres_container


def duckdb_copy_options(fmt) -> str:
    if fmt.is_tab:
        # Tab-delimited vocabulary exports are unquoted and may contain literal quotes.
        options = [f"DELIMITER {sql_quote_string(fmt.delimiter)}", "QUOTE ''", "ESCAPE ''"]
    else:
        options = ["DELIMITER ','", "QUOTE '\"'", "ESCAPE '\"'"]
    options.append("NULLSTR ''")
    options.append(f"HEADER {'true' if fmt.header else 'false'}")
    if fmt.date_format:
        options.append(f"DATEFORMAT {sql_quote_string(fmt.date_format)}")
    return "FORMAT csv, " + ", ".join(options)


def postgres_copy_options(fmt) -> str:
    header = "true" if fmt.header else "false"
    if fmt.is_tab:
        return f"FORMAT text, DELIMITER E'\\t', NULL '', HEADER {header}"
    return f"FORMAT csv, DELIMITER ',', QUOTE '\"', ESCAPE '\"', NULL '', HEADER {header}"


class DuckDBEngine:
    name = "duckdb"
    placeholder = "?"
    supports_integrity_toggle = False
    text_type = "VARCHAR"
    bigint_type = "BIGINT"
    errors = (duckdb.Error,)

    def __init__(self, database: Path, *, read_only: bool = False) -> None:
        self.database = Path(database)
        self.con = duckdb.connect(str(self.database), read_only=read_only)

    def close(self) -> None:
        self.con.close()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        if params is None:
            self.con.execute(sql)
        else:
            self.con.execute(sql, list(params))

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        row = self.con.execute(sql, list(params or [])).fetchone()
        return row[0] if row else None

    def qualified(self, namespace: str) -> str:
        # A file named like the schema opens a catalog of the same name, so bare
        # "<schema>.<table>" would be ambiguous between the two.
        catalog = self.scalar("SELECT current_database()")
        return f"{sql_quote_identifier(catalog)}.{namespace}"

    def create_namespace(self, namespace: str, *, drop_existing: bool = True) -> None:
        target = self.qualified(namespace)
        if drop_existing:
            self.con.execute(f"DROP SCHEMA IF EXISTS {target} CASCADE")
        self.con.execute(f"CREATE SCHEMA IF NOT EXISTS {target}")

    def suspend_integrity(self) -> None:
        # No session-level switch; the schema is applied without foreign keys instead.
        return None

    def restore_integrity(self) -> None:
        return None

    def copy_file(self, namespace: str, table: str, path: Path, fmt) -> None:
        self.con.execute(
            f"COPY {self.qualified(namespace)}.{table} FROM {sql_quote_string(str(path))} "
            f"({duckdb_copy_options(fmt)})"
        )

    def row_count(self, namespace: str, table: str) -> int:
        return int(self.scalar(f"SELECT COUNT(*) FROM {self.qualified(namespace)}.{table}"))

    def describe(self) -> str:
        return f"DuckDB file {self.database}"


class PostgresEngine:
    name = "postgres"
    placeholder = "%s"
    supports_integrity_toggle = True
    text_type = "text"
    bigint_type = "bigint"
    errors = (psycopg2.Error,)

    def __init__(self, *, host: str, port: int, user: str, password: str, dbname: str) -> None:
        self.host = host
        self.port = int(port)
        self.user = user
        self.dbname = dbname
        self.con = psycopg2.connect(host=host, port=self.port, user=user, password=password, dbname=dbname)
        self.con.autocommit = True

    def close(self) -> None:
        self.con.close()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        with self.con.cursor() as cur:
            cur.execute(sql, params)

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        with self.con.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return row[0] if row else None

    def qualified(self, namespace: str) -> str:
        return namespace

    def create_database(self, name: str) -> bool:
        """Create ``name`` unless it already exists; returns True when created."""
        if self.scalar("SELECT 1 FROM pg_database WHERE datname = %s", [name]):
            return False
        self.execute(f"CREATE DATABASE {name}")
        return True

    def create_namespace(self, namespace: str, *, drop_existing: bool = True) -> None:
        if drop_existing:
            self.execute(f"DROP SCHEMA IF EXISTS {namespace} CASCADE")
        self.execute(f"CREATE SCHEMA {namespace}")

    def suspend_integrity(self) -> None:
        self.execute("SET session_replication_role = 'replica'")

    def restore_integrity(self) -> None:
        self.execute("SET session_replication_role = 'origin'")

    def copy_file(self, namespace: str, table: str, path: Path, fmt) -> None:
        statement = f"COPY {namespace}.{table} FROM STDIN WITH ({postgres_copy_options(fmt)})"
        with self.con.cursor() as cur, Path(path).open("r", encoding="utf-8", newline="") as fh:
            cur.copy_expert(statement, fh)

    def row_count(self, namespace: str, table: str) -> int:
        return int(self.scalar(f"SELECT COUNT(*) FROM {namespace}.{table}"))

    def describe(self) -> str:
        return f"PostgreSQL {self.user}@{self.host}:{self.port}/{self.dbname}"


ENGINE_ERRORS = DuckDBEngine.errors + PostgresEngine.errors


def provision_duckdb(conf: Dict[str, Any], namespace: str, *, log: Optional[LogFunc] = None) -> DuckDBEngine:
    emit = log or console_log
    db_path = Path(conf["database"]).expanduser()
    if truthy(conf.get("fresh", "1")):
        archive_existing(db_path, Path(conf.get("archive_dir") or "data/archive"), log=emit)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    emit(f"Opening DuckDB database: {db_path}")
    engine = DuckDBEngine(db_path)
    emit(f"Creating schema: {namespace}")
    engine.create_namespace(namespace)
    return engine


def provision_postgres(conf: Dict[str, Any], namespace: str, *, log: Optional[LogFunc] = None) -> PostgresEngine:
    emit = log or console_log
    if truthy(conf.get("manage_container", "1")):
        postgres_container.start_fresh_container(conf, log=emit)

    connect_args = {
        "host": conf["host"],
        "port": int(conf["port"]),
        "user": conf["user"],
        "password": conf["password"],
    }
    admin = PostgresEngine(dbname="postgres", **connect_args)
    try:
        emit(f"Creating database: {conf['database']}")
        if not admin.create_database(conf["database"]):
            emit(f"Database {conf['database']} already exists; reusing it.")
    finally:
        admin.close()

    engine = PostgresEngine(dbname=conf["database"], **connect_args)
    emit(f"Creating schema: {namespace}")
    engine.create_namespace(namespace)
    return engine


def provision(config: Dict[str, Any], *, log: Optional[LogFunc] = None):
    engine_name = str(config.get("engine", "postgres")).strip().lower()
    namespace = config["schema"]["namespace"]
    if engine_name == "duckdb":
        return provision_duckdb(config["duckdb"], namespace, log=log)
    if engine_name == "postgres":
        return provision_postgres(config["postgres"], namespace, log=log)
    raise ValueError(f"Unsupported engine: {engine_name}")
