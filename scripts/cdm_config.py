"""
Configuration and console helpers shared by the OMOP CDM loader scripts.

Configs are JSON "etlconf" files with a ``variables`` map (``@name`` -> value)
that is applied to every string in the config, so paths and names can be
composed from a handful of settings and overridden from the command line.
"""
from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

LogFunc = Callable[[str], None]

OK = "✓"
FAIL = "✗"
EMPTY = "○"
WARN = "⚠"

DEFAULT_CONFIG: Dict[str, Any] = {
    "variables": {},
    "engine": "postgres",
    "sources": {
        "data_dir": "omop-data",
        "dataset": "synthea1k",
        "vocab_dir": "",
        "patient_dir": "",
        "s3_vocab": "s3://ohdsi-sample-data/vocab",
        "s3_patient": "",
        "fetch": "1",
    },
    "schema": {
        "file": "omop-schema/CDM5.3.0_DDL_PostgreSQL.sql",
        "placeholder": "@cdmDatabaseSchema",
        "namespace": "omop531",
    },
    "postgres": {
        "manage_container": "1",
        "image": "postgres:16",
        "container_name": "pg-omop",
        "host": "localhost",
        "port": 5434,
        "container_port": 5432,
        "user": "postgres",
        "password": "testpass123",
        "database": "ohdsi",
        "pgdata_dir": "pgdata",
        "ready_attempts": 30,
        "ready_interval": 1.0,
    },
    "duckdb": {
        "database": "data/omop.duckdb",
        "archive_dir": "data/archive",
        "fresh": "1",
        "vocab_date_format": "%Y%m%d",
    },
    "load": {
        "include_tables": [],
    },
}


class PreconditionError(RuntimeError):
    """A required tool or input is missing; raised before any side effect."""


class ReadinessTimeout(RuntimeError):
    """The database instance did not accept connections in time."""


def load_json(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    file_path = Path(path)
    return json.loads(file_path.read_text()) if file_path.exists() else {}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = merge_config(base[key], value)
        else:
            merged[key] = value
    return merged


def substitute_variables(text: str, variables: Dict[str, str], max_passes: int = 10) -> str:
    # Longest names first so "@dataset" never eats the prefix of "@dataset_dir".
    names = sorted(variables, key=len, reverse=True)
    for _ in range(max_passes):
        previous = text
        for name in names:
            text = text.replace(name, str(variables[name]))
        if text == previous:
            break
    return text


def apply_variables(obj: Any, variables: Dict[str, str]) -> Any:
    if isinstance(obj, str):
        return substitute_variables(obj, variables)
    if isinstance(obj, list):
        return [apply_variables(item, variables) for item in obj]
    if isinstance(obj, dict):
        return {k: apply_variables(v, variables) for k, v in obj.items()}
    return obj


def parse_overrides(raw_values: Iterable[str]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for raw in raw_values:
        if "=" not in raw:
            raise ValueError(f"Invalid --set value (expected VAR=VALUE): {raw}")
        key, value = raw.split("=", 1)
        overrides[key.strip()] = value
    return overrides


def resolve_config(base: Dict[str, Any], *overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge configs over the defaults and apply the variables map."""
    merged = merge_config(DEFAULT_CONFIG, base)
    for override in overrides:
        merged = merge_config(merged, override)
    variables = merged.get("variables", {}) or {}
    resolved = apply_variables({k: v for k, v in merged.items() if k != "variables"}, variables)
    resolved["variables"] = variables

    sources = resolved["sources"]
    data_dir = Path(sources["data_dir"])
    if not sources.get("vocab_dir"):
        sources["vocab_dir"] = str(data_dir / "vocab")
    if not sources.get("patient_dir"):
        sources["patient_dir"] = str(data_dir / sources["dataset"])
    if not sources.get("s3_patient"):
        sources["s3_patient"] = f"s3://ohdsi-sample-data/{sources['dataset']}"
    return resolved


def truthy(value: Any) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def timestamped(message: str) -> str:
    return f"[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] {message}"


def console_log(message: str) -> None:
    print(timestamped(message), flush=True)


def require_tools(tools: Iterable[str]) -> None:
    missing: List[str] = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PreconditionError(
            f"Required tool(s) not found in PATH: {', '.join(missing)}. Please install them first."
        )


def sql_quote_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def sql_quote_identifier(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'
