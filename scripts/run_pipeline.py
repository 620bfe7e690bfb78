"""
End-to-end OMOP CDM 5.3 load: fetch, decompress, provision, apply schema,
bulk-load and validate, strictly in that order.

The runner reads a global config (``-e``), optionally merges an override
(``-c``) and ``--set @var=value`` variable overrides, then executes the six
stages. The exit code is 0 only when every expected table exists and the
schema source is free of Redshift-only syntax.
"""
import argparse
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from apply_cdm_schema import DEFAULT_PLACEHOLDER, apply_schema, read_schema_template
from cdm_config import (
    FAIL,
    LogFunc,
    PreconditionError,
    ReadinessTimeout,
    load_json,
    parse_overrides,
    require_tools,
    resolve_config,
    sql_quote_identifier,
    timestamped,
    truthy,
)
from cdm_engines import ENGINE_ERRORS, provision
from decompress_sources import decompress_sources
from fetch_sources import fetch_sources, pending_fetches, plan_fetches
from load_cdm_tables import FAILED, LOADED, SKIPPED, load_all, summarize_results
from load_order import load_plan
from verify_cdm import ValidationReport, log_summary, run_validation

STAGES = ("fetch", "decompress", "provision", "schema", "load", "validate")
RUN_ERRORS = (PreconditionError, ReadinessTimeout, subprocess.CalledProcessError, ValueError) + ENGINE_ERRORS


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision a database and load OMOP CDM 5.3 data")
    parser.add_argument("-e", "--etlconf", dest="etlconf", required=True, help="Global ETL config json")
    parser.add_argument("-c", "--config", dest="config", help="Override config json")
    parser.add_argument(
        "--set",
        dest="variable_overrides",
        action="append",
        default=[],
        metavar="VAR=VALUE",
        help="Override config variables (repeatable), e.g. --set @engine=duckdb",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    etlconf = load_json(args.etlconf)
    if not etlconf:
        raise PreconditionError(f"ETL config not found or empty: {args.etlconf}")
    overrides = {"variables": parse_overrides(args.variable_overrides)}
    return resolve_config(etlconf, load_json(args.config), overrides)


def preflight(config: Dict[str, Any], fetch_targets) -> List[str]:
    """Check every precondition that must hold before the first side effect."""
    schema_file = Path(config["schema"]["file"])
    read_schema_template(schema_file)

    engine = str(config.get("engine", "")).strip().lower()
    if engine not in ("postgres", "duckdb"):
        raise PreconditionError(f"Unsupported engine '{engine}' (expected postgres or duckdb)")

    try:
        load_plan(include_tables(config))
    except ValueError as exc:
        raise PreconditionError(str(exc)) from exc

    tools: List[str] = []
    if truthy(config["sources"].get("fetch", "1")) and pending_fetches(fetch_targets):
        tools.append("aws")
    if engine == "postgres" and truthy(config["postgres"].get("manage_container", "1")):
        tools.append("docker")
    require_tools(tools)
    return tools


def include_tables(config: Dict[str, Any]) -> Optional[List[str]]:
    raw = config.get("load", {}).get("include_tables") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    names = [str(t).strip() for t in raw if str(t).strip()]
    return names or None


def log_connection_hints(config: Dict[str, Any], log: LogFunc) -> None:
    namespace = config["schema"]["namespace"]
    if str(config["engine"]).strip().lower() == "duckdb":
        db_path = Path(config["duckdb"]["database"]).expanduser()
        log(f"DuckDB database: {db_path}")
        log(f"Example query: SELECT COUNT(*) FROM {sql_quote_identifier(db_path.stem)}.{namespace}.person;")
        return
    pg = config["postgres"]
    log("To connect to the test database:")
    log(f"  psql -h {pg['host']} -p {pg['port']} -U {pg['user']} -d {pg['database']}")
    log("Example queries:")
    log(f"  SELECT COUNT(*) FROM {namespace}.person;")
    log(f"  SELECT * FROM {namespace}.person LIMIT 5;")
    if truthy(pg.get("manage_container", "1")):
        log(f"PostgreSQL data is persisted at: {Path(pg['pgdata_dir']).expanduser().resolve()}")
        log(f"Container '{pg['container_name']}' is still running and accessible.")
        log(f"To stop the container: docker stop {pg['container_name']}")
        log(f"To remove the container: docker rm {pg['container_name']}")


def run_pipeline(config: Dict[str, Any], progress: tqdm) -> ValidationReport:
    def log(message: str) -> None:
        progress.write(timestamped(message))

    sources = config["sources"]
    schema_conf = config["schema"]
    namespace = schema_conf["namespace"]
    vocab_dir = Path(sources["vocab_dir"])
    patient_dir = Path(sources["patient_dir"])
    schema_file = Path(schema_conf["file"])
    fetch_targets = plan_fetches(vocab_dir, patient_dir, sources["s3_vocab"], sources["s3_patient"])

    preflight(config, fetch_targets)
    log(f"Testing schema file: {schema_file}")
    log(f"Vocabulary directory: {vocab_dir}")
    log(f"Patient data directory: {patient_dir}")

    if truthy(sources.get("fetch", "1")):
        fetch_sources(fetch_targets, log=log)
    else:
        log("Source fetch disabled; using staged files as-is.")
    progress.update(1)

    decompress_sources(vocab_dir, patient_dir, log=log)
    progress.update(1)

    engine = provision(config, log=log)
    try:
        log(f"Target: {engine.describe()}")
        progress.update(1)

        apply_schema(
            engine,
            schema_file,
            namespace,
            placeholder=schema_conf.get("placeholder") or DEFAULT_PLACEHOLDER,
            log=log,
        )
        progress.update(1)

        results = load_all(
            engine,
            namespace,
            vocab_dir,
            patient_dir,
            include_tables=include_tables(config),
            vocab_date_format=config.get("duckdb", {}).get("vocab_date_format") if engine.name == "duckdb" else None,
            log=log,
        )
        summary = summarize_results(results)
        log(f"Files loaded: {summary[LOADED]}, failed: {summary[FAILED]}, skipped: {summary[SKIPPED]}")
        progress.update(1)

        report = run_validation(engine, namespace, schema_file, log=log)
        progress.update(1)
    finally:
        engine.close()

    log_summary(report, log=log)
    if report.schema_passed:
        log("")
        log_connection_hints(config, log)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    with tqdm(total=len(STAGES), desc="OMOP CDM load", unit="stage") as progress:
        try:
            config = build_config(args)
            report = run_pipeline(config, progress)
        except RUN_ERRORS as exc:
            progress.write(timestamped(f"{FAIL} ERROR: {exc}"))
            return 1
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
