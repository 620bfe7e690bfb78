"""
Post-load validation of an OMOP CDM 5.3 namespace.

All checks are read-only and always run to completion; results accumulate in
a ``ValidationReport``. Only two of them decide the verdict: every expected
table must exist, and the schema source must be free of Redshift-only syntax.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from cdm_config import EMPTY, FAIL, OK, WARN, LogFunc, console_log
from cdm_engines import DuckDBEngine

EXPECTED_TABLES = (
    "concept",
    "vocabulary",
    "domain",
    "concept_class",
    "concept_relationship",
    "relationship",
    "concept_synonym",
    "concept_ancestor",
    "source_to_concept_map",
    "drug_strength",
    "cohort_definition",
    "attribute_definition",
    "cdm_source",
    "metadata",
    "person",
    "observation_period",
    "specimen",
    "death",
    "visit_occurrence",
    "visit_detail",
    "procedure_occurrence",
    "drug_exposure",
    "device_exposure",
    "condition_occurrence",
    "measurement",
    "note",
    "note_nlp",
    "observation",
    "fact_relationship",
    "location",
    "care_site",
    "provider",
    "payer_plan_period",
    "cost",
    "cohort",
    "cohort_attribute",
    "drug_era",
    "dose_era",
    "condition_era",
)

PRIMARY_KEY_TABLES = ("person", "concept", "observation_period")
ROW_COUNT_TABLES = ("vocabulary", "concept", "person", "visit_occurrence", "condition_occurrence")
REDSHIFT_KEYWORDS = ("DISTKEY", "DISTSTYLE", "SORTKEY", "encode", "compound sortkey")


@dataclass
class ValidationReport:
    namespace: str
    schema_file: Optional[Path] = None
    table_count: int = 0
    missing_tables: List[str] = field(default_factory=list)
    pk_count: int = 0
    tables_with_pk: Dict[str, bool] = field(default_factory=dict)
    fk_count: int = 0
    dialect_keywords: List[str] = field(default_factory=list)
    text_columns: int = 0
    bigint_columns: int = 0
    row_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def schema_passed(self) -> bool:
        return not self.missing_tables and not self.dialect_keywords

    @property
    def data_loaded(self) -> bool:
        return self.row_counts.get("concept", 0) > 0 and self.row_counts.get("person", 0) > 0

    @property
    def exit_code(self) -> int:
        return 0 if self.schema_passed else 1


def find_dialect_keywords(schema_text: str, keywords=REDSHIFT_KEYWORDS) -> List[str]:
    lowered = schema_text.lower()
    return [kw for kw in keywords if kw.lower() in lowered]


def _count(engine, sql: str, params: List[str]) -> int:
    sql = sql.replace("?", engine.placeholder)
    return int(engine.scalar(sql, params) or 0)


def check_tables(engine, report: ValidationReport, *, log: LogFunc) -> None:
    log("Verifying tables were created...")
    report.table_count = _count(
        engine,
        """
        SELECT COUNT(*)
        FROM information_schema.tables
        WHERE table_schema = ? AND table_type = 'BASE TABLE'
        """,
        [report.namespace],
    )
    log(f"Found {report.table_count} tables in schema {report.namespace}")

    log("Checking for expected OMOP CDM tables...")
    for table in EXPECTED_TABLES:
        exists = _count(
            engine,
            """
            SELECT COUNT(*)
            FROM information_schema.tables
            WHERE table_schema = ? AND table_name = ?
            """,
            [report.namespace, table],
        )
        if exists:
            log(f"  {OK} {table}")
        else:
            log(f"  {FAIL} {table} (MISSING)")
            report.missing_tables.append(table)

    if report.missing_tables:
        log(f"{FAIL} Missing {len(report.missing_tables)} tables: {' '.join(report.missing_tables)}")
    else:
        log(f"{OK} All expected tables found!")


def _constraint_count(engine, namespace: str, constraint_type: str, table: Optional[str] = None) -> int:
    sql = """
        SELECT COUNT(*)
        FROM information_schema.table_constraints
        WHERE table_schema = ? AND constraint_type = ?
        """
    params = [namespace, constraint_type]
    if table is not None:
        sql += " AND table_name = ?"
        params.append(table)
    return _count(engine, sql, params)


def check_primary_keys(engine, report: ValidationReport, *, log: LogFunc) -> None:
    log("Checking primary keys...")
    report.pk_count = _constraint_count(engine, report.namespace, "PRIMARY KEY")
    log(f"Found {report.pk_count} primary key constraints")
    for table in PRIMARY_KEY_TABLES:
        has_pk = _constraint_count(engine, report.namespace, "PRIMARY KEY", table) > 0
        report.tables_with_pk[table] = has_pk
        if has_pk:
            log(f"  {OK} {table} has primary key")
        else:
            log(f"  {FAIL} {table} missing primary key")


def check_foreign_keys(engine, report: ValidationReport, *, log: LogFunc) -> None:
    log("Checking foreign keys...")
    report.fk_count = _constraint_count(engine, report.namespace, "FOREIGN KEY")
    log(f"Found {report.fk_count} foreign key constraints")


def check_dialect(schema_text: str, report: ValidationReport, *, log: LogFunc) -> None:
    log("Checking for Redshift-specific syntax remnants...")
    report.dialect_keywords = find_dialect_keywords(schema_text)
    for keyword in report.dialect_keywords:
        log(f"  {FAIL} Found Redshift keyword: {keyword}")
    if not report.dialect_keywords:
        log(f"  {OK} No Redshift-specific syntax found")


def check_datatypes(engine, report: ValidationReport, *, log: LogFunc) -> None:
    log("Checking data type compatibility...")
    sql = """
        SELECT COUNT(*)
        FROM information_schema.columns
        WHERE table_schema = ? AND data_type = ?
        """
    report.text_columns = _count(engine, sql, [report.namespace, engine.text_type])
    log(f"Found {report.text_columns} {engine.text_type.upper()} columns (converted from VARCHAR(MAX))")
    report.bigint_columns = _count(engine, sql, [report.namespace, engine.bigint_type])
    log(f"Found {report.bigint_columns} {engine.bigint_type.upper()} columns")


def table_row_count(engine, namespace: str, table: str) -> int:
    try:
        return engine.row_count(namespace, table)
    except engine.errors:
        return 0


def check_row_counts(engine, report: ValidationReport, *, log: LogFunc) -> None:
    log("Verifying data was loaded...")
    for table in ROW_COUNT_TABLES:
        count = table_row_count(engine, report.namespace, table)
        report.row_counts[table] = count
        if count > 0:
            log(f"  {OK} {table}: {count} rows")
        else:
            log(f"  {EMPTY} {table}: 0 rows (or table doesn't exist)")


def run_validation(
    engine,
    namespace: str,
    schema_file: Path,
    *,
    log: Optional[LogFunc] = None,
) -> ValidationReport:
    emit = log or console_log
    report = ValidationReport(namespace=namespace, schema_file=Path(schema_file))
    check_tables(engine, report, log=emit)
    check_primary_keys(engine, report, log=emit)
    check_foreign_keys(engine, report, log=emit)
    schema_text = report.schema_file.read_text(encoding="utf-8") if report.schema_file.exists() else ""
    check_dialect(schema_text, report, log=emit)
    check_datatypes(engine, report, log=emit)
    check_row_counts(engine, report, log=emit)
    return report


def log_summary(report: ValidationReport, *, log: Optional[LogFunc] = None) -> None:
    emit = log or console_log
    counts = report.row_counts
    emit("")
    emit("=== SCHEMA AND DATA LOAD TEST SUMMARY ===")
    emit(f"Schema file: {report.schema_file}")
    emit(f"Test schema: {report.namespace}")
    emit("")
    emit("Schema Statistics:")
    emit(f"  Tables created: {report.table_count}")
    emit(f"  Primary keys: {report.pk_count}")
    emit(f"  Foreign keys: {report.fk_count}")
    emit(f"  TEXT columns: {report.text_columns}")
    emit(f"  BIGINT columns: {report.bigint_columns}")
    emit("")
    emit("Data Statistics:")
    emit(f"  Vocabulary entries: {counts.get('vocabulary', 0)}")
    emit(f"  Concepts: {counts.get('concept', 0)}")
    emit(f"  Persons: {counts.get('person', 0)}")
    emit(f"  Visits: {counts.get('visit_occurrence', 0)}")
    emit(f"  Conditions: {counts.get('condition_occurrence', 0)}")
    emit("")
    if report.schema_passed:
        emit(f"{OK} Schema test PASSED!")
        if report.data_loaded:
            emit(f"{OK} Data loading PASSED!")
        else:
            emit(f"{WARN} Data loading incomplete (some tables may be empty)")
    else:
        emit(f"{FAIL} Schema test FAILED!")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate an OMOP CDM 5.3 schema in a DuckDB file")
    parser.add_argument("--database", required=True, help="DuckDB file to validate")
    parser.add_argument("--schema", default="omop531", help="CDM schema inside the DuckDB file (default: omop531)")
    parser.add_argument(
        "--schema-file",
        default="omop-schema/CDM5.3.0_DDL_PostgreSQL.sql",
        help="DDL template scanned for Redshift-only syntax",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    db_path = Path(args.database)
    if not db_path.exists():
        print(f"Missing CDM DuckDB: {db_path}", file=sys.stderr)
        return 1

    engine = DuckDBEngine(db_path, read_only=True)
    try:
        report = run_validation(engine, args.schema, Path(args.schema_file))
    finally:
        engine.close()
    log_summary(report)
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
