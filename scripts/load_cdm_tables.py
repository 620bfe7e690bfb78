"""
Bulk-load staged OMOP CSV files into CDM tables in dependency order.

Vocabulary files are tab-delimited without a header and are loaded with
quoting disabled; patient files are comma-delimited CSV with a header. Each
file is one independent load: referential-integrity enforcement is suspended
for the copy and restored afterwards, a missing file is skipped and a failed
copy is logged without stopping the run.
"""
from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from cdm_config import FAIL, OK, LogFunc, console_log
from cdm_engines import DuckDBEngine
from load_order import VOCAB, TIER_DESCRIPTIONS, FileFormat, TableSource, load_plan

LOADED = "loaded"
FAILED = "failed"
SKIPPED = "skipped"

# Archives and partial decompression output sitting next to the chunks.
NON_DATA_SUFFIXES = (".lzo", ".bz2", ".part")


@dataclass
class LoadResult:
    table: str
    path: Path
    status: str
    rows: Optional[int] = None
    error: str = ""


def discover_files(folder: Path, file_name: str) -> List[Path]:
    """
    Resolve the files holding one logical table.

    An unsuffixed ``<name>.csv`` wins outright; otherwise the ``<name>.csv.N``
    chunks are returned in lexical order, leaving out archives and
    partially written decompression output.
    """
    single = folder / file_name
    if single.is_file():
        return [single]
    if not folder.is_dir():
        return []
    return sorted(
        p
        for p in folder.glob(f"{file_name}.*")
        if p.is_file() and not p.name.endswith(NON_DATA_SUFFIXES)
    )


def count_lines(path: Path) -> int:
    with path.open("rb") as fh:
        return sum(1 for _ in fh)


def load_file(
    engine,
    namespace: str,
    table: str,
    path: Path,
    fmt: FileFormat,
    *,
    log: Optional[LogFunc] = None,
) -> LoadResult:
    emit = log or console_log
    if not path.is_file():
        emit(f"  SKIP: File not found: {path}")
        return LoadResult(table, path, SKIPPED)

    lines = count_lines(path)
    header_note = "rows with header" if fmt.header else "rows, no header"
    emit(f"  Loading {table} from {path.name} ({lines} {header_note})...")
    try:
        engine.suspend_integrity()
        try:
            engine.copy_file(namespace, table, path, fmt)
        finally:
            engine.restore_integrity()
    except engine.errors + (OSError, UnicodeDecodeError) as exc:
        message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
        emit(f"    {FAIL} Failed to load {table} from {path.name}: {message}")
        return LoadResult(table, path, FAILED, error=message)

    rows = engine.row_count(namespace, table)
    emit(f"    {OK} Loaded {rows} rows into {table}")
    return LoadResult(table, path, LOADED, rows=rows)


def load_table(
    engine,
    namespace: str,
    source: TableSource,
    folder: Path,
    fmt: FileFormat,
    *,
    log: Optional[LogFunc] = None,
) -> List[LoadResult]:
    emit = log or console_log
    files = discover_files(folder, source.file_name)
    if not files:
        emit(f"  SKIP: File not found: {folder / source.file_name}")
        return [LoadResult(source.table, folder / source.file_name, SKIPPED)]

    results = []
    for path in files:
        if path.name != source.file_name:
            emit(f"  Loading chunk: {path.name}")
        results.append(load_file(engine, namespace, source.table, path, fmt, log=emit))
    return results


def load_all(
    engine,
    namespace: str,
    vocab_dir: Path,
    patient_dir: Path,
    *,
    include_tables: Optional[Iterable[str]] = None,
    vocab_date_format: Optional[str] = None,
    log: Optional[LogFunc] = None,
    progress_cb: Optional[Callable[[], None]] = None,
) -> List[LoadResult]:
    emit = log or console_log
    plan = load_plan(include_tables)
    emit(f"Loading data into OMOP CDM tables ({len(plan)} tables)...")

    results: List[LoadResult] = []
    step = 0
    current_tier = None
    for source in plan:
        if source.tier != current_tier:
            step += 1
            current_tier = source.tier
            emit(f"Step {step}: Loading {TIER_DESCRIPTIONS.get(source.tier, source.tier)}...")
        if source.dataset == VOCAB:
            folder = Path(vocab_dir)
            fmt = replace(source.file_format, date_format=vocab_date_format or None)
        else:
            folder = Path(patient_dir)
            fmt = source.file_format
        results.extend(load_table(engine, namespace, source, folder, fmt, log=emit))
        if progress_cb:
            progress_cb()

    emit("Data loading complete.")
    return results


def summarize_results(results: Iterable[LoadResult]) -> Dict[str, int]:
    summary = {LOADED: 0, FAILED: 0, SKIPPED: 0}
    for result in results:
        summary[result.status] = summary.get(result.status, 0) + 1
    return summary


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load staged OMOP CSV files into a DuckDB CDM schema")
    parser.add_argument("--database", required=True, help="DuckDB file holding the CDM schema")
    parser.add_argument("--schema", default="omop531", help="Target CDM schema (default: omop531)")
    parser.add_argument("--vocab-dir", required=True, type=Path, help="Vocabulary directory (tab-delimited)")
    parser.add_argument("--patient-dir", required=True, type=Path, help="Patient dataset directory (CSV)")
    parser.add_argument(
        "--include-tables",
        default="",
        help="Comma-separated list of tables to load (default: all tables with a source file)",
    )
    parser.add_argument(
        "--vocab-date-format",
        default="%Y%m%d",
        help="strftime format of vocabulary dates (default: %%Y%%m%%d, as in Athena exports; empty for ISO)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    include = [t for t in args.include_tables.split(",") if t.strip()] or None
    engine = DuckDBEngine(Path(args.database))
    try:
        results = load_all(
            engine,
            args.schema,
            args.vocab_dir,
            args.patient_dir,
            include_tables=include,
            vocab_date_format=args.vocab_date_format,
        )
    finally:
        engine.close()
    summary = summarize_results(results)
    console_log(f"Loaded {summary[LOADED]} file(s), {summary[FAILED]} failed, {summary[SKIPPED]} skipped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
