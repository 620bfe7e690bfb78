"""
Archive an existing DuckDB output file before a new run.

A fresh load should never append to a previous run's tables, and an old
database is worth keeping around, so instead of overwriting an existing
``*.duckdb`` it is moved aside to an archive folder with a timestamp.
"""

from __future__ import annotations

import argparse
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional


def archive_existing(
    src: Path,
    archive_dir: Path,
    *,
    log: Optional[Callable[[str], None]] = None,
) -> Optional[Path]:
    emit = log or print
    if not src.exists():
        emit(f"No existing DB at {src}; nothing to archive.")
        return None
    if src.suffix.lower() != ".duckdb":
        raise ValueError(f"Refusing to archive non-.duckdb file: {src}")

    archive_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    dst = archive_dir / f"{src.stem}.{ts}.duckdb"
    shutil.move(str(src), str(dst))
    wal = src.with_name(src.name + ".wal")
    if wal.exists():
        shutil.move(str(wal), str(dst.with_name(dst.name + ".wal")))
    emit(f"Archived {src} -> {dst}")
    return dst


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Archive an existing DuckDB output file")
    parser.add_argument("--path", required=True, help="Path to DuckDB file to archive (if it exists)")
    parser.add_argument("--archive-dir", default="data/archive", help="Folder to store archived DBs")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    archive_existing(Path(args.path), Path(args.archive_dir))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
