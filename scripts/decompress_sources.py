"""
Turn compressed staging files into plain delimited text.

Patient datasets ship ``.lzo`` chunks (expanded with the external ``lzop``
tool, which keeps the compressed original next to the output); vocabulary
exports ship ``.bz2`` files, which are expanded in-process and removed.
"""
from __future__ import annotations

import argparse
import bz2
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from cdm_config import LogFunc, console_log, require_tools


def decompress_lzo(folder: Path, *, log: Optional[LogFunc] = None) -> List[Path]:
    emit = log or console_log
    archives = sorted(folder.glob("*.lzo")) if folder.is_dir() else []
    if not archives:
        emit(f"No .lzo files found in {folder}; assuming plain .csv already.")
        return []

    pending = [a for a in archives if not a.with_suffix("").exists()]
    for archive in archives:
        if archive not in pending:
            emit(f"  {archive.with_suffix('').name} already decompressed; skipping {archive.name}")
    if not pending:
        return []

    require_tools(["lzop"])
    emit(f"Decompressing .lzo files in {folder} ...")
    outputs: List[Path] = []
    for archive in pending:
        emit(f"  lzop -d {archive}")
        subprocess.check_call(["lzop", "-d", str(archive)], cwd=folder)
        outputs.append(archive.with_suffix(""))
    return outputs


def decompress_bz2(folder: Path, *, log: Optional[LogFunc] = None) -> List[Path]:
    emit = log or console_log
    archives = sorted(folder.glob("*.bz2")) if folder.is_dir() else []
    if not archives:
        emit(f"No .bz2 files found in {folder}; assuming plain .csv already.")
        return []

    emit(f"Decompressing .bz2 files in {folder} ...")
    outputs: List[Path] = []
    for archive in archives:
        target = archive.with_suffix("")
        emit(f"  bunzip2 {archive}")
        tmp = target.with_name(target.name + ".part")
        with bz2.open(archive, "rb") as src, tmp.open("wb") as dst:
            shutil.copyfileobj(src, dst)
        tmp.replace(target)
        archive.unlink()
        outputs.append(target)
    return outputs


def decompress_sources(vocab_dir: Path, patient_dir: Path, *, log: Optional[LogFunc] = None) -> List[Path]:
    return decompress_lzo(Path(patient_dir), log=log) + decompress_bz2(Path(vocab_dir), log=log)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Decompress staged OMOP source files")
    parser.add_argument("--vocab-dir", required=True, type=Path, help="Vocabulary directory (.bz2 files)")
    parser.add_argument("--patient-dir", required=True, type=Path, help="Patient dataset directory (.lzo files)")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    decompress_sources(args.vocab_dir, args.patient_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
