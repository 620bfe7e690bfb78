"""
Fetch the OMOP vocabulary and a Synthea patient dataset from the public
OHDSI sample-data bucket into the local staging area.

A fetch is skipped when its marker file is already present, so re-running
the pipeline never downloads the same dataset twice.
"""
from __future__ import annotations

import argparse
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from cdm_config import LogFunc, console_log, require_tools

VOCAB_MARKER = "CONCEPT.csv"
PATIENT_MARKER = "person.csv"


@dataclass(frozen=True)
class FetchTarget:
    label: str
    uri: str
    dest: Path
    marker: str

    @property
    def marker_path(self) -> Path:
        return self.dest / self.marker

    def is_present(self) -> bool:
        return self.marker_path.exists()


def plan_fetches(vocab_dir: Path, patient_dir: Path, s3_vocab: str, s3_patient: str) -> List[FetchTarget]:
    return [
        FetchTarget("OMOP vocabulary data", s3_vocab, Path(vocab_dir), VOCAB_MARKER),
        FetchTarget("Synthea OMOP patient-level data", s3_patient, Path(patient_dir), PATIENT_MARKER),
    ]


def pending_fetches(targets: List[FetchTarget]) -> List[FetchTarget]:
    return [t for t in targets if not t.is_present()]


def sync_command(target: FetchTarget) -> List[str]:
    return ["aws", "s3", "sync", target.uri, str(target.dest), "--no-sign-request"]


def fetch_sources(targets: List[FetchTarget], *, log: Optional[LogFunc] = None) -> List[FetchTarget]:
    """Sync every target whose marker is missing; returns the targets fetched."""
    emit = log or console_log
    fetched: List[FetchTarget] = []
    for target in targets:
        target.dest.mkdir(parents=True, exist_ok=True)
        if target.is_present():
            emit(f"{target.label} already present ({target.marker_path}), skipping download.")
            continue
        emit(f"Syncing {target.label} from {target.uri} ...")
        subprocess.check_call(sync_command(target))
        fetched.append(target)
    return fetched


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch OMOP vocabulary and patient data from S3")
    parser.add_argument("--data-dir", default="omop-data", help="Local staging directory")
    parser.add_argument("--dataset", default="synthea1k", help="Patient dataset name (e.g. synthea1k, synthea23m)")
    parser.add_argument("--s3-vocab", default="s3://ohdsi-sample-data/vocab", help="Vocabulary S3 prefix")
    parser.add_argument("--s3-patient", default="", help="Patient data S3 prefix (default: derived from --dataset)")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    data_dir = Path(args.data_dir)
    targets = plan_fetches(
        data_dir / "vocab",
        data_dir / args.dataset,
        args.s3_vocab,
        args.s3_patient or f"s3://ohdsi-sample-data/{args.dataset}",
    )
    if pending_fetches(targets):
        require_tools(["aws"])
    fetch_sources(targets)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
