"""Build a mock staging directory and run the loader against DuckDB with conf/cdm53.etlconf."""
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

CURRENT_DIR = Path(__file__).parent
ROOT = CURRENT_DIR.parent.parent


def main() -> None:
    subprocess.check_call([sys.executable, str(CURRENT_DIR / "generate_mock_data.py")], cwd=ROOT)
    subprocess.check_call(
        [
            sys.executable,
            "scripts/run_pipeline.py",
            "-e",
            "conf/cdm53.etlconf",
            "-c",
            "conf/duckdb.json",
            "--set",
            "@data_dir=data/mock_omop",
            "--set",
            "@duckdb_path=data/mock_omop.duckdb",
            "--set",
            "@fetch=0",
        ],
        cwd=ROOT,
    )


if __name__ == "__main__":
    main()
