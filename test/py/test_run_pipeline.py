from __future__ import annotations

import importlib
import importlib.util
import io
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


def load_module(path: Path, name: str):
    scripts_dir = path.parent
    if str(scripts_dir) not in sys.path:
        sys.path.insert(0, str(scripts_dir))
    spec = importlib.util.spec_from_file_location(name, path)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


class TestRunPipelineConfig(unittest.TestCase):
    def setUp(self) -> None:
        self.repo_root = Path(__file__).resolve().parents[2]
        self.runner = load_module(self.repo_root / "scripts" / "run_pipeline.py", "run_pipeline_mod")
        self.cfg = importlib.import_module("cdm_config")
        self.fetch = importlib.import_module("fetch_sources")
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def config(self, *extra: str):
        args = self.runner.parse_args(
            [
                "-e",
                str(self.repo_root / "conf" / "cdm53.etlconf"),
                "--set",
                f"@data_dir={self.base}",
                "--set",
                f"@schema_file={self.repo_root / 'omop-schema' / 'CDM5.3.0_DDL_PostgreSQL.sql'}",
                *extra,
            ]
        )
        return self.runner.build_config(args)

    def targets(self, config):
        sources = config["sources"]
        return self.fetch.plan_fetches(
            Path(sources["vocab_dir"]), Path(sources["patient_dir"]), sources["s3_vocab"], sources["s3_patient"]
        )

    def test_build_config_applies_overrides_file_and_variables(self) -> None:
        config = self.config("-c", str(self.repo_root / "conf" / "duckdb.json"), "--set", "@dataset=synthea23m")
        self.assertEqual(config["engine"], "duckdb")
        self.assertEqual(config["sources"]["patient_dir"], str(self.base / "synthea23m"))
        self.assertEqual(config["sources"]["s3_patient"], "s3://ohdsi-sample-data/synthea23m")
        self.assertEqual(config["schema"]["namespace"], "omop531")

    def test_build_config_requires_etlconf(self) -> None:
        args = self.runner.parse_args(["-e", str(self.base / "missing.etlconf")])
        with self.assertRaises(self.cfg.PreconditionError):
            self.runner.build_config(args)

    def test_preflight_rejects_unknown_engine(self) -> None:
        config = self.config("--set", "@engine=oracle", "--set", "@fetch=0")
        with self.assertRaises(self.cfg.PreconditionError):
            self.runner.preflight(config, self.targets(config))

    def test_preflight_requires_docker_for_managed_postgres(self) -> None:
        config = self.config("--set", "@fetch=0")
        with mock.patch("shutil.which", return_value=None):
            with self.assertRaises(self.cfg.PreconditionError) as ctx:
                self.runner.preflight(config, self.targets(config))
        self.assertIn("docker", str(ctx.exception))

    def test_preflight_requires_aws_only_for_pending_fetches(self) -> None:
        config = self.config("--set", "@engine=duckdb")
        with mock.patch("shutil.which", return_value="/usr/bin/tool"):
            self.assertEqual(self.runner.preflight(config, self.targets(config)), ["aws"])

        for folder, marker in (("vocab", "CONCEPT.csv"), ("synthea1k", "person.csv")):
            (self.base / folder).mkdir()
            (self.base / folder / marker).write_text("", encoding="utf-8")
        with mock.patch("shutil.which", return_value=None):
            self.assertEqual(self.runner.preflight(config, self.targets(config)), [])

    def test_preflight_requires_schema_file(self) -> None:
        config = self.config("--set", "@engine=duckdb", "--set", "@fetch=0", "--set", "@schema_file=/nope.sql")
        with self.assertRaises(self.cfg.PreconditionError):
            self.runner.preflight(config, self.targets(config))

    def test_preflight_rejects_unknown_include_table(self) -> None:
        config = self.config("--set", "@engine=duckdb", "--set", "@fetch=0", "--set", "@include_tables=person,bogus")
        with self.assertRaises(self.cfg.PreconditionError) as ctx:
            self.runner.preflight(config, self.targets(config))
        self.assertIn("bogus", str(ctx.exception))

    def test_main_reports_stage_failures_and_exits_nonzero(self) -> None:
        engines = importlib.import_module("cdm_engines")
        failures = [
            subprocess.CalledProcessError(1, ["aws", "s3", "sync"]),
            ValueError("Unsupported engine: sqlite"),
            engines.DuckDBEngine.errors[0]("IO Error: could not open file"),
        ]
        argv = ["-e", str(self.repo_root / "conf" / "cdm53.etlconf"), "--set", f"@data_dir={self.base}"]
        for failure in failures:
            out = io.StringIO()
            with self.subTest(error=type(failure).__name__):
                with mock.patch.object(self.runner, "run_pipeline", side_effect=failure), mock.patch(
                    "sys.stdout", out
                ), mock.patch("sys.stderr", io.StringIO()):
                    self.assertEqual(self.runner.main(argv), 1)
                self.assertRegex(out.getvalue(), r"\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] ✗ ERROR: ")

    def test_include_tables_accepts_list_or_comma_string(self) -> None:
        self.assertIsNone(self.runner.include_tables({"load": {"include_tables": ""}}))
        self.assertEqual(
            self.runner.include_tables({"load": {"include_tables": "person, concept"}}), ["person", "concept"]
        )
        self.assertEqual(self.runner.include_tables({"load": {"include_tables": ["cost"]}}), ["cost"])

    def test_connection_hints_for_duckdb_use_catalog(self) -> None:
        config = self.config("--set", "@engine=duckdb", "--set", f"@duckdb_path={self.base / 'omop531.duckdb'}")
        logs: list[str] = []
        self.runner.log_connection_hints(config, logs.append)
        self.assertIn('Example query: SELECT COUNT(*) FROM "omop531".omop531.person;', logs)

    def test_connection_hints_for_postgres(self) -> None:
        config = self.config()
        logs: list[str] = []
        self.runner.log_connection_hints(config, logs.append)
        self.assertIn("  psql -h localhost -p 5434 -U postgres -d ohdsi", logs)
        self.assertIn("To stop the container: docker stop pg-omop", logs)
