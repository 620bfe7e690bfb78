from __future__ import annotations

import bz2
import importlib
import importlib.util
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


class TestFetchSources(unittest.TestCase):
    def setUp(self) -> None:
        repo_root = Path(__file__).resolve().parents[2]
        self.fetch = load_module(repo_root / "scripts" / "fetch_sources.py", "fetch_sources_mod")
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.targets = self.fetch.plan_fetches(
            self.base / "vocab",
            self.base / "synthea1k",
            "s3://ohdsi-sample-data/vocab",
            "s3://ohdsi-sample-data/synthea1k",
        )
        self.logs: list[str] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_sync_command_uses_anonymous_access(self) -> None:
        self.assertEqual(
            self.fetch.sync_command(self.targets[0]),
            ["aws", "s3", "sync", "s3://ohdsi-sample-data/vocab", str(self.base / "vocab"), "--no-sign-request"],
        )

    def test_missing_markers_trigger_sync(self) -> None:
        with mock.patch.object(self.fetch.subprocess, "check_call") as check_call:
            fetched = self.fetch.fetch_sources(self.targets, log=self.logs.append)
        self.assertEqual([t.label for t in fetched], [t.label for t in self.targets])
        self.assertEqual(check_call.call_count, 2)
        check_call.assert_any_call(self.fetch.sync_command(self.targets[1]))
        self.assertTrue((self.base / "vocab").is_dir())
        self.assertTrue((self.base / "synthea1k").is_dir())

    def test_present_markers_skip_sync(self) -> None:
        (self.base / "vocab").mkdir()
        (self.base / "vocab" / "CONCEPT.csv").write_text("", encoding="utf-8")
        with mock.patch.object(self.fetch.subprocess, "check_call") as check_call:
            fetched = self.fetch.fetch_sources(self.targets, log=self.logs.append)
        self.assertEqual([t.marker for t in fetched], ["person.csv"])
        check_call.assert_called_once_with(self.fetch.sync_command(self.targets[1]))
        self.assertTrue(any("already present" in line for line in self.logs))

    def test_pending_fetches(self) -> None:
        self.assertEqual(len(self.fetch.pending_fetches(self.targets)), 2)
        (self.base / "synthea1k").mkdir()
        (self.base / "synthea1k" / "person.csv").write_text("", encoding="utf-8")
        self.assertEqual([t.marker for t in self.fetch.pending_fetches(self.targets)], ["CONCEPT.csv"])


class TestDecompressSources(unittest.TestCase):
    def setUp(self) -> None:
        repo_root = Path(__file__).resolve().parents[2]
        self.decomp = load_module(repo_root / "scripts" / "decompress_sources.py", "decompress_sources_mod")
        self.cfg = importlib.import_module("cdm_config")
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.logs: list[str] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_bz2_files_are_expanded_and_removed(self) -> None:
        archive = self.base / "CONCEPT.csv.bz2"
        archive.write_bytes(bz2.compress(b"1\tOne\n2\tTwo\n"))
        outputs = self.decomp.decompress_bz2(self.base, log=self.logs.append)
        self.assertEqual(outputs, [self.base / "CONCEPT.csv"])
        self.assertEqual((self.base / "CONCEPT.csv").read_bytes(), b"1\tOne\n2\tTwo\n")
        self.assertFalse(archive.exists())
        self.assertEqual(list(self.base.glob("*.part")), [])

    def test_no_archives_is_a_no_op(self) -> None:
        self.assertEqual(self.decomp.decompress_sources(self.base, self.base / "missing", log=self.logs.append), [])
        self.assertTrue(any("No .lzo files found" in line for line in self.logs))

    def test_lzo_runs_lzop_and_keeps_archive(self) -> None:
        archive = self.base / "person.csv.lzo"
        archive.write_bytes(b"lzo")
        with mock.patch("shutil.which", return_value="/usr/bin/lzop"), mock.patch.object(
            self.decomp.subprocess, "check_call"
        ) as check_call:
            outputs = self.decomp.decompress_lzo(self.base, log=self.logs.append)
        check_call.assert_called_once_with(["lzop", "-d", str(archive)], cwd=self.base)
        self.assertEqual(outputs, [self.base / "person.csv"])
        self.assertTrue(archive.exists())

    def test_lzo_already_expanded_needs_no_tool(self) -> None:
        (self.base / "person.csv.lzo").write_bytes(b"lzo")
        (self.base / "person.csv").write_text("person_id\n1\n", encoding="utf-8")
        with mock.patch("shutil.which", return_value=None), mock.patch.object(
            self.decomp.subprocess, "check_call"
        ) as check_call:
            outputs = self.decomp.decompress_lzo(self.base, log=self.logs.append)
        self.assertEqual(outputs, [])
        check_call.assert_not_called()
        self.assertTrue(any("already decompressed" in line for line in self.logs))

    def test_lzo_without_lzop_is_a_precondition_error(self) -> None:
        (self.base / "person.csv.lzo").write_bytes(b"lzo")
        with mock.patch("shutil.which", return_value=None):
            with self.assertRaises(self.cfg.PreconditionError) as ctx:
                self.decomp.decompress_lzo(self.base, log=self.logs.append)
        self.assertIn("lzop", str(ctx.exception))
