"""
Tests for the run reporter, the run log and the run ledger.
"""

import json
import re
from datetime import datetime
from pathlib import Path

from provisioner.core.models.result import StageResult
from provisioner.core.persistence.audit import RunEntry, RunLedger
from provisioner.core.services.reporter import RunReporter, default_log_path

LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] ")


class TestDefaultLogPath:
    NOW = datetime(2024, 5, 1, 13, 4, 5)

    def test_privileged(self):
        path = default_log_path("provisioner", privileged=True, now=self.NOW)
        assert path == Path("/var/log/provisioner/provisioner_20240501_130405.log")

    def test_unprivileged_uses_cwd(self, tmp_path: Path):
        path = default_log_path("provisioner", privileged=False, now=self.NOW, cwd=tmp_path)
        assert path == tmp_path / "provisioner_20240501_130405.log"

    def test_log_dir_overrides(self, tmp_path: Path):
        path = default_log_path("lab", privileged=True, log_dir=tmp_path, now=self.NOW)
        assert path == tmp_path / "lab_20240501_130405.log"


class TestRunReporter:
    def test_lines_are_timestamped(self, log_dir: Path):
        reporter = RunReporter(log_dir / "run.log")
        reporter.note("Starting")
        reporter.add(StageResult.success("probe", "user alice"))
        reporter.close()

        lines = (log_dir / "run.log").read_text().splitlines()
        assert len(lines) == 2
        assert all(LINE_RE.match(line) for line in lines)
        assert lines[1].endswith("probe: success — user alice")

    def test_log_is_append_only(self, log_dir: Path):
        path = log_dir / "run.log"
        path.write_text("[2024-01-01 00:00:00] earlier run\n")
        reporter = RunReporter(path)
        reporter.note("later run")
        reporter.close()
        lines = path.read_text().splitlines()
        assert lines[0] == "[2024-01-01 00:00:00] earlier run"
        assert lines[1].endswith("later run")

    def test_records_in_order(self, reporter):
        reporter.record("a", "success")
        reporter.record("b", "skipped", "not needed")
        reporter.record("c", "failed", "boom", fatal=True, error_type="PackageError")
        assert [r.stage for r in reporter.result.records] == ["a", "b", "c"]

    def test_summarize_ok(self, reporter):
        reporter.add(StageResult.success("a"))
        reporter.add(StageResult.skip("b", "n/a"))
        report = reporter.summarize()
        assert report.status == "ok"
        assert report.exit_code == 0

    def test_summarize_non_fatal_failure(self, reporter):
        reporter.add(StageResult.failure("gpu:toolkit", "no repo", fatal=False))
        report = reporter.summarize()
        assert report.status == "partial"
        assert report.exit_code == 0

    def test_summarize_fatal_failure(self, reporter):
        reporter.add(StageResult.failure("packages:docker", "broken"))
        report = reporter.summarize()
        assert report.status == "failed"
        assert report.exit_code == 1

    def test_report_dict(self, reporter):
        reporter.add(StageResult.success("a"))
        reporter.add(StageResult.skip("b"))
        reporter.add(StageResult.failure("c", "x", fatal=False))
        data = reporter.summarize().to_dict()
        assert data["succeeded"] == ["a"]
        assert data["skipped"] == ["b"]
        assert data["failed"] == ["c"]
        assert [s["stage"] for s in data["stages"]] == ["a", "b", "c"]
        json.dumps(data)

    def test_report_text(self, reporter):
        reporter.add(StageResult.success("probe", "user alice"))
        text = reporter.summarize().text()
        assert "provisioner run: ok" in text
        assert "probe: success — user alice" in text
        assert "1 succeeded, 0 skipped, 0 failed" in text
        assert str(reporter.log_path) in text


class TestRunLedger:
    def test_write_and_read(self, tmp_path: Path):
        ledger = RunLedger(tmp_path / "runs.ndjson")
        ledger.write(RunEntry(workflow="provisioner", status="ok"))
        ledger.write(RunEntry(workflow="provisioner", status="failed", exit_code=1))
        entries = ledger.read_all()
        assert [e.status for e in entries] == ["ok", "failed"]

    def test_beside_log(self, tmp_path: Path):
        assert RunLedger.beside(tmp_path / "x.log").path == tmp_path / "runs.ndjson"

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "runs.ndjson"
        path.write_text('{"status": "ok"}\nnot json\n\n{"status": "partial"}\n')
        assert [e.status for e in RunLedger(path).read_all()] == ["ok", "partial"]

    def test_read_recent(self, tmp_path: Path):
        ledger = RunLedger(tmp_path / "runs.ndjson")
        for i in range(5):
            ledger.write(RunEntry(exit_code=i))
        assert [e.exit_code for e in ledger.read_recent(2)] == [3, 4]

    def test_missing_file(self, tmp_path: Path):
        assert RunLedger(tmp_path / "none.ndjson").read_all() == []
