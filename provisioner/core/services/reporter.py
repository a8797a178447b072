"""
Run reporter — the durable record of a provisioning run.

Every stage outcome goes through ``record``: it is appended to the
run's RunResult and written as one timestamped line to the run log.
Nothing is ever rewritten; a correction is a new record. ``summarize``
renders the final report in human and machine (dict/JSON) form.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from provisioner.core.models.result import Outcome, RunResult, StageResult
from provisioner.core.observability.logging_config import close_run_log, open_run_log

logger = logging.getLogger(__name__)

PRIVILEGED_LOG_ROOT = Path("/var/log")


def default_log_path(
    workflow: str,
    *,
    privileged: bool,
    log_dir: str | Path | None = None,
    now: datetime | None = None,
    cwd: Path | None = None,
) -> Path:
    """Where this run's log goes.

    ``/var/log/<workflow>/<workflow>_<timestamp>.log`` when privileged,
    the current directory otherwise; ``log_dir`` overrides both.
    """
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    filename = f"{workflow}_{stamp}.log"
    if log_dir:
        return Path(log_dir) / filename
    if privileged:
        return PRIVILEGED_LOG_ROOT / workflow / filename
    return (cwd or Path.cwd()) / filename


@dataclass
class RunReport:
    """Final summary of a run."""

    workflow: str
    log_path: str
    records: list[StageResult] = field(default_factory=list)
    status: str = "ok"
    exit_code: int = 0

    def _with(self, outcome: str) -> list[StageResult]:
        return [r for r in self.records if r.outcome == outcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "status": self.status,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "succeeded": [r.stage for r in self._with("success")],
            "skipped": [r.stage for r in self._with("skipped")],
            "failed": [r.stage for r in self._with("failed")],
            "stages": [r.model_dump(mode="json") for r in self.records],
        }

    def text(self) -> str:
        icons = {"success": "✅", "skipped": "⏭️ ", "failed": "❌"}
        lines = [f"{self.workflow} run: {self.status}"]
        for r in self.records:
            lines.append(f"  {icons.get(r.outcome, '•')} {r.line()}")
        lines.append(
            f"  {len(self._with('success'))} succeeded, "
            f"{len(self._with('skipped'))} skipped, "
            f"{len(self._with('failed'))} failed"
        )
        lines.append(f"  Log file: {self.log_path}")
        return "\n".join(lines)


class RunReporter:
    """Append-only stage recorder backed by a run log file."""

    def __init__(self, log_path: Path, workflow: str = "provisioner", *, privileged: bool = False):
        self.workflow = workflow
        self._log_path = log_path
        self._result = RunResult()

        log_path.parent.mkdir(parents=True, exist_ok=True)
        if privileged:
            os.chmod(log_path.parent, 0o755)
        self._log = open_run_log(log_path, name=f"provisioner.run.{workflow}")
        if privileged:
            os.chmod(log_path, 0o644)

    @property
    def log_path(self) -> Path:
        return self._log_path

    @property
    def result(self) -> RunResult:
        return self._result

    def note(self, message: str) -> None:
        """Write a free-form line to the run log (no stage record)."""
        self._log.info(message)

    def add(self, result: StageResult) -> StageResult:
        """Record a StageResult produced by a stage."""
        self._result.append(result)
        self._log.info(result.line())
        if result.failed:
            logger.error(result.line())
        else:
            logger.info(result.line())
        return result

    def record(self, stage: str, outcome: Outcome, detail: str = "", **extra: Any) -> StageResult:
        """Record a stage outcome built from its parts."""
        return self.add(StageResult(stage=stage, outcome=outcome, detail=detail, **extra))

    def summarize(self, exit_code: int | None = None) -> RunReport:
        records = list(self._result.records)
        if exit_code is None:
            exit_code = 1 if self._result.fatal_failures else 0
        report = RunReport(
            workflow=self.workflow,
            log_path=str(self._log_path),
            records=records,
            status=self._result.status,
            exit_code=exit_code,
        )
        self.note(
            f"Run finished: {report.status} "
            f"({len(self._result.succeeded)} succeeded, "
            f"{len(self._result.skipped)} skipped, {len(self._result.failed)} failed)"
        )
        return report

    def close(self) -> None:
        close_run_log(self._log)
