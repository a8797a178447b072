"""
Stage results — the outcome contract between stages and the reporter.

Every stage returns (or is recorded as) a StageResult. The run keeps an
append-only RunResult; nothing recorded is ever overwritten, corrections
are new entries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from provisioner.core.errors import ProvisionError

Outcome = Literal["success", "skipped", "failed"]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _now() -> str:
    """Local wall-clock time, in the log file's format."""
    return datetime.now().strftime(TIMESTAMP_FORMAT)


class StageResult(BaseModel):
    """Outcome of one stage of the workflow."""

    stage: str
    outcome: Outcome = "success"
    detail: str = ""
    timestamp: str = Field(default_factory=_now)
    duration_ms: int = 0

    error_type: str | None = None
    fatal: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

    @property
    def failed(self) -> bool:
        return self.outcome == "failed"

    @property
    def skipped(self) -> bool:
        return self.outcome == "skipped"

    @classmethod
    def success(cls, stage: str, detail: str = "", **kwargs: Any) -> StageResult:
        return cls(stage=stage, outcome="success", detail=detail, **kwargs)

    @classmethod
    def skip(cls, stage: str, reason: str = "", **kwargs: Any) -> StageResult:
        return cls(stage=stage, outcome="skipped", detail=reason, **kwargs)

    @classmethod
    def failure(
        cls,
        stage: str,
        detail: str,
        *,
        error_type: str | None = None,
        fatal: bool = True,
        **kwargs: Any,
    ) -> StageResult:
        return cls(
            stage=stage,
            outcome="failed",
            detail=detail,
            error_type=error_type,
            fatal=fatal,
            **kwargs,
        )

    @classmethod
    def from_error(
        cls,
        stage: str,
        error: ProvisionError,
        *,
        fatal: bool | None = None,
        **kwargs: Any,
    ) -> StageResult:
        """Failed result for a raised ProvisionError."""
        detail = str(error)
        if error.detail:
            detail = f"{detail}: {error.detail}"
        return cls.failure(
            stage,
            detail,
            error_type=error.kind,
            fatal=error.fatal if fatal is None else fatal,
            **kwargs,
        )

    def line(self) -> str:
        """One-line human form, used for log lines and the summary."""
        text = f"{self.stage}: {self.outcome}"
        if self.detail:
            text += f" — {self.detail}"
        if self.error_type:
            text += f" ({self.error_type})"
        return text


class RunResult:
    """Append-only, ordered record of every stage outcome in a run."""

    def __init__(self) -> None:
        self._records: list[StageResult] = []

    def append(self, result: StageResult) -> None:
        self._records.append(result)

    @property
    def records(self) -> tuple[StageResult, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    @property
    def succeeded(self) -> list[StageResult]:
        return [r for r in self._records if r.ok]

    @property
    def skipped(self) -> list[StageResult]:
        return [r for r in self._records if r.skipped]

    @property
    def failed(self) -> list[StageResult]:
        return [r for r in self._records if r.failed]

    @property
    def fatal_failures(self) -> list[StageResult]:
        return [r for r in self._records if r.failed and r.fatal]

    @property
    def status(self) -> str:
        if not self.failed:
            return "ok"
        if self.fatal_failures:
            return "failed"
        return "partial"

    def get(self, stage: str) -> StageResult | None:
        """Latest record for *stage*, or None."""
        for record in reversed(self._records):
            if record.stage == stage:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "total": len(self._records),
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "stages": [r.model_dump(mode="json") for r in self._records],
        }
