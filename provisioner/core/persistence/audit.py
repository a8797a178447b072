"""
Run ledger — one NDJSON line per finished provisioning run.

Lives next to the run logs (``runs.ndjson``). The per-run log holds
the detail; the ledger answers "what happened on this host, and when"
without opening every log. The ledger is append-only: entries are never
modified or deleted.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

LEDGER_FILE = "runs.ndjson"


class RunEntry(BaseModel):
    """A single ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    workflow: str = ""
    status: str = ""               # ok, partial, failed
    exit_code: int = 0
    log_path: str = ""

    target_user: str = ""
    gpu_present: bool = False

    succeeded: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    context: dict[str, Any] = Field(default_factory=dict)


class RunLedger:
    """Append-only run ledger writer/reader."""

    def __init__(self, path: Path):
        self._path = path

    @classmethod
    def beside(cls, log_path: Path) -> RunLedger:
        """Ledger stored in the same directory as a run log."""
        return cls(log_path.parent / LEDGER_FILE)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: RunEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line)
        logger.debug("Ledger entry written: %s/%s", entry.workflow, entry.status)

    def read_all(self) -> list[RunEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(RunEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[RunEntry]:
        return self.read_all()[-n:]
