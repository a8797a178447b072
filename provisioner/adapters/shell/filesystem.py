"""
Filesystem helpers — atomic file replacement.

A reader (the service supervisor, apt) must never see a half-written
file, so content goes to a temp file in the destination directory and
is renamed over the target in one step.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str, mode: int = 0o644) -> None:
    """Replace *path* with *content* atomically.

    Raises:
        OSError: If the directory cannot be created or the write fails.
            No temp file is left behind on failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
        logger.debug("Wrote %s (%d bytes)", path, len(content))
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def read_text_or_none(path: Path) -> str | None:
    """Current content of *path*, or None when it does not exist or is unreadable."""
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None
