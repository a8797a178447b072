"""
Command runner — the single place where subprocess.run is called.

Every adapter builds its argv and hands it here. Privileged commands
get a ``sudo`` prefix when the process is not already root. Failures to
launch (missing binary, timeout) come back as a failed CommandResult,
never as an exception.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Mapping

from provisioner.adapters.base import CommandResult

logger = logging.getLogger(__name__)

# Output kept per stream; apt and docker pull are chatty.
_OUTPUT_LIMIT = 4000


class CommandRunner:
    """Run external commands and capture their output.

    Args:
        timeout: Default timeout in seconds for every command.
        euid: Effective UID used to decide on the sudo prefix
            (default: the current process's).
    """

    def __init__(self, timeout: int = 300, euid: int | None = None):
        self.timeout = timeout
        self._euid = os.geteuid() if euid is None else euid

    @property
    def is_root(self) -> bool:
        return self._euid == 0

    def which(self, binary: str) -> str | None:
        return shutil.which(binary)

    def run(
        self,
        cmd: list[str],
        *,
        privileged: bool = False,
        timeout: int | None = None,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run *cmd* and return its result.

        Args:
            cmd: Argument vector.
            privileged: Whether the command needs root.
            timeout: Override for the default timeout.
            env: Extra environment variables.
            input: Text piped to stdin.
        """
        argv = list(cmd)
        if privileged and not self.is_root:
            prefix = ["sudo"]
            if env:
                # sudo resets the environment; pass overrides explicitly
                prefix += ["env", *(f"{k}={v}" for k, v in env.items())]
            argv = prefix + argv

        run_env = os.environ.copy()
        if env:
            run_env.update(env)

        timeout = timeout or self.timeout
        logger.debug("Executing: %s", " ".join(argv))
        start = time.monotonic()

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=run_env,
                input=input,
            )
        except FileNotFoundError:
            return CommandResult(
                command=argv,
                return_code=127,
                error=f"Command not found: {argv[0]}",
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=argv,
                return_code=124,
                error=f"Command timed out after {timeout}s: {' '.join(cmd)}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CommandResult(
            command=argv,
            return_code=proc.returncode,
            stdout=(proc.stdout or "")[-_OUTPUT_LIMIT:],
            stderr=(proc.stderr or "")[-_OUTPUT_LIMIT:],
            duration_ms=elapsed_ms,
        )
        if not result.ok:
            logger.debug("Command failed (exit %d): %s", proc.returncode, result.message)
        return result
