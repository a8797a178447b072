"""
Systemd adapter — unit reload, enable, start and verification.
"""

from __future__ import annotations

from pathlib import Path

from provisioner.adapters.base import CommandResult, ServiceSupervisor
from provisioner.adapters.shell.command import CommandRunner

SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")


def detect_init_system(runtime_dir: Path = SYSTEMD_RUNTIME_DIR) -> str:
    """'systemd' when systemd is PID 1, 'unknown' otherwise."""
    return "systemd" if runtime_dir.is_dir() else "unknown"


class SystemdAdapter(ServiceSupervisor):
    """systemctl backed service supervisor."""

    def __init__(self, runner: CommandRunner | None = None):
        self._runner = runner or CommandRunner()

    @property
    def name(self) -> str:
        return "systemd"

    def is_available(self) -> bool:
        return self._runner.which("systemctl") is not None and detect_init_system() == "systemd"

    def _systemctl(self, *args: str) -> CommandResult:
        return self._runner.run(["systemctl", *args], privileged=True, timeout=90)

    def daemon_reload(self) -> CommandResult:
        return self._systemctl("daemon-reload")

    def enable(self, unit: str) -> CommandResult:
        return self._systemctl("enable", unit)

    def start(self, unit: str) -> CommandResult:
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> CommandResult:
        return self._systemctl("stop", unit)

    def restart(self, unit: str) -> CommandResult:
        return self._systemctl("restart", unit)

    def is_active(self, unit: str) -> bool:
        return self._runner.run(["systemctl", "is-active", "--quiet", unit], timeout=15).ok

    def verify(self, path: str) -> CommandResult | None:
        if self._runner.which("systemd-analyze") is None:
            return None
        return self._runner.run(["systemd-analyze", "verify", path], timeout=30)
