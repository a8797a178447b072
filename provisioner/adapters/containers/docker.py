"""
Docker adapter — container lifecycle through the docker CLI.

Uses the docker CLI, never the Docker API directly. Each lifecycle step
is its own call (create, then start) so the convergence engine can
attribute a failure to the exact step that produced it.
"""

from __future__ import annotations

import json
import logging

from provisioner.adapters.base import CommandResult, ContainerInfo, ContainerRuntime
from provisioner.adapters.shell.command import CommandRunner
from provisioner.core.models.specs import ContainerSpec

logger = logging.getLogger(__name__)


def parse_inspect(payload: dict) -> ContainerInfo:
    """Build a ContainerInfo from one ``docker inspect`` object."""
    state = payload.get("State") or {}
    config = payload.get("Config") or {}
    return ContainerInfo(
        name=str(payload.get("Name", "")).lstrip("/"),
        id=str(payload.get("Id", ""))[:12],
        image=config.get("Image", ""),
        status=state.get("Status", ""),
        exit_code=int(state.get("ExitCode") or 0),
        restart_count=int(payload.get("RestartCount") or 0),
        labels=config.get("Labels") or {},
    )


def _parse_label_list(raw: str) -> dict[str, str]:
    """Parse the comma-separated ``Labels`` column of ``docker ps``."""
    labels: dict[str, str] = {}
    for item in raw.split(","):
        if "=" in item:
            key, _, value = item.partition("=")
            labels[key.strip()] = value.strip()
    return labels


class DockerAdapter(ContainerRuntime):
    """docker CLI backed container runtime."""

    def __init__(self, runner: CommandRunner | None = None, binary: str = "docker"):
        self._runner = runner or CommandRunner()
        self._binary = binary

    @property
    def name(self) -> str:
        return "docker"

    def is_available(self) -> bool:
        return self._runner.which(self._binary) is not None

    def _docker(self, *args: str, timeout: int = 60) -> CommandResult:
        return self._runner.run([self._binary, *args], timeout=timeout)

    # ── Observe ─────────────────────────────────────────────────

    def info(self) -> CommandResult:
        return self._docker("info", "--format", "{{json .ServerVersion}}", timeout=30)

    def inspect(self, name: str) -> ContainerInfo | None:
        r = self._docker("inspect", "--type", "container", name, timeout=15)
        if not r.ok:
            if "no such" not in r.message.lower():
                logger.warning("docker inspect %s failed: %s", name, r.message)
            return None
        try:
            data = json.loads(r.stdout)
        except json.JSONDecodeError:
            logger.warning("Unparseable docker inspect output for %s", name)
            return None
        if not data:
            return None
        return parse_inspect(data[0])

    def image_exists(self, image: str) -> bool:
        return self._docker("image", "inspect", image, timeout=15).ok

    def runtimes(self) -> set[str]:
        r = self._docker("info", "--format", "{{json .Runtimes}}", timeout=30)
        if not r.ok:
            logger.debug("docker info (runtimes) failed: %s", r.message)
            return set()
        try:
            data = json.loads(r.stdout or "{}")
        except json.JSONDecodeError:
            return set()
        return set(data) if isinstance(data, dict) else set()

    def logs(self, name: str, tail: int = 20) -> str:
        r = self._docker("logs", "--tail", str(tail), name, timeout=15)
        # docker logs replays the container's stderr on our stderr
        return (r.stdout + r.stderr).strip()

    def list_containers(self, label: str | None = None) -> list[ContainerInfo]:
        args = ["ps", "-a", "--format", "{{json .}}"]
        if label:
            args += ["--filter", f"label={label}"]
        r = self._docker(*args, timeout=15)
        if not r.ok:
            logger.warning("docker ps failed: %s", r.message)
            return []

        containers = []
        for line in r.stdout.strip().splitlines():
            if not line.strip():
                continue
            try:
                info = json.loads(line)
            except json.JSONDecodeError:
                continue
            containers.append(ContainerInfo(
                name=info.get("Names", ""),
                id=info.get("ID", ""),
                image=info.get("Image", ""),
                status=info.get("State", ""),
                labels=_parse_label_list(info.get("Labels", "")),
            ))
        return containers

    # ── Act ─────────────────────────────────────────────────────

    def pull(self, image: str) -> CommandResult:
        return self._docker("pull", image, timeout=3600)

    def create(self, spec: ContainerSpec, labels: dict[str, str]) -> CommandResult:
        args = ["create", "--name", spec.name, "--restart", spec.restart_policy]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        args += spec.runtime_args()
        args.append(spec.image)
        return self._docker(*args, timeout=120)

    def start(self, name: str) -> CommandResult:
        return self._docker("start", name, timeout=120)

    def stop(self, name: str) -> CommandResult:
        return self._docker("stop", name, timeout=120)

    def remove(self, name: str) -> CommandResult:
        return self._docker("rm", "-f", name, timeout=60)
