"""
Adapter base — the contract between stage services and host tools.

Stage services never call apt, docker, systemctl or usermod directly:
they go through one of the adapter interfaces below. Real adapters wrap
the CLIs; ``provisioner.adapters.mock`` holds in-memory fakes used by
tests and by ``--mock`` runs.

Adapters do not raise for tool failures. A failed command comes back as
a CommandResult with ``ok == False``; the calling service decides which
typed ProvisionError that becomes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from provisioner.core.models.specs import AptRepository, ContainerSpec


class CommandResult(BaseModel):
    """Outcome of one external command."""

    command: list[str] = Field(default_factory=list)
    return_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str | None = None        # set when the command could not run at all
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and self.error is None

    @property
    def message(self) -> str:
        """Best available failure text."""
        if self.error:
            return self.error
        text = self.stderr.strip() or self.stdout.strip()
        if text:
            # last line carries the actual complaint for apt and docker
            return text.splitlines()[-1]
        return f"exit code {self.return_code}"

    @classmethod
    def completed(cls, command: list[str] | None = None, stdout: str = "", **kwargs: Any) -> CommandResult:
        return cls(command=command or [], return_code=0, stdout=stdout, **kwargs)

    @classmethod
    def failed(
        cls,
        command: list[str] | None = None,
        stderr: str = "",
        return_code: int = 1,
        **kwargs: Any,
    ) -> CommandResult:
        return cls(command=command or [], return_code=return_code, stderr=stderr, **kwargs)


class ContainerInfo(BaseModel):
    """Observed state of a container, as reported by the runtime."""

    name: str
    id: str = ""
    image: str = ""
    status: str = ""                # created, running, restarting, exited, ...
    exit_code: int = 0
    restart_count: int = 0
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.status == "running"

    @property
    def crash_looping(self) -> bool:
        return self.status == "restarting" or (
            self.status in ("exited", "dead") and self.exit_code != 0
        )


class Adapter(ABC):
    """Abstract base class for all adapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'apt', 'docker', 'systemd')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this adapter's underlying tool is available.

        Should be fast and never raise.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class PackageManager(Adapter):
    """System package manager."""

    @abstractmethod
    def is_installed(self, package: str) -> bool:
        """Whether *package* is installed. Never raises."""

    @abstractmethod
    def refresh_index(self) -> CommandResult:
        """Refresh the package index."""

    @abstractmethod
    def install(self, packages: list[str]) -> CommandResult:
        """Install *packages* in one batch."""

    @abstractmethod
    def add_repository(self, repo: AptRepository) -> CommandResult:
        """Register a third-party repository. ``metadata['changed']`` tells
        whether anything was written."""


class ContainerRuntime(Adapter):
    """Container runtime (docker CLI + daemon)."""

    @abstractmethod
    def info(self) -> CommandResult:
        """Query the daemon; fails when it is down or the socket is denied."""

    @abstractmethod
    def inspect(self, name: str) -> ContainerInfo | None:
        """Observed state of the container called *name*, or None."""

    @abstractmethod
    def image_exists(self, image: str) -> bool:
        """Whether *image* is present locally."""

    @abstractmethod
    def runtimes(self) -> set[str]:
        """OCI runtimes registered with the daemon. Empty when unknown."""

    @abstractmethod
    def pull(self, image: str) -> CommandResult: ...

    @abstractmethod
    def create(self, spec: ContainerSpec, labels: dict[str, str]) -> CommandResult: ...

    @abstractmethod
    def start(self, name: str) -> CommandResult: ...

    @abstractmethod
    def stop(self, name: str) -> CommandResult: ...

    @abstractmethod
    def remove(self, name: str) -> CommandResult: ...

    @abstractmethod
    def logs(self, name: str, tail: int = 20) -> str:
        """Last *tail* log lines, for failure diagnostics. Never raises."""

    @abstractmethod
    def list_containers(self, label: str | None = None) -> list[ContainerInfo]:
        """All containers, optionally filtered by label key."""


class ServiceSupervisor(Adapter):
    """Init / service supervision system."""

    @abstractmethod
    def daemon_reload(self) -> CommandResult: ...

    @abstractmethod
    def enable(self, unit: str) -> CommandResult: ...

    @abstractmethod
    def start(self, unit: str) -> CommandResult: ...

    @abstractmethod
    def stop(self, unit: str) -> CommandResult: ...

    @abstractmethod
    def restart(self, unit: str) -> CommandResult: ...

    @abstractmethod
    def is_active(self, unit: str) -> bool: ...

    def verify(self, path: str) -> CommandResult | None:
        """Optional unit-file verifier. None means no verifier available."""
        return None


class AccountManager(Adapter):
    """User and group administration."""

    @abstractmethod
    def is_member(self, user: str, group: str) -> bool: ...

    @abstractmethod
    def add_to_group(self, user: str, group: str) -> CommandResult: ...
