"""
Mock adapters — in-memory fakes of every host tool.

Used by ``--mock`` runs to rehearse the workflow without touching the
host, and by the test suite to drive every branch of the stages. Each
fake keeps a ``call_log`` of the mutations it received and can be told
to fail specific operations.
"""

from __future__ import annotations

from provisioner.adapters.base import (
    AccountManager,
    CommandResult,
    ContainerInfo,
    ContainerRuntime,
    PackageManager,
    ServiceSupervisor,
)
from provisioner.adapters.shell.command import CommandRunner
from provisioner.core.models.specs import AptRepository, ContainerSpec


class FakeRunner(CommandRunner):
    """Command runner that records commands instead of running them.

    ``responses`` maps a command prefix (space-joined) to the result
    returned for any command starting with it; everything else succeeds.
    """

    def __init__(
        self,
        euid: int = 0,
        binaries: set[str] | None = None,
        responses: dict[str, CommandResult] | None = None,
    ):
        super().__init__(euid=euid)
        self._binaries = binaries if binaries is not None else set()
        self.responses = responses or {}
        self.call_log: list[list[str]] = []

    def which(self, binary: str) -> str | None:
        return f"/usr/bin/{binary}" if binary in self._binaries else None

    def run(self, cmd: list[str], **kwargs) -> CommandResult:
        self.call_log.append(list(cmd))
        joined = " ".join(cmd)
        for prefix, result in self.responses.items():
            if joined.startswith(prefix):
                return result.model_copy(update={"command": list(cmd)})
        return CommandResult.completed(list(cmd))


class FakePackageManager(PackageManager):
    """Package manager over an in-memory installed set.

    Args:
        installed: Packages present from the start.
        refresh_failures: How many index refreshes fail before one succeeds.
        install_error: When set, every install fails with this message.
        repository_error: When set, every repository registration fails.
    """

    def __init__(
        self,
        installed: set[str] | None = None,
        available: bool = True,
        refresh_failures: int = 0,
        install_error: str | None = None,
        repository_error: str | None = None,
    ):
        self.installed = set(installed or ())
        self._available = available
        self.refresh_failures = refresh_failures
        self.install_error = install_error
        self.repository_error = repository_error
        self.repositories: set[str] = set()
        self.call_log: list[tuple] = []

    @property
    def name(self) -> str:
        return "apt"

    def is_available(self) -> bool:
        return self._available

    def is_installed(self, package: str) -> bool:
        return package in self.installed

    def refresh_index(self) -> CommandResult:
        self.call_log.append(("refresh",))
        if self.refresh_failures > 0:
            self.refresh_failures -= 1
            return CommandResult.failed(["apt-get", "update"], stderr="Temporary failure resolving archive")
        return CommandResult.completed(["apt-get", "update"])

    def install(self, packages: list[str]) -> CommandResult:
        self.call_log.append(("install", list(packages)))
        if self.install_error:
            return CommandResult.failed(["apt-get", "install"], stderr=self.install_error, return_code=100)
        self.installed.update(packages)
        return CommandResult.completed(["apt-get", "install"])

    def add_repository(self, repo: AptRepository) -> CommandResult:
        self.call_log.append(("add_repository", repo.name))
        if self.repository_error:
            return CommandResult.failed(stderr=self.repository_error)
        changed = repo.name not in self.repositories
        self.repositories.add(repo.name)
        return CommandResult.completed(metadata={"changed": changed})

    @property
    def install_calls(self) -> list[list[str]]:
        return [c[1] for c in self.call_log if c[0] == "install"]

    @property
    def refresh_count(self) -> int:
        return sum(1 for c in self.call_log if c[0] == "refresh")


class FakeContainerRuntime(ContainerRuntime):
    """Container runtime over an in-memory container table.

    Args:
        containers: Pre-existing containers, keyed by name.
        images: Images already present locally.
        pull_errors: image → error message for failing pulls.
        create_errors: container name → error message for failing creates.
        start_behavior: container name → 'crash' (restart loop),
            'exit' (exits non-zero), 'fail' (start command fails) or
            'flap' (reports running but restarts between inspections).
        runtimes: OCI runtimes registered with the daemon.
        info_error: When set, ``info()`` fails with this message.
    """

    def __init__(
        self,
        containers: dict[str, ContainerInfo] | None = None,
        images: set[str] | None = None,
        available: bool = True,
        pull_errors: dict[str, str] | None = None,
        create_errors: dict[str, str] | None = None,
        start_behavior: dict[str, str] | None = None,
        info_error: str | None = None,
        runtimes: set[str] | None = None,
    ):
        self.containers = dict(containers or {})
        self.images = set(images or ())
        self._available = available
        self.pull_errors = pull_errors or {}
        self.create_errors = create_errors or {}
        self.start_behavior = start_behavior or {}
        self.info_error = info_error
        self.registered_runtimes = set(runtimes) if runtimes is not None else {"runc"}
        self.created_specs: dict[str, ContainerSpec] = {}
        self.call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "docker"

    def is_available(self) -> bool:
        return self._available

    def info(self) -> CommandResult:
        if self.info_error:
            return CommandResult.failed(["docker", "info"], stderr=self.info_error)
        return CommandResult.completed(["docker", "info"], stdout='"27.0.0"')

    def inspect(self, name: str) -> ContainerInfo | None:
        info = self.containers.get(name)
        if info is None:
            return None
        if self.start_behavior.get(name) == "flap" and info.running:
            info.restart_count += 1
        return info.model_copy()

    def runtimes(self) -> set[str]:
        return set(self.registered_runtimes)

    def image_exists(self, image: str) -> bool:
        return image in self.images

    def logs(self, name: str, tail: int = 20) -> str:
        return ""

    def list_containers(self, label: str | None = None) -> list[ContainerInfo]:
        return [
            c.model_copy() for c in self.containers.values()
            if label is None or label in c.labels
        ]

    def pull(self, image: str) -> CommandResult:
        self.call_log.append(("pull", image))
        if image in self.pull_errors:
            return CommandResult.failed(["docker", "pull", image], stderr=self.pull_errors[image])
        self.images.add(image)
        return CommandResult.completed(["docker", "pull", image])

    def create(self, spec: ContainerSpec, labels: dict[str, str]) -> CommandResult:
        self.call_log.append(("create", spec.name))
        if spec.name in self.create_errors:
            return CommandResult.failed(["docker", "create"], stderr=self.create_errors[spec.name])
        if spec.name in self.containers:
            return CommandResult.failed(
                ["docker", "create"],
                stderr=f'Conflict. The container name "/{spec.name}" is already in use',
                return_code=125,
            )
        self.containers[spec.name] = ContainerInfo(
            name=spec.name,
            id=f"{len(self.call_log):012d}",
            image=spec.image,
            status="created",
            labels=dict(labels),
        )
        self.created_specs[spec.name] = spec
        return CommandResult.completed(["docker", "create"])

    def start(self, name: str) -> CommandResult:
        self.call_log.append(("start", name))
        info = self.containers.get(name)
        if info is None:
            return CommandResult.failed(["docker", "start", name], stderr=f"No such container: {name}")
        behavior = self.start_behavior.get(name)
        if behavior == "fail":
            return CommandResult.failed(["docker", "start", name], stderr="driver failed programming external connectivity")
        if behavior == "crash":
            info.status, info.restart_count = "restarting", info.restart_count + 1
        elif behavior == "exit":
            info.status, info.exit_code = "exited", 1
        else:
            info.status, info.exit_code = "running", 0
        return CommandResult.completed(["docker", "start", name])

    def stop(self, name: str) -> CommandResult:
        self.call_log.append(("stop", name))
        info = self.containers.get(name)
        if info is not None:
            info.status, info.exit_code = "exited", 0
        return CommandResult.completed(["docker", "stop", name])

    def remove(self, name: str) -> CommandResult:
        self.call_log.append(("remove", name))
        self.containers.pop(name, None)
        return CommandResult.completed(["docker", "rm", "-f", name])

    def operations(self, name: str | None = None) -> list[str]:
        """Mutations received, optionally for one container/image only."""
        return [op for op, target in self.call_log if name is None or target == name]


class FakeSupervisor(ServiceSupervisor):
    """Service supervisor that tracks enabled and active units."""

    def __init__(
        self,
        available: bool = True,
        failures: dict[str, str] | None = None,
    ):
        self._available = available
        self.failures = failures or {}      # operation → error message
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "systemd"

    def is_available(self) -> bool:
        return self._available

    def _do(self, op: str, unit: str = "") -> CommandResult:
        self.call_log.append((op, unit))
        if op in self.failures:
            return CommandResult.failed(["systemctl", op, unit], stderr=self.failures[op])
        return CommandResult.completed(["systemctl", op, unit])

    def daemon_reload(self) -> CommandResult:
        return self._do("daemon-reload")

    def enable(self, unit: str) -> CommandResult:
        r = self._do("enable", unit)
        if r.ok:
            self.enabled.add(unit)
        return r

    def start(self, unit: str) -> CommandResult:
        r = self._do("start", unit)
        if r.ok:
            self.active.add(unit)
        return r

    def stop(self, unit: str) -> CommandResult:
        r = self._do("stop", unit)
        if r.ok:
            self.active.discard(unit)
        return r

    def restart(self, unit: str) -> CommandResult:
        r = self._do("restart", unit)
        if r.ok:
            self.active.add(unit)
        return r

    def is_active(self, unit: str) -> bool:
        return unit in self.active


class FakeAccounts(AccountManager):
    """Group membership over an in-memory table."""

    def __init__(self, members: dict[str, set[str]] | None = None, error: str | None = None):
        self.members = {g: set(u) for g, u in (members or {}).items()}
        self.error = error
        self.call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "accounts"

    def is_available(self) -> bool:
        return True

    def is_member(self, user: str, group: str) -> bool:
        return user in self.members.get(group, set())

    def add_to_group(self, user: str, group: str) -> CommandResult:
        self.call_log.append((user, group))
        if self.error:
            return CommandResult.failed(["usermod", "-aG", group, user], stderr=self.error)
        self.members.setdefault(group, set()).add(user)
        return CommandResult.completed(["usermod", "-aG", group, user])
