"""
Adapter registry — the set of host tools a provisioning run talks to.

Stage services receive the registry and pick the adapter they need; the
orchestrator never constructs adapters itself. ``AdapterRegistry.system()``
wires the real CLI-backed adapters, ``AdapterRegistry.mock()`` the
in-memory fakes.
"""

from __future__ import annotations

import logging
from typing import Any

from provisioner.adapters.base import (
    AccountManager,
    Adapter,
    ContainerRuntime,
    PackageManager,
    ServiceSupervisor,
)
from provisioner.adapters.shell.command import CommandRunner

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Holds one adapter per host concern, plus the shared command runner."""

    def __init__(
        self,
        runner: CommandRunner,
        packages: PackageManager,
        runtime: ContainerRuntime,
        supervisor: ServiceSupervisor,
        accounts: AccountManager,
        mock_mode: bool = False,
    ):
        self.runner = runner
        self.packages = packages
        self.runtime = runtime
        self.supervisor = supervisor
        self.accounts = accounts
        self._mock_mode = mock_mode

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    @classmethod
    def system(cls, runtime_binary: str = "docker") -> AdapterRegistry:
        """Registry of real adapters sharing one command runner."""
        from provisioner.adapters.containers.docker import DockerAdapter
        from provisioner.adapters.packages.apt import AptAdapter
        from provisioner.adapters.services.systemd import SystemdAdapter
        from provisioner.adapters.shell.accounts import AccountsAdapter

        runner = CommandRunner()
        return cls(
            runner=runner,
            packages=AptAdapter(runner),
            runtime=DockerAdapter(runner, binary=runtime_binary),
            supervisor=SystemdAdapter(runner),
            accounts=AccountsAdapter(runner),
        )

    @classmethod
    def mock(cls, **overrides: Any) -> AdapterRegistry:
        """Registry of in-memory fakes; any adapter can be overridden."""
        from provisioner.adapters.mock import (
            FakeAccounts,
            FakeContainerRuntime,
            FakePackageManager,
            FakeRunner,
            FakeSupervisor,
        )

        adapters: dict[str, Any] = {
            "runner": FakeRunner(),
            "packages": FakePackageManager(),
            "runtime": FakeContainerRuntime(),
            "supervisor": FakeSupervisor(),
            "accounts": FakeAccounts(),
        }
        adapters.update(overrides)
        return cls(**adapters, mock_mode=True)

    def adapters(self) -> list[Adapter]:
        return [self.packages, self.runtime, self.supervisor, self.accounts]

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Availability of every registered adapter."""
        status = {}
        for adapter in self.adapters():
            try:
                available = adapter.is_available()
            except Exception as e:
                logger.debug("Availability check for %s raised: %s", adapter.name, e)
                available = False
            status[adapter.name] = {
                "name": adapter.name,
                "available": available,
                "type": adapter.__class__.__name__,
            }
        return status
