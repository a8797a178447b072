"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from provisioner.adapters.mock import (
    FakeAccounts,
    FakeContainerRuntime,
    FakePackageManager,
    FakeRunner,
    FakeSupervisor,
)
from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.models.config import ProvisionConfig
from provisioner.core.services.probe import Account, ProbeSources
from provisioner.core.services.reporter import RunReporter


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """Directory holding run logs and the run ledger."""
    d = tmp_path / "logs"
    d.mkdir()
    return d


@pytest.fixture
def systemd_dir(tmp_path: Path) -> Path:
    """Stand-in for /run/systemd/system (systemd is PID 1)."""
    d = tmp_path / "run-systemd"
    d.mkdir()
    return d


@pytest.fixture
def unit_dir(tmp_path: Path) -> Path:
    return tmp_path / "units"


@pytest.fixture
def config(log_dir: Path, unit_dir: Path) -> ProvisionConfig:
    return ProvisionConfig(log_dir=str(log_dir), unit_dir=str(unit_dir), health_attempts=3)


def _make_sources(
    *,
    environ: dict | None = None,
    euid: int = 0,
    accounts: list[Account] | None = None,
    groups: dict[str, list[str]] | None = None,
    runner: FakeRunner | None = None,
    proc_nvidia: Path = Path("/nonexistent/proc/driver/nvidia"),
    systemd_dir: Path = Path("/nonexistent/run/systemd/system"),
) -> ProbeSources:
    """ProbeSources over in-memory host state."""
    groups = groups or {}
    return ProbeSources(
        environ=environ if environ is not None else {"SUDO_USER": "alice"},
        euid=euid,
        accounts=lambda: list(accounts or []),
        group_members=lambda g: list(groups.get(g, [])),
        runner=runner or FakeRunner(binaries={"apt-get"}),
        proc_nvidia=proc_nvidia,
        systemd_dir=systemd_dir,
    )


@pytest.fixture
def make_sources():
    """Factory for ProbeSources over in-memory host state."""
    return _make_sources


@pytest.fixture
def registry() -> AdapterRegistry:
    return AdapterRegistry.mock(
        runner=FakeRunner(),
        packages=FakePackageManager(),
        runtime=FakeContainerRuntime(),
        supervisor=FakeSupervisor(),
        accounts=FakeAccounts(),
    )


@pytest.fixture
def reporter(log_dir: Path):
    r = RunReporter(log_dir / "provisioner_test.log")
    yield r
    r.close()
