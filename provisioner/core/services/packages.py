"""
Package stage manager — converge installed system packages.

``ensure_packages`` first verifies what is already installed; only when
something is missing does it touch the repository configuration, the
package index and the installer. A second call with nothing missing is
a pure verification pass.

Also hosts the smaller host-setup stages that follow package
installation: enabling the runtime service, granting the target user
access to the runtime, and configuring the GPU toolkit.
"""

from __future__ import annotations

import logging
import time

from provisioner.adapters.base import (
    AccountManager,
    ContainerRuntime,
    PackageManager,
    ServiceSupervisor,
)
from provisioner.adapters.shell.command import CommandRunner
from provisioner.core.errors import PackageError, ProvisionError
from provisioner.core.models.host import HostContext
from provisioner.core.models.result import StageResult
from provisioner.core.models.specs import PackageSet

logger = logging.getLogger(__name__)

# apt prints this when a requested package is already current
_ALREADY_NEWEST = "is already the newest version"

# runtime name nvidia-ctk registers with the container daemon
GPU_RUNTIME = "nvidia"


def missing_packages(package_set: PackageSet, manager: PackageManager) -> list[str]:
    """Packages of *package_set* that are not installed, in set order."""
    return [p for p in package_set.packages if not manager.is_installed(p)]


def _refresh_index(manager: PackageManager, stage: str) -> None:
    """Refresh the index, retrying once on failure."""
    r = manager.refresh_index()
    if r.ok:
        return
    logger.warning("Package index refresh failed (%s), retrying once", r.message)
    r = manager.refresh_index()
    if not r.ok:
        raise PackageError("package index refresh failed", stage=stage, detail=r.message)


def ensure_packages(package_set: PackageSet, manager: PackageManager) -> StageResult:
    """Ensure every package of *package_set* is installed.

    Raises:
        PackageError: Repository setup, index refresh (after one retry)
            or installation failed.
    """
    stage = f"packages:{package_set.name}"
    start = time.monotonic()

    if not package_set.packages:
        return StageResult.skip(stage, "no packages requested")

    if not manager.is_available():
        raise PackageError(f"package manager '{manager.name}' not available", stage=stage)

    missing = missing_packages(package_set, manager)
    if not missing:
        logger.info("%s: all %d packages already installed", stage, len(package_set.packages))
        return StageResult.success(
            stage,
            f"already installed ({len(package_set.packages)} packages)",
            metadata={"installed": [], "verified": list(package_set.packages)},
        )

    if package_set.repository is not None:
        r = manager.add_repository(package_set.repository)
        if not r.ok:
            raise PackageError(
                f"repository '{package_set.repository.name}' setup failed",
                stage=stage,
                detail=r.message,
            )

    _refresh_index(manager, stage)

    logger.info("%s: installing %s", stage, " ".join(missing))
    r = manager.install(missing)
    if not r.ok and _ALREADY_NEWEST not in (r.stdout + r.stderr):
        raise PackageError(
            f"installation of {' '.join(missing)} failed",
            stage=stage,
            detail=r.message,
        )

    elapsed_ms = int((time.monotonic() - start) * 1000)
    return StageResult.success(
        stage,
        f"installed {', '.join(missing)}",
        duration_ms=elapsed_ms,
        metadata={"installed": missing, "verified": [
            p for p in package_set.packages if p not in missing
        ]},
    )


# ── Host setup stages ───────────────────────────────────────────────


def ensure_service(supervisor: ServiceSupervisor, service: str) -> StageResult:
    """Enable the runtime service at boot and make sure it is running."""
    stage = f"service:{service}"
    if not supervisor.is_available():
        return StageResult.skip(stage, f"{supervisor.name} not available")

    r = supervisor.enable(service)
    if not r.ok:
        raise ProvisionError(f"cannot enable {service}", stage=stage, detail=r.message)

    if supervisor.is_active(service):
        return StageResult.success(stage, "enabled, already running")

    r = supervisor.start(service)
    if not r.ok:
        raise ProvisionError(f"cannot start {service}", stage=stage, detail=r.message)
    return StageResult.success(stage, "enabled and started")


def ensure_group_access(host: HostContext, accounts: AccountManager, group: str) -> StageResult:
    """Add the target user to *group* unless already a member.

    Raises:
        EnvironmentProbeError: No target user (user-scoped operation).
        ProvisionError: The membership change failed.
    """
    stage = f"access:{group}-group"
    user = host.require_user()

    if accounts.is_member(user, group):
        return StageResult.success(stage, f"{user} already in {group}")

    r = accounts.add_to_group(user, group)
    if not r.ok:
        raise ProvisionError(f"cannot add {user} to {group}", stage=stage, detail=r.message)
    return StageResult.success(
        stage,
        f"added {user} to {group}; takes effect at next login",
        metadata={"changed": True},
    )


def configure_gpu_runtime(
    runner: CommandRunner,
    supervisor: ServiceSupervisor,
    runtime: ContainerRuntime,
    runtime_service: str = "docker",
) -> bool:
    """Register the NVIDIA runtime with the container daemon unless it is.

    Checked on every GPU run, not only after a fresh toolkit install, so
    a configuration step that failed on an earlier run is retried.

    Returns:
        True when nvidia-ctk ran and the daemon was restarted, False
        when the daemon already lists the runtime.

    Raises:
        PackageError: nvidia-ctk or the daemon restart failed.
    """
    if GPU_RUNTIME in runtime.runtimes():
        logger.debug("%s runtime already registered with %s", GPU_RUNTIME, runtime.name)
        return False

    r = runner.run(
        ["nvidia-ctk", "runtime", "configure", f"--runtime={runtime_service}"],
        privileged=True,
        timeout=60,
    )
    if not r.ok:
        raise PackageError("nvidia-ctk runtime configure failed", stage="gpu:toolkit", detail=r.message)

    r = supervisor.restart(runtime_service)
    if not r.ok:
        raise PackageError(f"restart of {runtime_service} failed", stage="gpu:toolkit", detail=r.message)
    return True
