"""
Provision use case — run the whole workflow against a host.

This is the top-level orchestrator: probe the host, install packages,
enable the runtime, grant the target user access, set up the GPU
toolkit when there is a GPU, write the boot units, then converge each
managed container in dependency order. Every stage outcome goes through
the run reporter before the next decision is taken.

Fatal failures stop everything that depends on the failed stage; the
GPU toolkit is best effort and only turns GPU passthrough off.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.errors import ConfigError, EnvironmentProbeError, ProvisionError
from provisioner.core.models.config import ProvisionConfig
from provisioner.core.models.host import HostContext
from provisioner.core.models.result import StageResult
from provisioner.core.models.specs import ContainerSpec, ServiceSpec
from provisioner.core.persistence.audit import RunEntry, RunLedger
from provisioner.core.services.convergence import (
    ConvergenceEngine,
    ensure_runtime_access,
    http_ok,
)
from provisioner.core.services.packages import (
    GPU_RUNTIME,
    configure_gpu_runtime,
    ensure_group_access,
    ensure_packages,
    ensure_service,
    missing_packages,
)
from provisioner.core.services.probe import ProbeSources, probe
from provisioner.core.services.reporter import RunReport, RunReporter
from provisioner.core.services.units import EXTERNAL_UNITS, write_units

logger = logging.getLogger(__name__)


@dataclass
class ProvisionOptions:
    """Per-invocation switches (CLI flags)."""

    user: str | None = None
    skip_packages: bool = False
    skip_units: bool = False
    only: list[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class ProvisionResult:
    """Result of a provisioning run."""

    report: RunReport
    host: HostContext | None = None
    gpu_enabled: bool = False

    @property
    def exit_code(self) -> int:
        return self.report.exit_code

    def to_dict(self) -> dict:
        data = self.report.to_dict()
        data["host"] = self.host.to_dict() if self.host else None
        data["gpu_enabled"] = self.gpu_enabled
        return data


class _Abort(Exception):
    """A fatal stage failed; nothing downstream may run."""


def order_containers(specs: list[ContainerSpec]) -> list[ContainerSpec]:
    """Sort *specs* so each container follows the containers it depends on.

    Dependencies on containers outside *specs* are ignored here; the
    orchestrator checks them against the runtime instead.

    Raises:
        ConfigError: Duplicate names or a dependency cycle.
    """
    by_name: dict[str, ContainerSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise ConfigError(f"duplicate container name {spec.name}")
        by_name[spec.name] = spec

    ordered: list[ContainerSpec] = []
    done: set[str] = set()
    remaining = list(specs)
    while remaining:
        ready = [
            s for s in remaining
            if all(d in done or d not in by_name for d in s.depends_on)
        ]
        if not ready:
            names = ", ".join(s.name for s in remaining)
            raise ConfigError(f"container dependency cycle between {names}")
        for spec in ready:
            ordered.append(spec)
            done.add(spec.name)
            remaining.remove(spec)
    return ordered


class Provisioner:
    """One provisioning run. Create, call ``run()``, discard."""

    def __init__(
        self,
        config: ProvisionConfig,
        registry: AdapterRegistry,
        reporter: RunReporter,
        options: ProvisionOptions | None = None,
        *,
        probe_sources: ProbeSources | None = None,
        sleep: Callable[[float], None] = time.sleep,
        http_probe: Callable[[str], bool] = http_ok,
    ):
        self.config = config
        self.registry = registry
        self.reporter = reporter
        self.options = options or ProvisionOptions()
        self._probe_sources = probe_sources
        self._sleep = sleep
        self._http_probe = http_probe
        self.host: HostContext | None = None
        self.gpu_enabled = False
        self.units_installed = False

    # ── Stage plumbing ──────────────────────────────────────────

    def _stage(
        self,
        stage: str,
        fn: Callable[[], StageResult],
        *,
        fatal: bool = True,
    ) -> StageResult:
        """Run one stage, record its outcome, abort the run on fatal failure."""
        try:
            result = fn()
        except ProvisionError as e:
            result = StageResult.from_error(stage, e, fatal=fatal and e.fatal)
        self.reporter.add(result)
        if result.failed and result.fatal:
            raise _Abort(stage)
        return result

    def _skip(self, stage: str, reason: str, **extra) -> StageResult:
        return self.reporter.add(StageResult.skip(stage, reason, **extra))

    # ── Workflow ────────────────────────────────────────────────

    def run(self) -> ProvisionResult:
        self.reporter.note(f"Starting {self.config.workflow} run")
        self.reporter.note(f"Log file location: {self.reporter.log_path}")

        try:
            self._probe()
            if self.options.dry_run:
                self._plan()
            else:
                self._packages()
                self._host_setup()
                self._gpu()
                specs = self.config.container_specs(gpu=self.gpu_enabled)
                self._units(specs)
                self._stage("runtime:access", lambda: ensure_runtime_access(
                    self.registry.runtime, self.config.runtime_group,
                ))
                self._containers(specs)
        except _Abort as e:
            self.reporter.note(f"Run aborted after fatal failure in {e}")

        report = self.reporter.summarize()
        self._write_ledger(report)
        return ProvisionResult(report=report, host=self.host, gpu_enabled=self.gpu_enabled)

    def _probe(self) -> None:
        override = self.options.user or self.config.target_user
        try:
            self.host = probe(override, require_user=True, sources=self._probe_sources)
        except EnvironmentProbeError as e:
            self.reporter.add(StageResult.from_error("probe", e))
            self.reporter.note("Set PROVISION_TARGET_USER or pass --user to choose the target user")
            raise _Abort("probe") from e

        host = self.host
        self.reporter.add(StageResult.success(
            "probe",
            f"user {host.target_user} ({host.user_source}), "
            f"{'root' if host.privileged else 'unprivileged'}, "
            f"GPU {'present' if host.gpu_present else 'absent'}, "
            f"package manager {host.package_manager or 'none'}",
            metadata=host.to_dict(),
        ))

    def _plan(self) -> None:
        """Dry run: record what would happen, touch nothing."""
        host = self.host
        assert host is not None
        pkgs = self.config.packages
        for package_set in (pkgs.prerequisites, pkgs.docker):
            self._skip(f"packages:{package_set.name}", "[dry-run] would ensure " + " ".join(package_set.packages))
        self._skip(f"service:{self.config.runtime_service}", "[dry-run] would enable and start")
        self._skip(f"access:{self.config.runtime_group}-group", f"[dry-run] would grant {host.target_user}")
        if host.gpu_present:
            self._skip("gpu:toolkit", "[dry-run] would install " + " ".join(pkgs.gpu.packages))
        else:
            self._skip("gpu:toolkit", "no GPU detected")
        specs = self.config.container_specs(gpu=host.gpu_present)
        self._skip("units", "[dry-run] would write " + ", ".join(
            f"{s.name}.service" for s in specs
        ))
        for spec in order_containers(specs):
            self._skip(
                f"container:{spec.name}",
                f"[dry-run] would converge {spec.image}",
                metadata={"spec": spec.model_dump(mode="json"), "spec_hash": spec.spec_hash()},
            )

    def _packages(self) -> None:
        pkgs = self.config.packages
        for package_set in (pkgs.prerequisites, pkgs.docker):
            stage = f"packages:{package_set.name}"
            if self.options.skip_packages:
                self._skip(stage, "package stages disabled")
                continue
            self._stage(stage, lambda ps=package_set: ensure_packages(ps, self.registry.packages))

    def _host_setup(self) -> None:
        host = self.host
        assert host is not None
        service = self.config.runtime_service
        self._stage(f"service:{service}", lambda: ensure_service(self.registry.supervisor, service))
        group = self.config.runtime_group
        self._stage(
            f"access:{group}-group",
            lambda: ensure_group_access(host, self.registry.accounts, group),
        )

    def _gpu(self) -> None:
        host = self.host
        assert host is not None
        gpu_set = self.config.packages.gpu

        if not host.gpu_present:
            self._skip("gpu:toolkit", "no GPU detected")
            return

        if self.options.skip_packages:
            missing = missing_packages(gpu_set, self.registry.packages)
            registered = GPU_RUNTIME in self.registry.runtime.runtimes()
            self.gpu_enabled = not missing and registered
            if missing:
                state = "toolkit missing, GPU passthrough off"
            elif not registered:
                state = "runtime not registered, GPU passthrough off"
            else:
                state = "toolkit present, GPU passthrough on"
            self._skip("gpu:toolkit", "package stages disabled; " + state)
            return

        def install_toolkit() -> StageResult:
            result = ensure_packages(gpu_set, self.registry.packages)
            configured = configure_gpu_runtime(
                self.registry.runner,
                self.registry.supervisor,
                self.registry.runtime,
                self.config.runtime_service,
            )
            return result.model_copy(update={
                "stage": "gpu:toolkit",
                "detail": result.detail + ("; runtime configured" if configured else "; runtime registered"),
                "metadata": {**result.metadata, "runtime_configured": configured},
            })

        result = self._stage("gpu:toolkit", install_toolkit, fatal=False)
        self.gpu_enabled = result.ok
        if not result.ok:
            self.reporter.note("Continuing without GPU passthrough")

    def _units(self, specs: list[ContainerSpec]) -> None:
        host = self.host
        assert host is not None
        if self.options.skip_units:
            self._skip("units", "unit stage disabled")
            return
        if not host.privileged:
            self._skip("units", "writing units requires root")
            return
        if host.init_system != "systemd":
            self._skip("units", "no systemd on this host")
            return

        runtime_unit = f"{self.config.runtime_service}.service"
        services = [ServiceSpec.for_container(s, self.config.runtime_binary, runtime_unit) for s in specs]
        result = self._stage("units", lambda: write_units(
            services,
            unit_dir=Path(self.config.unit_dir),
            supervisor=self.registry.supervisor,
            external=EXTERNAL_UNITS | {runtime_unit},
        ))
        self.units_installed = result.ok

    def _containers(self, specs: list[ContainerSpec]) -> None:
        engine = ConvergenceEngine(
            self.registry.runtime,
            attempts=self.config.health_attempts,
            interval=self.config.health_interval,
            sleep=self._sleep,
            http_probe=self._http_probe,
            unit_supervisor=self.registry.supervisor if self.units_installed else None,
        )

        try:
            ordered = order_containers(specs)
        except ConfigError as e:
            self.reporter.add(StageResult.from_error("containers", e))
            raise _Abort("containers") from e

        selected = {s.name for s in ordered}
        if self.options.only:
            unknown = set(self.options.only) - selected
            if unknown:
                err = ConfigError(f"unknown container(s): {', '.join(sorted(unknown))}")
                self.reporter.add(StageResult.from_error("containers", err))
                raise _Abort("containers") from err
            selected = set(self.options.only)

        verified: set[str] = set()
        for spec in ordered:
            stage = f"container:{spec.name}"
            if spec.name not in selected:
                continue

            blocked = self._blocking_dependency(spec, selected, verified)
            if blocked is not None:
                self.reporter.add(blocked)
                continue

            result = engine.reconcile(spec)
            self.reporter.add(result)
            if result.ok:
                verified.add(spec.name)
                for port in spec.ports:
                    self.reporter.note(f"{spec.name} is available at http://localhost:{port.host}")
            elif result.error_type == "HealthCheckError":
                self.reporter.note(f"{spec.name} left running for diagnosis: docker logs {spec.name}")
            logger.debug("%s finished as %s", stage, result.metadata.get("state"))

    def _blocking_dependency(
        self,
        spec: ContainerSpec,
        selected: set[str],
        verified: set[str],
    ) -> StageResult | None:
        """Why *spec* may not be created yet, or None when it may."""
        stage = f"container:{spec.name}"
        for dep in spec.depends_on:
            if dep in selected:
                if dep not in verified:
                    return StageResult.skip(stage, f"dependency {dep} did not reach verified")
                continue
            info = self.registry.runtime.inspect(dep)
            if info is None or not info.running:
                return StageResult.failure(
                    stage,
                    f"dependency {dep} is not running",
                    error_type="DependencyError",
                )
        return None

    def _write_ledger(self, report: RunReport) -> None:
        host = self.host
        entry = RunEntry(
            workflow=report.workflow,
            status=report.status,
            exit_code=report.exit_code,
            log_path=report.log_path,
            target_user=host.target_user if host else "",
            gpu_present=host.gpu_present if host else False,
            succeeded=[r.stage for r in report.records if r.ok],
            skipped=[r.stage for r in report.records if r.skipped],
            failed=[r.stage for r in report.records if r.failed],
            context={"dry_run": self.options.dry_run, "mock": self.registry.mock_mode},
        )
        try:
            RunLedger.beside(Path(report.log_path)).write(entry)
        except OSError as e:
            logger.warning("Could not append to run ledger: %s", e)


def run_provision(
    config: ProvisionConfig,
    *,
    registry: AdapterRegistry,
    reporter: RunReporter,
    options: ProvisionOptions | None = None,
    probe_sources: ProbeSources | None = None,
    sleep: Callable[[float], None] = time.sleep,
    http_probe: Callable[[str], bool] = http_ok,
) -> ProvisionResult:
    """Execute the provisioning workflow.

    Returns:
        ProvisionResult; ``exit_code`` is 0 unless a fatal stage failed.
    """
    return Provisioner(
        config,
        registry,
        reporter,
        options,
        probe_sources=probe_sources,
        sleep=sleep,
        http_probe=http_probe,
    ).run()
