"""
Container convergence engine — drive one named container to its spec.

State machine per container::

    absent → pulling → creating → running → verified
                 (any state) → failed

The container name is the idempotency key. The spec digest is stored on
the container as a label; a container carrying the current digest is
left alone and only re-verified, anything else under the same name is
stopped and removed before the image is pulled.

When the host has boot units for the containers, the unit owns restarts:
an active unit is stopped before its container is replaced, and the
engine creates containers with restart policy "no" so docker and the
unit never both bring the same name back at boot.

Verification is a bounded poll (attempts × interval). A container whose
restart count grows between polls is crash-looping. A container that
fails verification is left in place so its logs stay available.
Cross-container ordering is the caller's job.
"""

from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from enum import Enum

from provisioner.adapters.base import ContainerInfo, ContainerRuntime, ServiceSupervisor
from provisioner.core.errors import (
    ContainerError,
    CreateError,
    HealthCheckError,
    ProvisionError,
    PullError,
    RuntimePermissionError,
    StartError,
)
from provisioner.core.models.result import StageResult
from provisioner.core.models.specs import SPEC_HASH_LABEL, ContainerSpec

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 10
DEFAULT_INTERVAL = 3.0


class ContainerState(str, Enum):
    ABSENT = "absent"
    PULLING = "pulling"
    CREATING = "creating"
    RUNNING = "running"
    VERIFIED = "verified"
    FAILED = "failed"


def http_ok(url: str, timeout: float = 3.0) -> bool:
    """Whether *url* answers with a non-5xx status."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            return resp.status < 500
    except urllib.error.HTTPError as e:
        return e.code < 500
    except (urllib.error.URLError, OSError, ValueError):
        return False


def ensure_runtime_access(runtime: ContainerRuntime, group: str = "docker") -> StageResult:
    """Precondition for every container stage: the daemon answers us.

    A denied socket means this session lacks the runtime group; retrying
    cannot fix that, so it is raised at once.

    Raises:
        RuntimePermissionError: The daemon socket is not accessible.
        ProvisionError: The daemon is not reachable for another reason.
    """
    stage = "runtime:access"
    r = runtime.info()
    if r.ok:
        version = r.stdout.strip().strip('"') or "unknown"
        return StageResult.success(stage, f"daemon reachable (server {version})")

    text = r.message
    if "permission denied" in text.lower():
        raise RuntimePermissionError(
            "container runtime socket not accessible",
            stage=stage,
            detail=(
                f"{text}. Group membership changes apply to new sessions only: "
                f"log out and back in (or run 'newgrp {group}') and re-run."
            ),
        )
    raise ProvisionError("container runtime daemon not reachable", stage=stage, detail=text)


class _Reconciliation:
    """Bookkeeping for one reconcile call."""

    def __init__(self, spec: ContainerSpec):
        self.spec = spec
        self.state = ContainerState.ABSENT
        self.transitions: list[str] = [ContainerState.ABSENT.value]
        self.actions: list[str] = []
        self.attempts = 0
        self.restarts: int | None = None

    def enter(self, state: ContainerState) -> None:
        self.state = state
        self.transitions.append(state.value)
        logger.debug("%s → %s", self.spec.name, state.value)

    def metadata(self) -> dict:
        return {
            "container": self.spec.name,
            "image": self.spec.image,
            "state": self.state.value,
            "transitions": list(self.transitions),
            "actions": list(self.actions),
            "attempts": self.attempts,
            "gpu": bool(self.spec.gpus),
        }


class ConvergenceEngine:
    """Reconcile ContainerSpecs against a container runtime.

    Args:
        runtime: The container runtime adapter.
        attempts: Verification poll attempts.
        interval: Seconds between verification attempts.
        sleep: Blocking sleep used between attempts.
        http_probe: Liveness check for specs that declare ``health_url``.
        unit_supervisor: Supervisor holding a ``<name>.service`` boot unit
            for every container; None when containers have no units.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        interval: float = DEFAULT_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        http_probe: Callable[[str], bool] = http_ok,
        unit_supervisor: ServiceSupervisor | None = None,
    ):
        self._runtime = runtime
        self._units = unit_supervisor
        self._attempts = max(1, attempts)
        self._interval = interval
        self._sleep = sleep
        self._http_probe = http_probe

    def reconcile(self, spec: ContainerSpec) -> StageResult:
        """Converge the container named ``spec.name`` to *spec*.

        Never raises for lifecycle failures: they come back as a failed
        StageResult whose ``error_type`` names the ContainerError.
        """
        stage = f"container:{spec.name}"
        run = _Reconciliation(spec)
        start = time.monotonic()

        try:
            detail = self._converge(run)
        except ContainerError as e:
            failed_in = run.state.value
            run.enter(ContainerState.FAILED)
            logger.error("%s failed while %s: %s", spec.name, failed_in, e)
            return StageResult.from_error(
                stage,
                e,
                duration_ms=int((time.monotonic() - start) * 1000),
                metadata={**run.metadata(), "failed_in": failed_in},
            )

        return StageResult.success(
            stage,
            detail,
            duration_ms=int((time.monotonic() - start) * 1000),
            metadata=run.metadata(),
        )

    # ── State machine ───────────────────────────────────────────

    def _converge(self, run: _Reconciliation) -> str:
        spec = run.spec
        desired = spec.spec_hash()
        existing = self._runtime.inspect(spec.name)

        if existing is not None and existing.labels.get(SPEC_HASH_LABEL) == desired:
            run.restarts = existing.restart_count
            if existing.running:
                run.enter(ContainerState.RUNNING)
                self._verify(run)
                return f"unchanged, verified after {run.attempts} check(s)"
            # same spec, stopped: bring it back without recreating
            self._start(run)
            self._verify(run)
            return f"restarted existing container, verified after {run.attempts} check(s)"

        if existing is not None:
            self._remove_stale(run, existing)

        run.enter(ContainerState.PULLING)
        self._pull(run)

        run.enter(ContainerState.CREATING)
        self._create(run, desired)
        self._start(run)

        self._verify(run)
        replaced = "replaced stale container, " if existing is not None else ""
        return f"{replaced}running {spec.image}, verified after {run.attempts} check(s)"

    def _remove_stale(self, run: _Reconciliation, existing: ContainerInfo) -> None:
        """Stop and remove a container whose config does not match the spec."""
        name = run.spec.name
        logger.info(
            "Replacing %s (image %s, spec %s)",
            name, existing.image or "?", existing.labels.get(SPEC_HASH_LABEL, "unlabelled"),
        )
        unit = f"{name}.service"
        if self._units is not None and self._units.is_active(unit):
            # a live unit would restart the old container under our feet
            r = self._units.stop(unit)
            run.actions.append("stop-unit")
            if not r.ok:
                raise ContainerError(f"cannot stop {unit}", container=name, detail=r.message)
            existing = self._runtime.inspect(name)
            if existing is None:
                # the unit runs with --rm
                return

        if existing.running or existing.status == "restarting":
            r = self._runtime.stop(name)
            run.actions.append("stop")
            if not r.ok:
                # rm -f below still kills it
                logger.warning("docker stop %s failed: %s", name, r.message)

        r = self._runtime.remove(name)
        run.actions.append("remove")
        if not r.ok:
            raise ContainerError(
                f"cannot remove stale container {name}", container=name, detail=r.message,
            )

    def _pull(self, run: _Reconciliation) -> None:
        spec = run.spec
        if spec.pull_policy == "missing" and self._runtime.image_exists(spec.image):
            logger.debug("Image %s present, not pulling", spec.image)
            return
        logger.info("Pulling %s", spec.image)
        r = self._runtime.pull(spec.image)
        run.actions.append("pull")
        if not r.ok:
            raise PullError(f"cannot pull {spec.image}", container=spec.name, detail=r.message)

    def _create(self, run: _Reconciliation, spec_hash: str) -> None:
        spec = run.spec
        if self._units is not None:
            # the boot unit restarts it, not docker
            spec = spec.model_copy(update={"restart_policy": "no"})
        r = self._runtime.create(spec, {SPEC_HASH_LABEL: spec_hash})
        run.actions.append("create")
        if not r.ok:
            text = r.message
            if "conflict" in text.lower() or "already in use" in text.lower():
                raise CreateError(
                    f"name collision creating {spec.name} after stale removal",
                    container=spec.name,
                    detail=text,
                )
            raise CreateError(f"cannot create {spec.name}", container=spec.name, detail=text)

    def _start(self, run: _Reconciliation) -> None:
        name = run.spec.name
        r = self._runtime.start(name)
        run.actions.append("start")
        if not r.ok:
            raise StartError(f"cannot start {name}", container=name, detail=r.message)

        info = self._runtime.inspect(name)
        if info is None:
            raise StartError(f"{name} vanished right after start", container=name)
        if info.crash_looping:
            raise StartError(
                f"{name} is crash-looping ({info.status}, exit code {info.exit_code})",
                container=name,
                detail=self._runtime.logs(name),
            )
        run.restarts = info.restart_count
        run.enter(ContainerState.RUNNING)

    def _verify(self, run: _Reconciliation) -> None:
        spec = run.spec
        last = "not running"
        for attempt in range(1, self._attempts + 1):
            run.attempts = attempt
            info = self._runtime.inspect(spec.name)

            if info is not None and info.crash_looping:
                raise StartError(
                    f"{spec.name} stopped during verification ({info.status}, exit code {info.exit_code})",
                    container=spec.name,
                    detail=self._runtime.logs(spec.name),
                )

            if info is not None and run.restarts is not None and info.restart_count > run.restarts:
                raise StartError(
                    f"{spec.name} restarted {info.restart_count - run.restarts} time(s) during verification",
                    container=spec.name,
                    detail=self._runtime.logs(spec.name),
                )

            if info is not None and info.running:
                if not spec.health_url or self._http_probe(spec.health_url):
                    run.enter(ContainerState.VERIFIED)
                    logger.info("%s verified (attempt %d)", spec.name, attempt)
                    return
                last = f"{spec.health_url} not answering"
            elif info is None:
                last = "container missing"
            else:
                last = f"status {info.status}"

            if attempt < self._attempts:
                self._sleep(self._interval)

        raise HealthCheckError(
            f"{spec.name} not healthy after {self._attempts} checks",
            container=spec.name,
            detail=last,
        )
