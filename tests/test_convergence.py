"""
Tests for the container convergence engine.
"""

import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from provisioner.adapters.base import ContainerInfo
from provisioner.adapters.mock import FakeContainerRuntime, FakeSupervisor
from provisioner.core.errors import ProvisionError, RuntimePermissionError
from provisioner.core.models.config import backend_container
from provisioner.core.models.specs import SPEC_HASH_LABEL, ServiceSpec
from provisioner.core.services.convergence import (
    ConvergenceEngine,
    ensure_runtime_access,
    http_ok,
)


def _engine(runtime, *, attempts=3, probe=lambda url: True, sleeps=None, units=None):
    return ConvergenceEngine(
        runtime,
        attempts=attempts,
        interval=2.0,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
        http_probe=probe,
        unit_supervisor=units,
    )


def _existing(spec, *, status="running", label=None, image=None):
    return ContainerInfo(
        name=spec.name,
        id="abc123",
        image=image or spec.image,
        status=status,
        labels={SPEC_HASH_LABEL: label if label is not None else spec.spec_hash()},
    )


def _unit_started(spec):
    """The container a boot unit's ExecStart leaves running."""
    args = ServiceSpec.for_container(spec).exec_start.split()
    labels = dict(args[i + 1].split("=", 1) for i, a in enumerate(args) if a == "--label")
    return ContainerInfo(name=spec.name, id="def456", image=spec.image, status="running", labels=labels)


class _RemovingSupervisor(FakeSupervisor):
    """Stopping a unit ends its ``docker run --rm`` and so removes the container."""

    def __init__(self, runtime):
        super().__init__()
        self.runtime = runtime

    def stop(self, unit):
        r = super().stop(unit)
        self.runtime.containers.pop(unit.removesuffix(".service"), None)
        return r


class TestFreshContainer:
    def test_absent_to_verified(self):
        spec = backend_container()
        rt = FakeContainerRuntime()
        result = _engine(rt).reconcile(spec)

        assert result.ok
        assert result.stage == "container:ollama"
        assert result.metadata["transitions"] == ["absent", "pulling", "creating", "running", "verified"]
        assert result.metadata["state"] == "verified"
        assert rt.call_log == [("pull", "ollama/ollama"), ("create", "ollama"), ("start", "ollama")]

    def test_created_with_spec_label(self):
        spec = backend_container()
        rt = FakeContainerRuntime()
        _engine(rt).reconcile(spec)
        assert rt.containers["ollama"].labels == {SPEC_HASH_LABEL: spec.spec_hash()}

    def test_present_image_not_pulled(self):
        spec = backend_container()
        rt = FakeContainerRuntime(images={spec.image})
        _engine(rt).reconcile(spec)
        assert "pull" not in rt.operations()

    def test_pull_always(self):
        spec = backend_container().model_copy(update={"pull_policy": "always"})
        rt = FakeContainerRuntime(images={spec.image})
        _engine(rt).reconcile(spec)
        assert rt.operations(spec.image) == ["pull"]

    def test_gpu_reported(self):
        spec = backend_container().model_copy(update={"gpus": "all"})
        result = _engine(FakeContainerRuntime()).reconcile(spec)
        assert result.metadata["gpu"] is True


class TestExistingContainer:
    def test_identical_spec_running_is_left_alone(self):
        spec = backend_container()
        rt = FakeContainerRuntime(containers={"ollama": _existing(spec)})
        result = _engine(rt).reconcile(spec)

        assert result.ok
        assert result.detail.startswith("unchanged")
        assert rt.call_log == []

    def test_identical_spec_stopped_is_started(self):
        spec = backend_container()
        rt = FakeContainerRuntime(containers={"ollama": _existing(spec, status="exited")})
        result = _engine(rt).reconcile(spec)

        assert result.ok
        assert rt.operations("ollama") == ["start"]

    def test_changed_image_replaced_exactly_once(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _existing(old)})
        result = _engine(rt).reconcile(new)

        assert result.ok
        assert rt.operations("ollama") == ["stop", "remove", "create", "start"]
        assert rt.containers["ollama"].image == "ollama/ollama:0.5.7"
        assert result.detail.startswith("replaced stale container")

    def test_unlabelled_container_replaced(self):
        spec = backend_container()
        info = _existing(spec)
        info.labels = {}
        rt = FakeContainerRuntime(containers={"ollama": info})
        _engine(rt).reconcile(spec)
        assert rt.operations("ollama") == ["stop", "remove", "create", "start"]

    def test_stopped_stale_container_not_stopped_again(self):
        spec = backend_container()
        rt = FakeContainerRuntime(containers={"ollama": _existing(spec, status="exited", label="old")})
        _engine(rt).reconcile(spec)
        assert rt.operations("ollama") == ["remove", "create", "start"]

    def test_stale_removed_before_pull(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _existing(old)})
        _engine(rt).reconcile(new)
        ops = [op for op, _ in rt.call_log]
        assert ops.index("remove") < ops.index("pull")


class TestBootUnitOwnership:
    """Containers that also have a <name>.service boot unit."""

    def test_unit_started_container_left_alone(self):
        spec = backend_container()
        rt = FakeContainerRuntime(containers={"ollama": _unit_started(spec)})
        sup = FakeSupervisor()
        sup.active.add("ollama.service")
        result = _engine(rt, units=sup).reconcile(spec)

        assert result.ok
        assert result.detail.startswith("unchanged")
        assert result.metadata["actions"] == []
        assert rt.call_log == []
        assert sup.call_log == []

    def test_unit_started_container_matches_without_units(self):
        spec = backend_container()
        rt = FakeContainerRuntime(containers={"ollama": _unit_started(spec)})
        assert _engine(rt).reconcile(spec).detail.startswith("unchanged")
        assert rt.call_log == []

    def test_active_unit_stopped_before_replacement(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _unit_started(old)})
        sup = FakeSupervisor()
        sup.active.add("ollama.service")
        result = _engine(rt, units=sup).reconcile(new)

        assert result.ok
        assert sup.call_log == [("stop", "ollama.service")]
        assert result.metadata["actions"] == ["stop-unit", "stop", "remove", "pull", "create", "start"]

    def test_container_gone_with_unit(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _unit_started(old)})
        sup = _RemovingSupervisor(rt)
        sup.active.add("ollama.service")
        result = _engine(rt, units=sup).reconcile(new)

        assert result.ok
        assert rt.operations("ollama") == ["create", "start"]

    def test_inactive_unit_not_touched(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _existing(old)})
        sup = FakeSupervisor()
        _engine(rt, units=sup).reconcile(new)

        assert sup.call_log == []
        assert rt.operations("ollama") == ["stop", "remove", "create", "start"]

    def test_created_without_runtime_restart(self):
        spec = backend_container()
        rt = FakeContainerRuntime()
        _engine(rt, units=FakeSupervisor()).reconcile(spec)

        assert rt.created_specs["ollama"].restart_policy == "no"
        assert rt.containers["ollama"].labels == {SPEC_HASH_LABEL: spec.spec_hash()}

    def test_runtime_restart_kept_without_units(self):
        rt = FakeContainerRuntime()
        _engine(rt).reconcile(backend_container())
        assert rt.created_specs["ollama"].restart_policy == "always"

    def test_unit_stop_failure(self):
        old = backend_container()
        new = old.model_copy(update={"image": "ollama/ollama:0.5.7"})
        rt = FakeContainerRuntime(containers={"ollama": _unit_started(old)})
        sup = FakeSupervisor(failures={"stop": "Access denied"})
        sup.active.add("ollama.service")
        result = _engine(rt, units=sup).reconcile(new)

        assert result.error_type == "ContainerError"
        assert "cannot stop ollama.service" in result.detail
        assert rt.call_log == []


class TestFailures:
    def test_pull_failure(self):
        spec = backend_container()
        rt = FakeContainerRuntime(pull_errors={spec.image: "manifest unknown"})
        result = _engine(rt).reconcile(spec)

        assert result.failed and result.fatal
        assert result.error_type == "PullError"
        assert "manifest unknown" in result.detail
        assert result.metadata["failed_in"] == "pulling"
        assert result.metadata["state"] == "failed"
        assert "create" not in rt.operations()

    def test_create_conflict(self):
        spec = backend_container()
        rt = FakeContainerRuntime(create_errors={"ollama": 'Conflict. The container name "/ollama" is already in use'})
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "CreateError"
        assert "name collision" in result.detail

    def test_start_command_fails(self):
        spec = backend_container()
        rt = FakeContainerRuntime(start_behavior={"ollama": "fail"})
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "StartError"
        assert result.metadata["failed_in"] == "creating"

    def test_crash_loop(self):
        spec = backend_container()
        rt = FakeContainerRuntime(start_behavior={"ollama": "crash"})
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "StartError"
        assert "crash-looping" in result.detail

    def test_exits_non_zero(self):
        spec = backend_container()
        rt = FakeContainerRuntime(start_behavior={"ollama": "exit"})
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "StartError"
        assert "exit code 1" in result.detail

    def test_restarts_between_checks(self):
        spec = backend_container()
        rt = FakeContainerRuntime(start_behavior={"ollama": "flap"})
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "StartError"
        assert "restarted 1 time(s) during verification" in result.detail
        assert "ollama" in rt.containers

    def test_existing_container_restarting_between_checks(self):
        spec = backend_container()
        rt = FakeContainerRuntime(
            containers={"ollama": _existing(spec)},
            start_behavior={"ollama": "flap"},
        )
        result = _engine(rt).reconcile(spec)
        assert result.error_type == "StartError"
        assert rt.call_log == []

    def test_health_exhaustion_leaves_container(self):
        spec = backend_container()
        rt = FakeContainerRuntime()
        sleeps: list[float] = []
        result = _engine(rt, attempts=4, probe=lambda url: False, sleeps=sleeps).reconcile(spec)

        assert result.error_type == "HealthCheckError"
        assert result.metadata["attempts"] == 4
        assert result.metadata["failed_in"] == "running"
        assert sleeps == [2.0, 2.0, 2.0]
        assert "ollama" in rt.containers
        assert "remove" not in rt.operations("ollama")

    def test_health_passes_eventually(self):
        spec = backend_container()
        answers = iter([False, False, True])
        result = _engine(FakeContainerRuntime(), attempts=5, probe=lambda url: next(answers)).reconcile(spec)
        assert result.ok
        assert result.metadata["attempts"] == 3

    def test_no_health_url_needs_only_running(self):
        spec = backend_container().model_copy(update={"health_url": None})
        calls = []
        result = _engine(FakeContainerRuntime(), probe=lambda url: calls.append(url) or False).reconcile(spec)
        assert result.ok
        assert calls == []

    def test_never_raises_container_errors(self):
        spec = backend_container()
        rt = FakeContainerRuntime(pull_errors={spec.image: "denied"})
        # returns a result instead of raising
        assert _engine(rt).reconcile(spec).failed


class TestRuntimeAccess:
    def test_reachable(self):
        result = ensure_runtime_access(FakeContainerRuntime())
        assert result.ok
        assert result.detail == "daemon reachable (server 27.0.0)"

    def test_permission_denied(self):
        rt = FakeContainerRuntime(
            info_error="permission denied while trying to connect to the Docker daemon socket",
        )
        with pytest.raises(RuntimePermissionError) as exc:
            ensure_runtime_access(rt, "docker")
        assert "newgrp docker" in exc.value.detail
        assert exc.value.stage == "runtime:access"

    def test_daemon_down(self):
        rt = FakeContainerRuntime(info_error="Cannot connect to the Docker daemon. Is the docker daemon running?")
        with pytest.raises(ProvisionError, match="not reachable") as exc:
            ensure_runtime_access(rt)
        assert not isinstance(exc.value, RuntimePermissionError)


class TestHttpOk:
    def test_ok(self):
        resp = MagicMock(status=200)
        resp.__enter__.return_value = resp
        with patch("urllib.request.urlopen", return_value=resp):
            assert http_ok("http://localhost:11434/api/version") is True

    def test_server_error(self):
        err = urllib.error.HTTPError("http://x", 503, "unavailable", {}, None)
        with patch("urllib.request.urlopen", side_effect=err):
            assert http_ok("http://x") is False

    def test_client_error_means_alive(self):
        err = urllib.error.HTTPError("http://x", 404, "not found", {}, None)
        with patch("urllib.request.urlopen", side_effect=err):
            assert http_ok("http://x") is True

    def test_connection_refused(self):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            assert http_ok("http://x") is False
