"""
Tests for the read-only status use case.
"""

from pathlib import Path

from provisioner.adapters.base import ContainerInfo
from provisioner.adapters.mock import FakeContainerRuntime
from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.models.specs import SPEC_HASH_LABEL
from provisioner.core.use_cases.status import get_status


def _running(spec, digest: str | None = None) -> ContainerInfo:
    return ContainerInfo(
        name=spec.name,
        image=spec.image,
        status="running",
        labels={SPEC_HASH_LABEL: digest or spec.spec_hash()},
    )


class TestGetStatus:
    def test_nothing_deployed(self, config):
        status = get_status(config, AdapterRegistry.mock())
        assert status.runtime_available is True
        assert [c.status for c in status.containers] == ["absent", "absent"]
        assert status.converged is False

    def test_converged(self, config):
        specs = config.container_specs(gpu=False)
        runtime = FakeContainerRuntime(containers={s.name: _running(s) for s in specs})
        status = get_status(config, AdapterRegistry.mock(runtime=runtime))
        assert all(c.in_sync for c in status.containers)
        assert status.converged is True

    def test_gpu_changes_digest(self, config):
        specs = config.container_specs(gpu=False)
        runtime = FakeContainerRuntime(containers={s.name: _running(s) for s in specs})
        status = get_status(config, AdapterRegistry.mock(runtime=runtime), gpu=True)
        by_name = {c.name: c for c in status.containers}
        assert by_name["ollama"].in_sync is False

    def test_stale_label(self, config):
        specs = config.container_specs(gpu=False)
        runtime = FakeContainerRuntime(containers={
            specs[0].name: _running(specs[0], digest="0" * 16),
        })
        status = get_status(config, AdapterRegistry.mock(runtime=runtime))
        assert status.containers[0].exists is True
        assert status.containers[0].in_sync is False

    def test_unit_presence(self, config):
        unit_dir = Path(config.unit_dir)
        unit_dir.mkdir(parents=True)
        (unit_dir / "ollama.service").write_text("[Unit]\n")
        status = get_status(config, AdapterRegistry.mock())
        by_name = {c.name: c for c in status.containers}
        assert by_name["ollama"].unit_present is True
        assert by_name["open-webui"].unit_present is False

    def test_runtime_unreachable(self, config):
        runtime = FakeContainerRuntime(info_error="Cannot connect to the Docker daemon")
        status = get_status(config, AdapterRegistry.mock(runtime=runtime))
        assert status.runtime_available is False
        assert all(not c.exists for c in status.containers)
        assert status.to_dict()["converged"] is False
