"""
Status use case — how the host compares to the desired state.

Read-only: inspects each managed container, compares its spec label to
the digest of the current configuration, and checks that the boot unit
exists. Nothing is changed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from provisioner.adapters.registry import AdapterRegistry
from provisioner.core.models.config import ProvisionConfig
from provisioner.core.models.specs import SPEC_HASH_LABEL


@dataclass
class ContainerStatus:
    name: str
    image: str
    exists: bool = False
    status: str = "absent"
    in_sync: bool = False
    unit_present: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "image": self.image,
            "exists": self.exists,
            "status": self.status,
            "in_sync": self.in_sync,
            "unit_present": self.unit_present,
        }


@dataclass
class HostStatus:
    runtime_available: bool = False
    containers: list[ContainerStatus] = field(default_factory=list)
    adapters: dict = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return all(c.in_sync and c.status == "running" for c in self.containers)

    def to_dict(self) -> dict:
        return {
            "runtime_available": self.runtime_available,
            "converged": self.converged,
            "containers": [c.to_dict() for c in self.containers],
            "adapters": self.adapters,
        }


def get_status(config: ProvisionConfig, registry: AdapterRegistry, *, gpu: bool = False) -> HostStatus:
    """Compare the managed containers against *config*.

    Args:
        gpu: Whether GPU passthrough is expected (changes the spec digest).
    """
    result = HostStatus(adapters=registry.adapter_status())
    result.runtime_available = registry.runtime.info().ok

    unit_dir = Path(config.unit_dir)
    for spec in config.container_specs(gpu=gpu):
        entry = ContainerStatus(
            name=spec.name,
            image=spec.image,
            unit_present=(unit_dir / f"{spec.name}.service").is_file(),
        )
        info = registry.runtime.inspect(spec.name) if result.runtime_available else None
        if info is not None:
            entry.exists = True
            entry.status = info.status
            entry.in_sync = info.labels.get(SPEC_HASH_LABEL) == spec.spec_hash()
        result.containers.append(entry)

    return result
