"""
Domain models — pydantic types for the provisioner.

All models are re-exported here for convenient access:

    from provisioner.core.models import HostContext, ContainerSpec, StageResult
"""

from provisioner.core.models.config import PackagesConfig, ProvisionConfig
from provisioner.core.models.host import HostContext
from provisioner.core.models.result import RunResult, StageResult
from provisioner.core.models.specs import (
    SPEC_HASH_LABEL,
    AptRepository,
    ContainerSpec,
    PackageSet,
    PortMapping,
    ServiceSpec,
    VolumeMount,
)

__all__ = [
    "SPEC_HASH_LABEL",
    "AptRepository",
    # specs.py
    "ContainerSpec",
    # host.py
    "HostContext",
    "PackageSet",
    # config.py
    "PackagesConfig",
    "PortMapping",
    "ProvisionConfig",
    # result.py
    "RunResult",
    "ServiceSpec",
    "StageResult",
    "VolumeMount",
]
